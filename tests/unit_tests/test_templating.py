import pytest

from certmail.templating import (
    DEFAULT_CERTIFICATE_MESSAGE,
    EmailType,
    render_certificate_email,
    render_participant_email,
)


class TestCertificateEmail:
    def test_greets_participant(self):
        html = render_certificate_email("Jane Doe", organization="Example Institute", year=2024)

        assert "Dear <strong>Jane Doe</strong>" in html
        assert DEFAULT_CERTIFICATE_MESSAGE in html
        assert "&copy; 2024 Example Institute" in html

    def test_custom_message_replaces_default(self):
        html = render_certificate_email("Jane", message="Well done on the capstone!")

        assert "Well done on the capstone!" in html
        assert DEFAULT_CERTIFICATE_MESSAGE not in html

    def test_certificate_number_is_optional(self):
        assert "Certificate Number" not in render_certificate_email("Jane")
        assert "CERT-42" in render_certificate_email("Jane", certificate_number="CERT-42")

    def test_escapes_markup(self):
        html = render_certificate_email("<script>alert(1)</script>", message="<b>hi</b>")

        assert "<script>" not in html
        assert "&lt;script&gt;" in html
        assert "&lt;b&gt;hi&lt;/b&gt;" in html


class TestParticipantEmail:
    @pytest.mark.parametrize(
        "email_type, title",
        [
            (EmailType.WELCOME, "Welcome!"),
            ("reminder", "Friendly Reminder"),
            ("update", "Important Update"),
            ("custom", "A Message for You"),
        ],
    )
    def test_themes(self, email_type, title: str):
        html = render_participant_email("Jane", "Class moves to room 4", email_type=email_type)

        assert f"<h1>{title}</h1>" in html
        assert "Hello Jane," in html
        assert "Class moves to room 4" in html

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            render_participant_email("Jane", "content", email_type="promo")
