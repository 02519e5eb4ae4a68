import base64
import email
from email import policy
from unittest.mock import MagicMock

import pytest

from certmail.delivery import DeliveryJob, DeliveryOrchestrator, DeliveryStatus, is_valid_email
from certmail.errors import ConfigurationError, DeliveryRejectedError, SmtpConnectionError
from certmail.payload import EncodedDocument
from certmail.retry import AttemptOutcome
from tests.unit_tests.fake_app import TEST_CONFIG, SessionRecorder, make_config, make_pdf
from tests.unit_tests.fake_smtp import SUCCESS_REPLIES

CONNECTION_DROPPED = [SUCCESS_REPLIES[0], SUCCESS_REPLIES[1]]


def pdf_attachment(size: int = 50 * 1024) -> EncodedDocument:
    return EncodedDocument("application/pdf", base64.b64encode(make_pdf(size)).decode("ascii"))


@pytest.fixture
def sleep() -> MagicMock:
    return MagicMock()


def orchestrator(scripts=None, sleep=None, **delivery) -> tuple[DeliveryOrchestrator, SessionRecorder]:
    config = make_config(DELIVERY={"RETRY_DELAY": 2.0, **delivery})
    sessions = SessionRecorder(scripts)
    return (
        DeliveryOrchestrator(config, client_factory=sessions, sleep=sleep or MagicMock()),
        sessions,
    )


class TestEmailFormat:
    @pytest.mark.parametrize("address", ["jane@example.com", "j.doe+tag@mail.example.org"])
    def test_valid(self, address: str):
        assert is_valid_email(address)

    @pytest.mark.parametrize(
        "address",
        [
            "",
            "jane",
            "jane@example",
            "jane doe@example.com",
            "a@b@c.d",
            "evil>@x.co",
            "a<b@example.com",
            'a"b@example.com',
            "a,b@example.com",
            "jane@exa:mple.com",
            "jane@(example).com",
            "zoë@example.com",
        ],
    )
    def test_invalid(self, address: str):
        assert not is_valid_email(address)


class TestDeliverCertificate:
    def test_sends_certificate(self, sleep: MagicMock):
        delivery, sessions = orchestrator(sleep=sleep)
        attachment = pdf_attachment()

        result = delivery.deliver_certificate(
            "jane@example.com",
            "Your Certificate",
            None,
            attachment,
            "Jane Doe",
            certificate_number="CERT-001",
        )

        assert result.status is DeliveryStatus.SENT
        assert result.succeeded
        assert result.attempt_count == 1
        assert result.certificate_number == "CERT-001"
        sleep.assert_not_called()

        transport = sessions.transports[0]
        raw = transport.data[: -len(b".\r\n")].replace(b"\r\n..", b"\r\n.")
        parsed = email.message_from_bytes(raw, policy=policy.default)
        (part,) = parsed.iter_attachments()
        assert part.get_filename() == "Certificate_Jane_Doe.pdf"
        assert part.get_content() == make_pdf(50 * 1024)
        assert "CERT-001" in parsed.get_body(preferencelist=("html",)).get_content()
        assert transport.commands[3] == "MAIL FROM:<support@example.com>"
        assert parsed["From"] == "Example Institute <support@example.com>"

    def test_two_failures_then_success(self, sleep: MagicMock):
        delivery, sessions = orchestrator([CONNECTION_DROPPED, CONNECTION_DROPPED], sleep=sleep)

        result = delivery.deliver_certificate(
            "jane@example.com", "Your Certificate", None, pdf_attachment(), "Jane Doe"
        )

        assert result.status is DeliveryStatus.SENT
        assert result.attempt_count == 3
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.SUCCESS,
        ]
        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0]
        assert all(t.closed for t in sessions.transports)

    def test_always_failing(self, sleep: MagicMock):
        delivery, sessions = orchestrator([CONNECTION_DROPPED] * 5, sleep=sleep)

        result = delivery.deliver_certificate(
            "jane@example.com", "Your Certificate", None, pdf_attachment(), "Jane Doe"
        )

        assert result.status is DeliveryStatus.FAILED
        assert result.attempt_count == 3
        assert len(sessions.transports) == 3
        assert sleep.call_count == 2
        assert "gave up after 3 attempts" in result.error
        assert isinstance(result.attempts[-1].error, SmtpConnectionError)

    def test_permanent_rejection_is_not_retried(self, sleep: MagicMock):
        rejected = [*SUCCESS_REPLIES[:5], b"550 5.1.1 No such user\r\n", b"221 Bye\r\n"]
        delivery, sessions = orchestrator([rejected], sleep=sleep)

        result = delivery.deliver_certificate(
            "nobody@example.com", "Your Certificate", None, pdf_attachment(), "Jane Doe"
        )

        assert result.status is DeliveryStatus.FAILED
        assert result.attempt_count == 1
        assert isinstance(result.attempts[0].error, DeliveryRejectedError)
        sleep.assert_not_called()

    def test_invalid_payload_is_never_sent(self, sleep: MagicMock):
        delivery, sessions = orchestrator(sleep=sleep)

        result = delivery.deliver_certificate(
            "jane@example.com",
            "Your Certificate",
            None,
            EncodedDocument("application/pdf", "JVBERi0x"),
            "Jane Doe",
        )

        assert result.status is DeliveryStatus.VALIDATION_FAILED
        assert result.attempts == []
        assert "below the minimum" in result.error
        assert sessions.transports == []

    def test_non_ascii_payload_is_never_sent(self):
        delivery, sessions = orchestrator()
        encoded = pdf_attachment().data

        result = delivery.deliver_certificate(
            "jane@example.com",
            "Your Certificate",
            None,
            EncodedDocument("application/pdf", "é" + encoded[1:]),
            "Jane Doe",
        )

        assert result.status is DeliveryStatus.VALIDATION_FAILED
        assert "Invalid base64 characters found" in result.error
        assert sessions.transports == []

    def test_invalid_recipient_is_never_sent(self):
        delivery, sessions = orchestrator()

        result = delivery.deliver_certificate(
            "not-an-email", "Your Certificate", None, pdf_attachment(), "Jane Doe"
        )

        assert result.status is DeliveryStatus.VALIDATION_FAILED
        assert "Invalid email format" in result.error
        assert sessions.transports == []

    def test_signature_warning_is_reported(self):
        delivery, _ = orchestrator()
        content = b"PK\x03\x04" + bytes(5000)
        attachment = EncodedDocument("application/pdf", base64.b64encode(content).decode("ascii"))

        result = delivery.deliver_certificate(
            "jane@example.com", "Your Certificate", None, attachment, "Jane Doe"
        )

        assert result.succeeded
        assert len(result.warnings) == 1

    def test_wrapped_payload_is_sent_cleaned(self):
        delivery, sessions = orchestrator()
        encoded = base64.b64encode(make_pdf(5000)).decode("ascii")
        wrapped = "\n".join(encoded[i : i + 64] for i in range(0, len(encoded), 64))

        result = delivery.deliver_certificate(
            "jane@example.com",
            "Your Certificate",
            None,
            EncodedDocument("application/pdf", wrapped),
            "Jane Doe",
        )

        assert result.succeeded
        data = sessions.transports[0].data
        assert encoded[:76].encode("ascii") + b"\r\n" + encoded[76:152].encode("ascii") in data

    def test_missing_password_fails_before_connecting(self):
        config = make_config(SMTP={"HOST": "smtp.example.com", "USERNAME": "support@example.com"})
        factory = MagicMock()
        delivery = DeliveryOrchestrator(config, client_factory=factory, sleep=MagicMock())

        with pytest.raises(ConfigurationError, match="password"):
            delivery.deliver_certificate(
                "jane@example.com", "Your Certificate", None, pdf_attachment(), "Jane Doe"
            )
        factory.assert_not_called()


class TestDeliverMessage:
    def test_sends_themed_message(self):
        delivery, sessions = orchestrator()

        result = delivery.deliver_message(
            "jane@example.com", "Welcome aboard", "See you on Monday", "Jane Doe", email_type="welcome"
        )

        assert result.succeeded
        raw = sessions.transports[0].data[: -len(b".\r\n")]
        parsed = email.message_from_bytes(raw, policy=policy.default)
        assert parsed.get_content_type() == "text/html"
        html = parsed.get_content()
        assert "Welcome!" in html
        assert "See you on Monday" in html

    def test_unknown_type_is_a_validation_failure(self):
        delivery, sessions = orchestrator()

        result = delivery.deliver_message(
            "jane@example.com", "Hi", "content", "Jane Doe", email_type="promo"
        )

        assert result.status is DeliveryStatus.VALIDATION_FAILED
        assert sessions.transports == []


class TestRun:
    def test_job_with_document_is_a_certificate(self):
        delivery, sessions = orchestrator()
        job = DeliveryJob(
            recipient="jane@example.com",
            participant_name="Jane Doe",
            document=pdf_attachment(),
            certificate_number="CERT-7",
        )

        result = delivery.run(job)

        assert result.succeeded
        assert result.job_id == job.job_id
        assert result.certificate_number == "CERT-7"
        assert b"Certificate_Jane_Doe.pdf" in sessions.transports[0].data

    def test_job_without_document_is_a_message(self):
        delivery, sessions = orchestrator()
        job = DeliveryJob(
            recipient="jane@example.com", participant_name="Jane", subject="Hi", note="Hello"
        )

        result = delivery.run(job)

        assert result.succeeded
        assert b"multipart" not in sessions.transports[0].data


class TestDefaultClient:
    def test_uses_smtp_settings(self):
        config = make_config(
            SMTP={**TEST_CONFIG["SMTP"], "TIMEOUT": 12, "AUTH_INITIAL_RESPONSE": False}
        )

        client = DeliveryOrchestrator(config)._client_factory()

        assert client.timeout == 12
        assert client.local_hostname == "client.example.com"
        assert client.auth_initial_response is False
