"""HTML bodies for certificate and participant emails.

Rendering is a pure function of its arguments; templates ship inside the
package and are autoescaped, so participant names and notes cannot inject
markup.
"""

import datetime
from enum import Enum

from jinja2 import Environment, PackageLoader, select_autoescape

DEFAULT_ORGANIZATION = "Metascholar Institute"

DEFAULT_CERTIFICATE_MESSAGE = (
    "Congratulations on successfully completing the course! "
    "Your dedication and hard work have paid off."
)

_environment = Environment(
    loader=PackageLoader("certmail", "templates"),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


class EmailType(Enum):
    """Flavours of participant messages."""

    WELCOME = "welcome"
    REMINDER = "reminder"
    UPDATE = "update"
    CUSTOM = "custom"


# Header colour, title and badge per email type
EMAIL_THEMES: dict[EmailType, dict[str, str]] = {
    EmailType.WELCOME: {
        "color": "linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
        "title": "Welcome!",
        "label": "Welcome",
    },
    EmailType.REMINDER: {
        "color": "linear-gradient(135deg, #f093fb 0%, #f5576c 100%)",
        "title": "Friendly Reminder",
        "label": "Reminder",
    },
    EmailType.UPDATE: {
        "color": "linear-gradient(135deg, #4facfe 0%, #00f2fe 100%)",
        "title": "Important Update",
        "label": "Update",
    },
    EmailType.CUSTOM: {
        "color": "linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
        "title": "A Message for You",
        "label": "Message",
    },
}


def render_certificate_email(
    participant_name: str,
    message: str | None = None,
    certificate_number: str | None = None,
    organization: str = DEFAULT_ORGANIZATION,
    year: int | None = None,
) -> str:
    """Render the body that accompanies a certificate attachment."""
    template = _environment.get_template("certificate_email.html")
    return template.render(
        participant_name=participant_name,
        message=message,
        default_message=DEFAULT_CERTIFICATE_MESSAGE,
        certificate_number=certificate_number,
        organization=organization,
        year=year or datetime.date.today().year,
    )


def render_participant_email(
    participant_name: str,
    content: str,
    email_type: EmailType | str = EmailType.CUSTOM,
    organization: str = DEFAULT_ORGANIZATION,
    year: int | None = None,
) -> str:
    """Render a themed message without attachment.

    Raises:
        ValueError: If email_type is not a known EmailType value.
    """
    theme = EMAIL_THEMES[EmailType(email_type)]
    template = _environment.get_template("participant_email.html")
    return template.render(
        participant_name=participant_name,
        content=content,
        theme=theme,
        organization=organization,
        year=year or datetime.date.today().year,
    )
