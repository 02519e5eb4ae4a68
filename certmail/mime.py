"""MIME serialization of outbound certificate emails.

The builder writes the wire format by hand instead of going through
``email.message`` so that the attachment part carries the validated base64
text verbatim, only re-wrapped to 76 character lines (RFC 2045, section 6.8).
The HTML body is always sent as quoted-printable.

Example:
    >>> raw = build_message(message, "Institute <support@example.com>")
    >>> raw.startswith(b"From: ")
    True
"""

from __future__ import annotations

import logging
import quopri
import re
import secrets
from collections.abc import Callable
from email.header import Header
from email.utils import formatdate, make_msgid, parseaddr

from certmail.message import OutboundMessage
from certmail.payload import PDF_MEDIA_TYPE

logger = logging.getLogger(__name__)

CRLF = "\r\n"

BASE64_LINE_LENGTH = 76

MAX_FILENAME_LENGTH = 100

MAX_BOUNDARY_ATTEMPTS = 100

FILENAME_PREFIX = "Certificate"

MIME_PREAMBLE = "This is a multi-part message in MIME format."

# Fixed extension per media type
FILE_EXTENSIONS: dict[str, str] = {
    PDF_MEDIA_TYPE: ".pdf",
}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9]+")
_CLEAN_BASE64 = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


def new_boundary() -> str:
    """Return a random boundary token.

    The ``=_`` sequence cannot occur in base64 or quoted-printable output.
    """
    return f"----=_Part_{secrets.token_hex(16)}"


def derive_filename(participant_name: str, media_type: str = PDF_MEDIA_TYPE) -> str:
    """Turn a participant's display name into a safe attachment filename.

    Runs of characters outside ``[A-Za-z0-9]`` collapse into one underscore.

    >>> derive_filename("Jane Doe")
    'Certificate_Jane_Doe.pdf'
    >>> derive_filename("李雷")
    'Certificate.pdf'
    """
    extension = FILE_EXTENSIONS.get(media_type, ".bin")
    token = _UNSAFE_FILENAME_CHARS.sub("_", participant_name or "").strip("_")
    if not token:
        return f"{FILENAME_PREFIX}{extension}"

    budget = MAX_FILENAME_LENGTH - len(FILENAME_PREFIX) - 1 - len(extension)
    token = token[:budget].rstrip("_")
    return f"{FILENAME_PREFIX}_{token}{extension}"


def wrap_base64(text: str, width: int = BASE64_LINE_LENGTH) -> str:
    """Split base64 text into CRLF separated lines of at most ``width`` characters."""
    return CRLF.join(text[i : i + width] for i in range(0, len(text), width))


def encode_html_body(html: str) -> str:
    """Quoted-printable encode an HTML body with CRLF line endings."""
    normalized = html.replace("\r\n", "\n").replace("\r", "\n")
    encoded = quopri.encodestring(normalized.encode("utf-8"))
    return encoded.decode("ascii").replace("\n", CRLF)


def _encode_header(value: str) -> str:
    charset = "us-ascii" if value.isascii() else "utf-8"
    return Header(value, charset).encode(linesep=CRLF)


def _choose_boundary(contents: list[str], boundary_factory: Callable[[], str]) -> str:
    for _ in range(MAX_BOUNDARY_ATTEMPTS):
        boundary = boundary_factory()
        if not any(boundary in content for content in contents):
            return boundary
        logger.debug("Boundary %s collides with message content, regenerating", boundary)
    raise RuntimeError(f"Could not find a collision-free boundary in {MAX_BOUNDARY_ATTEMPTS} attempts")


def _common_headers(message: OutboundMessage, from_address: str, date: str | None) -> list[str]:
    _, sender = parseaddr(from_address)
    domain = sender.rpartition("@")[2] or "localhost"
    return [
        f"From: {from_address}",
        f"To: {message.recipient}",
        f"Subject: {_encode_header(message.subject)}",
        f"Date: {date or formatdate(localtime=False)}",
        f"Message-ID: {make_msgid(domain=domain)}",
        "MIME-Version: 1.0",
    ]


def build_message(
    message: OutboundMessage,
    from_address: str,
    *,
    boundary_factory: Callable[[], str] = new_boundary,
    date: str | None = None,
) -> bytes:
    """Serialize a message into transmit-ready bytes.

    Args:
        message: The message to serialize.
        from_address: Value of the From header, e.g. ``Name <addr@host>``.
            Non-ASCII display names must already be RFC 2047 encoded
            (``email.utils.formataddr`` does this).
        boundary_factory: Source of candidate multipart boundaries.
        date: Optional Date header value, defaults to now.

    Returns:
        The message with CRLF line endings, without the SMTP terminator.

    Raises:
        ValueError: If the attachment data still contains whitespace or other
            non-base64 characters, i.e. it did not come from validation.
    """
    headers = _common_headers(message, from_address, date)
    body = encode_html_body(message.html_body)

    if message.attachment is None:
        lines = [
            *headers,
            "Content-Type: text/html; charset=UTF-8",
            "Content-Transfer-Encoding: quoted-printable",
            "",
            body,
        ]
        return CRLF.join(lines).encode("ascii")

    attachment_data = message.attachment.data
    if not _CLEAN_BASE64.match(attachment_data):
        raise ValueError("Attachment data must be the cleaned base64 text returned by validation")

    boundary = _choose_boundary(
        [message.html_body, body, attachment_data], boundary_factory
    )
    filename = message.attachment_filename
    lines = [
        *headers,
        f'Content-Type: multipart/mixed; boundary="{boundary}"',
        "",
        MIME_PREAMBLE,
        "",
        f"--{boundary}",
        "Content-Type: text/html; charset=UTF-8",
        "Content-Transfer-Encoding: quoted-printable",
        "",
        body.rstrip(CRLF),
        f"--{boundary}",
        f'Content-Type: {message.attachment.media_type}; name="{filename}"',
        f'Content-Disposition: attachment; filename="{filename}"',
        "Content-Transfer-Encoding: base64",
        "",
        wrap_base64(attachment_data),
        f"--{boundary}--",
        "",
    ]
    raw = CRLF.join(lines).encode("ascii")
    logger.debug(
        "Built multipart message for %s: %d bytes, attachment %s (%d base64 chars)",
        message.recipient,
        len(raw),
        filename,
        len(attachment_data),
    )
    return raw
