"""Outbound message type shared by the builder and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field

from certmail.payload import EncodedDocument


def _reject_line_breaks(name: str, value: str) -> None:
    if "\r" in value or "\n" in value:
        raise ValueError(f"Header field '{name}' must not contain line breaks")


@dataclass(frozen=True)
class OutboundMessage:
    """A single email, built once per send request and never modified.

    Attributes:
        recipient: Address placed in the To header and the RCPT TO envelope.
        subject: Subject line (may contain non-ASCII characters).
        html_body: Rendered HTML body.
        attachment: Optional encoded document. Its data must be the cleaned
            base64 text produced by payload validation.
        attachment_filename: Filename shown to the recipient, required when an
            attachment is present.

    Raises:
        ValueError: If a header value contains CR/LF or an attachment has no
            filename.
    """

    recipient: str
    subject: str
    html_body: str = field(repr=False)
    attachment: EncodedDocument | None = field(default=None, repr=False)
    attachment_filename: str | None = None

    def __post_init__(self) -> None:
        _reject_line_breaks("To", self.recipient)
        _reject_line_breaks("Subject", self.subject)
        if self.attachment is not None:
            if not self.attachment_filename:
                raise ValueError("Attachment filename cannot be empty")
            _reject_line_breaks("filename", self.attachment_filename)
            if '"' in self.attachment_filename:
                raise ValueError("Attachment filename must not contain quotes")

    @property
    def has_attachment(self) -> bool:
        return self.attachment is not None
