"""Exception types for the certificate mail subsystem.

Lower layers (payload validation, MIME building, the SMTP client) raise these
typed errors. Only the delivery orchestrator decides whether a failure is
worth another attempt.
"""

from __future__ import annotations


class MailDeliveryError(Exception):
    """Base class for every error raised by certmail."""


class ConfigurationError(MailDeliveryError):
    """Raised when the SMTP endpoint or its credentials are missing."""


class ValidationFailed(MailDeliveryError):
    """Raised when an encoded payload or a recipient address is unusable.

    Attributes:
        errors: Individual validation messages, in the order they were found.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class SmtpConnectionError(MailDeliveryError, ConnectionError):
    """Raised on TLS/socket failures or when the server refuses the session."""


class SmtpTimeoutError(SmtpConnectionError):
    """Raised when the server does not complete a response in time."""


class ProtocolError(MailDeliveryError):
    """Raised when the server sends a malformed or unexpected response."""


class NotConnectedError(MailDeliveryError):
    """Raised when a client operation is invoked in the wrong session state."""


class AuthenticationError(MailDeliveryError):
    """Raised when the server rejects the AUTH LOGIN exchange.

    Attributes:
        code: SMTP reply code returned by the server.
        text: Reply text returned by the server.
    """

    def __init__(self, code: int, text: str) -> None:
        self.code = code
        self.text = text
        super().__init__(f"Authentication rejected ({code}): {text}")


class DeliveryRejectedError(MailDeliveryError):
    """Raised when the server rejects the envelope or the message data.

    4xx replies are transient and may succeed on a later attempt; 5xx replies
    are permanent.

    Attributes:
        code: SMTP reply code returned by the server.
        text: Full reply text returned by the server.
        command: The command that was rejected (e.g. ``RCPT TO``).
    """

    def __init__(self, code: int, text: str, command: str) -> None:
        self.code = code
        self.text = text
        self.command = command
        super().__init__(f"{command} rejected ({code}): {text}")

    @property
    def retryable(self) -> bool:
        return 400 <= self.code < 500

    @property
    def permanent(self) -> bool:
        return 500 <= self.code < 600
