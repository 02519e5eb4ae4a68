"""Minimal SMTP submission client over implicit TLS.

The client drives one linear session per message::

    DISCONNECTED -> CONNECTED -> GREETED -> AUTHENTICATED -> MAIL_FROM_ACCEPTED
        -> RCPT_TO_ACCEPTED -> DATA_PHASE -> SENT -> CLOSED

Each transition sends one command and reads one complete reply. Calling an
operation from the wrong state raises NotConnectedError instead of failing
later with an ambiguous socket error. The client never retries; it raises a
typed error and leaves the decision to the caller.

AUTH LOGIN sends the username as an initial response by default. Some servers
only accept the two-prompt form; pass ``auth_initial_response=False`` for those.

Example:
    >>> client = SmtpClient(timeout=30)
    >>> with client:
    ...     client.connect("smtp.titan.email", 465)
    ...     client.authenticate("user@example.com", password)
    ...     client.send("user@example.com", "to@example.com", raw_message)
"""

from __future__ import annotations

import base64
import logging
import re
import socket
import ssl
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from certmail.errors import (
    AuthenticationError,
    DeliveryRejectedError,
    NotConnectedError,
    ProtocolError,
    SmtpConnectionError,
    SmtpTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_READ_ATTEMPTS = 10
QUIT_READ_ATTEMPTS = 2
WRITE_CHUNK_SIZE = 64 * 1024
READ_CHUNK_SIZE = 4096
CREDENTIAL_PLACEHOLDER = "[CREDENTIALS]"

_FINAL_LINE = re.compile(rb"^\d{3} ")
_REPLY_LINE = re.compile(r"^(\d{3})([ -])(.*)$")


class SmtpState(Enum):
    """Position of a session in the submission state machine."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    GREETED = "greeted"
    AUTHENTICATED = "authenticated"
    MAIL_FROM_ACCEPTED = "mail_from_accepted"
    RCPT_TO_ACCEPTED = "rcpt_to_accepted"
    DATA_PHASE = "data_phase"
    SENT = "sent"
    CLOSED = "closed"


class Transport(Protocol):
    """The subset of a socket the client relies on."""

    def sendall(self, data: bytes) -> None: ...

    def recv(self, bufsize: int) -> bytes: ...

    def settimeout(self, value: float | None) -> None: ...

    def close(self) -> None: ...


ConnectionFactory = Callable[[str, int, float], Transport]


def open_tls_connection(host: str, port: int, timeout: float) -> Transport:
    """Open a TCP connection and complete the TLS handshake immediately."""
    context = ssl.create_default_context()
    raw = socket.create_connection((host, port), timeout=timeout)
    try:
        return context.wrap_socket(raw, server_hostname=host)
    except BaseException:
        raw.close()
        raise


@dataclass(frozen=True)
class SmtpResponse:
    """A complete, possibly multi-line, server reply.

    Attributes:
        code: Three digit reply code of the final line.
        lines: Text of every line with the code and separator removed.
    """

    code: int
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @classmethod
    def parse(cls, raw: bytes) -> SmtpResponse:
        """Parse the bytes of a complete reply.

        Raises:
            ProtocolError: If a line does not follow the ``NNN[ -]text`` form
                or the lines disagree on the reply code.
        """
        text = raw.decode("utf-8", errors="replace")
        lines = [line for line in text.split("\r\n") if line]
        if not lines:
            raise ProtocolError("Empty reply from server")

        codes: set[str] = set()
        messages: list[str] = []
        for line in lines:
            match = _REPLY_LINE.match(line)
            if match is None:
                raise ProtocolError(f"Malformed reply line: {line[:100]!r}")
            codes.add(match.group(1))
            messages.append(match.group(3))

        if len(codes) != 1:
            raise ProtocolError(f"Inconsistent reply codes in one reply: {sorted(codes)}")
        return cls(code=int(codes.pop()), lines=messages)

    def __str__(self) -> str:
        return f"{self.code} {self.text}"


def _has_final_line(buffer: bytes) -> bool:
    if not buffer.endswith(b"\r\n"):
        return False
    return any(_FINAL_LINE.match(line) for line in buffer.split(b"\r\n"))


def dot_stuff(payload: bytes) -> bytes:
    """Apply SMTP transparency: double every dot that starts a line (RFC 5321 4.5.2)."""
    stuffed = payload.replace(b"\r\n.", b"\r\n..")
    if stuffed.startswith(b"."):
        stuffed = b"." + stuffed
    return stuffed


class SmtpClient:
    """One-message-per-session SMTP client.

    Args:
        timeout: Upper bound in seconds for connection setup and for each
            socket read.
        max_read_attempts: How many reads (including timed out ones) may be
            spent collecting a single reply.
        local_hostname: Name announced in EHLO.
        connection_factory: Callable opening the TLS transport. Tests pass a
            scripted fake here.
        auth_initial_response: Send the username on the AUTH LOGIN line. Servers
            that do not accept an initial response for LOGIN need this off,
            which costs one extra 334 round trip.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_read_attempts: int = DEFAULT_MAX_READ_ATTEMPTS,
        local_hostname: str | None = None,
        connection_factory: ConnectionFactory = open_tls_connection,
        auth_initial_response: bool = True,
    ) -> None:
        self.timeout = timeout
        self.max_read_attempts = max_read_attempts
        self.local_hostname = local_hostname or socket.getfqdn()
        self._connection_factory = connection_factory
        self.auth_initial_response = auth_initial_response
        self._transport: Transport | None = None
        self._in_data = False
        self.state = SmtpState.DISCONNECTED
        self.host: str | None = None

    def __enter__(self) -> SmtpClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    @property
    def connected(self) -> bool:
        return self._transport is not None

    def _require(self, *states: SmtpState) -> Transport:
        if self._transport is None:
            raise NotConnectedError(
                f"Not connected to an SMTP server (state: {self.state.value})"
            )
        if self.state not in states:
            expected = " or ".join(state.value for state in states)
            raise NotConnectedError(
                f"Operation requires session state {expected}, current state is {self.state.value}"
            )
        return self._transport

    def _write(self, transport: Transport, data: bytes) -> None:
        try:
            transport.sendall(data)
        except socket.timeout as e:
            raise SmtpTimeoutError(f"Timed out writing to {self.host}") from e
        except OSError as e:
            raise SmtpConnectionError(f"Write to {self.host} failed: {e}") from e

    def _read_response(self, transport: Transport, max_attempts: int | None = None) -> SmtpResponse:
        attempts = max_attempts or self.max_read_attempts
        buffer = b""
        for _ in range(attempts):
            try:
                chunk = transport.recv(READ_CHUNK_SIZE)
            except socket.timeout:
                logger.debug("SMTP read timed out, %d bytes buffered", len(buffer))
                continue
            except OSError as e:
                raise SmtpConnectionError(f"Read from {self.host} failed: {e}") from e

            if not chunk:
                raise SmtpConnectionError(
                    f"Connection closed by {self.host} before a complete reply was received"
                )
            buffer += chunk
            if _has_final_line(buffer):
                response = SmtpResponse.parse(buffer)
                logger.debug("SMTP < %s", str(response)[:200])
                return response

        raise SmtpTimeoutError(
            f"No complete reply from {self.host} after {attempts} reads"
        )

    def _command(
        self,
        transport: Transport,
        command: str,
        log_as: str | None = None,
        max_attempts: int | None = None,
    ) -> SmtpResponse:
        logger.debug("SMTP > %s", log_as or command)
        self._write(transport, f"{command}\r\n".encode("ascii"))
        return self._read_response(transport, max_attempts)

    def connect(self, host: str, port: int) -> SmtpResponse:
        """Open the TLS connection and read the greeting.

        Raises:
            SmtpConnectionError: If the connection fails or the greeting is not 220.
            NotConnectedError: If a session is already open.
        """
        if self._transport is not None:
            raise NotConnectedError(f"Session already open (state: {self.state.value})")

        self.host = host
        logger.info("Connecting to %s:%d", host, port)
        try:
            transport = self._connection_factory(host, port, self.timeout)
        except socket.timeout as e:
            raise SmtpTimeoutError(f"Timed out connecting to {host}:{port}") from e
        except OSError as e:
            raise SmtpConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

        transport.settimeout(self.timeout)
        self._transport = transport
        self.state = SmtpState.CONNECTED

        greeting = self._read_response(transport)
        if greeting.code != 220:
            raise SmtpConnectionError(f"SMTP connection rejected: {greeting}")
        self.state = SmtpState.GREETED
        return greeting

    def authenticate(self, username: str, password: str) -> SmtpResponse:
        """Run EHLO and an AUTH LOGIN exchange.

        By default the username travels as the initial response of AUTH LOGIN,
        so the server answers with a single 334 password prompt. With
        ``auth_initial_response`` off, AUTH LOGIN goes alone and the username
        answers the first 334.

        Raises:
            AuthenticationError: If any step returns an unexpected code.
        """
        transport = self._require(SmtpState.GREETED)

        ehlo = self._command(transport, f"EHLO {self.local_hostname}")
        if ehlo.code != 250:
            raise AuthenticationError(ehlo.code, f"EHLO rejected: {ehlo.text}")

        encoded_user = base64.b64encode(username.encode("utf-8")).decode("ascii")
        if self.auth_initial_response:
            prompts = [(f"AUTH LOGIN {encoded_user}", f"AUTH LOGIN {CREDENTIAL_PLACEHOLDER}")]
        else:
            prompts = [("AUTH LOGIN", None), (encoded_user, CREDENTIAL_PLACEHOLDER)]
        for line, log_as in prompts:
            prompt = self._command(transport, line, log_as=log_as)
            if prompt.code != 334:
                raise AuthenticationError(prompt.code, prompt.text)

        encoded_password = base64.b64encode(password.encode("utf-8")).decode("ascii")
        accepted = self._command(transport, encoded_password, log_as=CREDENTIAL_PLACEHOLDER)
        if accepted.code != 235:
            raise AuthenticationError(accepted.code, accepted.text)

        self.state = SmtpState.AUTHENTICATED
        logger.info("Authenticated with %s", self.host)
        return accepted

    def _expect(self, response: SmtpResponse, command: str, *codes: int) -> None:
        if response.code in codes:
            return
        if 400 <= response.code < 600:
            raise DeliveryRejectedError(response.code, response.text, command)
        raise ProtocolError(f"Unexpected reply to {command}: {response}")

    def send(self, envelope_from: str, envelope_to: str, message: bytes) -> SmtpResponse:
        """Transmit one message.

        Args:
            envelope_from: Bare address for MAIL FROM.
            envelope_to: Bare address for RCPT TO.
            message: The serialized message with CRLF line endings.

        Returns:
            The server's final reply to the message data.

        Raises:
            DeliveryRejectedError: On a 4xx/5xx reply at any step.
            ProtocolError: On any other unexpected reply.
        """
        transport = self._require(SmtpState.AUTHENTICATED)

        response = self._command(transport, f"MAIL FROM:<{envelope_from}>")
        self._expect(response, "MAIL FROM", 250)
        self.state = SmtpState.MAIL_FROM_ACCEPTED

        response = self._command(transport, f"RCPT TO:<{envelope_to}>")
        self._expect(response, "RCPT TO", 250, 251)
        self.state = SmtpState.RCPT_TO_ACCEPTED

        response = self._command(transport, "DATA")
        self._expect(response, "DATA", 354)
        self.state = SmtpState.DATA_PHASE

        payload = dot_stuff(message)
        payload += b".\r\n" if payload.endswith(b"\r\n") else b"\r\n.\r\n"
        logger.debug("SMTP > <message data, %d bytes>", len(payload))
        self._in_data = True
        view = memoryview(payload)
        for offset in range(0, len(payload), WRITE_CHUNK_SIZE):
            self._write(transport, view[offset : offset + WRITE_CHUNK_SIZE].tobytes())
        self._in_data = False

        response = self._read_response(transport)
        self._expect(response, "end of DATA", 250)
        self.state = SmtpState.SENT
        logger.info("Message accepted by %s for %s: %s", self.host, envelope_to, response.text)
        return response

    def disconnect(self) -> None:
        """Send QUIT (best effort) and close the transport.

        Safe to call at any point, any number of times.
        """
        transport = self._transport
        if transport is None:
            self.state = SmtpState.CLOSED
            return

        try:
            # A QUIT written mid-DATA would be read as message content
            if not self._in_data:
                self._command(transport, "QUIT", max_attempts=QUIT_READ_ATTEMPTS)
        except (SmtpConnectionError, ProtocolError) as e:
            logger.warning("QUIT to %s failed: %s", self.host, e)
        finally:
            try:
                transport.close()
            except OSError as e:
                logger.warning("Closing connection to %s failed: %s", self.host, e)
            self._transport = None
            self._in_data = False
            self.state = SmtpState.CLOSED
