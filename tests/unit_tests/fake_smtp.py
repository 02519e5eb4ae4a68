"""Scripted SMTP transport used instead of a TLS socket."""

import base64
from typing import Union

from certmail.smtp_client import SmtpClient

Reply = Union[bytes, BaseException]

# Replies of a full successful session, in order:
# greeting, EHLO, AUTH LOGIN prompt, AUTH accepted, MAIL FROM, RCPT TO, DATA,
# end of data, QUIT
SUCCESS_REPLIES: list[bytes] = [
    b"220 smtp.example.com ESMTP ready\r\n",
    b"250-smtp.example.com\r\n250-AUTH LOGIN PLAIN\r\n250 SIZE 35882577\r\n",
    b"334 UGFzc3dvcmQ6\r\n",
    b"235 2.7.0 Authentication successful\r\n",
    b"250 2.1.0 Sender OK\r\n",
    b"250 2.1.5 Recipient OK\r\n",
    b"354 Start mail input; end with <CRLF>.<CRLF>\r\n",
    b"250 2.0.0 Ok: queued as 4F2A1\r\n",
    b"221 2.0.0 Bye\r\n",
]


class ScriptedTransport:
    """Answers every recv() with the next scripted item.

    Exceptions in the script are raised from recv(); an exhausted script
    behaves like a closed connection.
    """

    def __init__(self, replies: list[Reply]):
        self.replies = list(replies)
        self.sent: list[bytes] = []
        self.timeouts: list[float | None] = []
        self.closed = False

    def sendall(self, data: bytes) -> None:
        self.sent.append(bytes(data))

    def recv(self, bufsize: int) -> bytes:
        if not self.replies:
            return b""
        item = self.replies.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def settimeout(self, value: float | None) -> None:
        self.timeouts.append(value)

    def close(self) -> None:
        self.closed = True

    @property
    def commands(self) -> list[str]:
        """Every single-line write, without the trailing CRLF."""
        return [
            data.decode("ascii")[:-2]
            for data in self.sent
            if data.endswith(b"\r\n") and data.count(b"\r\n") == 1
        ]

    @property
    def data(self) -> bytes:
        """Everything written after the DATA command, up to QUIT."""
        start = self.sent.index(b"DATA\r\n") + 1
        chunks = self.sent[start:]
        if chunks and chunks[-1] == b"QUIT\r\n":
            chunks = chunks[:-1]
        return b"".join(chunks)


def scripted_client(transport: ScriptedTransport, **kwargs) -> SmtpClient:
    kwargs.setdefault("local_hostname", "client.example.com")
    return SmtpClient(connection_factory=lambda host, port, timeout: transport, **kwargs)


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")
