import base64
from typing import Any

import pytest

from certmail.application import create_engine
from certmail.config import Config
from certmail.delivery import DeliveryOrchestrator
from certmail.engine import Engine
from certmail.send_queue import SendQueue
from certmail.status_store import InMemoryStatusStore
from tests.unit_tests.fake_smtp import SUCCESS_REPLIES, ScriptedTransport, scripted_client

TEST_CONFIG: dict[str, Any] = {
    "APP_NAME": "certmail-test",
    "TESTING": True,
    "SMTP": {
        "HOST": "smtp.example.com",
        "PORT": 465,
        "USERNAME": "support@example.com",
        "PASSWORD": "s3cret",
        "FROM_NAME": "Example Institute",
        "FROM_ADDRESS": "support@example.com",
        "TIMEOUT": 5,
        "LOCAL_HOSTNAME": "client.example.com",
    },
    "DELIVERY": {"RETRY_DELAY": 0, "BATCH_DELAY": 0},
}


def make_pdf(size: int) -> bytes:
    """Bytes of the given length starting with a PDF header."""
    header = b"%PDF-1.4\n"
    body = bytes(i % 251 for i in range(max(size - len(header), 0)))
    return header + body


def data_url(content: bytes, media_type: str = "application/pdf") -> str:
    return f"data:{media_type};base64,{base64.b64encode(content).decode('ascii')}"


def make_config(**overrides: Any) -> Config:
    raw = {**TEST_CONFIG, **overrides}
    return Config.model_validate(raw)


class SessionRecorder:
    """Client factory handing out one scripted transport per attempt."""

    def __init__(self, scripts: list[list] | None = None):
        self.scripts = list(scripts) if scripts is not None else None
        self.transports: list[ScriptedTransport] = []

    def __call__(self):
        replies = self.scripts.pop(0) if self.scripts else SUCCESS_REPLIES
        transport = ScriptedTransport(replies)
        self.transports.append(transport)
        return scripted_client(transport)


@pytest.fixture
def sessions() -> SessionRecorder:
    return SessionRecorder()


@pytest.fixture
def test_app(sessions: SessionRecorder) -> Engine:
    config = make_config()
    orchestrator = DeliveryOrchestrator(config, client_factory=sessions, sleep=lambda _: None)
    queue = SendQueue(orchestrator, batch_delay=0, sleep=lambda _: None)
    app = create_engine(config, send_queue=queue, status_store=InMemoryStatusStore())
    yield app
    queue.shutdown()
