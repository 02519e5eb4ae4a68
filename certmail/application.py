import logging
from typing import Optional

from certmail.config import Config
from certmail.delivery import DeliveryOrchestrator
from certmail.engine import Engine
from certmail.send_queue import SendQueue
from certmail.status_store import InMemoryStatusStore, StatusStore
from certmail.telemetry import setup_telemetry

logger = logging.getLogger(__name__)


def create_engine(
    config: Config,
    send_queue: Optional[SendQueue] = None,
    status_store: Optional[StatusStore] = None,
) -> Engine:
    """Wire the delivery pipeline behind a Flask application.

    Args:
        config: Application configuration.
        send_queue: Queue to use instead of one built from config.
        status_store: Store to record certificate statuses in.
    """
    if send_queue is None:
        send_queue = SendQueue(
            DeliveryOrchestrator(config),
            max_workers=config.delivery.workers,
            batch_delay=config.delivery.batch_delay,
        )
    if status_store is None:
        status_store = InMemoryStatusStore()
    send_queue.add_listener(status_store.record)

    app = Engine(config, send_queue, status_store, __name__)
    setup_telemetry(app, config.telemetry)
    logger.info(
        "%s ready, sending through %s:%d", config.app_name, config.smtp.host, config.smtp.port
    )
    return app


def create_app(config_path: str) -> Engine:
    config = Config.parse_yaml(config_path)
    return create_engine(config)
