"""Delivery status records keyed by certificate number.

The real record store (participants, certificates) lives outside this
package; StatusStore is the boundary it has to implement. InMemoryStatusStore
keeps the records in a plain dict, which is enough for tests and single
process deployments.
"""

import datetime
import logging
import threading
from typing import Any, Optional, Protocol

from pydantic import BaseModel

from certmail.delivery import DeliveryResult

logger = logging.getLogger(__name__)


class DeliveryRecord(BaseModel):
    """Last known delivery state of a certificate.

    Attributes:
        certificate_number: Certificate the email carried
        recipient: Address the certificate was sent to
        status: One of 'sent', 'failed', 'invalid'
        attempts: Number of SMTP sessions used
        error: Failure reason, if any
        updated_at: ISO 8601 timestamp of the update
    """

    certificate_number: str
    recipient: str
    status: str
    attempts: int = 0
    error: Optional[str] = None
    updated_at: str


class StatusStore(Protocol):
    """Interface of the record store for delivery statuses."""

    def record(self, result: DeliveryResult) -> None: ...

    def get_status(self, certificate_number: str) -> Optional[DeliveryRecord]: ...


class InMemoryStatusStore:
    """Dict backed StatusStore, usable directly as a delivery listener."""

    def __init__(self, data: Optional[dict[str, Any]] = None):
        self.data: dict[str, Any] = data if data is not None else {}
        self._lock = threading.Lock()

    def __call__(self, result: DeliveryResult) -> None:
        self.record(result)

    def record(self, result: DeliveryResult) -> None:
        """Store the outcome of a certificate delivery.

        Results without a certificate number (plain participant messages)
        are ignored.
        """
        if not result.certificate_number:
            return

        record = DeliveryRecord(
            certificate_number=result.certificate_number,
            recipient=result.recipient,
            status=result.status.value,
            attempts=result.attempt_count,
            error=result.error,
            updated_at=datetime.datetime.now(datetime.timezone.utc).isoformat(),
        )
        with self._lock:
            self.data.setdefault("certificates", {})[result.certificate_number] = record.model_dump()
        logger.debug("Recorded %s for certificate %s", record.status, record.certificate_number)

    def get_status(self, certificate_number: str) -> Optional[DeliveryRecord]:
        """Return the last recorded status of a certificate, if any."""
        raw = self.data.get("certificates", {}).get(certificate_number)
        if raw is None:
            return None
        return DeliveryRecord.model_validate(raw)
