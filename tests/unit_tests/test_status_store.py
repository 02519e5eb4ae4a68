from certmail.delivery import DeliveryResult, DeliveryStatus
from certmail.retry import AttemptOutcome, DeliveryAttempt
from certmail.status_store import InMemoryStatusStore


def result(status: DeliveryStatus, certificate_number: str | None = "CERT-1", **kwargs) -> DeliveryResult:
    return DeliveryResult(
        recipient="jane@example.com", status=status, certificate_number=certificate_number, **kwargs
    )


def test_records_sent_certificate():
    store = InMemoryStatusStore()
    attempts = [DeliveryAttempt("jane@example.com", 1, AttemptOutcome.SUCCESS)]

    store.record(result(DeliveryStatus.SENT, attempts=attempts))

    record = store.get_status("CERT-1")
    assert record is not None
    assert record.status == "sent"
    assert record.attempts == 1
    assert record.error is None
    assert record.updated_at


def test_latest_result_wins():
    store = InMemoryStatusStore()

    store(result(DeliveryStatus.FAILED, error="gave up after 3 attempts"))
    store(result(DeliveryStatus.SENT))

    assert store.get_status("CERT-1").status == "sent"


def test_records_validation_failure_detail():
    store = InMemoryStatusStore()

    store.record(result(DeliveryStatus.VALIDATION_FAILED, error="Payload is empty"))

    record = store.get_status("CERT-1")
    assert record.status == "invalid"
    assert record.error == "Payload is empty"


def test_ignores_results_without_certificate():
    store = InMemoryStatusStore()

    store.record(result(DeliveryStatus.SENT, certificate_number=None))

    assert store.data == {}


def test_unknown_certificate():
    assert InMemoryStatusStore().get_status("missing") is None


def test_uses_provided_data():
    data = {"certificates": {}}
    store = InMemoryStatusStore(data)

    store.record(result(DeliveryStatus.SENT))

    assert data["certificates"]["CERT-1"]["recipient"] == "jane@example.com"
