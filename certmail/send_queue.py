"""Background execution of delivery jobs.

Callers enqueue and get an acknowledgment back at once; the SMTP work happens
on a bounded worker pool (one worker by default, so a single mail account never
sees concurrent sessions from this process). Jobs cannot be cancelled once
queued.

Example:
    >>> queue = SendQueue(orchestrator)
    >>> ticket = queue.enqueue(DeliveryJob(recipient="a@example.com", participant_name="Jane"))
    >>> ticket.status
    'queued'
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol

from certmail.delivery import DeliveryJob, DeliveryOrchestrator, DeliveryResult, DeliveryStatus

logger = logging.getLogger(__name__)


class DeliveryListener(Protocol):
    """Receives the final result of every job, e.g. to persist its status.

    Example:
        def log_result(result: DeliveryResult) -> None:
            print(result.recipient, result.status)

        queue.add_listener(log_result)
    """

    def __call__(self, result: DeliveryResult) -> None:
        """Handle a finished delivery.

        Args:
            result: The final result for one recipient.
        """
        ...


@dataclass
class BatchResult:
    """Outcome of a batch: a success count and per-recipient failures.

    Attributes:
        succeeded: Number of recipients the server accepted.
        failures: (recipient, error) for every other recipient.
        results: Every individual result, in submission order.
    """

    succeeded: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)
    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass(frozen=True)
class QueuedJob:
    """Acknowledgment returned by enqueue; says nothing about delivery."""

    job_id: str
    future: Future = field(repr=False, compare=False)
    count: int = 1
    status: str = "queued"


class SendQueue:
    """Single-consumer (by default) queue of delivery jobs.

    Args:
        orchestrator: Executes each job.
        max_workers: Size of the worker pool.
        batch_delay: Seconds to wait between jobs of one batch.
        sleep: Used for the inter-job delay.
        listeners: Called with every DeliveryResult.
    """

    def __init__(
        self,
        orchestrator: DeliveryOrchestrator,
        max_workers: int = 1,
        batch_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        listeners: Iterable[DeliveryListener] = (),
    ) -> None:
        self.orchestrator = orchestrator
        self.batch_delay = batch_delay
        self._sleep = sleep
        self.listeners: list[DeliveryListener] = list(listeners)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="certmail-send")
        self._closed = False

    def add_listener(self, listener: DeliveryListener) -> None:
        """Register a listener for delivery results."""
        self.listeners.append(listener)

    def enqueue(self, job: DeliveryJob) -> QueuedJob:
        """Accept one job for background delivery.

        Raises:
            RuntimeError: If the queue has been shut down.
        """
        future = self._executor.submit(self.run_job, job)
        logger.info("Queued job %s for %s", job.job_id, job.recipient)
        return QueuedJob(job_id=job.job_id, future=future)

    def enqueue_batch(self, jobs: Iterable[DeliveryJob]) -> QueuedJob:
        """Accept a batch; its future resolves to a BatchResult.

        Raises:
            RuntimeError: If the queue has been shut down.
        """
        batch = list(jobs)
        batch_id = uuid.uuid4().hex
        future = self._executor.submit(self.run_batch, batch)
        logger.info("Queued batch %s with %d job(s)", batch_id, len(batch))
        return QueuedJob(job_id=batch_id, future=future, count=len(batch))

    def run_job(self, job: DeliveryJob) -> DeliveryResult:
        """Run one job to completion and notify listeners.

        Unexpected errors end up in the returned result instead of escaping,
        so one recipient never takes down the rest of a batch.
        """
        try:
            result = self.orchestrator.run(job)
        except Exception as e:
            logger.exception("Job %s for %s crashed", job.job_id, job.recipient)
            result = DeliveryResult(
                recipient=job.recipient,
                status=DeliveryStatus.FAILED,
                error=f"{type(e).__name__}: {e}",
                certificate_number=job.certificate_number,
                job_id=job.job_id,
            )
        self._notify(result)
        return result

    def run_batch(self, jobs: Iterable[DeliveryJob]) -> BatchResult:
        """Run jobs one at a time in submission order."""
        batch = BatchResult()
        for index, job in enumerate(jobs):
            if index and self.batch_delay > 0:
                self._sleep(self.batch_delay)
            result = self.run_job(job)
            batch.results.append(result)
            if result.succeeded:
                batch.succeeded += 1
            else:
                batch.failures.append((result.recipient, result.error or result.status.value))

        logger.info(
            "Batch finished: %d sent, %d failed", batch.succeeded, batch.failed
        )
        return batch

    def _notify(self, result: DeliveryResult) -> None:
        for listener in self.listeners:
            try:
                listener(result)
            except Exception:
                logger.exception(
                    "Delivery listener %s failed for %s",
                    getattr(listener, "__name__", type(listener).__name__),
                    result.recipient,
                )

    def health_check(self) -> None:
        """Raise if the queue no longer accepts work."""
        if self._closed:
            raise RuntimeError("send queue is shut down")

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; optionally wait for queued ones to finish."""
        self._closed = True
        self._executor.shutdown(wait=wait)
