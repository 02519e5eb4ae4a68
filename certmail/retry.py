"""Retry decisions for delivery attempts.

The policy is a pure function of the attempt history; it performs no I/O and
never sleeps, so it can be tested without a socket.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from certmail.errors import (
    AuthenticationError,
    ConfigurationError,
    DeliveryRejectedError,
    NotConnectedError,
    ProtocolError,
    SmtpConnectionError,
    ValidationFailed,
)


class AttemptOutcome(Enum):
    """Outcome of a single connect/authenticate/send cycle."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass
class DeliveryAttempt:
    """One connect/authenticate/send/disconnect cycle for a recipient."""

    recipient: str
    attempt: int
    outcome: AttemptOutcome
    error: Exception | None = None

    @property
    def error_detail(self) -> str | None:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


@dataclass(frozen=True)
class RetryDecision:
    """What to do after an attempt."""

    retry: bool
    delay: float = 0.0
    reason: str = ""


def classify(error: Exception, previous: list[DeliveryAttempt]) -> AttemptOutcome:
    """Decide whether an error is worth another attempt on its own merits.

    ProtocolError is retried once; a second one in the same delivery is fatal.
    """
    if isinstance(error, (ValidationFailed, ConfigurationError, NotConnectedError)):
        return AttemptOutcome.FATAL_FAILURE
    if isinstance(error, DeliveryRejectedError):
        return AttemptOutcome.RETRYABLE_FAILURE if error.retryable else AttemptOutcome.FATAL_FAILURE
    if isinstance(error, ProtocolError):
        seen = any(isinstance(a.error, ProtocolError) for a in previous)
        return AttemptOutcome.FATAL_FAILURE if seen else AttemptOutcome.RETRYABLE_FAILURE
    if isinstance(error, (SmtpConnectionError, AuthenticationError)):
        return AttemptOutcome.RETRYABLE_FAILURE
    return AttemptOutcome.FATAL_FAILURE


class RetryPolicy:
    """Bounded retry with a linearly growing delay.

    Args:
        max_attempts: Total attempts allowed, including the first.
        base_delay: Delay in seconds after attempt 1; attempt n waits n times as long.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def delay_for(self, attempt: int) -> float:
        return attempt * self.base_delay

    def decide(self, history: list[DeliveryAttempt]) -> RetryDecision:
        """Return the next step given every attempt made so far."""
        if not history:
            return RetryDecision(retry=True, reason="first attempt")

        last = history[-1]
        if last.outcome is AttemptOutcome.SUCCESS:
            return RetryDecision(retry=False, reason="delivered")
        if last.outcome is AttemptOutcome.FATAL_FAILURE:
            return RetryDecision(retry=False, reason=f"fatal error: {last.error_detail}")
        if last.attempt >= self.max_attempts:
            reason = f"gave up after {last.attempt} attempts: {last.error_detail}"
            if isinstance(last.error, AuthenticationError):
                reason += " (check the SMTP credentials)"
            return RetryDecision(retry=False, reason=reason)
        return RetryDecision(
            retry=True,
            delay=self.delay_for(last.attempt),
            reason=f"retrying after {last.error_detail}",
        )
