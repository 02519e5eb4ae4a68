import pytest

from certmail.errors import (
    AuthenticationError,
    ConfigurationError,
    DeliveryRejectedError,
    NotConnectedError,
    ProtocolError,
    SmtpConnectionError,
    SmtpTimeoutError,
    ValidationFailed,
)
from certmail.retry import AttemptOutcome, DeliveryAttempt, RetryPolicy, classify

RECIPIENT = "jane@example.com"


def failed(attempt: int, error: Exception, outcome: AttemptOutcome = AttemptOutcome.RETRYABLE_FAILURE):
    return DeliveryAttempt(RECIPIENT, attempt, outcome, error)


class TestClassify:
    @pytest.mark.parametrize(
        "error",
        [
            SmtpConnectionError("reset"),
            SmtpTimeoutError("slow"),
            AuthenticationError(535, "bad credentials"),
            DeliveryRejectedError(451, "try later", "RCPT TO"),
            ProtocolError("garbage"),
        ],
    )
    def test_retryable(self, error: Exception):
        assert classify(error, []) is AttemptOutcome.RETRYABLE_FAILURE

    @pytest.mark.parametrize(
        "error",
        [
            DeliveryRejectedError(550, "no such user", "RCPT TO"),
            ValidationFailed(["Payload is empty"]),
            ConfigurationError("no password"),
            NotConnectedError("wrong state"),
            RuntimeError("unexpected"),
        ],
    )
    def test_fatal(self, error: Exception):
        assert classify(error, []) is AttemptOutcome.FATAL_FAILURE

    def test_protocol_error_is_retried_once(self):
        history = [failed(1, ProtocolError("garbage"))]

        assert classify(ProtocolError("garbage again"), history) is AttemptOutcome.FATAL_FAILURE


class TestRetryPolicy:
    def test_first_attempt_is_always_made(self):
        assert RetryPolicy().decide([]).retry

    def test_stops_after_success(self):
        decision = RetryPolicy().decide([DeliveryAttempt(RECIPIENT, 1, AttemptOutcome.SUCCESS)])

        assert not decision.retry
        assert decision.reason == "delivered"

    def test_linear_delay(self):
        policy = RetryPolicy(max_attempts=3, base_delay=1.5)
        error = SmtpConnectionError("reset")

        first = policy.decide([failed(1, error)])
        second = policy.decide([failed(1, error), failed(2, error)])

        assert (first.retry, first.delay) == (True, 1.5)
        assert (second.retry, second.delay) == (True, 3.0)

    def test_gives_up_after_max_attempts(self):
        error = SmtpConnectionError("reset")
        history = [failed(n, error) for n in (1, 2, 3)]

        decision = RetryPolicy(max_attempts=3).decide(history)

        assert not decision.retry
        assert "gave up after 3 attempts" in decision.reason
        assert "SmtpConnectionError: reset" in decision.reason

    def test_authentication_failure_hints_at_credentials(self):
        error = AuthenticationError(535, "bad credentials")
        history = [failed(n, error) for n in (1, 2)]

        decision = RetryPolicy(max_attempts=2).decide(history)

        assert not decision.retry
        assert "check the SMTP credentials" in decision.reason

    def test_fatal_failure_stops_immediately(self):
        error = DeliveryRejectedError(550, "no such user", "RCPT TO")

        decision = RetryPolicy().decide([failed(1, error, AttemptOutcome.FATAL_FAILURE)])

        assert not decision.retry
        assert decision.reason.startswith("fatal error: DeliveryRejectedError")

    def test_single_attempt_policy(self):
        decision = RetryPolicy(max_attempts=1).decide([failed(1, SmtpConnectionError("reset"))])

        assert not decision.retry

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_attempt_error_detail(self):
        assert failed(1, ProtocolError("garbage")).error_detail == "ProtocolError: garbage"
        assert DeliveryAttempt(RECIPIENT, 1, AttemptOutcome.SUCCESS).error_detail is None
