"""Delivery orchestration: validate, render, build, send, retry.

The orchestrator is the only place that decides whether a failed attempt is
repeated. Every attempt opens a fresh SMTP session; a session that failed
half-way is never reused.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from opentelemetry import trace

from certmail.config import Config
from certmail.errors import MailDeliveryError
from certmail.message import OutboundMessage
from certmail.mime import build_message, derive_filename
from certmail.payload import EncodedDocument, validate
from certmail.retry import AttemptOutcome, DeliveryAttempt, RetryPolicy, classify
from certmail.smtp_client import SmtpClient
from certmail.templating import EmailType, render_certificate_email, render_participant_email

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Characters with meaning inside SMTP paths and address headers are refused outright
_ADDRESS_ATOM = r'[^\s@<>()\[\],;:"\\]+'
EMAIL_PATTERN = re.compile(rf"^{_ADDRESS_ATOM}@{_ADDRESS_ATOM}\.{_ADDRESS_ATOM}$")

DEFAULT_CERTIFICATE_SUBJECT = "Your Certificate"


def is_valid_email(address: str) -> bool:
    """Loose syntax check for a bare recipient address."""
    return bool(address) and address.isascii() and EMAIL_PATTERN.match(address) is not None


class DeliveryStatus(Enum):
    """Final state of a delivery, as persisted by status listeners."""

    SENT = "sent"
    VALIDATION_FAILED = "invalid"
    FAILED = "failed"


@dataclass
class DeliveryResult:
    """Final report for one recipient.

    Attributes:
        recipient: Recipient address.
        status: Final delivery status.
        attempts: Every SMTP cycle made, empty when validation failed.
        error: Human readable reason for a failure.
        warnings: Non-fatal findings, e.g. an unusual PDF header.
        certificate_number: Certificate the email carried, if any.
        job_id: Identifier of the queued job, if any.
    """

    recipient: str
    status: DeliveryStatus
    attempts: list[DeliveryAttempt] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    certificate_number: str | None = None
    job_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is DeliveryStatus.SENT

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


@dataclass(frozen=True)
class DeliveryJob:
    """A unit of background work: one email to one recipient.

    A job with a document is a certificate delivery; without one it is a plain
    participant message.
    """

    recipient: str
    participant_name: str
    subject: str = DEFAULT_CERTIFICATE_SUBJECT
    note: str | None = None
    document: EncodedDocument | None = field(default=None, repr=False)
    certificate_number: str | None = None
    email_type: str = EmailType.CUSTOM.value
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class DeliveryOrchestrator:
    """Turns delivery requests into SMTP sessions.

    Args:
        config: Application configuration, read once.
        client_factory: Returns a fresh SmtpClient per attempt.
        sleep: Used for the delay between attempts.
        policy: Retry policy, built from config.delivery by default.
    """

    def __init__(
        self,
        config: Config,
        client_factory: Callable[[], SmtpClient] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self.policy = policy or RetryPolicy(
            max_attempts=config.delivery.max_attempts,
            base_delay=config.delivery.retry_delay,
        )

    def _default_client(self) -> SmtpClient:
        smtp = self.config.smtp
        return SmtpClient(
            timeout=smtp.timeout,
            max_read_attempts=smtp.max_read_attempts,
            local_hostname=smtp.local_hostname,
            auth_initial_response=smtp.auth_initial_response,
        )

    def run(self, job: DeliveryJob) -> DeliveryResult:
        """Execute a queued job."""
        if job.document is not None:
            return self.deliver_certificate(
                job.recipient,
                job.subject,
                job.note,
                job.document,
                job.participant_name,
                certificate_number=job.certificate_number,
                job_id=job.job_id,
            )
        return self.deliver_message(
            job.recipient,
            job.subject,
            job.note or "",
            job.participant_name,
            email_type=job.email_type,
            job_id=job.job_id,
        )

    def deliver_certificate(
        self,
        recipient_email: str,
        subject: str,
        note: str | None,
        attachment: EncodedDocument,
        participant_name: str,
        certificate_number: str | None = None,
        job_id: str | None = None,
    ) -> DeliveryResult:
        """Validate and send a certificate email.

        Invalid input is reported as VALIDATION_FAILED and never retried.

        Raises:
            ConfigurationError: If the SMTP account is not configured.
        """
        self.config.smtp.require_secret()

        def invalid(errors: list[str], warnings: list[str] | None = None) -> DeliveryResult:
            logger.error(
                "Certificate for %s not sent, validation failed: %s",
                recipient_email,
                "; ".join(errors),
            )
            return DeliveryResult(
                recipient=recipient_email,
                status=DeliveryStatus.VALIDATION_FAILED,
                error="; ".join(errors),
                warnings=warnings or [],
                certificate_number=certificate_number,
                job_id=job_id,
            )

        if not is_valid_email(recipient_email):
            return invalid([f"Invalid email format: '{recipient_email}'"])

        limits = self.config.delivery
        verdict = validate(
            attachment,
            min_bytes=limits.min_attachment_bytes,
            max_bytes=limits.max_attachment_bytes,
            check_magic=limits.check_magic,
        )
        for warning in verdict.warnings:
            logger.warning("Certificate for %s: %s", recipient_email, warning)
        if not verdict.ok:
            return invalid(verdict.errors, verdict.warnings)

        html = render_certificate_email(
            participant_name,
            message=note,
            certificate_number=certificate_number,
            organization=limits.organization,
        )
        try:
            message = OutboundMessage(
                recipient=recipient_email,
                subject=subject or DEFAULT_CERTIFICATE_SUBJECT,
                html_body=html,
                # Only the cleaned text that passed validation goes on the wire
                attachment=EncodedDocument(attachment.media_type, verdict.cleaned_data),
                attachment_filename=derive_filename(participant_name, attachment.media_type),
            )
        except ValueError as e:
            return invalid([str(e)], verdict.warnings)

        logger.info(
            "Sending certificate %s to %s (%s, %d bytes)",
            certificate_number or "-",
            recipient_email,
            message.attachment_filename,
            verdict.decoded_size_bytes,
        )
        result = self._transmit(message, certificate_number=certificate_number, job_id=job_id)
        result.warnings = verdict.warnings
        return result

    def deliver_message(
        self,
        recipient_email: str,
        subject: str,
        content: str,
        participant_name: str,
        email_type: str = EmailType.CUSTOM.value,
        job_id: str | None = None,
    ) -> DeliveryResult:
        """Send a themed participant message without attachment.

        Raises:
            ConfigurationError: If the SMTP account is not configured.
        """
        self.config.smtp.require_secret()

        try:
            if not is_valid_email(recipient_email):
                raise ValueError(f"Invalid email format: '{recipient_email}'")
            html = render_participant_email(
                participant_name,
                content,
                email_type=email_type,
                organization=self.config.delivery.organization,
            )
            message = OutboundMessage(recipient=recipient_email, subject=subject, html_body=html)
        except ValueError as e:
            logger.error("Message for %s not sent, validation failed: %s", recipient_email, e)
            return DeliveryResult(
                recipient=recipient_email,
                status=DeliveryStatus.VALIDATION_FAILED,
                error=str(e),
                job_id=job_id,
            )

        logger.info("Sending %s message to %s", email_type, recipient_email)
        return self._transmit(message, job_id=job_id)

    def _attempt(self, raw: bytes, recipient: str) -> None:
        smtp = self.config.smtp
        client = self._client_factory()
        try:
            client.connect(smtp.host, smtp.port)
            client.authenticate(smtp.username, smtp.password.get_secret_value())
            client.send(smtp.envelope_from, recipient, raw)
        finally:
            client.disconnect()

    def _transmit(
        self,
        message: OutboundMessage,
        certificate_number: str | None = None,
        job_id: str | None = None,
    ) -> DeliveryResult:
        raw = build_message(message, self.config.smtp.sender)
        history: list[DeliveryAttempt] = []

        with tracer.start_as_current_span("certmail.deliver") as span:
            span.set_attribute("certmail.message_bytes", len(raw))
            span.set_attribute("certmail.has_attachment", message.has_attachment)

            decision = self.policy.decide(history)
            while decision.retry:
                if history:
                    logger.info(
                        "Retrying %s in %.1fs (%s)", message.recipient, decision.delay, decision.reason
                    )
                    self._sleep(decision.delay)

                number = len(history) + 1
                logger.info(
                    "Delivery attempt %d/%d for %s", number, self.policy.max_attempts, message.recipient
                )
                with tracer.start_as_current_span("certmail.attempt") as attempt_span:
                    attempt_span.set_attribute("certmail.attempt", number)
                    try:
                        self._attempt(raw, message.recipient)
                    except MailDeliveryError as e:
                        outcome = classify(e, history)
                        attempt_span.set_attribute("certmail.outcome", outcome.value)
                        logger.warning(
                            "Attempt %d for %s failed (%s): %s",
                            number,
                            message.recipient,
                            outcome.value,
                            e,
                        )
                        history.append(DeliveryAttempt(message.recipient, number, outcome, e))
                    else:
                        attempt_span.set_attribute("certmail.outcome", AttemptOutcome.SUCCESS.value)
                        history.append(
                            DeliveryAttempt(message.recipient, number, AttemptOutcome.SUCCESS)
                        )
                decision = self.policy.decide(history)

            succeeded = history[-1].outcome is AttemptOutcome.SUCCESS
            span.set_attribute("certmail.attempts", len(history))
            span.set_attribute("certmail.succeeded", succeeded)

        if succeeded:
            logger.info("Email delivered to %s after %d attempt(s)", message.recipient, len(history))
            return DeliveryResult(
                recipient=message.recipient,
                status=DeliveryStatus.SENT,
                attempts=history,
                certificate_number=certificate_number,
                job_id=job_id,
            )

        logger.error("All attempts failed for %s: %s", message.recipient, decision.reason)
        return DeliveryResult(
            recipient=message.recipient,
            status=DeliveryStatus.FAILED,
            attempts=history,
            error=decision.reason,
            certificate_number=certificate_number,
            job_id=job_id,
        )
