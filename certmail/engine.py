"""Flask application engine exposing the mail endpoints."""

import datetime
import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Optional

from flask import Blueprint, Flask, Response, jsonify, make_response, request
from pydantic import BaseModel, ValidationError
from werkzeug.exceptions import HTTPException

from certmail.config import Config
from certmail.errors import ConfigurationError
from certmail.message import OutboundMessage
from certmail.mime import build_message, derive_filename
from certmail.models import (
    BulkEmailRequest,
    CertificateEmailRequest,
    CertificateValidationRequest,
    ParticipantEmailRequest,
)
from certmail.payload import (
    DIAGNOSTIC_MAX_DOCUMENT_SIZE,
    EncodedDocument,
    InvalidDataUrlError,
    ValidationResult,
    validate,
)
from certmail.send_queue import SendQueue
from certmail.status_store import StatusStore

logger = logging.getLogger(__name__)

MIME_PREVIEW_LENGTH = 500

READINESS_TIMEOUT = 10.0  # seconds, shared by all checks

PREVIEW_RECIPIENT = "preview@example.com"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


class RequestRejected(Exception):
    """Request body rejected before any work was queued."""

    def __init__(self, error: str, details: Optional[list[str]] = None):
        super().__init__(error)
        self.error = error
        self.details = details or []


def _parse_body(model: type[BaseModel]) -> Any:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise RequestRejected("Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        details = [
            f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}"
            for err in e.errors()
        ]
        raise RequestRejected("Invalid request", details) from e


class Engine(Flask):
    def __init__(
        self,
        config: Config,
        send_queue: SendQueue,
        status_store: StatusStore,
        import_name: str,
    ) -> None:
        """Initialize the Engine.

        Args:
            config: Application configuration.
            send_queue: Background queue that performs the deliveries.
            status_store: Store answering certificate status lookups.
            import_name: Name of the application module.
        """
        super().__init__(import_name)
        self.config.from_mapping(config.model_dump(by_alias=True))
        self.settings = config
        self.send_queue = send_queue
        self.status_store = status_store
        self.health_checks: list[tuple[str, Callable[[], None]]] = []
        self._register_health_endpoints()
        self._register_mail_endpoints()

    def add_health_check(self, name: str, check_function: Callable[[], None]) -> None:
        """Register a health check function"""
        if not callable(check_function):
            raise TypeError(f"check_function must be callable, got {type(check_function)}")
        self.health_checks.append((name, check_function))

    def diagnose_certificate(self, certificate_url: str, participant_name: str) -> dict[str, Any]:
        """Run the full validation and MIME build without sending anything.

        Uses the larger diagnostic size ceiling so oversized certificates can
        still be inspected.
        """
        try:
            document = EncodedDocument.from_data_url(certificate_url)
        except InvalidDataUrlError as e:
            document = None
            verdict = ValidationResult(ok=False, errors=[str(e)], original_length=len(certificate_url))
        else:
            verdict = validate(
                document,
                min_bytes=self.settings.delivery.min_attachment_bytes,
                max_bytes=DIAGNOSTIC_MAX_DOCUMENT_SIZE,
                check_magic=self.settings.delivery.check_magic,
            )

        filename = derive_filename(participant_name)
        mime_preview = None
        mime_size = 0
        if document is not None and verdict.ok:
            raw = build_message(
                OutboundMessage(
                    recipient=PREVIEW_RECIPIENT,
                    subject="Certificate validation test",
                    html_body="<p>This is a test email with a certificate attachment.</p>",
                    attachment=EncodedDocument(document.media_type, verdict.cleaned_data),
                    attachment_filename=filename,
                ),
                self.settings.smtp.sender,
            )
            mime_size = len(raw)
            mime_preview = raw[:MIME_PREVIEW_LENGTH].decode("ascii", errors="replace")

        return {
            "participant_name": participant_name,
            "validation": {
                "is_valid": verdict.ok,
                "errors": verdict.errors,
                "warnings": verdict.warnings,
                "metadata": {
                    "original_length": verdict.original_length,
                    "cleaned_length": verdict.cleaned_length,
                    "estimated_file_size": verdict.decoded_size_bytes,
                },
            },
            "generated_filename": filename,
            "mime_preview": mime_preview,
            "mime_size": mime_size,
            "test_timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "status": "PASS" if verdict.ok else "FAIL",
        }

    def _register_mail_endpoints(self) -> None:
        """Register the delivery endpoints."""
        mail_bp = Blueprint("mail", __name__)

        def queued(message: str, job_id: str, **extra: Any) -> Response:
            return jsonify(
                {"success": True, "status": "queued", "message": message, "job_id": job_id, **extra}
            )

        @mail_bp.errorhandler(RequestRejected)
        def bad_request(e: RequestRejected):
            logger.info("Rejected %s: %s %s", request.path, e.error, e.details)
            return make_response(jsonify({"error": e.error, "details": e.details}), 400)

        @mail_bp.errorhandler(ConfigurationError)
        def misconfigured(e: ConfigurationError):
            logger.error("Cannot accept %s: %s", request.path, e)
            return make_response(
                jsonify({"error": "Email service is not configured", "details": str(e)}), 500
            )

        @mail_bp.errorhandler(Exception)
        def unexpected(e: Exception):
            if isinstance(e, HTTPException):
                return e
            logger.exception("Failed to process %s", request.path)
            return make_response(
                jsonify({"error": "Failed to process request", "details": str(e)}), 500
            )

        @mail_bp.after_request
        def add_cors_headers(response: Response) -> Response:
            response.headers.update(CORS_HEADERS)
            return response

        @mail_bp.route("/send-certificate-email", methods=["POST"])
        def send_certificate_email():
            body = _parse_body(CertificateEmailRequest)
            self.settings.smtp.require_secret()
            try:
                job = body.to_job()
            except InvalidDataUrlError as e:
                raise RequestRejected("Invalid certificate URL", [str(e)]) from e
            ticket = self.send_queue.enqueue(job)
            return queued("Certificate email queued for sending", ticket.job_id)

        @mail_bp.route("/send-participant-email", methods=["POST"])
        def send_participant_email():
            body = _parse_body(ParticipantEmailRequest)
            self.settings.smtp.require_secret()
            ticket = self.send_queue.enqueue(body.to_job())
            return queued("Participant email queued for sending", ticket.job_id)

        @mail_bp.route("/send-bulk-email", methods=["POST"])
        def send_bulk_email():
            body = _parse_body(BulkEmailRequest)
            self.settings.smtp.require_secret()
            ticket = self.send_queue.enqueue_batch(body.to_jobs())
            return queued(
                f"{ticket.count} email(s) queued for sending", ticket.job_id, count=ticket.count
            )

        @mail_bp.route("/test-certificate-validation", methods=["POST"])
        def test_certificate_validation():
            body = _parse_body(CertificateValidationRequest)
            return jsonify(self.diagnose_certificate(body.certificate_url, body.participant_name))

        @mail_bp.route("/certificates/<certificate_number>/status")
        def certificate_status(certificate_number: str):
            record = self.status_store.get_status(certificate_number)
            if record is None:
                return make_response(
                    jsonify({"error": f"No delivery recorded for {certificate_number}"}), 404
                )
            return jsonify(record.model_dump())

        self.register_blueprint(mail_bp)

    def readiness_checks(self) -> list[tuple[str, Callable[[], None]]]:
        """Built-in checks followed by the ones added with add_health_check."""
        return [
            ("send_queue", self.send_queue.health_check),
            ("smtp_config", self.settings.smtp.require_secret),
            *self.health_checks,
        ]

    def check_readiness(self, timeout: float = READINESS_TIMEOUT) -> dict[str, str]:
        """Run every readiness check concurrently and report each outcome.

        Checks still running when ``timeout`` expires are reported as timed out
        and left to finish in the background.
        """
        checks = self.readiness_checks()
        executor = ThreadPoolExecutor(max_workers=len(checks), thread_name_prefix="readiness")
        try:
            futures = {name: executor.submit(check) for name, check in checks}
            wait(futures.values(), timeout=timeout)
        finally:
            executor.shutdown(wait=False)
        return {name: _check_outcome(future) for name, future in futures.items()}

    def _register_health_endpoints(self) -> None:
        health_bp = Blueprint("health", __name__)

        @health_bp.route("/health")
        @health_bp.route("/health/liveness")
        def liveness():
            return jsonify({"status": "alive"})

        @health_bp.route("/health/readiness")
        def readiness():
            checks = self.check_readiness()
            ready = all(outcome == "ok" for outcome in checks.values())
            body = {"status": "ready" if ready else "not_ready", "checks": checks}
            return make_response(jsonify(body), 200 if ready else 503)

        self.register_blueprint(health_bp)


def _check_outcome(future: Future) -> str:
    if not future.done():
        return "failed: timeout"
    error = future.exception()
    return "ok" if error is None else f"failed: {error}"
