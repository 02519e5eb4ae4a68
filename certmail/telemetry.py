import atexit
import socket
import uuid
from collections.abc import Iterator
from typing import TYPE_CHECKING, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.flask import FlaskInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.semconv.resource import ResourceAttributes

from certmail.config import TelemetryConfig

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

    from certmail.engine import Engine

_MISSING_EXPORTERS_MSG = (
    "Telemetry is enabled but no exporters are configured. "
    "Set endpoint or console_export=True to export traces."
)


def _resource_attributes(service_name: str, telemetry_config: TelemetryConfig) -> dict[str, str]:
    attributes: dict[str, str] = {ResourceAttributes.SERVICE_NAME: service_name}

    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as get_version

    try:
        attributes[ResourceAttributes.SERVICE_VERSION] = get_version("certmail")
    except PackageNotFoundError:
        pass

    if telemetry_config.deployment_environment:
        attributes[ResourceAttributes.DEPLOYMENT_ENVIRONMENT] = (
            telemetry_config.deployment_environment
        )

    # hostname + short UUID unless the deployment pins an instance id
    attributes[ResourceAttributes.SERVICE_INSTANCE_ID] = (
        telemetry_config.service_instance_id
        or f"{socket.gethostname()}-{str(uuid.uuid4())[:8]}"
    )
    return attributes


def _span_processors(telemetry_config: TelemetryConfig) -> Iterator[SpanProcessor]:
    if telemetry_config.endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        yield BatchSpanProcessor(
            OTLPSpanExporter(endpoint=telemetry_config.endpoint, timeout=telemetry_config.timeout)
        )
    if telemetry_config.console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter

        yield SimpleSpanProcessor(ConsoleSpanExporter())


def setup_telemetry(app: "Engine", telemetry_config: TelemetryConfig) -> Optional["Tracer"]:
    """Install a tracer provider for HTTP requests and background deliveries.

    Flask requests are instrumented directly. Spans opened by certmail.delivery
    on queue workers go through the same provider, which is flushed at exit
    because those deliveries outlive the request that queued them.

    Returns:
        A tracer from the installed provider, or None when telemetry is disabled.

    Raises:
        ValueError: If telemetry is enabled without any exporter.
    """
    if not telemetry_config.enabled:
        return None

    processors = list(_span_processors(telemetry_config))
    if not processors:
        raise ValueError(_MISSING_EXPORTERS_MSG)

    service_name = app.config.get("APP_NAME", "certmail")
    provider = TracerProvider(resource=Resource.create(_resource_attributes(service_name, telemetry_config)))
    for processor in processors:
        provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)
    FlaskInstrumentor().instrument_app(app)
    atexit.register(provider.shutdown)

    return provider.get_tracer(__name__)
