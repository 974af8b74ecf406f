from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from homehero.core.config import Settings
from homehero.core.log_context import get_job_id, get_request_id

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s "
    "request_id=%(request_id)s job_id=%(job_id)s %(message)s"
)

_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16

_httpx_instrumentor = HTTPXClientInstrumentor()
_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    component: str
    provider: TracerProvider | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging() -> None:
    """Install correlation fields and a root handler when none is configured yet."""
    _install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, component: str) -> TelemetryRuntime:
    """Configure tracing for one process.

    ``component`` is ``api`` or ``worker``; both share ``otel_service_name`` as
    a prefix so traces from the two processes group together.
    """
    if not settings.otel_enabled:
        return TelemetryRuntime(component=component)

    if settings.otel_log_correlation:
        _install_log_correlation()

    service_name = f"{settings.otel_service_name}-{component}"
    resource = Resource.create(
        {
            SERVICE_NAME: service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "homehero.component": component,
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))

    endpoint, headers = _exporter_target(settings)
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logger.info("otel exporter endpoint not set service=%s spans=local-only", service_name)

    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    return TelemetryRuntime(component=component, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def _exporter_target(settings: Settings) -> tuple[str | None, dict[str, str]]:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    raw_headers = settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS") or ""
    headers: dict[str, str] = {}
    for item in raw_headers.split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return endpoint, headers


def _correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
    record = _base_record_factory(*args, **kwargs)
    span_context = trace.get_current_span().get_span_context()
    record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else _EMPTY_TRACE_ID
    record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else _EMPTY_SPAN_ID
    record.request_id = get_request_id() or "-"
    job_id = get_job_id()
    record.job_id = "-" if job_id is None else str(job_id)
    return record


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return
    logging.setLogRecordFactory(_correlated_record)
    _correlation_installed = True
