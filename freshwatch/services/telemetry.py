"""OpenTelemetry logging and tracing for refresh attempts and alerts"""

import logging
from datetime import UTC, datetime

from opentelemetry import trace
from opentelemetry._logs import SeverityNumber, set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from freshwatch.config import config
from freshwatch.models.analytics import Alert
from freshwatch.models.queue import RefreshHistoryEntry

logger = logging.getLogger(__name__)


class TelemetryService:
    """Handle OpenTelemetry logging and tracing for the refresh pipeline"""

    def __init__(self):
        self.logging_enabled = config.otel_logging_enabled
        self.tracing_enabled = config.otel_tracing_enabled
        self.logger_provider = None
        self.tracer_provider = None
        self.otel_logger = None

        if self.logging_enabled:
            try:
                self._initialize_logging()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel logging: {e}. Logging disabled.")
                self.logging_enabled = False

        if self.tracing_enabled:
            try:
                self._initialize_tracing()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel tracing: {e}. Tracing disabled.")
                self.tracing_enabled = False

    def _resource(self) -> Resource:
        return Resource(
            attributes={
                SERVICE_NAME: config.otel_service_name,
                SERVICE_VERSION: config.otel_service_version,
            }
        )

    def _initialize_logging(self) -> None:
        """Initialize OpenTelemetry logging with OTLP log exporter"""
        self.logger_provider = LoggerProvider(resource=self._resource())

        log_endpoint = config.otel_endpoint
        if not log_endpoint.endswith("/v1/logs"):
            log_endpoint = f"{log_endpoint.rstrip('/')}/v1/logs"

        self.logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=log_endpoint))
        )
        set_logger_provider(self.logger_provider)
        self.otel_logger = self.logger_provider.get_logger(__name__)

        logger.info(f"OpenTelemetry logging initialized with endpoint: {log_endpoint}")

    def _initialize_tracing(self) -> None:
        """Initialize OpenTelemetry tracing with OTLP trace exporter"""
        self.tracer_provider = TracerProvider(resource=self._resource())

        trace_endpoint = config.otel_endpoint
        if not trace_endpoint.endswith("/v1/traces"):
            trace_endpoint = f"{trace_endpoint.rstrip('/')}/v1/traces"

        self.tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=trace_endpoint))
        )
        trace.set_tracer_provider(self.tracer_provider)

        # httpx instrumentation happens in _ensure_instrumentation_initialized(),
        # before any fetcher client is created

        logger.info(f"OpenTelemetry tracing initialized with endpoint: {trace_endpoint}")

    def log_refresh(self, entry: RefreshHistoryEntry) -> None:
        """
        Emit one log record for an executed refresh attempt

        Args:
            entry: History row written for the attempt
        """
        if not self.logging_enabled or not self.otel_logger:
            return

        try:
            # Low cardinality attributes only; ids go in the body
            attributes: dict[str, str | int | float | bool] = {
                "refresh.type": entry.refresh_type.value,
                "refresh.success": entry.success,
                "refresh.changes_found": entry.changes_found,
                "refresh.rewrite_invoked": entry.rewrite_invoked,
                "refresh.duration_ms": entry.processing_duration_ms,
                "refresh.network_requests": entry.network_requests_count,
                "refresh.bytes_processed": entry.bytes_processed,
            }
            if entry.error_code:
                attributes["error.code"] = entry.error_code

            body_parts = [
                "[refresh]",
                "SUCCESS" if entry.success else "FAILED",
                f"item_id={entry.item_id}",
                f"time={entry.processing_duration_ms}ms",
            ]
            if entry.error_message:
                message = entry.error_message
                if len(message) > 500:
                    message = message[:500] + "..."
                body_parts.append(f'error="{message}"')

            self._emit(" ".join(body_parts), logging.INFO if entry.success else logging.ERROR, attributes)

        except Exception as e:
            # Don't let telemetry errors break processing
            logger.warning(f"Failed to log telemetry: {e}")

    def emit_alert(self, alert: Alert) -> None:
        """Emit one log record for an operational alert"""
        if not self.logging_enabled or not self.otel_logger:
            return

        try:
            attributes: dict[str, str | int | float | bool] = {"alert.kind": alert.kind.value}
            body = f"[alert] {alert.kind.value} item_id={alert.item_id} {alert.message}"
            self._emit(body, logging.WARNING, attributes)
        except Exception as e:
            logger.warning(f"Failed to log telemetry: {e}")

    def _emit(
        self, body: str, level: int, attributes: dict[str, str | int | float | bool]
    ) -> None:
        self.otel_logger.emit(
            body=body,
            severity_number=SeverityNumber(self._severity_to_number(level)),
            attributes=attributes,
            timestamp=int(datetime.now(UTC).timestamp() * 1e9),
        )

    def _severity_to_number(self, level: int) -> int:
        """Convert Python logging level to OpenTelemetry severity number"""
        if level >= logging.CRITICAL:
            return 21  # FATAL
        elif level >= logging.ERROR:
            return 17  # ERROR
        elif level >= logging.WARNING:
            return 13  # WARN
        elif level >= logging.INFO:
            return 9  # INFO
        else:
            return 5  # DEBUG


_telemetry_service: TelemetryService | None = None
_instrumentation_initialized = False


def _ensure_instrumentation_initialized() -> None:
    """Ensure httpx instrumentation is initialized early"""
    global _instrumentation_initialized
    if not _instrumentation_initialized and config.otel_tracing_enabled:
        try:
            HTTPXClientInstrumentor().instrument()
            _instrumentation_initialized = True
            logger.info("HTTP request tracing instrumentation initialized")
        except Exception as e:
            logger.warning(f"Failed to initialize HTTP tracing instrumentation: {e}")


def get_telemetry_service() -> TelemetryService:
    """Get or create the global telemetry service instance"""
    global _telemetry_service
    _ensure_instrumentation_initialized()
    if _telemetry_service is None:
        _telemetry_service = TelemetryService()
    return _telemetry_service
