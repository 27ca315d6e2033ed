import logging
from typing import Literal

try:  # pragma: no cover - logging works without tracing dependency
    from opentelemetry import trace
except ModuleNotFoundError:  # pragma: no cover - executed when tracing libs missing
    trace = None  # type: ignore[assignment]

from .config import ServiceSettings


_TRACE_PLACEHOLDER = "-"
_REDACTED = "***"
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | trace_id=%(trace_id)s span_id=%(span_id)s | %(message)s"


def _format_trace_id(value: int, length: int) -> str:
    return format(value, f"0{length}x")


class TraceContextFilter(logging.Filter):
    """Populate trace/span identifiers when OpenTelemetry is active."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - exercised in tests
        if trace is None:
            record.trace_id = _TRACE_PLACEHOLDER
            record.span_id = _TRACE_PLACEHOLDER
            return True

        span = trace.get_current_span()
        span_context = span.get_span_context() if span is not None else None
        if span_context is not None and span_context.is_valid:
            record.trace_id = _format_trace_id(span_context.trace_id, 32)
            record.span_id = _format_trace_id(span_context.span_id, 16)
        else:
            record.trace_id = _TRACE_PLACEHOLDER
            record.span_id = _TRACE_PLACEHOLDER
        return True


class SecretRedactionFilter(logging.Filter):
    """Mask configured credentials (courier token, shared secrets) in log output."""

    def __init__(self, secrets: list[str] | None = None) -> None:
        super().__init__()
        self.secrets = [value for value in (secrets or []) if value]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, _REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _attach(root_logger: logging.Logger, log_filter: logging.Filter) -> None:
    filter_type = type(log_filter)
    if not any(isinstance(f, filter_type) for f in root_logger.filters):
        root_logger.addFilter(log_filter)
    for handler in root_logger.handlers:
        if not any(isinstance(f, filter_type) for f in handler.filters):
            handler.addFilter(log_filter)


def configure_logging(settings: ServiceSettings) -> None:
    """Configure root logging level, format, trace ids and secret redaction."""

    logging_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = settings.log_level
    logging.basicConfig(level=logging_level, format=_LOG_FORMAT)
    root_logger = logging.getLogger()
    _attach(root_logger, TraceContextFilter())

    secrets = [
        settings.delhivery_api_token,
        settings.delhivery_webhook_secret,
        settings.cron_secret,
        settings.admin_api_token,
    ]
    existing = next(
        (f for f in root_logger.filters if isinstance(f, SecretRedactionFilter)),
        None,
    )
    if existing is not None:
        existing.secrets = sorted({*existing.secrets, *(value for value in secrets if value)})
        _attach(root_logger, existing)
        return
    _attach(root_logger, SecretRedactionFilter([value for value in secrets if value]))
