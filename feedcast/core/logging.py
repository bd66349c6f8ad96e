"""
Structured logging configuration for feedcast.

This module provides:
- JSON structured logging with structlog
- Context enrichment (request_id, job_id, etc.) through context variables
- Audit and performance logging
- Sensitive field redaction
- Loguru console output for operator scripts
"""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from loguru import logger as loguru_logger
from structlog.types import FilteringBoundLogger

from .config import settings

# Context variables for request tracking
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
log_fields_ctx: ContextVar[dict | None] = ContextVar("log_fields", default=None)

SENSITIVE_FIELDS = {"password", "secret", "token", "api_key", "access_jwt", "authorization", "jwt"}


def add_context_fields(logger, method_name, event_dict):
    """Add context fields to every log entry."""
    if request_id := request_id_ctx.get():
        event_dict.setdefault("request_id", request_id)
    for key, value in (log_fields_ctx.get() or {}).items():
        event_dict.setdefault(key, value)

    event_dict["app"] = settings.app.app_name
    event_dict["environment"] = settings.app.environment
    return event_dict


def add_timestamps(logger, method_name, event_dict):
    """Add timestamp in ISO format."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def filter_sensitive_data(logger, method_name, event_dict):
    """Filter sensitive data from logs."""

    def _filter(obj):
        if isinstance(obj, dict):
            return {
                key: "[REDACTED]" if any(field in str(key).lower() for field in SENSITIVE_FIELDS) else _filter(value)
                for key, value in obj.items()
            }
        if isinstance(obj, list):
            return [_filter(item) for item in obj]
        return obj

    return _filter(event_dict)


def setup_structlog():
    """Configure structlog with JSON or console output."""
    processors = [
        add_context_fields,
        add_timestamps,
        filter_sensitive_data,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.app.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_stdlib_logging():
    """Route standard library logging to stdout at the configured level."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.app.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    console_handler.setLevel(getattr(logging, settings.app.log_level))
    root_logger.addHandler(console_handler)

    logging.getLogger("uvicorn.access").handlers = []
    logging.getLogger("uvicorn.access").propagate = True

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def setup_loguru():
    """Configure Loguru for operator script output."""
    loguru_logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<level>{message}</level>"
    )

    if settings.app.log_format == "json":
        loguru_logger.add(sys.stderr, level=settings.app.log_level, serialize=True, backtrace=True)
    else:
        loguru_logger.add(sys.stderr, level=settings.app.log_level, format=log_format, colorize=True)


class LoggingContextManager:
    """Context manager for setting logging context."""

    def __init__(self, request_id: str | None = None, **fields):
        self.request_id = request_id
        self.fields = {key: value for key, value in fields.items() if value is not None}
        self._tokens = []

    def __enter__(self):
        if self.request_id:
            self._tokens.append((request_id_ctx, request_id_ctx.set(self.request_id)))
        if self.fields:
            merged = {**(log_fields_ctx.get() or {}), **self.fields}
            self._tokens.append((log_fields_ctx, log_fields_ctx.set(merged)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


class AuditLogger:
    """Structured audit logging for stored uploads and published posts."""

    def __init__(self):
        self.logger = structlog.get_logger("audit")

    def log_upload_stored(self, key: str, content_type: str, role: str, locator: str, **kwargs):
        """Log an artifact that reached blob storage and the ledger."""
        self.logger.info(
            "upload_stored",
            key=key,
            content_type=content_type,
            role=role,
            locator=locator,
            action="ingest",
            **kwargs,
        )

    def log_post_published(self, platform: str, post_id: str | None, uri: str | None = None, **kwargs):
        """Log successful post publication."""
        self.logger.info(
            "post_published",
            platform=platform,
            post_id=post_id,
            uri=uri,
            action="publish_post",
            **kwargs,
        )

    def log_post_failed(self, platform: str, error: str, **kwargs):
        """Log failed post publication."""
        self.logger.error(
            "post_failed",
            platform=platform,
            error=error,
            action="publish_post",
            status="failed",
            **kwargs,
        )


class PerformanceLogger:
    """Performance logging for external calls and media work."""

    def __init__(self):
        self.logger = structlog.get_logger("performance")

    def log_external_api_call(self, service: str, endpoint: str, response_time: float, status_code: int, **kwargs):
        """Log external API call performance."""
        self.logger.info(
            "external_api_call",
            service=service,
            endpoint=endpoint,
            response_time_seconds=round(response_time, 4),
            status_code=status_code,
            metric_type="api_performance",
            **kwargs,
        )

    def log_media_step(self, step: str, execution_time: float, success: bool, **kwargs):
        """Log a transform or transcode step."""
        self.logger.info(
            "media_step",
            step=step,
            execution_time_seconds=round(execution_time, 4),
            success=success,
            metric_type="media_performance",
            **kwargs,
        )


def setup_logging():
    """Initialize all logging systems."""
    setup_structlog()
    setup_stdlib_logging()
    setup_loguru()


# Global logger instances
audit_logger = AuditLogger()
performance_logger = PerformanceLogger()


def get_logger(name: str = None) -> FilteringBoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def with_logging_context(request_id: str = None, **fields) -> LoggingContextManager:
    """Create logging context manager."""
    return LoggingContextManager(request_id, **fields)
