"""
Structured logging configuration using structlog.

All logs are output as JSON with consistent context fields. Every entry
carries the service name and environment, and anything that looks like a
plaintext API key or webhook secret is masked before rendering.
"""
import logging
import re
import sys

import structlog

from fingate.config import settings

# fk_<48 alnum> API keys and whsec_<urlsafe> webhook secrets
_SECRET_PATTERN = re.compile(r"\b(fk_|whsec_)[A-Za-z0-9_\-]{8,}")


def _mask(value: str) -> str:
    return _SECRET_PATTERN.sub(lambda m: f"{m.group(1)}***", value)


def add_service_context(logger, method_name, event_dict):
    """Stamp every entry with the service identity."""
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def _mask_value(value):
    if isinstance(value, str):
        return _mask(value)
    if isinstance(value, dict):
        return {k: _mask_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask_value(item) for item in value]
    return value


def mask_secrets(logger, method_name, event_dict):
    """Never let a full credential reach the log stream, however deeply nested."""
    for key, value in event_dict.items():
        event_dict[key] = _mask_value(value)
    return event_dict


def configure_logging(level: int | None = None):
    """Configure structlog for JSON output with context."""
    if level is None:
        level = logging.DEBUG if settings.DEBUG else logging.INFO

    # Configure standard library logging (SQLAlchemy, httpx, uvicorn)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # httpx logs every outbound webhook request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # After format_exc_info so tracebacks are masked too
            mask_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
