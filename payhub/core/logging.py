"""structlog setup for payhub, bridged through stdlib logging.

Every record, including uvicorn, SQLAlchemy and httpx output, goes through one
processor chain: request correlation id, secret redaction, then JSON (or the
console renderer in debug).
"""

import logging
import logging.config
from collections.abc import Mapping

import structlog
from asgi_correlation_id.context import correlation_id

REDACTED = "[redacted]"

# Log keys and header names whose values are credentials or webhook signatures
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "x-authenticity-token",
        "x-signature",
        "paypal-transmission-sig",
        "access_token",
        "client_secret",
        "webhook_secret",
    }
)


def add_correlation_id(logger, method, event_dict):
    """Inject the request's correlation_id unless the caller bound one already."""
    cid = correlation_id.get(None)
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact(value):
    if isinstance(value, Mapping):
        return {k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _redact(v) for k, v in value.items()}
    return value


def redact_secrets(logger, method, event_dict):
    """Mask credential values, including inside logged header mappings."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, Mapping):
            event_dict[key] = _redact(value)
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Call before importing modules that log, since loggers cache the processor
    chain on first use.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
            "httpcore": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
            "aiosqlite": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
