"""Structured logging for ledger events, rendered for Splunk or as JSON."""

import logging
import sys
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from .config import Config

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def plain_value(value: Any) -> Any:
    """Reduce ledger types to values a log line or JSON document can hold.

    Enums log their stored value, Decimals their exact string (never a
    float approximation) and datetimes ISO-8601.
    """
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def splunk_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> str:
    """Render ``2026-01-08T12:15:00Z INFO  payout.committed key=value ...``."""
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    level = event_dict.pop("level", "INFO").upper()
    event = event_dict.pop("event", "")

    kvs = []
    for key, value in sorted(event_dict.items()):
        if key.startswith("_"):
            continue
        value = plain_value(value)
        if value is None:
            value = ""
        if isinstance(value, str) and (" " in value or not value):
            value = f'"{value}"'
        kvs.append(f"{key}={value}")

    if kvs:
        return f"{timestamp} {level:5} {event} {' '.join(kvs)}"
    return f"{timestamp} {level:5} {event}"


def json_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add timestamp and normalized level before JSON rendering."""
    rendered = {key: plain_value(value) for key, value in event_dict.items()}
    rendered["timestamp"] = datetime.now(timezone.utc).isoformat()
    rendered["level"] = rendered.get("level", "info").upper()
    return rendered


def configure_logging(config: Config) -> structlog.stdlib.BoundLogger:
    """Route structlog through stdlib logging and switch audit events on or off.

    Args:
        config: Application configuration.

    Returns:
        Configured structlog logger.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.logging.file:
        config.logging.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.logging.file))

    logging.basicConfig(
        format="%(message)s",
        level=LEVELS.get(config.logging.level, logging.INFO),
        handlers=handlers,
        force=True,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
    ]
    if config.logging.format == "json":
        processors += [json_processor, structlog.processors.JSONRenderer()]
    else:
        processors.append(splunk_processor)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    from . import audit

    audit.configure(enabled=config.logging.enabled)

    return structlog.get_logger()


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
