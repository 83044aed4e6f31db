"""
Structured logging configuration for Haven.

Every module logs through `logging.getLogger(__name__)` with an `extra=`
dict; structlog renders those records (and any `structlog.get_logger()`
calls) as JSON lines, or as console output in dev mode.

Haven-specific processors run on every record:
- add_service: stamps `service="haven"` so lines can be told apart from
  the host application's
- redact_sensitive: replaces record content (notes, messages, plan
  text, tokens) with a marker and principal ids with their
  hash_principal() prefix, in case a call site passes them by mistake

Usage:
    from haven.lib.logging import setup_logging

    setup_logging()  # Call once at application startup
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from haven.config.settings import Settings, get_settings
from haven.lib.security import hash_principal

SERVICE_NAME = "haven"
REDACTED = "[redacted]"

# Keys whose values are user-written content or credentials
SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "content",
        "description",
        "display_name",
        "emergency_contact",
        "key",
        "message",
        "notes",
        "password",
        "token",
        "warning_signs",
    }
)

# Keys holding raw principal ids
PRINCIPAL_KEYS = frozenset({"anonymous_id", "user_id", "seeker_user_id", "supporter_user_id"})

NOISY_LOGGERS = ("aiosqlite", "httpx", "httpcore", "keyring", "sqlalchemy.engine")


def add_service(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_sensitive(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in event_dict.keys() & SENSITIVE_KEYS:
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    for key in event_dict.keys() & PRINCIPAL_KEYS:
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = hash_principal(value)
    return event_dict


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and stdlib logging for Haven.

    Args:
        settings: Resolved settings. Defaults to the process-wide settings.
    """
    settings = settings or get_settings()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.ExtraAdder(),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.dev_mode:
        final: list[structlog.types.Processor] = [structlog.dev.ConsoleRenderer()]
    else:
        final = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *final,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level, logging.INFO))

    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


__all__ = ["REDACTED", "SERVICE_NAME", "add_service", "redact_sensitive", "setup_logging"]
