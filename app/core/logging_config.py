"""Structured logging setup (structlog on top of stdlib logging)"""

import logging
import sys
from typing import Any, Dict
import structlog
from structlog.types import EventDict, Processor
from app.core.config import settings


REDACTED = "***REDACTED***"

# Substring match against lower-cased keys
SENSITIVE_KEYS = frozenset({
    'password', 'passwd', 'secret', 'token', 'authorization', 'api_key',
    'encryption_key', 'encryption_salt', 'server_key', 'credential',
})


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with service name, version and environment."""
    event_dict["app"] = "db_master"
    event_dict["version"] = settings.APP_VERSION
    event_dict["environment"] = settings.ENVIRONMENT
    return event_dict


def _censor(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_sensitive(key) else _censor(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_censor(item) for item in value]
    return value


def _is_sensitive(key: Any) -> bool:
    key_lower = str(key).lower()
    return any(sensitive in key_lower for sensitive in SENSITIVE_KEYS)


def censor_sensitive_data(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact credential-like values before rendering.

    Keys are matched case-insensitively by substring, so ``db_password`` and
    ``X-Api-Key`` headers are covered as well. Nested dicts and lists are
    walked recursively.

    Args:
        logger: Logger instance
        method_name: Method name being called
        event_dict: Event dictionary

    Returns:
        Event dictionary with sensitive values replaced
    """
    censored: Dict[str, Any] = _censor(dict(event_dict))
    return censored


def configure_structlog() -> None:
    """
    Configure structlog and the stdlib root logger.

    Development (or DEBUG, or LOG_FORMAT=text) renders human-readable
    console output; everything else renders one JSON object per line.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_app_context,
        censor_sensitive_data,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    human_readable = (
        settings.DEBUG
        or settings.ENVIRONMENT == "development"
        or settings.LOG_FORMAT == "text"
    )
    if human_readable:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("scheduled_query_executed", schedule_id=schedule.id, rows=12)
    """
    return structlog.get_logger(name)


configure_structlog()


__all__ = [
    'configure_structlog',
    'censor_sensitive_data',
    'get_logger',
]
