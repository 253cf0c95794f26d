"""Structured logging for TempoGuard.

structlog renders through the stdlib root logger, as coloured console lines
during development or JSON in production. Credential-like values are masked
before any renderer sees them, so the token refresh path can log freely.
"""

import logging
import re
import sys
from typing import Any, Optional, Pattern

import structlog
from structlog.types import EventDict, Processor

from tempoguard import __version__


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every event with the package name and version."""
    event_dict["app"] = "tempoguard"
    event_dict["version"] = __version__
    return event_dict


# Field names whose values must never reach a log sink
SENSITIVE_FIELDS = {
    "token",
    "access_token",
    "refresh_token",
    "id_token",
    "credential",
    "credentials",
    "authorization",
    "password",
    "api_key",
    "client_secret",
}

BEARER_PATTERN: Pattern = re.compile(r"(bearer\s+)([a-zA-Z0-9_\-\.]+)", re.IGNORECASE)

REDACTED = "***REDACTED***"


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_FIELDS else _redact_value(v)
            for k, v in value.items()
        }
    if isinstance(value, str):
        return BEARER_PATTERN.sub(rf"\1{REDACTED}", value)
    return value


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential-bearing fields in a log event.

    Keys listed in ``SENSITIVE_FIELDS`` are replaced outright, nested
    dictionaries are walked, and bearer tokens embedded in strings are masked.
    """
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_FIELDS:
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _redact_value(event_dict[key])
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_credentials,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderers(log_format: str) -> list[Processor]:
    if log_format == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [
        structlog.processors.ExceptionRenderer(),
        structlog.dev.ConsoleRenderer(colors=True, exception_formatter=structlog.dev.plain_traceback),
    ]


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_file: Optional[str] = None,
) -> None:
    """Configure structlog on top of the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        log_format: "console" for coloured output, "json" for one object per line.
        log_file: Also append records to this file.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )

    # Probe and refresh traffic would otherwise flood INFO
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=_shared_processors() + _renderers(log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str, **initial_context: Any) -> structlog.stdlib.BoundLogger:
    """Logger for a module, with ``initial_context`` bound to every event.

    Example:
        >>> logger = get_logger(__name__, component="retry")
        >>> logger.info("retry_scheduled", operation="create_event")
    """
    logger = structlog.get_logger(name)
    return logger.bind(**initial_context) if initial_context else logger


def bind_context(**context: Any) -> None:
    """Bind workflow-scoped values (user id, conversation id) for the current task.

    Example:
        >>> bind_context(user_id="user-42", conversation_id="conv-7")
    """
    structlog.contextvars.bind_contextvars(**context)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
