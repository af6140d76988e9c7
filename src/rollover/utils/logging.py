"""Structured logging for the coordinator and the service."""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.contextvars import bind_contextvars

# Substrings of activation argument names whose values never reach the log,
# e.g. ``mysqlPassword=...`` or ``apiToken=...``.
SENSITIVE_MARKERS = ("password", "secret", "token", "credential")


def _is_sensitive(name: str) -> bool:
    name = name.lower()
    return any(marker in name for marker in SENSITIVE_MARKERS)


def _mask_argument(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    key, sep, _ = value.partition("=")
    if sep and _is_sensitive(key):
        return f"{key}=[REDACTED]"
    return value


def redact_arguments(_, __, event_dict: dict) -> dict:
    """Mask credentials in logged fields and ``key=value`` activation arguments."""
    for key, value in list(event_dict.items()):
        if _is_sensitive(key):
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [_mask_argument(v) for v in value]
        elif isinstance(value, str):
            event_dict[key] = _mask_argument(value)
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog; uvicorn and other stdlib loggers share stdout."""
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_arguments,
        structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_transition_context(profile: Optional[str] = None, transition_id: Optional[str] = None) -> None:
    """Tag every following coordinator log line with the profile and transition."""
    if profile:
        bind_contextvars(profile=profile)
    if transition_id:
        bind_contextvars(transitionId=transition_id)
