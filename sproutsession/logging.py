"""structlog setup shared by every sproutsession module.

Output is JSON lines unless ``SPROUT_LOG_FORMAT=console``. Values under
credential-like keys are masked before rendering, and the correlation id of
the current login attempt or tick is attached to each event.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_correlation_id: ContextVar[Optional[str]] = ContextVar("sprout_correlation_id", default=None)

# Substrings of event keys whose values never reach the log verbatim
SENSITIVE_KEY_PARTS = ("password", "pin", "token", "secret", "authorization", "email")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the running context."""
    value = correlation_id or uuid.uuid4().hex
    _correlation_id.set(value)
    return value


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    value = _correlation_id.get()
    if value:
        event_dict.setdefault("correlation_id", value)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or key == "event":
            continue
        if any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """(Re)configure structlog; arguments default to ``SPROUT_LOG_LEVEL``/``SPROUT_LOG_FORMAT``."""
    level_name = (level or os.getenv("SPROUT_LOG_LEVEL", "INFO")).upper()
    fmt = (fmt or os.getenv("SPROUT_LOG_FORMAT", "json")).lower()
    renderer = (
        structlog.dev.ConsoleRenderer(colors=False)
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str):
    return structlog.get_logger(name)
