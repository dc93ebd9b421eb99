"""structlog configuration for the bridge.

Events below LOG_LEVEL are dropped before any processor runs. Credential
material is masked by redact_secrets() before rendering, JSON in production
and console output in development.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

from src.teams_bridge.config import Environment, Settings, get_settings

REDACTED = "<redacted>"

# Event keys that may carry bearer material.
SECRET_KEYS = frozenset({"token", "refresh_token", "skypetoken", "authorization", "authentication"})


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential values in an event dict."""
    for key in event_dict:
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
    return event_dict


def configure_structlog(settings: Settings | None = None) -> None:
    """Configure structlog for the bridge's log level and environment."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", level=level)
    # websockets logs every frame at debug level.
    logging.getLogger("websockets").setLevel(max(level, logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
