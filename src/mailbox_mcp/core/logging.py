"""Logging configuration helpers."""

from __future__ import annotations

import logging.config
from typing import Any

from .config import LoggingSettings

# Loggers that uvicorn installs its own handlers on; routed through ours instead.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for brace-style structured logs."""
    return {
        "format": "{asctime} {levelname} {name} {message}",
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def build_logging_config(settings: LoggingSettings) -> dict[str, Any]:
    """Return the dictConfig mapping for the supplied settings.

    The same mapping is handed to uvicorn so that server and application
    records share one handler and format.
    """
    formatter = _structured_formatter() if settings.structured else _plain_formatter()
    level = settings.level.upper()

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            },
        },
        "loggers": {
            name: {"handlers": [], "level": level, "propagate": True}
            for name in _SERVER_LOGGERS
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    logging.config.dictConfig(build_logging_config(settings))


__all__ = ["build_logging_config", "configure_logging"]
