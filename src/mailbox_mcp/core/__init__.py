"""Core utilities for configuration, logging, and shared models."""

from .config import Account, AppSettings, ConfigError, LoggingSettings, load_app_settings
from .logging import build_logging_config, configure_logging

__all__ = [
    "Account",
    "AppSettings",
    "ConfigError",
    "LoggingSettings",
    "build_logging_config",
    "configure_logging",
    "load_app_settings",
]
