"""Configuration package: settings and structured logging."""

from .logging import configure_logging, get_logger, sanitize_log_data
from .settings import (
    HostConfigSettings,
    LoggingConfig,
    RepositoryConfig,
    ServiceConfig,
    Settings,
    settings,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "sanitize_log_data",
    "HostConfigSettings",
    "LoggingConfig",
    "RepositoryConfig",
    "ServiceConfig",
    "Settings",
    "settings",
]
