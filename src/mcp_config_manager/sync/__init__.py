"""Synchronization with the host application's config file."""

from .host_config import (
    ConfigIOError,
    ConfigSync,
    HostConfigAdapter,
    HostServerEntry,
    SyncReport,
    UnsupportedPlatformError,
    resolve_config_path,
)

__all__ = [
    "ConfigIOError",
    "ConfigSync",
    "HostConfigAdapter",
    "HostServerEntry",
    "SyncReport",
    "UnsupportedPlatformError",
    "resolve_config_path",
]
