"""Config package exporting loader helpers."""

from .loader import (
    DatabaseConfig,
    Settings,
    StorageConfig,
    load_settings,
    parse_bool,
    parse_duration,
)

__all__ = [
    "DatabaseConfig",
    "Settings",
    "StorageConfig",
    "load_settings",
    "parse_bool",
    "parse_duration",
]
