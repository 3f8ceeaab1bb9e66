"""Collector configuration loader with YAML profile support."""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_ENVIRONMENT = "dev"
DEFAULT_ADDRESS = "127.0.0.1:8080"
DEFAULT_STORE_INTERVAL_SECONDS = 300.0
DEFAULT_STORE_FILE = "/tmp/devops-metrics-db.json"
DEFAULT_RESTORE = True
DEFAULT_CONNECT_TIMEOUT_SECONDS = 1
DEFAULT_MIGRATIONS_DIR = str(Path(__file__).resolve().parents[2] / "migrations")
DEFAULT_PROFILE_DICT: dict[str, Any] = {
    "environment": DEFAULT_ENVIRONMENT,
    "server": {"address": DEFAULT_ADDRESS},
    "storage": {
        "store_interval": DEFAULT_STORE_INTERVAL_SECONDS,
        "store_file": DEFAULT_STORE_FILE,
        "restore": DEFAULT_RESTORE,
    },
    "database": {
        "url": None,
        "migrations_dir": DEFAULT_MIGRATIONS_DIR,
        "connect_timeout": DEFAULT_CONNECT_TIMEOUT_SECONDS,
    },
    "logging": {"level": "INFO"},
}
CONFIG_PROFILE_ENV = "METRICS_CONFIG_PROFILE"
CONFIG_DIR_ENV = "METRICS_CONFIG_DIR"
DEFAULT_PROFILE = "dev"
DEFAULT_CONFIG_ROOT = Path(__file__).resolve().parents[3] / "config" / "profiles"
CONFIG_EXTENSIONS = (".yaml", ".yml")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass
class StorageConfig:
    store_interval: float = DEFAULT_STORE_INTERVAL_SECONDS
    store_file: str = DEFAULT_STORE_FILE
    restore: bool = DEFAULT_RESTORE

    @property
    def write_through(self) -> bool:
        """An interval of zero flushes the snapshot after every mutation."""

        return self.store_interval == 0


@dataclass
class DatabaseConfig:
    url: str | None = None
    migrations_dir: str = DEFAULT_MIGRATIONS_DIR
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT_SECONDS


@dataclass
class Settings:
    environment: str = DEFAULT_ENVIRONMENT
    address: str = DEFAULT_ADDRESS
    key: str | None = None
    storage: StorageConfig = field(default_factory=StorageConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def database_url(self) -> str | None:
        return self.database.url


def load_settings(
    profile: str | None = None, config_dir: str | Path | None = None
) -> Settings:
    """Load collector settings from the requested profile or fall back to defaults.

    Environment variables understood by the original collector (``ADDRESS``,
    ``STORE_INTERVAL``, ``STORE_FILE``, ``RESTORE``, ``KEY``, ``DATABASE_DSN``)
    take precedence over profile values.
    """

    profile_name = profile or os.getenv(CONFIG_PROFILE_ENV, DEFAULT_PROFILE)
    config_root = Path(
        config_dir or os.getenv(CONFIG_DIR_ENV, DEFAULT_CONFIG_ROOT)
    ).expanduser()
    config_data = _load_profile_dict(profile_name, config_root)
    if not config_data:
        config_data = copy.deepcopy(DEFAULT_PROFILE_DICT)

    environment = config_data.get("environment", DEFAULT_ENVIRONMENT)
    server_cfg = config_data.get("server") or {}
    address = os.getenv("ADDRESS", server_cfg.get("address", DEFAULT_ADDRESS))
    _validate_address(address)

    key = os.getenv("KEY", config_data.get("key")) or None

    return Settings(
        environment=environment,
        address=address,
        key=key,
        storage=_build_storage_config(config_data.get("storage")),
        database=_build_database_config(config_data.get("database")),
        logging=dict(config_data.get("logging") or {}),
        raw=config_data,
    )


def parse_duration(value: Any) -> float:
    """Return seconds for a number or a Go-style duration string such as ``300s``."""

    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            seconds = _parse_duration_string(text)
    if seconds < 0:
        raise ValueError(f"duration must not be negative: {value!r}")
    return seconds


def _parse_duration_string(text: str) -> float:
    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration {text!r}")
    return total


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean {value!r}")


def _validate_address(address: str) -> None:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise RuntimeError(f"invalid server address {address!r}")


def _load_profile_dict(profile_name: str, config_root: Path) -> dict[str, Any]:
    """Load the YAML profile if available, otherwise return an empty dict."""

    if not config_root.exists():
        return {}

    for extension in CONFIG_EXTENSIONS:
        candidate = config_root / f"{profile_name}{extension}"
        if not candidate.exists():
            continue
        try:
            with candidate.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise RuntimeError(
                f"Failed to parse config profile {candidate}: {exc}"
            ) from exc
        if not isinstance(loaded, dict):
            raise RuntimeError(
                f"Config profile {candidate} must be a mapping at the root"
            )
        return loaded

    return {}


def _build_storage_config(storage_cfg: dict[str, Any] | None) -> StorageConfig:
    storage_cfg = storage_cfg or {}
    raw_interval = os.getenv(
        "STORE_INTERVAL",
        storage_cfg.get("store_interval", DEFAULT_STORE_INTERVAL_SECONDS),
    )
    raw_restore = os.getenv("RESTORE", storage_cfg.get("restore", DEFAULT_RESTORE))
    store_file = os.getenv(
        "STORE_FILE", storage_cfg.get("store_file", DEFAULT_STORE_FILE)
    )
    try:
        store_interval = parse_duration(raw_interval)
        restore = parse_bool(raw_restore)
    except ValueError as exc:
        raise RuntimeError(f"Invalid storage configuration: {exc}") from exc
    return StorageConfig(
        store_interval=store_interval,
        store_file=str(store_file or ""),
        restore=restore,
    )


def _build_database_config(database_cfg: dict[str, Any] | None) -> DatabaseConfig:
    database_cfg = database_cfg or {}
    url = (
        os.getenv("DATABASE_DSN")
        or os.getenv("DATABASE_URL")
        or database_cfg.get("url")
        or None
    )
    migrations_dir = os.getenv(
        "MIGRATIONS_DIR",
        database_cfg.get("migrations_dir") or DEFAULT_MIGRATIONS_DIR,
    )
    return DatabaseConfig(
        url=url,
        migrations_dir=str(migrations_dir),
        connect_timeout=int(
            database_cfg.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT_SECONDS)
        ),
    )
