"""Logging helpers shared by the collector modules."""

from __future__ import annotations

import logging
from typing import Any, Mapping

ROOT_LOGGER_NAME = "backend.app"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured = False


class _ExtraFormatter(logging.Formatter):
    """Append structured ``extra`` fields to the rendered message."""

    _reserved = frozenset(
        logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._reserved
        }
        if not extras:
            return rendered
        fields = " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))
        return f"{rendered} {fields}"


def configure_logging(config: Mapping[str, Any] | None = None) -> None:
    """Attach a stream handler to the package logger once per process."""

    global _configured
    config = config or {}
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(str(config.get("level", "INFO")).upper())
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(_ExtraFormatter(config.get("format", DEFAULT_FORMAT)))
    root.addHandler(handler)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the package namespace."""

    return logging.getLogger(name)
