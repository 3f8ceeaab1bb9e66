"""Shared API dependencies."""

from __future__ import annotations

from functools import lru_cache

from ..config import Settings, load_settings
from ..domain.metrics import MetricUpdateService

__all__ = [
    "get_metric_service",
    "get_settings",
]


@lru_cache()
def _settings_singleton() -> Settings:
    return load_settings()


def get_settings() -> Settings:
    """Return the process-wide settings loaded at first use."""

    return _settings_singleton()


@lru_cache()
def _metric_service_singleton() -> MetricUpdateService:
    return MetricUpdateService.from_settings(get_settings())


def get_metric_service() -> MetricUpdateService:
    """Return the process-wide metric update service."""

    return _metric_service_singleton()
