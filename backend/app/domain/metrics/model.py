"""Metric parsing, validation and integrity signing."""

from __future__ import annotations

import hashlib
import hmac
import math
import re
from dataclasses import replace
from typing import Any, Mapping

from .types import (
    InvalidMetricKindError,
    InvalidMetricValueError,
    InvalidSignatureError,
    Metric,
    MetricKind,
)

__all__ = [
    "KIND_TOKENS",
    "metric_from_payload",
    "parse_metric",
    "sign_metric",
    "signed",
    "validate_metric",
    "verify_signature",
]

KIND_TOKENS = frozenset(kind.value for kind in MetricKind)
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
_INTEGER = re.compile(r"[+-]?[0-9]+")


def parse_metric(metric_id: str, kind_token: str, raw_value: str) -> Metric:
    """Build a metric from the three path tokens of a plain-text update."""

    if kind_token == MetricKind.COUNTER.value:
        if not isinstance(raw_value, str) or not _INTEGER.fullmatch(raw_value):
            raise InvalidMetricValueError(kind_token, metric_id)
        delta = int(raw_value, 10)
        if not INT64_MIN <= delta <= INT64_MAX:
            raise InvalidMetricValueError(kind_token, metric_id)
        return Metric(id=metric_id, kind=kind_token, delta=delta)

    if kind_token == MetricKind.GAUGE.value:
        if (
            not isinstance(raw_value, str)
            or "_" in raw_value
            or raw_value != raw_value.strip()
        ):
            raise InvalidMetricValueError(kind_token, metric_id)
        try:
            value = float(raw_value)
        except ValueError as exc:
            raise InvalidMetricValueError(kind_token, metric_id) from exc
        if math.isnan(value) or math.isinf(value):
            raise InvalidMetricValueError(kind_token, metric_id)
        return Metric(id=metric_id, kind=kind_token, value=value)

    raise InvalidMetricKindError(kind_token, metric_id)


def validate_metric(metric: Metric) -> None:
    """Raise unless the value field matching the metric kind is populated."""

    if metric.kind == MetricKind.COUNTER.value:
        delta = metric.delta
        if delta is None or isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidMetricValueError(metric.kind, metric.id)
        if not INT64_MIN <= delta <= INT64_MAX:
            raise InvalidMetricValueError(metric.kind, metric.id)
        return

    if metric.kind == MetricKind.GAUGE.value:
        value = metric.value
        if value is None or isinstance(value, bool):
            raise InvalidMetricValueError(metric.kind, metric.id)
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidMetricValueError(metric.kind, metric.id)
        return

    raise InvalidMetricKindError(metric.kind, metric.id)


def _signing_message(metric: Metric) -> str:
    if metric.kind == MetricKind.COUNTER.value:
        return f"{metric.id}:{metric.kind}:{int(metric.delta):d}"  # type: ignore[arg-type]
    return f"{metric.id}:{metric.kind}:{float(metric.value):f}"  # type: ignore[arg-type]


def sign_metric(metric: Metric, key: str) -> str:
    """Return the hex HMAC-SHA256 of ``"<id>:<kind>:<value>"`` under ``key``."""

    validate_metric(metric)
    digest = hmac.new(
        key.encode("utf-8"),
        _signing_message(metric).encode("utf-8"),
        hashlib.sha256,
    )
    return digest.hexdigest()


def signed(metric: Metric, key: str) -> Metric:
    """Copy of ``metric`` stamped with a freshly computed signature."""

    return replace(metric, signature=sign_metric(metric, key))


def verify_signature(metric: Metric, key: str) -> None:
    expected = sign_metric(metric, key)
    provided = (metric.signature or "").strip().lower()
    if not provided or not hmac.compare_digest(provided, expected):
        raise InvalidSignatureError(metric.kind, metric.id)


def metric_from_payload(payload: Mapping[str, Any]) -> Metric:
    """Decode the JSON wire/snapshot form (``id``, ``type``, ``delta``, ``value``, ``hash``)."""

    metric_id = str(payload.get("id") or "")
    kind = str(payload.get("type") or "")
    delta = payload.get("delta")
    value = payload.get("value")
    if kind == MetricKind.GAUGE.value and isinstance(value, int) and not isinstance(
        value, bool
    ):
        value = float(value)
    return Metric(
        id=metric_id,
        kind=kind,
        delta=delta,
        value=value,
        signature=payload.get("hash") or None,
    )
