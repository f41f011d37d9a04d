"""Per-run counters, gauges, and timing distributions keyed by name and labels.

Typical names: ``oracle_calls``, ``validator_calls``, ``gvc_attempts``,
``coverage_missing``, ``regenerated_units``, ``phase_seconds``. Every sample
carries a ``phase`` label (``facade`` outside any phase).
"""

from __future__ import annotations

import json
import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from phase_orchestrator.domain.models import JSONValue

_NAME_MAX_LEN: Final[int] = 128

Labels = tuple[tuple[str, str], ...]
MetricKey = tuple[str, Labels]


@dataclass(slots=True)
class Distribution:
    count: int = 0
    total: float = 0.0
    minimum: float = math.inf
    maximum: float = -math.inf

    def add(self, sample: float) -> None:
        self.count += 1
        self.total += sample
        self.minimum = min(self.minimum, sample)
        self.maximum = max(self.maximum, sample)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, JSONValue]:
        empty = self.count == 0
        return {
            "count": self.count,
            "sum": self.total,
            "min": None if empty else self.minimum,
            "max": None if empty else self.maximum,
            "mean": self.mean,
        }


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[MetricKey, float] = {}
        self._gauges: dict[MetricKey, float] = {}
        self._distributions: dict[MetricKey, Distribution] = {}

    def inc(
        self, name: str, amount: float = 1.0, *, labels: Mapping[str, str] | None = None
    ) -> None:
        delta = _finite(amount, "amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        key = _key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def set_gauge(
        self, name: str, value: float, *, labels: Mapping[str, str] | None = None
    ) -> None:
        key = _key(name, labels)
        with self._lock:
            self._gauges[key] = _finite(value, "value")

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        key = _key(name, labels)
        sample = _finite(value, "value")
        with self._lock:
            self._distributions.setdefault(key, Distribution()).add(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        key = _key(name, labels)
        with self._lock:
            return self._gauges.get(key)

    def get_distribution(
        self, name: str, *, labels: Mapping[str, str] | None = None
    ) -> Distribution | None:
        key = _key(name, labels)
        with self._lock:
            return self._distributions.get(key)

    def counter_by_phase(self, name: str) -> dict[str, float]:
        """Sum counter ``name`` per ``phase`` label across every other label."""
        totals: dict[str, float] = {}
        with self._lock:
            items = list(self._counters.items())
        for (metric, labels), value in items:
            if metric != name:
                continue
            phase = dict(labels).get("phase", "")
            totals[phase] = totals.get(phase, 0.0) + value
        return dict(sorted(totals.items()))

    def snapshot(self) -> dict[str, JSONValue]:
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            distributions = sorted(self._distributions.items())
        return {
            "counters": {_render(key): value for key, value in counters},
            "gauges": {_render(key): value for key, value in gauges},
            "distributions": {_render(key): item.to_dict() for key, item in distributions},
        }

    def to_json(self) -> str:
        return json.dumps(self.snapshot(), sort_keys=True, separators=(",", ":"))


def _key(name: str, labels: Mapping[str, str] | None) -> MetricKey:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("metric name must be a non-empty string")
    if len(name.strip()) > _NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_NAME_MAX_LEN} characters")
    pairs: list[tuple[str, str]] = []
    for label, value in (labels or {}).items():
        if not isinstance(label, str) or not isinstance(value, str):
            raise ValueError(f"label {label!r} must map a string key to a string value")
        if not label.strip() or not value.strip():
            raise ValueError(f"label {label!r} must have a non-empty key and value")
        pairs.append((label.strip(), value.strip()))
    return name.strip(), tuple(sorted(pairs))


def _render(key: MetricKey) -> str:
    name, labels = key
    if not labels:
        return name
    return name + "{" + ",".join(f"{label}={value}" for label, value in labels) + "}"


def _finite(value: float, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{path} must be finite")
    return number


__all__ = ["Distribution", "MetricsRegistry"]
