"""Token usage accounting per pipeline component."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from phase_orchestrator.domain.models import PHASE_ORDER, JSONValue, Phase

FACADE_COMPONENT: Final[str] = "facade"
USAGE_COMPONENTS: Final[tuple[str, ...]] = (
    FACADE_COMPONENT,
    *(phase.value for phase in PHASE_ORDER),
)

_FIELDS: Final[tuple[str, ...]] = (
    "input_total",
    "input_cached",
    "output_total",
    "output_reasoning",
    "output_accepted_prediction",
    "output_rejected_prediction",
)


@dataclass(slots=True)
class TokenUsage:
    """Input/output token counters reported by one or more oracle calls."""

    input_total: int = 0
    input_cached: int = 0
    output_total: int = 0
    output_reasoning: int = 0
    output_accepted_prediction: int = 0
    output_rejected_prediction: int = 0

    def __post_init__(self) -> None:
        for name in _FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"TokenUsage.{name}: expected integer, got {type(value).__name__}")
            if value < 0:
                raise ValueError(f"TokenUsage.{name}: must be >= 0")

    @property
    def total(self) -> int:
        return self.input_total + self.output_total

    def increment(self, other: TokenUsage) -> None:
        """Add ``other`` into this instance in place."""
        for name in _FIELDS:
            setattr(self, name, getattr(self, name) + getattr(other, name))

    def __add__(self, other: object) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(**{name: getattr(self, name) + getattr(other, name) for name in _FIELDS})

    def copy(self) -> TokenUsage:
        return TokenUsage(**{name: getattr(self, name) for name in _FIELDS})

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total": self.total,
            "input": {"total": self.input_total, "cached": self.input_cached},
            "output": {
                "total": self.output_total,
                "reasoning": self.output_reasoning,
                "accepted_prediction": self.output_accepted_prediction,
                "rejected_prediction": self.output_rejected_prediction,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TokenUsage:
        raw_input = data.get("input", {})
        raw_output = data.get("output", {})
        if not isinstance(raw_input, Mapping) or not isinstance(raw_output, Mapping):
            raise ValueError("TokenUsage: input/output must be objects")
        return cls(
            input_total=_as_count(raw_input.get("total", 0), "TokenUsage.input.total"),
            input_cached=_as_count(raw_input.get("cached", 0), "TokenUsage.input.cached"),
            output_total=_as_count(raw_output.get("total", 0), "TokenUsage.output.total"),
            output_reasoning=_as_count(
                raw_output.get("reasoning", 0), "TokenUsage.output.reasoning"
            ),
            output_accepted_prediction=_as_count(
                raw_output.get("accepted_prediction", 0),
                "TokenUsage.output.accepted_prediction",
            ),
            output_rejected_prediction=_as_count(
                raw_output.get("rejected_prediction", 0),
                "TokenUsage.output.rejected_prediction",
            ),
        )


class UsageLedger:
    """Thread-safe per-component usage totals for one pipeline run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._components: dict[str, TokenUsage] = {
            name: TokenUsage() for name in USAGE_COMPONENTS
        }

    def record(self, component: Phase | str, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        key = _component_key(component)
        with self._lock:
            self._components[key].increment(usage)

    def component(self, component: Phase | str) -> TokenUsage:
        key = _component_key(component)
        with self._lock:
            return self._components[key].copy()

    def aggregate(self) -> TokenUsage:
        with self._lock:
            total = TokenUsage()
            for usage in self._components.values():
                total.increment(usage)
            return total

    def to_dict(self) -> dict[str, JSONValue]:
        with self._lock:
            components = {name: usage.to_dict() for name, usage in self._components.items()}
        return {"aggregate": self.aggregate().to_dict(), "components": components}


def _component_key(component: Phase | str) -> str:
    key = component.value if isinstance(component, Phase) else str(component).strip()
    if key not in USAGE_COMPONENTS:
        allowed = ", ".join(USAGE_COMPONENTS)
        raise ValueError(f"unknown usage component {key!r}; allowed: {allowed}")
    return key


def _as_count(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer, got {type(value).__name__}")
    return value


__all__ = [
    "FACADE_COMPONENT",
    "USAGE_COMPONENTS",
    "TokenUsage",
    "UsageLedger",
]
