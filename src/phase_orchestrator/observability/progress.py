"""Progress counters and the reporter tying events, metrics, usage, and logs together."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

import structlog

from phase_orchestrator.domain.events import EventType, PipelineEvent
from phase_orchestrator.domain.models import JSONValue, Phase
from phase_orchestrator.observability.events import EventBus
from phase_orchestrator.observability.metrics import MetricsRegistry
from phase_orchestrator.observability.usage import FACADE_COMPONENT, TokenUsage, UsageLedger

_SUMMARY_COUNTERS: Final[tuple[str, ...]] = (
    "oracle_calls",
    "validator_calls",
    "review_calls",
    "regenerated_units",
)


@dataclass(slots=True)
class ProgressCounter:
    """Completed/total counter for one unit kind (tables, operations, files)."""

    label: str
    total: int = 0
    completed: int = 0

    def __post_init__(self) -> None:
        if not self.label.strip():
            raise ValueError("ProgressCounter.label: must not be empty")
        if self.total < 0 or self.completed < 0:
            raise ValueError("ProgressCounter: counts must be >= 0")
        if self.completed > self.total:
            raise ValueError("ProgressCounter.completed: must be <= total")

    def add_total(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        self.total += amount

    def complete(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("amount must be >= 0")
        self.completed = min(self.total, self.completed + amount)

    @property
    def done(self) -> bool:
        return self.completed >= self.total

    def to_dict(self) -> dict[str, JSONValue]:
        return {"label": self.label, "completed": self.completed, "total": self.total}


class ProgressReporter:
    """Single sink every loop reports through.

    Events go to the bus (and from there to channels, subscribers and the
    persistence hook); counters go to the metrics registry; oracle usage goes
    to the ledger.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        metrics: MetricsRegistry | None = None,
        usage: UsageLedger | None = None,
        logger: Any | None = None,
    ) -> None:
        self.bus = bus if bus is not None else EventBus()
        self.metrics = metrics if metrics is not None else MetricsRegistry()
        self.usage = usage if usage is not None else UsageLedger()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def emit(
        self,
        event_type: EventType,
        payload: Mapping[str, object],
        *,
        phase: Phase | None,
        step: int | None,
    ) -> PipelineEvent:
        event, errors = await self.bus.emit_async(event_type, payload, phase=phase, step=step)
        self.metrics.inc("events", labels=_labels(phase, event_type=event_type.value))
        if errors:
            self._logger.warning(
                "observability_dispatch_errors",
                event_type=event_type.value,
                errors=[f"{error.stage}:{error.target}:{error.error_type}" for error in errors],
            )
        return event

    async def progress(
        self,
        counter: ProgressCounter,
        *,
        phase: Phase,
        step: int,
    ) -> PipelineEvent:
        labels = _labels(phase, unit=counter.label)
        self.metrics.set_gauge("progress_completed", float(counter.completed), labels=labels)
        self.metrics.set_gauge("progress_total", float(counter.total), labels=labels)
        return await self.emit(
            EventType.PROGRESS_UPDATED, counter.to_dict(), phase=phase, step=step
        )

    def record_usage(self, phase: Phase | None, usage: TokenUsage | None) -> None:
        if usage is None:
            return
        self.usage.record(phase if phase is not None else FACADE_COMPONENT, usage)
        self.metrics.inc("oracle_tokens", float(usage.total), labels=_labels(phase))

    def count(self, name: str, *, phase: Phase | None, amount: float = 1.0) -> None:
        self.metrics.inc(name, amount, labels=_labels(phase))

    def observe(self, name: str, value: float, *, phase: Phase | None) -> None:
        self.metrics.observe(name, value, labels=_labels(phase))

    def log(self, event: str, **fields: object) -> None:
        self._logger.info(event, **fields)

    def summary(self) -> dict[str, JSONValue]:
        """Per-phase call counts plus the token usage ledger."""
        return {
            **{name: self.metrics.counter_by_phase(name) for name in _SUMMARY_COUNTERS},
            "usage": self.usage.to_dict(),
        }


def _labels(phase: Phase | None, **extra: str) -> dict[str, str]:
    labels = {"phase": phase.value if phase is not None else FACADE_COMPONENT}
    labels.update(extra)
    return labels


__all__ = ["ProgressCounter", "ProgressReporter"]
