"""Unit tests for progress counters and the progress reporter."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from phase_orchestrator.domain.events import EventType, PipelineEvent
from phase_orchestrator.domain.models import Phase
from phase_orchestrator.observability.events import EventBus
from phase_orchestrator.observability.progress import ProgressCounter, ProgressReporter
from phase_orchestrator.observability.usage import TokenUsage


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


def test_progress_counter_clamps_and_validates() -> None:
    counter = ProgressCounter("tables", total=2)

    counter.complete()
    counter.complete(5)
    counter.add_total(1)

    assert counter.to_dict() == {"label": "tables", "completed": 2, "total": 3}
    assert not counter.done
    with pytest.raises(ValueError, match="must be <= total"):
        ProgressCounter("files", total=1, completed=2)
    with pytest.raises(ValueError, match="label"):
        ProgressCounter(" ")
    with pytest.raises(ValueError, match="amount must be >= 0"):
        counter.complete(-1)


async def test_progress_emits_event_and_sets_gauges() -> None:
    bus = EventBus(buffer_size=8)
    reporter = ProgressReporter(bus, logger=RecordingLogger())
    counter = ProgressCounter("operations", total=4, completed=1)

    event = await reporter.progress(counter, phase=Phase.INTERFACE, step=3)

    assert event.event_type is EventType.PROGRESS_UPDATED
    assert event.payload == {"label": "operations", "completed": 1, "total": 4}
    assert (event.phase, event.step) == (Phase.INTERFACE, 3)
    labels = {"phase": "interface", "unit": "operations"}
    assert reporter.metrics.get_gauge("progress_completed", labels=labels) == 1.0
    assert reporter.metrics.get_gauge("progress_total", labels=labels) == 4.0
    assert reporter.metrics.get_counter(
        "events", labels={"phase": "interface", "event_type": "ProgressUpdated"}
    ) == 1.0


async def test_dispatch_errors_are_logged_not_raised() -> None:
    logger = RecordingLogger()
    reporter = ProgressReporter(logger=logger)

    def broken(_event: PipelineEvent) -> None:
        raise RuntimeError("subscriber down")

    reporter.bus.subscribe(None, broken)
    await reporter.emit(EventType.PHASE_STARTED, {}, phase=Phase.SCHEMA, step=0)

    assert logger.events == [
        (
            "observability_dispatch_errors",
            {"event_type": "PhaseStarted", "errors": ["subscriber:broken:RuntimeError"]},
        )
    ]


def test_usage_and_summary_roll_up_per_phase() -> None:
    reporter = ProgressReporter(logger=RecordingLogger())

    reporter.record_usage(Phase.SCHEMA, TokenUsage(input_total=10, output_total=5))
    reporter.record_usage(None, TokenUsage(input_total=1))
    reporter.record_usage(Phase.SCHEMA, None)
    reporter.count("oracle_calls", phase=Phase.SCHEMA)
    reporter.count("oracle_calls", phase=Phase.TEST, amount=2)
    reporter.count("regenerated_units", phase=Phase.IMPLEMENTATION)
    reporter.observe("phase_seconds", 0.25, phase=Phase.SCHEMA)

    summary = reporter.summary()

    assert summary["oracle_calls"] == {"schema": 1.0, "test": 2.0}
    assert summary["validator_calls"] == {}
    assert summary["review_calls"] == {}
    assert summary["regenerated_units"] == {"implementation": 1.0}
    usage = summary["usage"]
    assert isinstance(usage, dict)
    assert usage["aggregate"]["total"] == 16  # type: ignore[index]
    assert usage["components"]["facade"]["total"] == 1  # type: ignore[index]
    assert reporter.metrics.get_counter("oracle_tokens", labels={"phase": "schema"}) == 15.0


def test_log_forwards_to_injected_logger() -> None:
    logger = RecordingLogger()
    ProgressReporter(logger=logger).log("phase_summary", phase="schema")

    assert logger.events == [("phase_summary", {"phase": "schema"})]
