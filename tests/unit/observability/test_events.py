"""
phase-orchestrator — unit tests for the observability event bus

File: tests/unit/observability/test_events.py
Last updated: 2026-10-19

Purpose
- Validate event fanout resilience, typed channels, replay semantics, and persistence hooks.

What this test file should cover
- Sync+async subscriber support and exception isolation.
- Typed channels with ordered delivery, backpressure, and close semantics.
- Ring-buffer replay ordering and filters.
- Critical event persistence and failure handling.

Functional requirements
- Offline and deterministic.

Non-functional requirements
- No sleep-based synchronization.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

import phase_orchestrator.observability as observability_pkg
from phase_orchestrator.domain.events import EventType, PipelineEvent
from phase_orchestrator.domain.models import Phase
from phase_orchestrator.observability.events import EventBus


def test_subscribers_receive_events_in_publish_order() -> None:
    bus = EventBus(buffer_size=10)
    sub_a: list[str] = []
    sub_b: list[str] = []

    bus.subscribe(None, lambda event: sub_a.append(event.event_type.value))
    bus.subscribe(EventType.PHASE_COMPLETED, lambda event: sub_b.append(event.event_type.value))

    _, errors_1 = bus.emit("PhaseStarted", {"x": 1})
    _, errors_2 = bus.emit(EventType.PHASE_COMPLETED, {"x": 2})

    assert errors_1 == ()
    assert errors_2 == ()
    assert sub_a == ["PhaseStarted", "PhaseCompleted"]
    assert sub_b == ["PhaseCompleted"]


async def test_async_subscriber_supports_publish_async_and_sync_publish() -> None:
    bus = EventBus(buffer_size=10)
    received: list[str] = []

    async def async_sub(event: PipelineEvent) -> None:
        received.append(event.event_type.value)

    token = bus.subscribe(None, async_sub)

    _, async_errors = await bus.emit_async("CandidateProposed", {"n": 1})
    _, sync_errors = bus.emit("CandidateValidated", {"n": 2})
    await bus.drain_async()

    assert async_errors == ()
    assert sync_errors == ()
    assert received == ["CandidateProposed", "CandidateValidated"]
    assert bus.unsubscribe(token)
    assert not bus.unsubscribe(token)


def test_subscriber_exception_does_not_break_other_subscribers() -> None:
    bus = EventBus(buffer_size=10)
    received: list[str] = []

    def broken(_event: PipelineEvent) -> None:
        raise RuntimeError("boom")

    def healthy(event: PipelineEvent) -> None:
        received.append(event.event_type.value)

    bus.subscribe(None, broken)
    bus.subscribe(None, healthy)

    _, errors = bus.emit("PhaseFailed", {"reason": "x"})

    assert received == ["PhaseFailed"]
    assert len(errors) == 1
    assert errors[0].stage == "subscriber"
    assert errors[0].target == "broken"


def test_replay_ring_buffer_and_filters() -> None:
    bus = EventBus(buffer_size=3)
    bus.emit("PhaseStarted", {"v": 1}, phase=Phase.SCHEMA, step=0)
    first, _ = bus.emit("ProgressUpdated", {"v": 2}, phase=Phase.SCHEMA, step=0)
    bus.emit("ProgressUpdated", {"v": 3}, phase=Phase.INTERFACE, step=0)
    last, _ = bus.emit("PhaseCompleted", {"v": 4}, phase=Phase.INTERFACE, step=0)

    assert [event.payload["v"] for event in bus.replay()] == [2, 3, 4]
    assert [event.payload["v"] for event in bus.replay(event_type="ProgressUpdated")] == [2, 3]
    assert [event.payload["v"] for event in bus.replay(phase=Phase.INTERFACE)] == [3, 4]
    earlier = first.timestamp - timedelta(microseconds=1)
    assert [event.payload["v"] for event in bus.replay(since=earlier)] == [2, 3, 4]
    assert bus.replay(since=last.timestamp) == ()
    assert [event.payload["v"] for event in bus.replay(limit=1)] == [4]
    assert bus.replay(limit=0) == ()
    with pytest.raises(ValueError, match="timezone-aware"):
        bus.replay(since=datetime(2026, 1, 1))


def test_critical_event_persistence_failure_is_recorded_and_event_replayable() -> None:
    persisted: list[str] = []

    def persist(event: PipelineEvent) -> None:
        persisted.append(event.event_id)
        raise ValueError("disk full")

    bus = EventBus(
        buffer_size=10,
        persistence_callback=persist,
        critical_event_types=[EventType.PHASE_COMPLETED],
        correlation_id="run-abc",
    )

    bus.emit("PhaseStarted", {})
    event, errors = bus.emit("PhaseCompleted", {"status": "committed"})

    assert persisted == [event.event_id]
    assert event.correlation_id == "run-abc"
    assert [error.stage for error in errors] == ["persistence"]
    assert any(item.event_id == event.event_id for item in bus.dispatch_errors())
    assert bus.replay()[-1].event_id == event.event_id


async def test_channel_delivers_filtered_events_in_order_until_closed() -> None:
    bus = EventBus(buffer_size=10)
    channel = bus.open_channel(maxsize=10, event_type=EventType.PROGRESS_UPDATED)

    await bus.emit_async("PhaseStarted", {})
    await bus.emit_async("ProgressUpdated", {"completed": 1})
    await bus.emit_async("ProgressUpdated", {"completed": 2})
    await bus.close_channels()

    received = [event.payload["completed"] async for event in channel]

    assert received == [1, 2]
    assert channel.closed
    assert channel.pending == 0


async def test_slow_channel_applies_backpressure_to_async_publishers() -> None:
    bus = EventBus(buffer_size=10)
    channel = bus.open_channel(maxsize=1)

    await bus.emit_async("PhaseStarted", {"n": 1})
    blocked = asyncio.create_task(bus.emit_async("PhaseStarted", {"n": 2}))
    await asyncio.sleep(0)

    assert not blocked.done()
    first = await channel.get()
    await blocked
    second = await channel.get()

    assert first is not None and first.payload == {"n": 1}
    assert second is not None and second.payload == {"n": 2}


def test_sync_publish_reports_full_channel_instead_of_blocking() -> None:
    bus = EventBus(buffer_size=10)
    bus.open_channel(maxsize=1)

    bus.emit("PhaseStarted", {})
    _, errors = bus.emit("PhaseStarted", {})

    assert [error.stage for error in errors] == ["channel"]


def test_bus_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError, match="buffer_size must be > 0"):
        EventBus(buffer_size=0)
    with pytest.raises(ValueError, match="callable"):
        EventBus(persistence_callback="nope")  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="unsupported event type|not a valid"):
        EventBus().emit("RunStarted", {})


def test_observability_package_exports_event_bus() -> None:
    bus = observability_pkg.EventBus(buffer_size=2)
    event, errors = bus.emit("PhaseStarted", {"ok": True})
    assert errors == ()
    assert bus.replay()[-1].event_id == event.event_id
