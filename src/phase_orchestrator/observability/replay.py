"""Event-stream replay: rebuild pipeline state without re-invoking the oracle.

``PhaseCompleted`` events carry the full committed artifact, so applying them
in order reproduces ``PipelineState``. In non-interactive mode the session's
oracle refuses every call, which makes "no further interaction" enforceable
rather than a convention.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from phase_orchestrator.control_plane.state import PipelineState
from phase_orchestrator.domain.errors import ReplayInteractionError
from phase_orchestrator.domain.events import EventType, PipelineEvent
from phase_orchestrator.domain.models import Artifact
from phase_orchestrator.synthesis_plane.context import OracleContext
from phase_orchestrator.synthesis_plane.oracle import Oracle, OracleReply

ReplayListener = Callable[[PipelineEvent], Awaitable[None] | None]


class NoInteractionOracle:
    """Oracle stand-in for replay sessions; any ``propose`` is an error."""

    def __init__(self) -> None:
        self.attempted: list[str] = []

    async def propose(self, context: OracleContext) -> OracleReply:
        self.attempted.append(context.source)
        raise ReplayInteractionError(context.source)


@dataclass(frozen=True, slots=True)
class ReplaySession:
    state: PipelineState
    delivered: int
    oracle: Oracle
    interactive: bool = False


def rebuild_state(events: Iterable[PipelineEvent]) -> PipelineState:
    """Apply every committed artifact in stream order to a fresh state."""
    state = PipelineState()
    for event in events:
        _apply(state, event)
    return state


async def replay_events(
    events: Iterable[PipelineEvent],
    listener: ReplayListener | None = None,
    *,
    interactive: bool = False,
    oracle: Oracle | None = None,
    logger: Any | None = None,
) -> ReplaySession:
    """Deliver ``events`` to ``listener`` in order and rebuild the state they describe.

    Interactive sessions hand back ``oracle`` so the caller may continue the
    pipeline; non-interactive sessions always get a ``NoInteractionOracle``.
    """

    if interactive and oracle is None:
        raise ValueError("interactive replay requires an oracle")
    log = logger if logger is not None else structlog.get_logger(__name__)
    state = PipelineState()
    delivered = 0
    for event in events:
        if not isinstance(event, PipelineEvent):
            raise ValueError(f"expected PipelineEvent, got {type(event).__name__}")
        _apply(state, event)
        if listener is not None:
            result = listener(event)
            if inspect.isawaitable(result):
                await result
        delivered += 1

    log.info(
        "observability_replay_completed",
        delivered=delivered,
        interactive=interactive,
        requirements_step=state.requirements_step,
    )
    session_oracle: Oracle = oracle if interactive and oracle is not None else NoInteractionOracle()
    return ReplaySession(
        state=state, delivered=delivered, oracle=session_oracle, interactive=interactive
    )


def write_event_log(path: str | Path, events: Iterable[PipelineEvent]) -> Path:
    """Write events as JSON lines, replacing ``path`` atomically."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_target = target.with_suffix(f"{target.suffix}.tmp")
    lines = [event.to_json() for event in events]
    tmp_target.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    tmp_target.replace(target)
    return target


def read_event_log(path: str | Path) -> list[PipelineEvent]:
    target = Path(path)
    events: list[PipelineEvent] = []
    with target.open("r", encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                events.append(PipelineEvent.from_json(line))
            except (json.JSONDecodeError, ValueError) as exc:
                raise ValueError(f"{target}:{number}: invalid event record: {exc}") from exc
    return events


def _apply(state: PipelineState, event: PipelineEvent) -> None:
    if event.event_type is not EventType.PHASE_COMPLETED:
        return
    raw = event.payload.get("artifact")
    if not isinstance(raw, dict):
        raise ValueError(f"PhaseCompleted event {event.event_id} carries no artifact")
    state.restore(Artifact.from_dict(raw))


__all__ = [
    "NoInteractionOracle",
    "ReplayListener",
    "ReplaySession",
    "read_event_log",
    "rebuild_state",
    "replay_events",
    "write_event_log",
]
