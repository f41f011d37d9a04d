"""Unit tests for component decomposition and coverage tracking."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from phase_orchestrator.control_plane.gvc import GenerateValidateCorrectLoop
from phase_orchestrator.domain.errors import DecompositionIncomplete
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import Entry, JSONValue, Phase
from phase_orchestrator.observability.events import EventBus
from phase_orchestrator.observability.progress import ProgressCounter, ProgressReporter
from phase_orchestrator.synthesis_plane.context import ContextEntryKind, OracleContext
from phase_orchestrator.synthesis_plane.decomposer import (
    ComponentDecomposer,
    ComponentTask,
    CoverageTracker,
)
from phase_orchestrator.synthesis_plane.merge import entry_name
from phase_orchestrator.synthesis_plane.oracle import Proposal, Rejection


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


class ScriptedOracle:
    def __init__(self, *replies: object) -> None:
        self._replies = list(replies)
        self.contexts: list[OracleContext] = []

    async def propose(self, context: OracleContext) -> object:
        self.contexts.append(context)
        return self._replies[min(len(self.contexts), len(self._replies)) - 1]


def _models(*names: str, version: int = 1) -> Proposal:
    return Proposal({"models": [{"name": name, "version": version} for name in names]})


def _parse(candidate: JSONValue) -> list[Entry]:
    assert isinstance(candidate, dict)
    return [Entry(item["name"], item) for item in candidate["models"]]


def _render(entries: list[Entry]) -> dict[str, str]:
    return {"orders.sql": "\n".join(entry.name for entry in entries) or "-"}


def _decomposer(
    oracle: ScriptedOracle, reporter: ProgressReporter, logger: RecordingLogger, rounds: int
) -> ComponentDecomposer:
    loop = GenerateValidateCorrectLoop(
        oracle, None, reporter=reporter, phase=Phase.SCHEMA, step=0, logger=RecordingLogger()
    )
    return ComponentDecomposer(
        loop,
        reporter=reporter,
        phase=Phase.SCHEMA,
        step=0,
        coverage_rounds=rounds,
        correction_retries=1,
        logger=logger,
    )


def _reporter() -> ProgressReporter:
    return ProgressReporter(EventBus(buffer_size=256), logger=RecordingLogger())


async def test_gap_list_requests_only_missing_names_and_keeps_earlier_entities() -> None:
    oracle = ScriptedOracle(_models("t1", "t2"), _models("t3", "t1", version=2))
    reporter = _reporter()
    task = ComponentTask(identity="orders.sql", expected=("t1", "t2", "t3"))
    counter = ProgressCounter("tables", total=3)

    result = await _decomposer(oracle, reporter, RecordingLogger(), rounds=3).run(
        task,
        OracleContext(source="schema.component", phase=Phase.SCHEMA),
        parse=_parse,
        render=_render,
        key=entry_name,
        dump=Entry.to_dict,
        counter=counter,
    )

    assert result.complete
    assert result.rounds == 2
    assert [entry.name for entry in result.entities] == ["t1", "t2", "t3"]
    assert result.entities[0].content == {"name": "t1", "version": 1}
    assert oracle.contexts[1].missing == ("t3",)
    produced = oracle.contexts[1].latest(ContextEntryKind.ARTIFACT)
    assert produced.text == "orders.sql.produced"
    assert [item["name"] for item in produced.data] == ["t1", "t2"]
    assert counter.completed == 3
    assert task.closed


async def test_exhausted_coverage_budget_reports_missing_entities() -> None:
    oracle = ScriptedOracle(_models("t1", "t2"))
    reporter = _reporter()
    logger = RecordingLogger()
    task = ComponentTask(identity="orders.sql", expected=("t1", "t2", "t3"))

    result = await _decomposer(oracle, reporter, logger, rounds=1).run(
        task,
        OracleContext(source="schema.component", phase=Phase.SCHEMA),
        parse=_parse,
        render=_render,
        key=entry_name,
        dump=Entry.to_dict,
    )

    assert not result.complete
    assert result.missing == ("t3",)
    assert isinstance(result.failure, DecompositionIncomplete)
    assert result.failure.missing == ("t3",)
    assert result.rounds == 2
    assert len(oracle.contexts) == 2
    events = reporter.bus.replay(event_type=EventType.COVERAGE_INSUFFICIENT)
    assert [event.payload["missing"] for event in events] == [["t3"], ["t3"]]
    assert reporter.metrics.counter_by_phase("coverage_missing") == {"schema": 2.0}
    assert logger.events == [
        (
            "synthesis_plane_coverage_incomplete",
            {
                "phase": "schema",
                "step": 0,
                "component": "orders.sql",
                "missing": ["t3"],
                "rounds": 2,
            },
        )
    ]
    with pytest.raises(ValueError, match="is closed"):
        task.accept([Entry("t3")], entry_name)


async def test_rejection_stops_coverage_rounds() -> None:
    oracle = ScriptedOracle(Rejection("no tables described"))
    task = ComponentTask(identity="orders.sql", expected=("t1",))

    result = await _decomposer(oracle, _reporter(), RecordingLogger(), rounds=5).run(
        task,
        OracleContext(source="schema.component", phase=Phase.SCHEMA),
        parse=_parse,
        render=_render,
        key=entry_name,
        dump=Entry.to_dict,
    )

    assert result.rounds == 1
    assert result.rejection == "no tables described"
    assert result.missing == ("t1",)


def test_component_task_accepts_each_name_once() -> None:
    task = ComponentTask(identity="c", expected=("a", "b", "a"))

    assert task.expected == ("a", "b")
    assert task.accept([Entry("a", 1), Entry("x", 1), Entry("a", 2)], entry_name) == ("a", "x")
    assert task.remaining == ("b",)
    assert [entry.name for entry in task.entities()] == ["a", "x"]
    with pytest.raises(ValueError, match="identity"):
        ComponentTask(identity=" ", expected=())


def test_coverage_tracker_aggregates_components() -> None:
    tasks = [
        ComponentTask(identity="users.sql", expected=("users", "roles")),
        ComponentTask(identity="orders.sql", expected=("orders",)),
    ]
    tracker = CoverageTracker(tasks)
    tasks[0].accept([Entry("users"), Entry("extra")], entry_name)

    assert tracker.expected_total == 3
    assert tracker.produced_total == 1
    assert tracker.missing() == {"users.sql": ("roles",), "orders.sql": ("orders",)}
    assert not tracker.complete
    assert tracker.counter("tables").to_dict() == {
        "label": "tables",
        "completed": 1,
        "total": 3,
    }
    with pytest.raises(ValueError, match="duplicate component"):
        tracker.add(ComponentTask(identity="users.sql", expected=()))
