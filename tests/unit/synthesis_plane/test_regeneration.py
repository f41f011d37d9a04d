"""
phase-orchestrator — unit tests for selective regeneration

File: tests/unit/synthesis_plane/test_regeneration.py
Last updated: 2026-10-19

Purpose
- Validate that only units named by aggregate diagnostics are regenerated.

What this test file should cover
- Frozen units are carried byte-identical into the next compile.
- Each targeted unit sees its own accumulated failure history.
- Round events report targets, frozen units and changed files.
- Unattributable diagnostics and spent budgets end the loop with BudgetExhausted.
- Oracle faults during regeneration follow the failure policy.

Functional requirements
- Offline and deterministic; validators are in-test doubles.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

import pytest

from phase_orchestrator.control_plane.budgets import FailurePolicy
from phase_orchestrator.domain.errors import OracleException, ValidatorException
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import Diagnostic, Phase, ValidationResult
from phase_orchestrator.observability.events import EventBus
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.synthesis_plane.regeneration import FailureHistory, SelectiveRegenerator
from phase_orchestrator.verification_plane.validator import CallableValidator


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


class BrokenMarkerValidator:
    """Fails every file whose body contains ``broken``; records what it saw."""

    def __init__(self) -> None:
        self.seen: list[dict[str, str]] = []

    async def validate(self, files: Mapping[str, str]) -> ValidationResult:
        self.seen.append(dict(files))
        diagnostics = [
            Diagnostic(
                location=location,
                message="does not compile",
                entity=location.removeprefix("functions/"),
            )
            for location, body in sorted(files.items())
            if "broken" in body
        ]
        if diagnostics:
            return ValidationResult.failure(diagnostics)
        return ValidationResult.success()


def _render(units: Mapping[str, str]) -> dict[str, str]:
    return {f"functions/{name}": body for name, body in units.items()}


def _regenerator(
    validator: object,
    reporter: ProgressReporter,
    *,
    rounds: int = 3,
    policy: FailurePolicy = FailurePolicy.ABORT_ON_EXCEPTION,
) -> SelectiveRegenerator[str]:
    return SelectiveRegenerator(
        validator,  # type: ignore[arg-type]
        reporter=reporter,
        phase=Phase.IMPLEMENTATION,
        step=0,
        rounds=rounds,
        policy=policy,
        logger=RecordingLogger(),
    )


def _reporter() -> ProgressReporter:
    return ProgressReporter(EventBus(buffer_size=256), logger=RecordingLogger())


async def test_only_referenced_unit_is_regenerated_and_others_stay_identical() -> None:
    validator = BrokenMarkerValidator()
    reporter = _reporter()
    calls: list[tuple[str, str, FailureHistory]] = []

    async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
        calls.append((unit, previous, history))
        return previous.replace("broken", "fixed")

    result = await _regenerator(validator, reporter).run(
        {"a": "def a(): ok", "b": "def b(): broken"},
        render=_render,
        regenerate=regenerate,
        label="functions",
    )

    assert result.succeeded
    assert result.rounds == 2
    assert result.regenerated == (("b",),)
    assert result.units == {"a": "def a(): ok", "b": "def b(): fixed"}
    assert [unit for unit, _, _ in calls] == ["b"]
    assert len(calls[0][2]) == 1
    assert calls[0][2][0][0].entity == "b"
    assert validator.seen[1]["functions/a"] == validator.seen[0]["functions/a"]
    assert set(result.history) == {"b"}

    rounds = reporter.bus.replay(event_type=EventType.REGENERATION_ROUND)
    assert [event.payload["targets"] for event in rounds] == [["b"], []]
    assert rounds[0].payload["frozen"] == ["a"]
    assert rounds[0].payload["changed"] == []
    assert rounds[1].payload["changed"] == ["functions/b"]
    assert reporter.metrics.counter_by_phase("regenerated_units") == {"implementation": 1.0}


async def test_failure_history_accumulates_across_rounds() -> None:
    validator = BrokenMarkerValidator()
    histories: list[int] = []

    async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
        histories.append(len(history))
        return previous if len(history) < 2 else previous.replace("broken", "fixed")

    result = await _regenerator(validator, _reporter()).run(
        {"b": "broken"}, render=_render, regenerate=regenerate, label="functions"
    )

    assert result.succeeded
    assert histories == [1, 2]
    assert result.regenerated == (("b",), ("b",))


async def test_budget_exhaustion_returns_failure_with_last_diagnostics() -> None:
    reporter = _reporter()

    async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
        return previous

    result = await _regenerator(BrokenMarkerValidator(), reporter, rounds=1).run(
        {"b": "broken"}, render=_render, regenerate=regenerate, label="functions"
    )

    assert not result.succeeded
    assert result.rounds == 2
    assert result.failure is not None
    assert result.failure.attempts == 2
    assert [item.entity for item in result.compiled.diagnostics] == ["b"]
    exhausted = reporter.bus.replay(event_type=EventType.BUDGET_EXHAUSTED)
    assert exhausted[-1].payload["unattributed"] is False


async def test_unattributed_diagnostics_stop_without_regenerating() -> None:
    async def always_fails(files: Mapping[str, str]) -> ValidationResult:
        return ValidationResult.failure([Diagnostic(location="build.log", message="linker")])

    async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
        raise AssertionError("no unit is referenced")

    reporter = _reporter()
    result = await _regenerator(CallableValidator(always_fails), reporter).run(
        {"a": "ok"}, render=_render, regenerate=regenerate, label="functions"
    )

    assert result.rounds == 1
    assert result.failure is not None
    exhausted = reporter.bus.replay(event_type=EventType.BUDGET_EXHAUSTED)
    assert exhausted[-1].payload["unattributed"] is True


async def test_oracle_fault_keeps_previous_unit_under_consume_policy() -> None:
    async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
        raise OracleException("provider down")

    reporter = _reporter()
    result = await _regenerator(
        BrokenMarkerValidator(), reporter, rounds=1, policy=FailurePolicy.CONSUME_BUDGET
    ).run({"b": "broken"}, render=_render, regenerate=regenerate, label="functions")

    assert result.units == {"b": "broken"}
    dropped = reporter.bus.replay(event_type=EventType.UNIT_DROPPED)
    assert dropped[0].payload["unit"] == "b"
    assert dropped[0].payload["kept"] == "previous"


async def test_oracle_fault_propagates_under_abort_policy() -> None:
    async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
        raise OracleException("provider down")

    with pytest.raises(OracleException):
        await _regenerator(BrokenMarkerValidator(), _reporter()).run(
            {"b": "broken"}, render=_render, regenerate=regenerate, label="functions"
        )


async def test_validator_exception_aborts_or_becomes_a_diagnostic() -> None:
    async def explodes(files: Mapping[str, str]) -> ValidationResult:
        raise RuntimeError("compiler crashed")

    async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
        return previous

    with pytest.raises(ValidatorException, match="compiler crashed"):
        await _regenerator(CallableValidator(explodes), _reporter()).run(
            {"a": "ok"}, render=_render, regenerate=regenerate, label="functions"
        )

    result = await _regenerator(
        CallableValidator(explodes), _reporter(), policy=FailurePolicy.CONSUME_BUDGET
    ).run({"a": "ok"}, render=_render, regenerate=regenerate, label="functions")
    assert result.compiled.diagnostics[0].code == "validator_exception"
    assert result.failure is not None
