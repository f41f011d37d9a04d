"""
phase-orchestrator — unit tests for the generate-validate-correct loop

File: tests/unit/control_plane/test_gvc_loop.py
Last updated: 2026-10-19

Purpose
- Pin down the call-count, correction and failure-policy semantics every phase relies on.

What this test file should cover
- One oracle call when the first candidate validates.
- ``budget + 1`` calls when the validator never accepts.
- Append-only correction history and feedback rendering.
- Rejections, oracle faults and validator exceptions under both failure policies.

Functional requirements
- Offline and deterministic; oracles and validators are in-test doubles.

Non-functional requirements
- No sleep-based synchronization.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from phase_orchestrator.control_plane.budgets import FailurePolicy, RetryBudget
from phase_orchestrator.control_plane.gvc import (
    GenerateValidateCorrectLoop,
    LoopOutcome,
    LoopStatus,
)
from phase_orchestrator.domain.errors import (
    BudgetExhausted,
    CandidateFormatError,
    OracleException,
    ValidatorException,
)
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import Diagnostic, FileSet, Phase, ValidationResult
from phase_orchestrator.observability.events import EventBus
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.synthesis_plane.context import ContextEntryKind, OracleContext
from phase_orchestrator.synthesis_plane.oracle import Proposal, Rejection


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


class ScriptedOracle:
    """Plays replies in order; the final reply repeats once the script runs out."""

    def __init__(self, *replies: object) -> None:
        self._replies = list(replies)
        self.contexts: list[OracleContext] = []

    async def propose(self, context: OracleContext) -> object:
        self.contexts.append(context)
        reply = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply


class ScriptedValidator:
    def __init__(self, *results: ValidationResult | Exception) -> None:
        self._results = list(results)
        self.calls: list[dict[str, str]] = []

    async def validate(self, files: FileSet) -> ValidationResult:
        self.calls.append(dict(files))
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result


def _failure(message: str = "unexpected token", code: str = "syntax") -> ValidationResult:
    return ValidationResult.failure(
        [Diagnostic(location="main.txt", message=message, code=code, line=3)]
    )


def _proposal(content: str) -> Proposal:
    return Proposal({"content": content})


def _parse(candidate: object) -> str:
    assert isinstance(candidate, dict)
    return str(candidate["content"])


def _render(content: str) -> FileSet:
    return {"main.txt": content}


def _loop(
    oracle: ScriptedOracle,
    validator: ScriptedValidator | None,
    *,
    policy: FailurePolicy = FailurePolicy.CONSUME_BUDGET,
) -> tuple[GenerateValidateCorrectLoop, ProgressReporter, RecordingLogger]:
    logger = RecordingLogger()
    reporter = ProgressReporter(EventBus(buffer_size=1024), logger=logger)
    loop = GenerateValidateCorrectLoop(
        oracle,
        validator,
        reporter=reporter,
        phase=Phase.SCHEMA,
        step=0,
        policy=policy,
        logger=logger,
    )
    return loop, reporter, logger


def _context() -> OracleContext:
    return OracleContext(source="schema.component", phase=Phase.SCHEMA).with_instruction(
        "write the schema"
    )


async def _run(loop: GenerateValidateCorrectLoop, budget: int) -> LoopOutcome[str]:
    return await loop.run(
        _context(), RetryBudget(budget), parse=_parse, render=_render, label="users.schema"
    )


async def test_first_valid_candidate_costs_one_oracle_call() -> None:
    oracle = ScriptedOracle(_proposal("table users"))
    validator = ScriptedValidator(ValidationResult.success(compiled={"ok": True}))
    loop, reporter, logger = _loop(oracle, validator)

    outcome = await _run(loop, 4)

    assert outcome.status is LoopStatus.SUCCESS
    assert outcome.candidate == "table users"
    assert outcome.attempts == 1
    assert outcome.compiled == {"ok": True}
    assert len(oracle.contexts) == 1
    assert validator.calls == [{"main.txt": "table users"}]
    assert [event.event_type for event in reporter.bus.replay()] == [
        EventType.CANDIDATE_PROPOSED,
        EventType.CANDIDATE_VALIDATED,
    ]
    assert reporter.metrics.get_counter("oracle_calls", labels={"phase": "schema"}) == 1.0
    assert logger.events[-1][0] == "control_plane_gvc_success"


async def test_always_failing_validator_calls_oracle_budget_plus_one_times() -> None:
    oracle = ScriptedOracle(_proposal("a"), _proposal("b"), _proposal("c"), _proposal("d"))
    validator = ScriptedValidator(_failure())
    loop, reporter, _ = _loop(oracle, validator)

    outcome = await _run(loop, 3)

    assert outcome.status is LoopStatus.EXHAUSTED
    assert len(oracle.contexts) == 4
    assert outcome.attempts == 4
    assert outcome.candidate == "d"
    assert [item.message for item in outcome.diagnostics] == ["unexpected token"]
    assert isinstance(outcome.failure, BudgetExhausted)
    assert outcome.failure.attempts == 4
    assert outcome.failure.phase is Phase.SCHEMA

    corrections = reporter.bus.replay(event_type=EventType.CORRECTION_REQUESTED)
    assert [event.payload["remaining"] for event in corrections] == [2, 1, 0]
    exhausted = reporter.bus.replay(event_type=EventType.BUDGET_EXHAUSTED)
    assert len(exhausted) == 1
    assert exhausted[0].payload["has_candidate"] is True


async def test_zero_budget_means_exactly_one_attempt() -> None:
    oracle = ScriptedOracle(_proposal("only"))
    loop, _, _ = _loop(oracle, ScriptedValidator(_failure()))

    outcome = await _run(loop, 0)

    assert outcome.status is LoopStatus.EXHAUSTED
    assert len(oracle.contexts) == 1


@settings(max_examples=12, deadline=None)
@given(budget=st.integers(min_value=0, max_value=6))
def test_call_count_matches_budget_for_any_limit(budget: int) -> None:
    oracle = ScriptedOracle(_proposal("never valid"))
    loop, _, _ = _loop(oracle, ScriptedValidator(_failure()))

    outcome = asyncio.run(_run(loop, budget))

    assert len(oracle.contexts) == budget + 1
    assert outcome.attempts == budget + 1


async def test_correction_context_is_append_only_and_carries_feedback() -> None:
    oracle = ScriptedOracle(_proposal("broken"), _proposal("still broken"), _proposal("fixed"))
    validator = ScriptedValidator(
        _failure(), _failure("missing column", "missing"), ValidationResult.success()
    )
    loop, _, _ = _loop(oracle, validator)

    outcome = await _run(loop, 4)

    assert outcome.succeeded
    assert outcome.attempts == 3
    first, second, third = oracle.contexts
    assert first.count(ContextEntryKind.CANDIDATE) == 0
    assert second.entries[: len(first.entries)] == first.entries
    assert third.entries[: len(second.entries)] == second.entries
    assert third.count(ContextEntryKind.CANDIDATE) == 2

    previous = second.latest(ContextEntryKind.CANDIDATE)
    assert previous is not None
    assert previous.data == {"content": "broken"}
    feedback = third.latest(ContextEntryKind.DIAGNOSTICS)
    assert feedback is not None
    assert "missing column" in feedback.text
    assert "hint: Add the missing entities" in feedback.text
    assert feedback.data == [
        {
            "location": "main.txt",
            "message": "missing column",
            "code": "missing",
            "severity": "error",
            "entity": None,
            "line": 3,
            "column": None,
        }
    ]


async def test_rejection_ends_the_loop_without_validation() -> None:
    oracle = ScriptedOracle(Rejection("which database engine?"))
    validator = ScriptedValidator(ValidationResult.success())
    loop, reporter, _ = _loop(oracle, validator)

    outcome = await _run(loop, 4)

    assert outcome.status is LoopStatus.REJECTED
    assert outcome.rejected
    assert outcome.rejection == "which database engine?"
    assert outcome.candidate is None
    assert validator.calls == []
    rejected = reporter.bus.replay(event_type=EventType.CANDIDATE_REJECTED)
    assert rejected[0].payload["reason"] == "which database engine?"


async def test_missing_validator_accepts_every_candidate() -> None:
    oracle = ScriptedOracle(_proposal("plan"))
    loop, _, _ = _loop(oracle, None)

    outcome = await _run(loop, 2)

    assert outcome.succeeded
    assert outcome.attempts == 1


async def test_oracle_fault_consumes_budget_under_consume_policy() -> None:
    oracle = ScriptedOracle(OracleException("connection reset"), _proposal("recovered"))
    loop, reporter, _ = _loop(oracle, ScriptedValidator(ValidationResult.success()))

    outcome = await _run(loop, 2)

    assert outcome.succeeded
    assert outcome.attempts == 2
    assert [record.status for record in outcome.history] == ["oracle_exception", "success"]
    note = oracle.contexts[1].latest(ContextEntryKind.NOTE)
    assert note is not None
    assert "connection reset" in note.text
    assert reporter.metrics.get_counter("oracle_calls", labels={"phase": "schema"}) == 2.0


async def test_oracle_faults_exhaust_budget_without_a_candidate() -> None:
    oracle = ScriptedOracle(OracleException("down"))
    loop, _, _ = _loop(oracle, ScriptedValidator(ValidationResult.success()))

    outcome = await _run(loop, 1)

    assert outcome.status is LoopStatus.EXHAUSTED
    assert outcome.candidate is None
    assert outcome.diagnostics == ()
    assert len(oracle.contexts) == 2


async def test_oracle_fault_propagates_under_abort_policy() -> None:
    oracle = ScriptedOracle(OracleException("quota exceeded"))
    loop, reporter, _ = _loop(
        oracle,
        ScriptedValidator(ValidationResult.success()),
        policy=FailurePolicy.ABORT_ON_EXCEPTION,
    )

    with pytest.raises(OracleException, match="quota exceeded"):
        await _run(loop, 3)

    assert len(oracle.contexts) == 1
    assert reporter.bus.replay(event_type=EventType.CANDIDATE_REJECTED)[0].payload["reason"] == (
        "oracle_exception"
    )


async def test_validator_exception_aborts_under_abort_policy() -> None:
    oracle = ScriptedOracle(_proposal("code"))
    validator = ScriptedValidator(RuntimeError("compiler crashed"))
    loop, _, _ = _loop(oracle, validator, policy=FailurePolicy.ABORT_ON_EXCEPTION)

    with pytest.raises(ValidatorException, match="compiler crashed"):
        await _run(loop, 3)


async def test_validator_exception_counts_as_failure_under_consume_policy() -> None:
    oracle = ScriptedOracle(_proposal("v1"), _proposal("v2"))
    validator = ScriptedValidator(RuntimeError("compiler crashed"), ValidationResult.success())
    loop, _, _ = _loop(oracle, validator)

    outcome = await _run(loop, 3)

    assert outcome.succeeded
    assert outcome.history[0].diagnostics[0].code == "validator_exception"
    assert "compiler crashed" in outcome.history[0].diagnostics[0].message


async def test_non_reply_from_oracle_is_a_format_error() -> None:
    oracle = ScriptedOracle({"content": "raw dict"})
    loop, _, _ = _loop(oracle, None)

    with pytest.raises(CandidateFormatError, match="expected Proposal or Rejection"):
        await _run(loop, 3)


async def test_candidate_rendering_no_files_is_a_format_error() -> None:
    oracle = ScriptedOracle(_proposal("ignored"))
    logger = RecordingLogger()
    loop = GenerateValidateCorrectLoop(
        oracle,
        None,
        reporter=ProgressReporter(EventBus(buffer_size=16), logger=logger),
        phase=Phase.TEST,
        step=0,
        logger=logger,
    )

    with pytest.raises(CandidateFormatError, match="rendered no files"):
        await loop.run(_context(), RetryBudget(1), parse=_parse, render=lambda _: {}, label="t")
