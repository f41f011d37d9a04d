"""Unit tests for the test phase: scenario planning, per-file correction, dropped files."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from phase_orchestrator.control_plane.budgets import (
    BudgetSettings,
    FailurePolicy,
    LoopKind,
    PolicySettings,
)
from phase_orchestrator.control_plane.state import PipelineState
from phase_orchestrator.domain.errors import (
    CandidateFormatError,
    DecompositionIncomplete,
    OracleException,
)
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import (
    Artifact,
    Diagnostic,
    FileSet,
    Phase,
    ValidationResult,
)
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.phases import PhaseStatus, PipelineContext
from phase_orchestrator.phases.testsuite import TestSuiteOrchestrator, parse_scenarios
from phase_orchestrator.synthesis_plane.context import ContextEntryKind, OracleContext
from phase_orchestrator.synthesis_plane.oracle import OracleReply, Proposal
from phase_orchestrator.verification_plane.validator import CallableValidator, ValidatorSet

Handler = Callable[[OracleContext], OracleReply]

SCENARIOS = {
    "scenarios": [
        {"endpoint": "GET /users", "filename": "test_users.py"},
        {"endpoint": "POST /login", "filename": "test_login.py"},
        {"endpoint": "DELETE /unknown", "filename": "test_unknown.py"},
    ]
}


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


class RoutedOracle:
    def __init__(self, handlers: dict[str, Handler]) -> None:
        self.handlers = handlers
        self.calls: list[OracleContext] = []

    async def propose(self, context: OracleContext) -> OracleReply:
        self.calls.append(context)
        handler = self.handlers.get(context.source)
        if handler is None:
            raise AssertionError(f"unexpected oracle call {context.source}")
        return handler(context)

    def writes(self, filename: str) -> int:
        return sum(
            1
            for context in self.calls
            if context.source == "test.write" and _filename(context) == filename
        )


def _filename(context: OracleContext) -> str:
    entry = context.latest(ContextEntryKind.INSTRUCTION)
    assert entry is not None
    return entry.text.removeprefix("Write test file ").split(" for ")[0]


def _writer(contents: dict[str, list[str]]) -> Handler:
    """Per test file, the content returned on each successive write."""

    def handler(context: OracleContext) -> OracleReply:
        queue = contents[_filename(context)]
        return Proposal({"content": queue.pop(0) if len(queue) > 1 else queue[0]})

    return handler


async def _compile_tests(files: FileSet) -> ValidationResult:
    broken = [name for name, content in sorted(files.items()) if "broken" in content]
    if broken:
        return ValidationResult.failure(
            [Diagnostic(location=name, message="assertion never runs") for name in broken]
        )
    return ValidationResult.success({"tests": len(files)})


async def _passing(_files: FileSet) -> ValidationResult:
    return ValidationResult.success()


def _pipeline(
    oracle: RoutedOracle,
    *,
    budgets: BudgetSettings | None = None,
    policies: PolicySettings | None = None,
    logger: RecordingLogger | None = None,
) -> PipelineContext:
    state = PipelineState(logger=RecordingLogger())
    state.restore(
        Artifact(
            phase=Phase.REQUIREMENTS,
            step=0,
            payload={"prefix": "shop", "roles": []},
            compiled=ValidationResult.success(),
        )
    )
    state.restore(Artifact(Phase.SCHEMA, 0, {"files": []}, ValidationResult.success()))
    state.restore(
        Artifact(
            phase=Phase.INTERFACE,
            step=0,
            payload={
                "operations": [
                    {"method": "GET", "path": "/users"},
                    {"method": "POST", "path": "/login"},
                ],
                "schemas": [],
            },
            compiled=ValidationResult.success(),
        )
    )
    passing = CallableValidator(_passing)
    return PipelineContext(
        state=state,
        oracle=oracle,
        validators=ValidatorSet(
            schema=passing,
            interface=passing,
            test=CallableValidator(_compile_tests),
            implementation=passing,
        ),
        reporter=ProgressReporter(logger=logger or RecordingLogger()),
        budgets=budgets if budgets is not None else BudgetSettings(),
        policies=policies if policies is not None else PolicySettings(),
    )


def _filenames(payload: object) -> list[str]:
    assert isinstance(payload, dict)
    return [item["filename"] for item in payload["files"]]


async def test_each_file_is_corrected_individually() -> None:
    oracle = RoutedOracle(
        {
            "test.scenarios": lambda _context: Proposal(SCENARIOS),
            "test.write": _writer(
                {
                    "test_users.py": ["def test_users(): ..."],
                    "test_login.py": ["broken", "def test_login(): ..."],
                }
            ),
        }
    )

    result = await TestSuiteOrchestrator(_pipeline(oracle), logger=RecordingLogger()).run()

    artifact = result.raise_for_status()
    assert _filenames(artifact.payload) == ["test_users.py", "test_login.py"]
    assert artifact.payload["dropped"] == []
    assert artifact.payload["uncovered"] == []
    assert artifact.compiled.compiled == {"tests": 2}
    assert oracle.writes("test_users.py") == 1
    assert oracle.writes("test_login.py") == 2


async def test_file_that_never_compiles_is_dropped() -> None:
    oracle = RoutedOracle(
        {
            "test.scenarios": lambda _context: Proposal(SCENARIOS),
            "test.write": _writer(
                {"test_users.py": ["def test_users(): ..."], "test_login.py": ["broken"]}
            ),
        }
    )
    logger = RecordingLogger()
    pipeline = _pipeline(oracle, budgets=BudgetSettings(test_correction_rounds=1))

    result = await TestSuiteOrchestrator(pipeline, logger=logger).run()

    assert result.status is PhaseStatus.INCOMPLETE
    assert isinstance(result.failure, DecompositionIncomplete)
    assert result.failure.missing == ("test_login.py",)
    assert result.artifact is not None
    assert _filenames(result.artifact.payload) == ["test_users.py"]
    assert result.artifact.payload["dropped"] == ["test_login.py"]
    assert result.artifact.compiled_ok
    assert oracle.writes("test_login.py") == 2
    (dropped,) = pipeline.reporter.bus.replay(event_type=EventType.UNIT_DROPPED)
    assert dropped.payload == {
        "unit": "test_login.py",
        "reason": "budget_exhausted",
        "error": None,
        "kept": None,
    }
    expected_log = {
        "phase": "test",
        "step": 0,
        "filename": "test_login.py",
        "reason": "budget_exhausted",
    }
    assert ("phase_test_file_dropped", expected_log) in logger.events


async def test_aborting_oracle_exception_drops_only_that_file() -> None:
    def write(context: OracleContext) -> OracleReply:
        if _filename(context) == "test_login.py":
            raise OracleException("context window exceeded")
        return Proposal({"content": "def test_users(): ..."})

    oracle = RoutedOracle(
        {"test.scenarios": lambda _context: Proposal(SCENARIOS), "test.write": write}
    )
    policies = PolicySettings(policies={LoopKind.TEST: FailurePolicy.ABORT_ON_EXCEPTION})
    pipeline = _pipeline(oracle, policies=policies)

    result = await TestSuiteOrchestrator(pipeline, logger=RecordingLogger()).run()

    assert result.status is PhaseStatus.INCOMPLETE
    (dropped,) = pipeline.reporter.bus.replay(event_type=EventType.UNIT_DROPPED)
    assert dropped.payload["reason"] == "oracle_exception"
    assert "context window exceeded" in str(dropped.payload["error"])
    assert oracle.writes("test_login.py") == 1
    (progress,) = pipeline.reporter.bus.replay(event_type=EventType.PROGRESS_UPDATED, limit=1)
    assert progress.payload["completed"] == progress.payload["total"] == 2


async def test_uncovered_operations_are_reported() -> None:
    scenarios = {"scenarios": [{"endpoint": "GET /users", "filename": "test_users.py"}]}
    oracle = RoutedOracle(
        {
            "test.scenarios": lambda _context: Proposal(scenarios),
            "test.write": _writer({"test_users.py": ["def test_users(): ..."]}),
        }
    )
    pipeline = _pipeline(oracle, budgets=BudgetSettings(coverage_rounds=0))

    result = await TestSuiteOrchestrator(pipeline, logger=RecordingLogger()).run()

    assert result.status is PhaseStatus.INCOMPLETE
    assert isinstance(result.failure, DecompositionIncomplete)
    assert result.artifact is not None
    assert result.artifact.payload["uncovered"] == ["POST /login"]


async def test_duplicate_test_filenames_fail_the_phase() -> None:
    scenarios = {
        "scenarios": [
            {"endpoint": "GET /users", "filename": "test_api.py"},
            {"endpoint": "POST /login", "filename": "test_api.py"},
        ]
    }
    oracle = RoutedOracle({"test.scenarios": lambda _context: Proposal(scenarios)})
    pipeline = _pipeline(oracle)

    with pytest.raises(CandidateFormatError, match="duplicate test filenames"):
        await TestSuiteOrchestrator(pipeline, logger=RecordingLogger()).run()

    assert pipeline.state.get(Phase.TEST) is None
    failed = pipeline.reporter.bus.replay(event_type=EventType.PHASE_FAILED)
    assert len(failed) == 1


def test_parse_scenarios_requires_endpoint_and_filename() -> None:
    with pytest.raises(CandidateFormatError):
        parse_scenarios({"scenarios": [{"endpoint": "GET /users"}]})
    assert parse_scenarios({"scenarios": []}) == []
