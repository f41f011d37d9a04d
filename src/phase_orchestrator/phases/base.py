"""Shared phase orchestrator framework.

Every phase runs the same envelope: gate check, ``PhaseStarted``, the
phase-specific ``_execute``, then an exclusive commit into ``PipelineState``
and ``PhaseCompleted`` carrying the full artifact. Phase subclasses only
decide how the work is decomposed and which loops run.
"""

from __future__ import annotations

import abc
import time
from collections.abc import Awaitable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

import structlog

from phase_orchestrator.control_plane.budgets import (
    BudgetSettings,
    ConcurrencySettings,
    FailurePolicy,
    LoopKind,
    PolicySettings,
)
from phase_orchestrator.control_plane.gate import GateDecision, PhaseDependencyGate
from phase_orchestrator.control_plane.gvc import GenerateValidateCorrectLoop
from phase_orchestrator.control_plane.review import SemanticReviewPass
from phase_orchestrator.control_plane.state import PipelineState
from phase_orchestrator.domain.errors import (
    CandidateFormatError,
    PipelineError,
    StaleDependency,
    ValidatorException,
)
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import (
    Artifact,
    Diagnostic,
    FileSet,
    JSONValue,
    Phase,
    StrEnum,
    ValidationResult,
    ValidationStatus,
)
from phase_orchestrator.observability.logging import correlation_scope
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.synthesis_plane.context import InstructionRenderer, OracleContext
from phase_orchestrator.synthesis_plane.decomposer import ComponentDecomposer
from phase_orchestrator.synthesis_plane.merge import IdentityNormalizer
from phase_orchestrator.synthesis_plane.oracle import Oracle
from phase_orchestrator.utils.concurrency import BoundedSemaphore, gather_all
from phase_orchestrator.verification_plane.validator import Validator, ValidatorSet, run_validator

T = TypeVar("T")


@dataclass(slots=True)
class PipelineContext:
    """Explicitly constructed dependencies owned by one pipeline run."""

    state: PipelineState
    oracle: Oracle
    validators: ValidatorSet
    reporter: ProgressReporter
    reviewer: Oracle | None = None
    budgets: BudgetSettings = field(default_factory=BudgetSettings)
    concurrency: ConcurrencySettings = field(default_factory=ConcurrencySettings)
    policies: PolicySettings = field(default_factory=PolicySettings)
    gate: PhaseDependencyGate = field(default_factory=PhaseDependencyGate)
    renderer: InstructionRenderer = field(default_factory=InstructionRenderer)
    semaphore: BoundedSemaphore | None = None
    normalize: IdentityNormalizer | None = None

    def loop(
        self,
        phase: Phase,
        step: int,
        kind: LoopKind,
        validator: Validator | None,
        *,
        policy: FailurePolicy | None = None,
    ) -> GenerateValidateCorrectLoop:
        return GenerateValidateCorrectLoop(
            self.oracle,
            validator,
            reporter=self.reporter,
            phase=phase,
            step=step,
            policy=policy if policy is not None else self.policies.for_loop(kind),
        )

    def decomposer(
        self,
        loop: GenerateValidateCorrectLoop,
        phase: Phase,
        step: int,
    ) -> ComponentDecomposer:
        return ComponentDecomposer(
            loop,
            reporter=self.reporter,
            phase=phase,
            step=step,
            coverage_rounds=self.budgets.coverage_rounds,
            correction_retries=self.budgets.correction_retries,
        )

    def review_pass(self, phase: Phase, step: int) -> SemanticReviewPass | None:
        if self.reviewer is None:
            return None
        return SemanticReviewPass(
            self.reviewer,
            reporter=self.reporter,
            phase=phase,
            step=step,
            rounds=self.budgets.review_rounds,
        )


class PhaseStatus(StrEnum):
    COMMITTED = "committed"
    BLOCKED = "blocked"
    REJECTED = "rejected"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class PhaseDraft:
    """What ``_execute`` hands back before the envelope commits it."""

    payload: dict[str, JSONValue] = field(default_factory=dict)
    compiled: ValidationResult = field(default_factory=ValidationResult.success)
    complete: bool = True
    rejection: str | None = None
    failure: PipelineError | None = None


@dataclass(frozen=True, slots=True)
class PhaseResult:
    """Distinguishable outcome of one phase run.

    Only ``COMMITTED`` is a usable artifact. ``INCOMPLETE`` and ``FAILED``
    artifacts are committed for inspection but the gate blocks downstream
    phases on them.
    """

    phase: Phase
    status: PhaseStatus
    step: int | None
    artifact: Artifact | None = None
    decision: GateDecision | None = None
    failure: PipelineError | None = None
    rejection: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is PhaseStatus.COMMITTED

    def raise_for_status(self) -> Artifact:
        """Return the committed artifact or raise the error describing why not."""
        if self.status is PhaseStatus.COMMITTED and self.artifact is not None:
            return self.artifact
        if self.failure is not None:
            raise self.failure
        if self.decision is not None and self.decision.blocked:
            raise self.decision.as_error()
        detail = self.rejection or self.status.value
        raise PipelineError(f"phase did not produce an artifact: {detail}", phase=self.phase)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "step": self.step,
            "artifact_id": None if self.artifact is None else self.artifact.artifact_id,
            "decision": None if self.decision is None else self.decision.to_dict(),
            "failure": None if self.failure is None else self.failure.code,
            "rejection": self.rejection,
            "elapsed_seconds": self.elapsed_seconds,
        }


class PhaseOrchestrator(abc.ABC):
    """Gate, run, and commit one phase."""

    phase: ClassVar[Phase]

    def __init__(self, pipeline: PipelineContext, *, logger: Any | None = None) -> None:
        self.pipeline = pipeline
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def reporter(self) -> ProgressReporter:
        return self.pipeline.reporter

    def resolve_step(self) -> int:
        step = self.pipeline.state.requirements_step
        if step is None:
            raise StaleDependency("requirements have not been produced", phase=self.phase)
        return step

    async def run(self, **inputs: Any) -> PhaseResult:
        state = self.pipeline.state
        decision = self.pipeline.gate.check(state, self.phase)
        if decision.blocked:
            await self.reporter.emit(
                EventType.PHASE_BLOCKED,
                decision.to_dict(),
                phase=self.phase,
                step=state.requirements_step,
            )
            return PhaseResult(
                phase=self.phase,
                status=PhaseStatus.BLOCKED,
                step=state.requirements_step,
                decision=decision,
                failure=decision.as_error(),
            )

        step = self.resolve_step()
        started = time.monotonic()
        with correlation_scope(phase=self.phase, step=step):
            await self.reporter.emit(EventType.PHASE_STARTED, {}, phase=self.phase, step=step)
            try:
                draft = await self._execute(step, **inputs)
            except PipelineError as exc:
                await self.reporter.emit(
                    EventType.PHASE_FAILED,
                    {"code": exc.code, "error": str(exc)},
                    phase=self.phase,
                    step=step,
                )
                raise
            elapsed = time.monotonic() - started
            self.reporter.observe("phase_seconds", elapsed, phase=self.phase)

            if draft.rejection is not None:
                await self.reporter.emit(
                    EventType.PHASE_REJECTED,
                    {"reason": draft.rejection},
                    phase=self.phase,
                    step=step,
                )
                return PhaseResult(
                    phase=self.phase,
                    status=PhaseStatus.REJECTED,
                    step=step,
                    decision=decision,
                    rejection=draft.rejection,
                    elapsed_seconds=elapsed,
                )

            return await self._commit(draft, step, decision, elapsed)

    async def _commit(
        self,
        draft: PhaseDraft,
        step: int,
        decision: GateDecision,
        elapsed: float,
    ) -> PhaseResult:
        artifact = Artifact(
            phase=self.phase,
            step=step,
            payload=draft.payload,
            compiled=draft.compiled,
            complete=draft.complete,
        )
        try:
            await self.pipeline.state.commit(artifact)
        except StaleDependency as exc:
            await self.reporter.emit(
                EventType.PHASE_FAILED,
                {"code": exc.code, "error": str(exc)},
                phase=self.phase,
                step=step,
            )
            return PhaseResult(
                phase=self.phase,
                status=PhaseStatus.STALE,
                step=step,
                decision=decision,
                failure=exc,
                elapsed_seconds=elapsed,
            )

        if not artifact.compiled_ok:
            status = PhaseStatus.FAILED
        elif not artifact.complete:
            status = PhaseStatus.INCOMPLETE
        else:
            status = PhaseStatus.COMMITTED
        await self.reporter.emit(
            EventType.PHASE_COMPLETED,
            {
                "status": status.value,
                "elapsed_seconds": round(elapsed, 6),
                "artifact": artifact.to_dict(),
                "failure": None if draft.failure is None else draft.failure.code,
            },
            phase=self.phase,
            step=step,
        )
        self._logger.info(
            "phase_committed",
            phase=self.phase.value,
            step=step,
            status=status.value,
            artifact_id=artifact.artifact_id,
            elapsed_seconds=elapsed,
        )
        return PhaseResult(
            phase=self.phase,
            status=status,
            step=step,
            artifact=artifact,
            decision=decision,
            failure=draft.failure,
            elapsed_seconds=elapsed,
        )

    def loop(
        self,
        step: int,
        kind: LoopKind,
        validator: Validator | None = None,
        *,
        policy: FailurePolicy | None = None,
    ) -> GenerateValidateCorrectLoop:
        return self.pipeline.loop(self.phase, step, kind, validator, policy=policy)

    async def gather(self, coroutines: Iterable[Awaitable[T]]) -> list[T]:
        """Run branches concurrently and join all of them before returning."""
        return await gather_all(list(coroutines), semaphore=self.pipeline.semaphore)

    async def compile_files(
        self,
        validator: Validator | None,
        files: FileSet,
        *,
        step: int,
        kind: LoopKind,
        label: str,
    ) -> ValidationResult:
        """One aggregate compile outside a GVC loop, honoring the loop kind's policy."""
        if validator is None:
            return ValidationResult.success()
        result = await run_validator(validator, files)
        self.reporter.count("validator_calls", phase=self.phase)
        await self.reporter.emit(
            EventType.CANDIDATE_VALIDATED,
            {
                "label": label,
                "attempt": 0,
                "status": result.status.value,
                "diagnostics": [item.to_dict() for item in result.diagnostics],
                "cause": result.cause,
            },
            phase=self.phase,
            step=step,
        )
        if result.status is not ValidationStatus.EXCEPTION:
            return result
        if self.pipeline.policies.for_loop(kind) is FailurePolicy.ABORT_ON_EXCEPTION:
            raise ValidatorException(
                f"{label}: validator exception: {result.cause}", phase=self.phase
            )
        return ValidationResult.failure(
            [
                Diagnostic(
                    location="<validator>",
                    message=result.cause or "validator exception",
                    code="validator_exception",
                )
            ]
        )

    def upstream_payload(self, phase: Phase) -> dict[str, JSONValue]:
        artifact = self.pipeline.state.get(phase)
        if artifact is None:
            raise StaleDependency(f"{phase.value} artifact does not exist", phase=self.phase)
        return artifact.payload

    def context(self, source: str, step: int, **variables: object) -> OracleContext:
        """Fresh context for a call site: its instruction plus every upstream artifact."""
        context = OracleContext(source=source, phase=self.phase, metadata={"step": step})
        upstream = self.phase.upstream
        chain: list[Phase] = []
        while upstream is not None:
            chain.append(upstream)
            upstream = upstream.upstream
        for phase in reversed(chain):
            artifact = self.pipeline.state.get(phase)
            if artifact is not None:
                context = context.with_artifact(phase.value, artifact.payload)
        return context.with_instruction(self.pipeline.renderer.render(source, **variables))

    @abc.abstractmethod
    async def _execute(self, step: int, **inputs: Any) -> PhaseDraft:
        """Produce this phase's payload and compiled result."""


def failed_compile(
    diagnostics: Iterable[Diagnostic], failure: PipelineError | None = None
) -> ValidationResult:
    """Failure result for a loop that gave up.

    A budget spent entirely on oracle faults leaves no diagnostics, so one
    ``no_candidate`` diagnostic stands in for them.
    """
    items = tuple(diagnostics)
    if not items:
        message = failure.detail if failure is not None else "no candidate was produced"
        items = (Diagnostic(location="<oracle>", message=message, code="no_candidate"),)
    return ValidationResult.failure(items)


def expect_object(candidate: JSONValue, source: str) -> dict[str, JSONValue]:
    if not isinstance(candidate, dict):
        raise CandidateFormatError(f"{source}: candidate must be an object")
    return candidate


def expect_list(data: Mapping[str, JSONValue], key: str, source: str) -> list[JSONValue]:
    value = data.get(key)
    if not isinstance(value, list):
        raise CandidateFormatError(f"{source}: {key!r} must be a list")
    return value


def expect_text(data: Mapping[str, JSONValue], key: str, source: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise CandidateFormatError(f"{source}: {key!r} must be a non-empty string")
    return value.strip()


def expect_text_list(values: Iterable[JSONValue], source: str) -> list[str]:
    result: list[str] = []
    for item in values:
        if not isinstance(item, str) or not item.strip():
            raise CandidateFormatError(f"{source}: expected non-empty strings")
        result.append(item.strip())
    return result


__all__ = [
    "PhaseDraft",
    "PhaseOrchestrator",
    "PhaseResult",
    "PhaseStatus",
    "PipelineContext",
    "expect_list",
    "expect_object",
    "expect_text",
    "expect_text_list",
    "failed_compile",
]
