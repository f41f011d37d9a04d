"""Generate-Validate-Correct loop: the bounded retry engine every phase reuses.

``run`` calls the oracle, validates the candidate, and on diagnostics appends
``{candidate, diagnostics}`` to the context and tries again until the budget is
spent. With budget ``N`` and a validator that always fails, ``propose`` runs
``N + 1`` times and the loop returns the last candidate with its diagnostics.
Ordinary validation failure never raises; oracle faults and validator
``exception`` results follow the loop's ``FailurePolicy``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog

from phase_orchestrator.control_plane.budgets import BudgetTracker, FailurePolicy, RetryBudget
from phase_orchestrator.control_plane.feedback import FeedbackSynthesizer
from phase_orchestrator.domain.errors import (
    BudgetExhausted,
    CandidateFormatError,
    OracleException,
    ValidatorException,
)
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.ids import generate_attempt_id
from phase_orchestrator.domain.models import (
    Diagnostic,
    FileSet,
    JSONValue,
    Phase,
    StrEnum,
    ValidationResult,
    ValidationStatus,
)
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.synthesis_plane.context import OracleContext
from phase_orchestrator.synthesis_plane.oracle import Oracle, Rejection, ensure_reply
from phase_orchestrator.verification_plane.validator import Validator, run_validator

T = TypeVar("T")

ParseFn = Callable[[JSONValue], T]
RenderFn = Callable[[T], FileSet]


class LoopStatus(StrEnum):
    SUCCESS = "success"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    """One propose/validate round as it was reported."""

    attempt_id: str
    number: int
    status: str
    diagnostics: tuple[Diagnostic, ...] = ()
    error: str | None = None


@dataclass(frozen=True, slots=True)
class LoopOutcome(Generic[T]):
    """Result of one GVC run.

    ``exhausted`` outcomes keep the last candidate (possibly ``None`` when every
    attempt faulted) and its diagnostics; ``failure`` carries the matching
    ``BudgetExhausted`` for callers that want to raise.
    """

    status: LoopStatus
    candidate: T | None
    diagnostics: tuple[Diagnostic, ...]
    attempts: int
    context: OracleContext
    compiled: JSONValue = None
    rejection: str | None = None
    history: tuple[AttemptRecord, ...] = ()
    failure: BudgetExhausted | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is LoopStatus.SUCCESS

    @property
    def rejected(self) -> bool:
        return self.status is LoopStatus.REJECTED


class GenerateValidateCorrectLoop:
    """Bounded propose/validate/correct engine bound to one phase and step."""

    def __init__(
        self,
        oracle: Oracle,
        validator: Validator | None,
        *,
        reporter: ProgressReporter,
        phase: Phase,
        step: int,
        policy: FailurePolicy = FailurePolicy.CONSUME_BUDGET,
        feedback: FeedbackSynthesizer | None = None,
        tracker: BudgetTracker | None = None,
        logger: Any | None = None,
    ) -> None:
        self._oracle = oracle
        self._validator = validator
        self._reporter = reporter
        self._phase = Phase(phase)
        self._step = step
        self._policy = FailurePolicy(policy)
        self._feedback = feedback if feedback is not None else FeedbackSynthesizer()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._tracker = tracker if tracker is not None else BudgetTracker(logger=self._logger)

    @property
    def policy(self) -> FailurePolicy:
        return self._policy

    async def run(
        self,
        context: OracleContext,
        budget: RetryBudget,
        *,
        parse: ParseFn[T],
        render: RenderFn[T],
        label: str,
    ) -> LoopOutcome[T]:
        attempt = 0
        history: list[AttemptRecord] = []
        last_candidate: T | None = None
        last_diagnostics: tuple[Diagnostic, ...] = ()

        while True:
            attempt += 1
            attempt_id = generate_attempt_id()
            self._reporter.count("gvc_attempts", phase=self._phase)

            try:
                reply = ensure_reply(await self._oracle.propose(context), source=context.source)
            except CandidateFormatError:
                raise
            except OracleException as exc:
                history.append(
                    AttemptRecord(attempt_id, attempt, "oracle_exception", error=str(exc))
                )
                await self._emit(
                    EventType.CANDIDATE_REJECTED,
                    label=label,
                    attempt=attempt,
                    attempt_id=attempt_id,
                    source=context.source,
                    reason="oracle_exception",
                    error=str(exc),
                )
                if self._policy is FailurePolicy.ABORT_ON_EXCEPTION:
                    raise
                decision = self._tracker.decide(
                    budget,
                    label=label,
                    attempt=attempt,
                    phase=self._phase,
                    reason="oracle_exception",
                )
                if decision.should_stop:
                    return await self._exhausted(
                        context, label, attempt, last_candidate, last_diagnostics, history
                    )
                budget.consume()
                context = context.with_note(f"attempt {attempt} failed: {exc.detail}")
                continue
            finally:
                self._reporter.count("oracle_calls", phase=self._phase)

            self._reporter.record_usage(self._phase, reply.usage)

            if isinstance(reply, Rejection):
                history.append(AttemptRecord(attempt_id, attempt, "rejected", error=reply.reason))
                await self._emit(
                    EventType.CANDIDATE_REJECTED,
                    label=label,
                    attempt=attempt,
                    attempt_id=attempt_id,
                    source=context.source,
                    reason=reply.reason,
                )
                return LoopOutcome(
                    status=LoopStatus.REJECTED,
                    candidate=None,
                    diagnostics=(),
                    attempts=attempt,
                    context=context,
                    rejection=reply.reason,
                    history=tuple(history),
                )

            candidate = parse(reply.candidate)
            files = render(candidate)
            if not files:
                raise CandidateFormatError(
                    f"{label}: candidate rendered no files", phase=self._phase
                )
            await self._emit(
                EventType.CANDIDATE_PROPOSED,
                label=label,
                attempt=attempt,
                attempt_id=attempt_id,
                source=context.source,
                files=sorted(files),
            )

            result = await self._validate(files)
            self._reporter.count("validator_calls", phase=self._phase)
            if result.status is ValidationStatus.EXCEPTION:
                if self._policy is FailurePolicy.ABORT_ON_EXCEPTION:
                    history.append(
                        AttemptRecord(attempt_id, attempt, "exception", error=result.cause)
                    )
                    await self._emit_validated(label, attempt, attempt_id, result)
                    raise ValidatorException(
                        f"{label}: validator exception: {result.cause}", phase=self._phase
                    )
                result = ValidationResult.failure(
                    [
                        Diagnostic(
                            location="<validator>",
                            message=result.cause or "validator exception",
                            code="validator_exception",
                        )
                    ]
                )

            history.append(
                AttemptRecord(attempt_id, attempt, result.status.value, result.diagnostics)
            )
            await self._emit_validated(label, attempt, attempt_id, result)

            if result.succeeded:
                self._logger.info(
                    "control_plane_gvc_success",
                    phase=self._phase.value,
                    step=self._step,
                    label=label,
                    attempts=attempt,
                )
                return LoopOutcome(
                    status=LoopStatus.SUCCESS,
                    candidate=candidate,
                    diagnostics=result.diagnostics,
                    attempts=attempt,
                    context=context,
                    compiled=result.compiled,
                    history=tuple(history),
                )

            last_candidate = candidate
            last_diagnostics = result.diagnostics
            decision = self._tracker.decide(
                budget, label=label, attempt=attempt, phase=self._phase
            )
            if decision.should_stop:
                return await self._exhausted(
                    context, label, attempt, last_candidate, last_diagnostics, history
                )

            remaining = budget.consume()
            package = self._feedback.synthesize(last_diagnostics, label=label, attempt=attempt)
            context = context.with_correction(reply.candidate, last_diagnostics, package.render())
            await self._emit(
                EventType.CORRECTION_REQUESTED,
                label=label,
                attempt=attempt,
                attempt_id=attempt_id,
                source=context.source,
                remaining=remaining,
                feedback=package.to_dict(),
            )

    async def _validate(self, files: FileSet) -> ValidationResult:
        if self._validator is None:
            return ValidationResult.success()
        return await run_validator(self._validator, files)

    async def _exhausted(
        self,
        context: OracleContext,
        label: str,
        attempts: int,
        candidate: T | None,
        diagnostics: tuple[Diagnostic, ...],
        history: list[AttemptRecord],
    ) -> LoopOutcome[T]:
        failure = BudgetExhausted(
            label, attempts=attempts, diagnostics=diagnostics, phase=self._phase
        )
        await self._emit(
            EventType.BUDGET_EXHAUSTED,
            label=label,
            attempts=attempts,
            source=context.source,
            diagnostics=[item.to_dict() for item in diagnostics],
            has_candidate=candidate is not None,
        )
        self._logger.warning(
            "control_plane_gvc_exhausted",
            phase=self._phase.value,
            step=self._step,
            label=label,
            attempts=attempts,
            diagnostics=len(diagnostics),
        )
        return LoopOutcome(
            status=LoopStatus.EXHAUSTED,
            candidate=candidate,
            diagnostics=diagnostics,
            attempts=attempts,
            context=context,
            history=tuple(history),
            failure=failure,
        )

    async def _emit_validated(
        self,
        label: str,
        attempt: int,
        attempt_id: str,
        result: ValidationResult,
    ) -> None:
        await self._emit(
            EventType.CANDIDATE_VALIDATED,
            label=label,
            attempt=attempt,
            attempt_id=attempt_id,
            status=result.status.value,
            diagnostics=[item.to_dict() for item in result.diagnostics],
            cause=result.cause,
        )

    async def _emit(self, event_type: EventType, **payload: object) -> None:
        await self._reporter.emit(event_type, payload, phase=self._phase, step=self._step)


__all__ = [
    "AttemptRecord",
    "GenerateValidateCorrectLoop",
    "LoopOutcome",
    "LoopStatus",
    "ParseFn",
    "RenderFn",
]
