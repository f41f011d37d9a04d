"""Semantic review pass.

After an artifact has been produced, a reviewer (same request/response shape as
the oracle) judges it against the requirements and answers either
``{"verdict": "pass"}`` or ``{"findings": [...], "modifications": [...]}``.
Findings re-enter generation through a caller-supplied callback, bounded by a
review budget that is separate from the compile-correction budget.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog

from phase_orchestrator.control_plane.budgets import RetryBudget
from phase_orchestrator.domain.errors import CandidateFormatError, OracleException
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import JSONValue, Phase, StrEnum
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.synthesis_plane.context import OracleContext
from phase_orchestrator.synthesis_plane.oracle import Oracle, Rejection, ensure_reply

T = TypeVar("T")


class ReviewVerdict(StrEnum):
    PASS = "pass"
    FINDINGS = "findings"
    UNRESOLVED = "unresolved"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ReviewFeedback:
    """One reviewer answer that asked for changes."""

    findings: tuple[str, ...]
    modifications: tuple[JSONValue, ...] = ()


@dataclass(frozen=True, slots=True)
class ReviewOutcome(Generic[T]):
    candidate: T
    verdict: ReviewVerdict
    rounds: int
    feedback: tuple[ReviewFeedback, ...] = ()
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.verdict is ReviewVerdict.PASS


RegenerateFn = Callable[[T, ReviewFeedback], Awaitable[T | None]]


class SemanticReviewPass:
    """Bounded reviewer loop with its own budget."""

    def __init__(
        self,
        reviewer: Oracle,
        *,
        reporter: ProgressReporter,
        phase: Phase,
        step: int,
        rounds: int,
        logger: Any | None = None,
    ) -> None:
        if rounds < 0:
            raise ValueError("rounds must be >= 0")
        self._reviewer = reviewer
        self._reporter = reporter
        self._phase = Phase(phase)
        self._step = step
        self._rounds = rounds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self,
        candidate: T,
        context: OracleContext,
        *,
        dump: Callable[[T], JSONValue],
        regenerate: RegenerateFn[T],
        label: str,
    ) -> ReviewOutcome[T]:
        """Review ``candidate`` until it passes or the review budget is spent.

        A reviewer rejection counts as a pass. A reviewer fault keeps the
        current candidate and ends the pass with verdict ``error``.
        """

        budget = RetryBudget(self._rounds)
        current = candidate
        feedback: list[ReviewFeedback] = []
        round_number = 0

        while True:
            round_number += 1
            review_context = context.with_artifact(label, dump(current))
            try:
                reply = ensure_reply(
                    await self._reviewer.propose(review_context), source=review_context.source
                )
            except OracleException as exc:
                await self._emit(label, round_number, ReviewVerdict.ERROR, error=str(exc))
                self._logger.warning(
                    "control_plane_review_failed",
                    phase=self._phase.value,
                    step=self._step,
                    label=label,
                    error=str(exc),
                )
                return ReviewOutcome(
                    current, ReviewVerdict.ERROR, round_number, tuple(feedback), error=str(exc)
                )
            self._reporter.count("review_calls", phase=self._phase)
            self._reporter.record_usage(self._phase, reply.usage)

            if isinstance(reply, Rejection):
                await self._emit(label, round_number, ReviewVerdict.PASS, rejection=reply.reason)
                return ReviewOutcome(current, ReviewVerdict.PASS, round_number, tuple(feedback))

            answer = parse_review(reply.candidate, source=review_context.source)
            if answer is None:
                await self._emit(label, round_number, ReviewVerdict.PASS)
                return ReviewOutcome(current, ReviewVerdict.PASS, round_number, tuple(feedback))

            feedback.append(answer)
            await self._emit(
                label,
                round_number,
                ReviewVerdict.FINDINGS,
                findings=list(answer.findings),
                modifications=len(answer.modifications),
            )
            if budget.exhausted:
                return ReviewOutcome(
                    current, ReviewVerdict.UNRESOLVED, round_number, tuple(feedback)
                )
            budget.consume()

            revised = await regenerate(current, answer)
            if revised is None:
                return ReviewOutcome(
                    current, ReviewVerdict.UNRESOLVED, round_number, tuple(feedback)
                )
            current = revised
            context = context.with_findings(answer.findings)

    async def _emit(
        self,
        label: str,
        round_number: int,
        verdict: ReviewVerdict,
        **extra: object,
    ) -> None:
        payload: dict[str, object] = {
            "label": label,
            "round": round_number,
            "verdict": verdict.value,
            **extra,
        }
        await self._reporter.emit(
            EventType.REVIEW_COMPLETED, payload, phase=self._phase, step=self._step
        )


def parse_review(candidate: JSONValue, *, source: str) -> ReviewFeedback | None:
    """Return ``None`` for a pass verdict, otherwise the findings to act on."""

    if not isinstance(candidate, dict):
        raise CandidateFormatError(f"{source}: review reply must be an object")
    if candidate.get("verdict") == ReviewVerdict.PASS.value:
        return None
    raw_findings = candidate.get("findings", [])
    raw_modifications = candidate.get("modifications", [])
    if not isinstance(raw_findings, list) or not isinstance(raw_modifications, list):
        raise CandidateFormatError(f"{source}: findings and modifications must be lists")
    findings = tuple(str(item).strip() for item in raw_findings if str(item).strip())
    if not findings and not raw_modifications:
        return None
    return ReviewFeedback(findings=findings, modifications=tuple(raw_modifications))


__all__ = [
    "ReviewFeedback",
    "ReviewOutcome",
    "ReviewVerdict",
    "SemanticReviewPass",
    "parse_review",
]
