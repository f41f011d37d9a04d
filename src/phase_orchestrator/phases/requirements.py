"""Requirements phase: scenario planning, concurrent document writing, semantic review.

Each run opens a new requirements revision (step = previous + 1, 0 for the
first), which makes every downstream artifact stale at once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from phase_orchestrator.control_plane.budgets import LoopKind, RetryBudget
from phase_orchestrator.control_plane.gate import GateDecision
from phase_orchestrator.control_plane.review import ReviewFeedback
from phase_orchestrator.domain.errors import BudgetExhausted, CandidateFormatError, PipelineError
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import (
    Diagnostic,
    FileSet,
    JSONValue,
    Phase,
    ValidationResult,
    canonical_json,
)
from phase_orchestrator.observability.progress import ProgressCounter
from phase_orchestrator.phases.base import (
    PhaseDraft,
    PhaseOrchestrator,
    PhaseResult,
    PhaseStatus,
    expect_list,
    expect_object,
    expect_text,
    expect_text_list,
    failed_compile,
)


@dataclass(frozen=True, slots=True)
class DocumentPlan:
    filename: str
    outline: str


@dataclass(frozen=True, slots=True)
class Scenario:
    prefix: str
    roles: tuple[str, ...]
    files: tuple[DocumentPlan, ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "prefix": self.prefix,
            "roles": list(self.roles),
            "files": [{"filename": item.filename, "outline": item.outline} for item in self.files],
        }


@dataclass(frozen=True, slots=True)
class Document:
    filename: str
    content: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"filename": self.filename, "content": self.content}


@dataclass(frozen=True, slots=True)
class _Written:
    document: Document | None
    diagnostics: tuple[Diagnostic, ...] = ()
    failure: PipelineError | None = None


def parse_scenario(candidate: JSONValue) -> Scenario:
    source = "requirements.scenario"
    data = expect_object(candidate, source)
    prefix = expect_text(data, "prefix", source)
    raw_roles = expect_list(data, "roles", source) if "roles" in data else []
    roles = tuple(dict.fromkeys(expect_text_list(raw_roles, source)))
    files: list[DocumentPlan] = []
    seen: set[str] = set()
    for item in expect_list(data, "files", source):
        entry = expect_object(item, source)
        filename = expect_text(entry, "filename", source)
        if filename in seen:
            continue
        seen.add(filename)
        outline = entry.get("outline", "")
        files.append(DocumentPlan(filename, outline if isinstance(outline, str) else ""))
    if not files:
        raise CandidateFormatError(f"{source}: scenario lists no documents")
    return Scenario(prefix=prefix, roles=roles, files=tuple(files))


class RequirementsOrchestrator(PhaseOrchestrator):
    phase = Phase.REQUIREMENTS

    def resolve_step(self) -> int:
        return self.pipeline.state.next_requirements_step()

    async def _execute(self, step: int, **inputs: Any) -> PhaseDraft:
        request = inputs.get("request")
        if not isinstance(request, str) or not request.strip():
            raise PipelineError("request must be a non-empty string", phase=self.phase)
        request = request.strip()

        budgets = self.pipeline.budgets
        planner = self.loop(step, LoopKind.REQUIREMENTS)
        plan = await planner.run(
            self.context("requirements.scenario", step, request=request),
            RetryBudget(budgets.correction_retries),
            parse=parse_scenario,
            render=lambda scenario: {"scenario.json": canonical_json(scenario.to_dict())},
            label="scenario",
        )
        if plan.rejected:
            return PhaseDraft(rejection=plan.rejection or "rejected")
        if plan.candidate is None:
            return PhaseDraft(
                payload={"request": request},
                compiled=failed_compile(plan.diagnostics, plan.failure),
                complete=False,
                failure=plan.failure,
            )
        scenario = plan.candidate

        counter = ProgressCounter(label="documents", total=len(scenario.files))
        await self.reporter.progress(counter, phase=self.phase, step=step)
        written = await self.gather(
            self._write(step, request, scenario, item, counter) for item in scenario.files
        )

        documents = [item.document for item in written if item.document is not None]
        diagnostics = [diag for item in written for diag in item.diagnostics]
        failures = [item.failure for item in written if item.failure is not None]
        payload: dict[str, JSONValue] = {
            "request": request,
            **scenario.to_dict(),
            "documents": [document.to_dict() for document in documents],
        }
        if failures:
            return PhaseDraft(
                payload=payload,
                compiled=failed_compile(diagnostics, failures[0]),
                complete=len(documents) == len(scenario.files),
                failure=failures[0],
            )
        return PhaseDraft(payload=payload, compiled=ValidationResult.success())

    async def _write(
        self,
        step: int,
        request: str,
        scenario: Scenario,
        plan: DocumentPlan,
        counter: ProgressCounter,
    ) -> _Written:
        writer = self.loop(step, LoopKind.REQUIREMENTS, self.pipeline.validators.requirements)
        budget = self.pipeline.budgets.correction_retries
        base = self.context(
            "requirements.write", step, filename=plan.filename, outline=plan.outline
        ).with_artifact("scenario", scenario.to_dict())

        def parse(candidate: JSONValue) -> Document:
            data = expect_object(candidate, "requirements.write")
            return Document(plan.filename, expect_text(data, "content", "requirements.write"))

        def render(document: Document) -> FileSet:
            return {document.filename: document.content}

        outcome = await writer.run(
            base, RetryBudget(budget), parse=parse, render=render, label=plan.filename
        )
        if outcome.rejected or outcome.candidate is None or not outcome.succeeded:
            counter.complete()
            await self.reporter.progress(counter, phase=self.phase, step=step)
            failure = outcome.failure or BudgetExhausted(
                plan.filename, attempts=outcome.attempts, phase=self.phase
            )
            return _Written(outcome.candidate, outcome.diagnostics, failure)

        document = outcome.candidate
        review = self.pipeline.review_pass(self.phase, step)
        if review is not None:

            async def regenerate(current: Document, feedback: ReviewFeedback) -> Document | None:
                revised = await writer.run(
                    base.with_artifact(current.filename, current.to_dict()).with_findings(
                        feedback.findings
                    ),
                    RetryBudget(budget),
                    parse=parse,
                    render=render,
                    label=f"{plan.filename}#review",
                )
                return revised.candidate if revised.succeeded else None

            reviewed = await review.run(
                document,
                self.context("requirements.review", step, filename=plan.filename).with_artifact(
                    "request", request
                ),
                dump=Document.to_dict,
                regenerate=regenerate,
                label=plan.filename,
            )
            document = reviewed.candidate

        counter.complete()
        await self.reporter.progress(counter, phase=self.phase, step=step)
        return _Written(document)

    async def _commit(
        self,
        draft: PhaseDraft,
        step: int,
        decision: GateDecision,
        elapsed: float,
    ) -> PhaseResult:
        result = await super()._commit(draft, step, decision, elapsed)
        if result.status is not PhaseStatus.STALE:
            stale = self.pipeline.state.stale_phases()
            await self.reporter.emit(
                EventType.REQUIREMENTS_REVISED,
                {"stale": [phase.value for phase in stale]},
                phase=self.phase,
                step=step,
            )
        return result


__all__ = ["Document", "DocumentPlan", "RequirementsOrchestrator", "Scenario", "parse_scenario"]
