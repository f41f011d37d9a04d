"""Implementation phase.

Authorization providers are corrected first under the abort policy. Then one
function per operation is written concurrently, the whole tree is compiled
once, and only the functions named in diagnostics are regenerated, each with
its own failure history.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from phase_orchestrator.control_plane.budgets import LoopKind, RetryBudget
from phase_orchestrator.domain.errors import BudgetExhausted, PipelineError
from phase_orchestrator.domain.models import (
    Diagnostic,
    FileSet,
    JSONValue,
    Phase,
)
from phase_orchestrator.observability.progress import ProgressCounter
from phase_orchestrator.phases.base import (
    PhaseDraft,
    PhaseOrchestrator,
    expect_object,
    expect_text,
    failed_compile,
)
from phase_orchestrator.phases.interface import endpoint_key
from phase_orchestrator.synthesis_plane.regeneration import FailureHistory, SelectiveRegenerator

_SLUG = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class SourceFile:
    filename: str
    content: str


def function_filename(endpoint: str) -> str:
    """``"GET /users/{id}"`` becomes ``"functions/get_users_id"``."""
    slug = _SLUG.sub("_", endpoint.lower()).strip("_")
    return f"functions/{slug or 'root'}"


def function_filenames(endpoints: Iterable[str]) -> dict[str, str]:
    """Filename to endpoint for each distinct endpoint, in first-seen order.

    Endpoints whose slugs collide get a numeric suffix, so
    ``GET /users/{id}`` and ``GET /users/id`` map to ``functions/get_users_id``
    and ``functions/get_users_id_2``.
    """
    assigned: dict[str, str] = {}
    seen: set[str] = set()
    for endpoint in endpoints:
        if endpoint in seen:
            continue
        seen.add(endpoint)
        base = function_filename(endpoint)
        filename, suffix = base, 1
        while filename in assigned:
            suffix += 1
            filename = f"{base}_{suffix}"
        assigned[filename] = endpoint
    return assigned


def provider_filename(role: str) -> str:
    slug = _SLUG.sub("_", role.lower()).strip("_")
    return f"authorization/{slug or 'role'}"


def parse_source(candidate: JSONValue, source: str) -> str:
    return expect_text(expect_object(candidate, source), "content", source)


class ImplementationOrchestrator(PhaseOrchestrator):
    phase = Phase.IMPLEMENTATION

    async def _execute(self, step: int, **inputs: Any) -> PhaseDraft:
        requirements = self.upstream_payload(Phase.REQUIREMENTS)
        interface = self.upstream_payload(Phase.INTERFACE)
        roles = [role for role in requirements.get("roles", []) or [] if isinstance(role, str)]
        endpoints = function_filenames(
            endpoint_key(operation)
            for operation in interface.get("operations", []) or []
            if isinstance(operation, dict) and endpoint_key(operation)
        )

        providers = await self.gather(self._provider(step, role) for role in roles)
        failed = [item for item in providers if isinstance(item, BudgetExhausted)]
        provider_files = {
            item.filename: item.content for item in providers if isinstance(item, SourceFile)
        }
        if failed:
            diagnostics = [diag for item in failed for diag in item.diagnostics]
            return PhaseDraft(
                payload=self._payload(provider_files, {}, endpoints, ()),
                compiled=failed_compile(diagnostics, failed[0]),
                complete=False,
                failure=failed[0],
            )

        counter = ProgressCounter(label="functions", total=len(endpoints))
        await self.reporter.progress(counter, phase=self.phase, step=step)
        written = await self.gather(
            self._function(step, filename, endpoint, counter)
            for filename, endpoint in endpoints.items()
        )
        rejected = next((item for item in written if isinstance(item, str)), None)
        if rejected is not None:
            return PhaseDraft(rejection=rejected)
        units = {
            filename: item.content
            for filename, item in zip(endpoints, written, strict=True)
            if isinstance(item, SourceFile)
        }

        async def regenerate(unit: str, previous: str, history: FailureHistory) -> str:
            return await self._regenerate(step, unit, endpoints[unit], previous, history)

        regenerator: SelectiveRegenerator[str] = SelectiveRegenerator(
            self.pipeline.validators.implementation,
            reporter=self.reporter,
            phase=self.phase,
            step=step,
            rounds=self.pipeline.budgets.regeneration_rounds,
            policy=self.pipeline.policies.for_loop(LoopKind.IMPLEMENTATION),
            semaphore=self.pipeline.semaphore,
        )
        result = await regenerator.run(
            units,
            render=lambda current: {**provider_files, **current},
            regenerate=regenerate,
            label="implementation",
        )
        failure: PipelineError | None = result.failure
        return PhaseDraft(
            payload=self._payload(provider_files, result.units, endpoints, result.regenerated),
            compiled=result.compiled,
            complete=len(units) == len(endpoints),
            failure=failure,
        )

    async def _provider(self, step: int, role: str) -> SourceFile | BudgetExhausted | None:
        """Correct one authorization provider on its own; validator exceptions abort."""
        filename = provider_filename(role)
        loop = self.loop(
            step, LoopKind.AUTHORIZATION, self.pipeline.validators.authorization_validator
        )
        outcome = await loop.run(
            self.context("implementation.authorization", step, role=role),
            RetryBudget(self.pipeline.budgets.authorization_correction_rounds),
            parse=lambda candidate: parse_source(candidate, "implementation.authorization"),
            render=lambda content: {filename: content},
            label=filename,
        )
        if outcome.succeeded and outcome.candidate is not None:
            return SourceFile(filename, outcome.candidate)
        if outcome.rejected:
            return None
        return outcome.failure

    async def _function(
        self,
        step: int,
        filename: str,
        endpoint: str,
        counter: ProgressCounter,
    ) -> SourceFile | str | None:
        """Write one function without compiling it.

        A rejection reason comes back as text; ``None`` means every attempt faulted.
        """
        loop = self.loop(step, LoopKind.IMPLEMENTATION)
        outcome = await loop.run(
            self.context("implementation.function", step, endpoint=endpoint, filename=filename),
            RetryBudget(self.pipeline.budgets.correction_retries),
            parse=lambda candidate: parse_source(candidate, "implementation.function"),
            render=lambda content: {filename: content},
            label=filename,
        )
        counter.complete()
        await self.reporter.progress(counter, phase=self.phase, step=step)
        if outcome.rejected:
            return outcome.rejection or "rejected"
        if outcome.candidate is None:
            return None
        return SourceFile(filename, outcome.candidate)

    async def _regenerate(
        self,
        step: int,
        filename: str,
        endpoint: str,
        previous: str,
        history: FailureHistory,
    ) -> str:
        context = (
            self.context("implementation.function", step, endpoint=endpoint, filename=filename)
            .with_artifact(
                "failure_history",
                [[item.to_dict() for item in round_diagnostics] for round_diagnostics in history],
            )
            .with_correction({"content": previous}, _latest(history))
        )
        outcome = await self.loop(step, LoopKind.IMPLEMENTATION).run(
            context,
            RetryBudget(self.pipeline.budgets.correction_retries),
            parse=lambda candidate: parse_source(candidate, "implementation.function"),
            render=lambda content: {filename: content},
            label=f"{filename}#regenerate",
        )
        if outcome.candidate is None:
            return previous
        return outcome.candidate

    @staticmethod
    def _payload(
        providers: FileSet,
        units: FileSet,
        endpoints: dict[str, str],
        regenerated: tuple[tuple[str, ...], ...],
    ) -> dict[str, JSONValue]:
        return {
            "providers": [
                {"filename": filename, "content": content}
                for filename, content in sorted(providers.items())
            ],
            "functions": [
                {"filename": filename, "endpoint": endpoints[filename], "content": units[filename]}
                for filename in endpoints
                if filename in units
            ],
            "regenerated": [list(targets) for targets in regenerated],
        }


def _latest(history: FailureHistory) -> tuple[Diagnostic, ...]:
    return history[-1] if history else ()


__all__ = [
    "ImplementationOrchestrator",
    "SourceFile",
    "function_filename",
    "function_filenames",
    "parse_source",
    "provider_filename",
]
