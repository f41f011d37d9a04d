"""Selective concurrent regeneration for phases made of many small independent units.

After the first full generation round the aggregate compile runs once. While it
fails and rounds remain, diagnostics are partitioned by the unit they reference
and only those units are regenerated, concurrently; every other unit is frozen
and carried into the merged output untouched.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from phase_orchestrator.control_plane.budgets import FailurePolicy, RetryBudget
from phase_orchestrator.domain.errors import BudgetExhausted, OracleException, ValidatorException
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import (
    Diagnostic,
    FileSet,
    Phase,
    ValidationResult,
    ValidationStatus,
)
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.utils.concurrency import BoundedSemaphore, gather_all
from phase_orchestrator.utils.hashing import diff_manifests, file_set_manifest
from phase_orchestrator.verification_plane.validator import (
    Validator,
    diagnostic_key,
    partition_diagnostics,
    run_validator,
)

U = TypeVar("U")

FailureHistory = tuple[tuple[Diagnostic, ...], ...]
RegenerateFn = Callable[[str, U, FailureHistory], Awaitable[U]]


@dataclass(frozen=True, slots=True)
class RegenerationResult(Generic[U]):
    units: dict[str, U]
    compiled: ValidationResult
    rounds: int
    regenerated: tuple[tuple[str, ...], ...] = ()
    history: dict[str, FailureHistory] = field(default_factory=dict)
    failure: BudgetExhausted | None = None

    @property
    def succeeded(self) -> bool:
        return self.compiled.succeeded


class SelectiveRegenerator(Generic[U]):
    """Aggregate-compile then regenerate only the units named in diagnostics."""

    def __init__(
        self,
        validator: Validator,
        *,
        reporter: ProgressReporter,
        phase: Phase,
        step: int,
        rounds: int,
        policy: FailurePolicy = FailurePolicy.ABORT_ON_EXCEPTION,
        semaphore: BoundedSemaphore | None = None,
        locate: Callable[[Diagnostic], str | None] = diagnostic_key,
        logger: Any | None = None,
    ) -> None:
        if rounds < 0:
            raise ValueError("rounds must be >= 0")
        self._validator = validator
        self._reporter = reporter
        self._phase = Phase(phase)
        self._step = step
        self._rounds = rounds
        self._policy = FailurePolicy(policy)
        self._semaphore = semaphore
        self._locate = locate
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self,
        units: Mapping[str, U],
        *,
        render: Callable[[Mapping[str, U]], FileSet],
        regenerate: RegenerateFn[U],
        label: str,
    ) -> RegenerationResult[U]:
        current = dict(units)
        history: dict[str, list[tuple[Diagnostic, ...]]] = {name: [] for name in current}
        regenerated: list[tuple[str, ...]] = []
        budget = RetryBudget(self._rounds)
        compile_round = 0
        previous: dict[str, str] | None = None

        while True:
            compile_round += 1
            files = render(current)
            manifest = file_set_manifest(files)
            changed = [] if previous is None else list(diff_manifests(previous, manifest).touched)
            previous = manifest
            result = await self._compile(files, label)
            partition = {
                unit: diagnostics
                for unit, diagnostics in partition_diagnostics(
                    result.diagnostics, self._locate
                ).items()
                if unit in current
            }
            targets = tuple(sorted(partition))
            await self._reporter.emit(
                EventType.REGENERATION_ROUND,
                {
                    "label": label,
                    "round": compile_round,
                    "status": result.status.value,
                    "diagnostics": [item.to_dict() for item in result.diagnostics],
                    "targets": list(targets),
                    "frozen": sorted(set(current) - set(targets)),
                    "changed": changed,
                },
                phase=self._phase,
                step=self._step,
            )

            if result.succeeded:
                return self._result(current, result, compile_round, regenerated, history)

            if not targets or budget.exhausted:
                failure = BudgetExhausted(
                    label,
                    attempts=compile_round,
                    diagnostics=result.diagnostics,
                    phase=self._phase,
                )
                await self._reporter.emit(
                    EventType.BUDGET_EXHAUSTED,
                    {
                        "label": label,
                        "attempts": compile_round,
                        "unattributed": not targets,
                        "diagnostics": [item.to_dict() for item in result.diagnostics],
                    },
                    phase=self._phase,
                    step=self._step,
                )
                return self._result(
                    current, result, compile_round, regenerated, history, failure=failure
                )

            budget.consume()
            for unit in targets:
                history[unit].append(partition[unit])
            self._logger.info(
                "synthesis_plane_regeneration_round",
                phase=self._phase.value,
                step=self._step,
                label=label,
                round=compile_round,
                targets=list(targets),
                remaining=budget.remaining,
            )
            replacements = await gather_all(
                [
                    self._regenerate_one(unit, current[unit], tuple(history[unit]), regenerate)
                    for unit in targets
                ],
                semaphore=self._semaphore,
            )
            for unit, replacement in zip(targets, replacements, strict=True):
                current[unit] = replacement
            regenerated.append(targets)
            self._reporter.count("regenerated_units", phase=self._phase, amount=len(targets))

    async def _compile(self, files: FileSet, label: str) -> ValidationResult:
        result = await run_validator(self._validator, files)
        self._reporter.count("validator_calls", phase=self._phase)
        if result.status is not ValidationStatus.EXCEPTION:
            return result
        if self._policy is FailurePolicy.ABORT_ON_EXCEPTION:
            raise ValidatorException(
                f"{label}: validator exception: {result.cause}", phase=self._phase
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

    async def _regenerate_one(
        self,
        unit: str,
        previous: U,
        failures: FailureHistory,
        regenerate: RegenerateFn[U],
    ) -> U:
        try:
            return await regenerate(unit, previous, failures)
        except OracleException as exc:
            if self._policy is FailurePolicy.ABORT_ON_EXCEPTION:
                raise
            await self._reporter.emit(
                EventType.UNIT_DROPPED,
                {"unit": unit, "reason": "oracle_exception", "error": str(exc), "kept": "previous"},
                phase=self._phase,
                step=self._step,
            )
            return previous

    @staticmethod
    def _result(
        current: dict[str, U],
        compiled: ValidationResult,
        rounds: int,
        regenerated: list[tuple[str, ...]],
        history: dict[str, list[tuple[Diagnostic, ...]]],
        *,
        failure: BudgetExhausted | None = None,
    ) -> RegenerationResult[U]:
        return RegenerationResult(
            units=dict(current),
            compiled=compiled,
            rounds=rounds,
            regenerated=tuple(regenerated),
            history={unit: tuple(items) for unit, items in history.items() if items},
            failure=failure,
        )


__all__ = ["FailureHistory", "RegenerateFn", "RegenerationResult", "SelectiveRegenerator"]
