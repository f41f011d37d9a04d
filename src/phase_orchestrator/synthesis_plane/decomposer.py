"""Component decomposition with coverage tracking.

A phase's target entity set is split across components (schema files,
operation batches, endpoint groups). Each component is generated through the
GVC loop; after every round the names still missing are computed and, while
the coverage budget lasts, requested again with an explicit gap list. Entities
accepted in an earlier round are carried forward and never replaced.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from phase_orchestrator.control_plane.budgets import RetryBudget
from phase_orchestrator.control_plane.gvc import GenerateValidateCorrectLoop, LoopOutcome
from phase_orchestrator.domain.errors import DecompositionIncomplete
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import Diagnostic, FileSet, JSONValue, Phase
from phase_orchestrator.observability.progress import ProgressCounter, ProgressReporter
from phase_orchestrator.synthesis_plane.context import OracleContext

E = TypeVar("E")


@dataclass(slots=True)
class ComponentTask(Generic[E]):
    """Expected-vs-produced membership for one component.

    ``produced`` only grows: ``accept`` ignores names that are already present.
    """

    identity: str
    expected: tuple[str, ...]
    produced: dict[str, E] = field(default_factory=dict)
    closed: bool = False

    def __post_init__(self) -> None:
        if not self.identity.strip():
            raise ValueError("ComponentTask.identity: must not be empty")
        ordered: list[str] = []
        for name in self.expected:
            if name not in ordered:
                ordered.append(name)
        self.expected = tuple(ordered)

    @property
    def remaining(self) -> tuple[str, ...]:
        return tuple(name for name in self.expected if name not in self.produced)

    @property
    def complete(self) -> bool:
        return not self.remaining

    def accept(self, entities: Iterable[E], key: Callable[[E], str]) -> tuple[str, ...]:
        """Record new entities; returns the names accepted this call."""
        if self.closed:
            raise ValueError(f"ComponentTask {self.identity!r} is closed")
        accepted: list[str] = []
        for entity in entities:
            name = key(entity)
            if not name or name in self.produced:
                continue
            self.produced[name] = entity
            accepted.append(name)
        return tuple(accepted)

    def entities(self) -> list[E]:
        """Produced entities, expected names first in plan order, extras after."""
        ordered = [self.produced[name] for name in self.expected if name in self.produced]
        extras = [entity for name, entity in self.produced.items() if name not in self.expected]
        return ordered + extras

    def close(self) -> None:
        self.closed = True


class CoverageTracker:
    """Aggregate coverage across every component of one phase invocation."""

    def __init__(self, tasks: Iterable[ComponentTask[Any]] = ()) -> None:
        self._tasks: dict[str, ComponentTask[Any]] = {}
        for task in tasks:
            self.add(task)

    def add(self, task: ComponentTask[Any]) -> None:
        if task.identity in self._tasks:
            raise ValueError(f"duplicate component {task.identity!r}")
        self._tasks[task.identity] = task

    @property
    def tasks(self) -> tuple[ComponentTask[Any], ...]:
        return tuple(self._tasks.values())

    @property
    def expected_total(self) -> int:
        return sum(len(task.expected) for task in self._tasks.values())

    @property
    def produced_total(self) -> int:
        return sum(
            len(set(task.expected) & set(task.produced)) for task in self._tasks.values()
        )

    def missing(self) -> dict[str, tuple[str, ...]]:
        return {
            identity: task.remaining
            for identity, task in self._tasks.items()
            if task.remaining
        }

    @property
    def complete(self) -> bool:
        return all(task.complete for task in self._tasks.values())

    def counter(self, label: str) -> ProgressCounter:
        return ProgressCounter(
            label=label, total=self.expected_total, completed=self.produced_total
        )


@dataclass(frozen=True, slots=True)
class CoverageResult(Generic[E]):
    task: ComponentTask[E]
    rounds: int
    outcomes: tuple[LoopOutcome[list[E]], ...]
    failure: DecompositionIncomplete | None = None

    @property
    def complete(self) -> bool:
        return self.failure is None

    @property
    def missing(self) -> tuple[str, ...]:
        return self.task.remaining

    @property
    def entities(self) -> list[E]:
        return self.task.entities()

    @property
    def diagnostics(self) -> tuple[Diagnostic, ...]:
        return self.outcomes[-1].diagnostics if self.outcomes else ()

    @property
    def rejection(self) -> str | None:
        return self.outcomes[-1].rejection if self.outcomes else None


class ComponentDecomposer:
    """Runs one component to full coverage or until its coverage budget is spent."""

    def __init__(
        self,
        loop: GenerateValidateCorrectLoop,
        *,
        reporter: ProgressReporter,
        phase: Phase,
        step: int,
        coverage_rounds: int,
        correction_retries: int,
        logger: Any | None = None,
    ) -> None:
        if coverage_rounds < 0 or correction_retries < 0:
            raise ValueError("budgets must be >= 0")
        self._loop = loop
        self._reporter = reporter
        self._phase = Phase(phase)
        self._step = step
        self._coverage_rounds = coverage_rounds
        self._correction_retries = correction_retries
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self,
        task: ComponentTask[E],
        context: OracleContext,
        *,
        parse: Callable[[JSONValue], list[E]],
        render: Callable[[list[E]], FileSet],
        key: Callable[[E], str],
        dump: Callable[[E], JSONValue],
        counter: ProgressCounter | None = None,
    ) -> CoverageResult[E]:
        coverage_budget = RetryBudget(self._coverage_rounds)
        outcomes: list[LoopOutcome[list[E]]] = []
        round_number = 0

        while True:
            round_number += 1
            outcome = await self._loop.run(
                context,
                RetryBudget(self._correction_retries),
                parse=parse,
                render=render,
                label=f"{task.identity}#{round_number}",
            )
            outcomes.append(outcome)

            if outcome.candidate is not None:
                accepted = task.accept(outcome.candidate, key)
                if counter is not None:
                    counter.complete(sum(1 for name in accepted if name in task.expected))
                    await self._reporter.progress(counter, phase=self._phase, step=self._step)

            if task.complete:
                break

            missing = task.remaining
            await self._reporter.emit(
                EventType.COVERAGE_INSUFFICIENT,
                {
                    "component": task.identity,
                    "round": round_number,
                    "missing": list(missing),
                    "produced": sorted(task.produced),
                    "rejection": outcome.rejection,
                },
                phase=self._phase,
                step=self._step,
            )
            self._reporter.count("coverage_missing", phase=self._phase, amount=len(missing))

            if outcome.rejected or coverage_budget.exhausted:
                break
            coverage_budget.consume()
            context = context.with_artifact(
                f"{task.identity}.produced", [dump(item) for item in task.entities()]
            ).with_missing(missing, produced=task.produced)

        task.close()
        failure = None
        if not task.complete:
            failure = DecompositionIncomplete(task.identity, task.remaining, phase=self._phase)
            self._logger.warning(
                "synthesis_plane_coverage_incomplete",
                phase=self._phase.value,
                step=self._step,
                component=task.identity,
                missing=list(task.remaining),
                rounds=round_number,
            )
        return CoverageResult(
            task=task, rounds=round_number, outcomes=tuple(outcomes), failure=failure
        )


__all__ = [
    "ComponentDecomposer",
    "ComponentTask",
    "CoverageResult",
    "CoverageTracker",
]
