"""Pipeline controller: builds one run's dependencies from config and sequences phases."""

from __future__ import annotations

import asyncio
import random as random_module
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from phase_orchestrator.config.schema import assert_valid_config, default_config
from phase_orchestrator.control_plane.budgets import (
    BudgetSettings,
    ConcurrencySettings,
    PolicySettings,
)
from phase_orchestrator.control_plane.gate import PhaseDependencyGate
from phase_orchestrator.control_plane.state import PipelineState
from phase_orchestrator.domain.events import EventType, PipelineEvent
from phase_orchestrator.domain.ids import generate_run_id
from phase_orchestrator.domain.models import Phase
from phase_orchestrator.observability.events import EventBus, EventChannel, PersistenceCallback
from phase_orchestrator.observability.logging import correlation_scope
from phase_orchestrator.observability.progress import ProgressReporter
from phase_orchestrator.observability.usage import UsageLedger
from phase_orchestrator.phases import ORCHESTRATORS, PhaseResult, PhaseStatus, PipelineContext
from phase_orchestrator.synthesis_plane.context import InstructionRenderer
from phase_orchestrator.synthesis_plane.merge import identity_normalizer
from phase_orchestrator.synthesis_plane.oracle import (
    BackoffConfig,
    BoundedOracle,
    Oracle,
    RandomFn,
    RetryingOracle,
    SleepFn,
)
from phase_orchestrator.utils.concurrency import BoundedSemaphore
from phase_orchestrator.verification_plane.validator import ValidatorSet


@dataclass(frozen=True, slots=True)
class PipelineRun:
    """Results of a sequenced run, in phase order, up to the first non-committed phase."""

    run_id: str
    results: tuple[PhaseResult, ...]

    @property
    def succeeded(self) -> bool:
        return all(item.succeeded for item in self.results)

    @property
    def last(self) -> PhaseResult | None:
        return self.results[-1] if self.results else None


class PipelineController:
    """Owns the state, event bus and oracle wrappers of one pipeline.

    Every oracle call (generation and review) passes through the same retrying
    wrapper and one shared permit pool sized by
    ``concurrency.oracle_max_concurrent``.
    """

    def __init__(
        self,
        oracle: Oracle,
        validators: ValidatorSet,
        *,
        reviewer: Oracle | None = None,
        config: Mapping[str, object] | None = None,
        state: PipelineState | None = None,
        renderer: InstructionRenderer | None = None,
        persistence_callback: PersistenceCallback | None = None,
        run_id: str | None = None,
        sleep: SleepFn = asyncio.sleep,
        random_fn: RandomFn = random_module.random,
        logger: Any | None = None,
    ) -> None:
        self.config = assert_valid_config(config if config is not None else default_config())
        self.run_id = run_id if run_id is not None else generate_run_id()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        observability = self.config["observability"]
        self._channel_size = int(observability["event_channel_size"])
        self.bus = EventBus(
            buffer_size=int(observability["event_buffer_size"]),
            persistence_callback=persistence_callback,
            critical_event_types=(EventType.PHASE_COMPLETED, EventType.REQUIREMENTS_REVISED),
            correlation_id=self.run_id,
        )
        self.reporter = ProgressReporter(self.bus, logger=self._logger)

        concurrency = ConcurrencySettings.from_config(self.config)
        self.semaphore = BoundedSemaphore(concurrency.oracle_max_concurrent)
        backoff = BackoffConfig.from_config(self.config)

        def wrap(inner: Oracle) -> Oracle:
            retrying = RetryingOracle(
                inner, backoff=backoff, sleep=sleep, random_fn=random_fn, logger=self._logger
            )
            return BoundedOracle(retrying, self.semaphore)

        self.pipeline = PipelineContext(
            state=state if state is not None else PipelineState(logger=self._logger),
            oracle=wrap(oracle),
            validators=validators,
            reporter=self.reporter,
            reviewer=None if reviewer is None else wrap(reviewer),
            budgets=BudgetSettings.from_config(self.config),
            concurrency=concurrency,
            policies=PolicySettings.from_config(self.config),
            gate=PhaseDependencyGate(logger=self._logger),
            renderer=renderer if renderer is not None else InstructionRenderer(),
            normalize=identity_normalizer(self.config["merge"]["identity_normalization"]),
        )

    @property
    def state(self) -> PipelineState:
        return self.pipeline.state

    @property
    def usage(self) -> UsageLedger:
        return self.reporter.usage

    def events(
        self,
        *,
        event_type: str | EventType | None = None,
        phase: Phase | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Buffered events in publish order."""
        return self.bus.replay(event_type=event_type, phase=phase)

    def open_channel(self, event_type: str | EventType | None = None) -> EventChannel:
        return self.bus.open_channel(maxsize=self._channel_size, event_type=event_type)

    async def close(self) -> None:
        await self.bus.drain_async()
        await self.bus.close_channels()

    async def run_phase(self, phase: Phase, **inputs: Any) -> PhaseResult:
        orchestrator = ORCHESTRATORS[Phase(phase)](self.pipeline, logger=self._logger)
        with correlation_scope(run_id=self.run_id):
            return await orchestrator.run(**inputs)

    async def revise_requirements(self, request: str) -> PhaseResult:
        """Produce a new requirements step; every downstream artifact becomes stale."""
        return await self.run_phase(Phase.REQUIREMENTS, request=request)

    async def run_through(self, target: Phase, request: str | None = None) -> PipelineRun:
        """Run phases in order up to ``target``, stopping at the first non-committed result.

        With a ``request`` the run starts from a new requirements revision; without one
        it resumes from the first phase whose artifact is missing or stale.
        """

        target = Phase(target)
        results: list[PhaseResult] = []
        phases = [phase for phase in Phase if phase.position <= target.position]
        if request is not None:
            results.append(await self.revise_requirements(request))
            phases = phases[1:]
        else:
            if self.state.requirements_step is None:
                raise ValueError("requirements are missing; run_through needs a request")
            first = next(
                (index for index, phase in enumerate(phases) if not self._usable(phase)),
                len(phases),
            )
            phases = phases[first:]

        for phase in phases:
            if results and results[-1].status is not PhaseStatus.COMMITTED:
                break
            results.append(await self.run_phase(phase))

        run = PipelineRun(run_id=self.run_id, results=tuple(results))
        self._logger.info(
            "control_plane_run_through_completed",
            run_id=self.run_id,
            target=target.value,
            statuses=[item.status.value for item in results],
            summary=self.reporter.summary(),
        )
        return run

    def _usable(self, phase: Phase) -> bool:
        artifact = self.state.get(phase)
        return (
            artifact is not None
            and self.state.is_fresh(phase)
            and artifact.compiled_ok
            and artifact.complete
        )


__all__ = ["PipelineController", "PipelineRun"]
