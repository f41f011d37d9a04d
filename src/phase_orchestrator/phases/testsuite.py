"""Test phase: one scenario per operation, per-file correction, aggregate compile."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from phase_orchestrator.control_plane.budgets import LoopKind, RetryBudget
from phase_orchestrator.domain.errors import (
    CandidateFormatError,
    DecompositionIncomplete,
    OracleException,
    PipelineError,
)
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import JSONValue, Phase, canonical_json
from phase_orchestrator.observability.progress import ProgressCounter
from phase_orchestrator.phases.base import (
    PhaseDraft,
    PhaseOrchestrator,
    expect_list,
    expect_object,
    expect_text,
)
from phase_orchestrator.phases.interface import endpoint_key
from phase_orchestrator.synthesis_plane.decomposer import ComponentTask, CoverageResult

TestScenario = dict[str, JSONValue]


@dataclass(frozen=True, slots=True)
class TestFile:
    __test__ = False

    filename: str
    endpoint: str
    content: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"filename": self.filename, "endpoint": self.endpoint, "content": self.content}


def scenario_endpoint(scenario: TestScenario) -> str:
    endpoint = scenario.get("endpoint")
    return endpoint if isinstance(endpoint, str) else ""


def parse_scenarios(candidate: JSONValue) -> list[TestScenario]:
    source = "test.scenarios"
    data = expect_object(candidate, source)
    scenarios: list[TestScenario] = []
    for item in expect_list(data, "scenarios", source):
        entry = expect_object(item, source)
        scenarios.append(
            {
                **entry,
                "endpoint": expect_text(entry, "endpoint", source),
                "filename": expect_text(entry, "filename", source),
            }
        )
    return scenarios


class TestSuiteOrchestrator(PhaseOrchestrator):
    __test__ = False
    phase = Phase.TEST

    async def _execute(self, step: int, **inputs: Any) -> PhaseDraft:
        interface = self.upstream_payload(Phase.INTERFACE)
        operations = [
            endpoint_key(item)
            for item in interface.get("operations", []) or []
            if isinstance(item, dict) and endpoint_key(item)
        ]

        plan = await self._plan(step, operations)
        if plan.rejection is not None:
            return PhaseDraft(rejection=plan.rejection)
        scenarios = plan.entities
        filenames = [str(item["filename"]) for item in scenarios]
        if len(set(filenames)) != len(filenames):
            raise CandidateFormatError("test.scenarios: duplicate test filenames", phase=self.phase)

        counter = ProgressCounter(label="test_files", total=len(scenarios))
        await self.reporter.progress(counter, phase=self.phase, step=step)
        written = await self.gather(self._write(step, item, counter) for item in scenarios)

        files = [item for item in written if item is not None]
        dropped = [
            str(scenario["filename"])
            for scenario, item in zip(scenarios, written, strict=True)
            if item is None
        ]
        compiled = await self.compile_files(
            self.pipeline.validators.test,
            {item.filename: item.content for item in files},
            step=step,
            kind=LoopKind.TEST,
            label="tests",
        )

        failure: PipelineError | None = plan.failure
        if failure is None and dropped:
            failure = DecompositionIncomplete("tests", dropped, phase=self.phase)
        payload: dict[str, JSONValue] = {
            "files": [item.to_dict() for item in files],
            "dropped": dropped,
            "uncovered": list(plan.missing),
        }
        return PhaseDraft(
            payload=payload,
            compiled=compiled,
            complete=plan.complete and not dropped,
            failure=failure,
        )

    async def _plan(self, step: int, operations: list[str]) -> CoverageResult[TestScenario]:
        decomposer = self.pipeline.decomposer(self.loop(step, LoopKind.TEST), self.phase, step)
        wanted = set(operations)
        return await decomposer.run(
            ComponentTask(identity="scenarios", expected=tuple(operations)),
            self.context("test.scenarios", step, operations=operations),
            parse=lambda candidate: [
                item for item in parse_scenarios(candidate) if scenario_endpoint(item) in wanted
            ],
            render=lambda items: {"scenarios.json": canonical_json(list(items))},
            key=scenario_endpoint,
            dump=lambda item: item,
        )

    async def _write(
        self,
        step: int,
        scenario: TestScenario,
        counter: ProgressCounter,
    ) -> TestFile | None:
        """Write and individually correct one test file; ``None`` means it was dropped."""

        filename = str(scenario["filename"])
        endpoint = scenario_endpoint(scenario)
        loop = self.loop(step, LoopKind.TEST, self.pipeline.validators.test)

        def parse(candidate: JSONValue) -> TestFile:
            data = expect_object(candidate, "test.write")
            return TestFile(filename, endpoint, expect_text(data, "content", "test.write"))

        try:
            outcome = await loop.run(
                self.context("test.write", step, filename=filename, endpoint=endpoint)
                .with_artifact("scenario", scenario),
                RetryBudget(self.pipeline.budgets.test_correction_rounds),
                parse=parse,
                render=lambda item: {item.filename: item.content},
                label=filename,
            )
        except OracleException as exc:
            await self._drop(step, filename, "oracle_exception", str(exc))
            return None
        finally:
            counter.complete()
            await self.reporter.progress(counter, phase=self.phase, step=step)

        if outcome.succeeded and outcome.candidate is not None:
            return outcome.candidate
        reason = "rejected" if outcome.rejected else "budget_exhausted"
        await self._drop(step, filename, reason, outcome.rejection)
        return None

    async def _drop(self, step: int, filename: str, reason: str, error: str | None) -> None:
        await self.reporter.emit(
            EventType.UNIT_DROPPED,
            {"unit": filename, "reason": reason, "error": error, "kept": None},
            phase=self.phase,
            step=step,
        )
        self._logger.warning(
            "phase_test_file_dropped",
            phase=self.phase.value,
            step=step,
            filename=filename,
            reason=reason,
        )


__all__ = ["TestFile", "TestSuiteOrchestrator", "parse_scenarios", "scenario_endpoint"]
