"""Schema phase: component plan, per-file table coverage, review merge, batched correction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from phase_orchestrator.control_plane.budgets import LoopKind, RetryBudget
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
    expect_list,
    expect_object,
    expect_text,
    expect_text_list,
    failed_compile,
)
from phase_orchestrator.synthesis_plane.decomposer import (
    ComponentTask,
    CoverageResult,
    CoverageTracker,
)
from phase_orchestrator.synthesis_plane.merge import dedupe_first, merge_by_identity
from phase_orchestrator.verification_plane.validator import (
    diagnostic_key,
    partition_diagnostics,
    unattributed_diagnostics,
)

Model = dict[str, JSONValue]


@dataclass(frozen=True, slots=True)
class SchemaComponent:
    filename: str
    namespace: str
    tables: tuple[str, ...]


@dataclass(slots=True)
class SchemaFile:
    filename: str
    namespace: str
    models: list[Model] = field(default_factory=list)

    def render(self) -> str:
        return canonical_json({"namespace": self.namespace, "models": list(self.models)})

    def to_dict(self) -> dict[str, JSONValue]:
        return {"filename": self.filename, "namespace": self.namespace, "models": self.models}


def model_name(model: Model) -> str:
    name = model.get("name")
    return name if isinstance(name, str) else ""


def parse_models(candidate: JSONValue, source: str = "schema.component") -> list[Model]:
    data = expect_object(candidate, source)
    return _model_list(expect_list(data, "models", source), source)


def parse_components(candidate: JSONValue) -> list[SchemaComponent]:
    source = "schema.components"
    data = expect_object(candidate, source)
    components: list[SchemaComponent] = []
    filenames: set[str] = set()
    for item in expect_list(data, "components", source):
        entry = expect_object(item, source)
        filename = expect_text(entry, "filename", source)
        if filename in filenames:
            raise CandidateFormatError(f"{source}: duplicate file {filename!r}")
        filenames.add(filename)
        namespace = entry.get("namespace")
        tables = expect_text_list(expect_list(entry, "tables", source), source)
        components.append(
            SchemaComponent(
                filename=filename,
                namespace=namespace if isinstance(namespace, str) and namespace else filename,
                tables=tuple(dict.fromkeys(tables)),
            )
        )
    if not components:
        raise CandidateFormatError(f"{source}: no components proposed")
    return components


class SchemaOrchestrator(PhaseOrchestrator):
    phase = Phase.SCHEMA

    async def _execute(self, step: int, **inputs: Any) -> PhaseDraft:
        requirements = self.upstream_payload(Phase.REQUIREMENTS)
        prefix = requirements.get("prefix")
        prefix = prefix if isinstance(prefix, str) else ""

        planner = self.loop(step, LoopKind.SCHEMA)
        plan = await planner.run(
            self.context("schema.components", step, prefix=prefix),
            RetryBudget(self.pipeline.budgets.correction_retries),
            parse=parse_components,
            render=lambda items: {
                "components.json": canonical_json(
                    [{"filename": c.filename, "tables": list(c.tables)} for c in items]
                )
            },
            label="components",
        )
        if plan.rejected:
            return PhaseDraft(rejection=plan.rejection or "rejected")
        if plan.candidate is None:
            return PhaseDraft(
                compiled=failed_compile(plan.diagnostics, plan.failure),
                complete=False,
                failure=plan.failure,
            )
        components = plan.candidate

        tracker = CoverageTracker(
            ComponentTask(identity=item.filename, expected=item.tables) for item in components
        )
        counter = tracker.counter("tables")
        await self.reporter.progress(counter, phase=self.phase, step=step)
        tasks = {task.identity: task for task in tracker.tasks}
        coverage = await self.gather(
            self._cover(step, component, tasks[component.filename], counter)
            for component in components
        )

        files = [
            SchemaFile(component.filename, component.namespace, list(result.entities))
            for component, result in zip(components, coverage, strict=True)
        ]
        if self.pipeline.reviewer is not None:
            files = await self.gather(self._review(step, item) for item in files)

        files = self._dedupe(files)
        files, compiled, correction_failure = await self._correct(step, files)

        failure: PipelineError | None = next(
            (result.failure for result in coverage if result.failure is not None),
            correction_failure,
        )
        payload: dict[str, JSONValue] = {
            "prefix": prefix,
            "files": [item.to_dict() for item in files],
            "coverage": {
                "expected": tracker.expected_total,
                "produced": tracker.produced_total,
                "missing": {name: list(names) for name, names in tracker.missing().items()},
            },
        }
        return PhaseDraft(
            payload=payload,
            compiled=compiled,
            complete=tracker.complete,
            failure=failure,
        )

    async def _cover(
        self,
        step: int,
        component: SchemaComponent,
        task: ComponentTask[Model],
        counter: ProgressCounter,
    ) -> CoverageResult[Model]:
        loop = self.loop(step, LoopKind.SCHEMA)
        decomposer = self.pipeline.decomposer(loop, self.phase, step)
        return await decomposer.run(
            task,
            self.context(
                "schema.component",
                step,
                filename=component.filename,
                namespace=component.namespace,
                tables=list(component.tables),
            ),
            parse=parse_models,
            render=lambda models: {
                component.filename: SchemaFile(
                    component.filename, component.namespace, models
                ).render()
            },
            key=model_name,
            dump=lambda model: model,
            counter=counter,
        )

    async def _review(self, step: int, schema_file: SchemaFile) -> SchemaFile:
        review = self.pipeline.review_pass(self.phase, step)
        if review is None:
            return schema_file
        normalize = self.pipeline.normalize

        async def apply(current: list[Model], feedback: ReviewFeedback) -> list[Model] | None:
            modifications = _model_list(list(feedback.modifications), "schema.review")
            if not modifications:
                return None
            return merge_by_identity(
                dedupe_first(current, key=model_name, normalize=normalize),
                dedupe_first(modifications, key=model_name, normalize=normalize),
                key=model_name,
                normalize=normalize,
            )

        outcome = await review.run(
            schema_file.models,
            self.context("schema.review", step, filename=schema_file.filename),
            dump=lambda models: list(models),
            regenerate=apply,
            label=schema_file.filename,
        )
        return SchemaFile(schema_file.filename, schema_file.namespace, list(outcome.candidate))

    def _dedupe(self, files: list[SchemaFile]) -> list[SchemaFile]:
        """First occurrence of a model name wins across files; empty files are dropped."""
        normalize = self.pipeline.normalize or (lambda value: value)
        seen: set[str] = set()
        result: list[SchemaFile] = []
        for schema_file in files:
            kept: list[Model] = []
            for model in schema_file.models:
                identity = normalize(model_name(model))
                if identity in seen:
                    continue
                seen.add(identity)
                kept.append(model)
            if kept:
                result.append(SchemaFile(schema_file.filename, schema_file.namespace, kept))
        return result

    async def _correct(
        self,
        step: int,
        files: list[SchemaFile],
    ) -> tuple[list[SchemaFile], ValidationResult, BudgetExhausted | None]:
        """Aggregate compile; rewrite only the models named in diagnostics, in batches."""

        budget = RetryBudget(self.pipeline.budgets.schema_correction_rounds)
        batch_size = self.pipeline.concurrency.schema_correction_batch
        compile_round = 0
        while True:
            compile_round += 1
            label = f"schema#{compile_round}"
            compiled = await self.compile_files(
                self.pipeline.validators.schema,
                _render_files(files),
                step=step,
                kind=LoopKind.SCHEMA,
                label=label,
            )
            models = {model_name(model): model for item in files for model in item.models}
            partition = _attribute(compiled.diagnostics, files, models)
            stray = unattributed_diagnostics(
                compiled.diagnostics, {**models, **_render_files(files)}
            )
            if stray and not compiled.succeeded:
                self._logger.warning(
                    "phase_schema_unattributed_diagnostics",
                    step=step,
                    round=compile_round,
                    count=len(stray),
                )
            targets = sorted(partition)
            await self.reporter.emit(
                EventType.REGENERATION_ROUND,
                {
                    "label": "schema",
                    "round": compile_round,
                    "status": compiled.status.value,
                    "diagnostics": [item.to_dict() for item in compiled.diagnostics],
                    "targets": targets,
                    "frozen": sorted(set(models) - set(targets)),
                },
                phase=self.phase,
                step=step,
            )
            if compiled.succeeded:
                return files, compiled, None
            if not targets or budget.exhausted:
                failure = BudgetExhausted(
                    "schema",
                    attempts=compile_round,
                    diagnostics=compiled.diagnostics,
                    phase=self.phase,
                )
                await self.reporter.emit(
                    EventType.BUDGET_EXHAUSTED,
                    {
                        "label": "schema",
                        "attempts": compile_round,
                        "unattributed": not targets,
                        "diagnostics": [item.to_dict() for item in compiled.diagnostics],
                    },
                    phase=self.phase,
                    step=step,
                )
                return files, compiled, failure
            budget.consume()

            batches = [targets[i : i + batch_size] for i in range(0, len(targets), batch_size)]
            rewrites = await self.gather(
                self._rewrite(step, batch, models, partition, compile_round) for batch in batches
            )
            replacements: dict[str, Model] = {}
            for rewrite in rewrites:
                replacements.update(rewrite)
            self.reporter.count("regenerated_units", phase=self.phase, amount=len(replacements))
            files = [
                SchemaFile(
                    item.filename,
                    item.namespace,
                    [replacements.get(model_name(model), model) for model in item.models],
                )
                for item in files
            ]

    async def _rewrite(
        self,
        step: int,
        batch: list[str],
        models: dict[str, Model],
        partition: dict[str, tuple[Diagnostic, ...]],
        compile_round: int,
    ) -> dict[str, Model]:
        loop = self.loop(step, LoopKind.SCHEMA)
        current = [models[name] for name in batch]
        diagnostics = list(dict.fromkeys(diag for name in batch for diag in partition[name]))
        context = self.context("schema.correct", step, models=batch).with_correction(
            {"models": current}, diagnostics
        )
        outcome = await loop.run(
            context,
            RetryBudget(self.pipeline.budgets.correction_retries),
            parse=lambda candidate: parse_models(candidate, "schema.correct"),
            render=lambda items: {"correction.json": canonical_json(list(items))},
            label=f"schema#{compile_round}:{','.join(batch)}",
        )
        if outcome.candidate is None:
            return {}
        wanted = set(batch)
        return {
            model_name(model): model for model in outcome.candidate if model_name(model) in wanted
        }


def _model_list(items: list[JSONValue], source: str) -> list[Model]:
    models: list[Model] = []
    for item in items:
        model = expect_object(item, source)
        name = expect_text(model, "name", source)
        models.append({**model, "name": name})
    return models


def _attribute(
    diagnostics: tuple[Diagnostic, ...],
    files: list[SchemaFile],
    models: dict[str, Model],
) -> dict[str, tuple[Diagnostic, ...]]:
    """Diagnostics per model name.

    A diagnostic naming a model goes to that model. One located at a schema file
    without an entity goes to every model in that file.
    """
    by_file = {item.filename: item for item in files}
    attributed: dict[str, list[Diagnostic]] = {}
    for unit, grouped in partition_diagnostics(diagnostics, diagnostic_key).items():
        if unit in models:
            names = [unit]
        elif unit in by_file:
            names = [model_name(model) for model in by_file[unit].models]
        else:
            continue
        for name in names:
            attributed.setdefault(name, []).extend(grouped)
    return {
        name: tuple(sorted(items, key=Diagnostic.sort_key))
        for name, items in sorted(attributed.items())
    }


def _render_files(files: list[SchemaFile]) -> FileSet:
    return {item.filename: item.render() for item in files}


__all__ = [
    "SchemaComponent",
    "SchemaFile",
    "SchemaOrchestrator",
    "model_name",
    "parse_components",
    "parse_models",
]
