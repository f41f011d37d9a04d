"""Interface phase: endpoints per group, batched operations, type complement, document GVC."""

from __future__ import annotations

from typing import Any

from phase_orchestrator.control_plane.budgets import LoopKind, RetryBudget
from phase_orchestrator.domain.errors import (
    BudgetExhausted,
    CandidateFormatError,
    DecompositionIncomplete,
    PipelineError,
)
from phase_orchestrator.domain.events import EventType
from phase_orchestrator.domain.models import JSONValue, Phase, ValidationResult, canonical_json
from phase_orchestrator.observability.progress import ProgressCounter
from phase_orchestrator.phases.base import (
    PhaseDraft,
    PhaseOrchestrator,
    expect_list,
    expect_object,
    expect_text,
)
from phase_orchestrator.synthesis_plane.decomposer import (
    ComponentTask,
    CoverageResult,
    CoverageTracker,
)
from phase_orchestrator.synthesis_plane.merge import (
    dedupe_first,
    merge_by_identity,
    union_by_identity,
)

Operation = dict[str, JSONValue]
TypeSchema = dict[str, JSONValue]

_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})
DOCUMENT_FILENAME = "interface.json"


def endpoint_key(entity: Operation) -> str:
    """Identity of an endpoint or operation: ``"<METHOD> <path>"``."""
    method = entity.get("method")
    path = entity.get("path")
    if not isinstance(method, str) or not isinstance(path, str):
        return ""
    return f"{method.upper()} {path}"


def type_name(schema: TypeSchema) -> str:
    name = schema.get("name")
    return name if isinstance(name, str) else ""


def referenced_types(operation: Operation) -> set[str]:
    """Type names an operation's request and response bodies point at."""
    names: set[str] = set()
    for field_name in ("request", "response"):
        value = operation.get(field_name)
        if isinstance(value, str) and value.strip():
            names.add(value.strip())
    return names


def parse_operations(
    candidate: JSONValue,
    source: str,
    key: str = "operations",
) -> list[Operation]:
    data = expect_object(candidate, source)
    operations: list[Operation] = []
    for item in expect_list(data, key, source):
        entry = expect_object(item, source)
        method = expect_text(entry, "method", source).upper()
        if method not in _METHODS:
            raise CandidateFormatError(f"{source}: unsupported method {method!r}")
        path = expect_text(entry, "path", source)
        if not path.startswith("/"):
            raise CandidateFormatError(f"{source}: path must start with '/': {path!r}")
        operations.append({**entry, "method": method, "path": path})
    return operations


def parse_types(candidate: JSONValue) -> list[TypeSchema]:
    source = "interface.complement"
    data = expect_object(candidate, source)
    schemas: list[TypeSchema] = []
    for item in expect_list(data, "schemas", source):
        entry = expect_object(item, source)
        schemas.append({**entry, "name": expect_text(entry, "name", source)})
    return schemas


def render_document(document: dict[str, JSONValue]) -> dict[str, str]:
    return {DOCUMENT_FILENAME: canonical_json(document)}


class InterfaceOrchestrator(PhaseOrchestrator):
    phase = Phase.INTERFACE

    async def _execute(self, step: int, **inputs: Any) -> PhaseDraft:
        requirements = self.upstream_payload(Phase.REQUIREMENTS)
        schema = self.upstream_payload(Phase.SCHEMA)
        roles = [role for role in requirements.get("roles", []) or [] if isinstance(role, str)]
        groups = _groups(schema)

        endpoints_by_group = await self.gather(self._endpoints(step, group) for group in groups)
        dropped_groups: list[str] = []
        for group, listing in zip(groups, endpoints_by_group, strict=True):
            if not listing.entities:
                dropped_groups.append(group)
                await self._drop_group(step, group, listing.rejection)
        endpoints = dedupe_first(
            [item for result in endpoints_by_group for item in result.entities],
            key=endpoint_key,
        )

        authorizations = await self.gather(self._authorization(step, role) for role in roles)
        authorization_ops = dedupe_first(
            [item for item in authorizations if item is not None],
            key=endpoint_key,
            normalize=self.pipeline.normalize,
        )
        reserved = {endpoint_key(item) for item in authorization_ops}
        regular_endpoints = [item for item in endpoints if endpoint_key(item) not in reserved]

        batches = await self._operations(step, regular_endpoints)
        regular = dedupe_first(
            [item for result in batches for item in result.entities],
            key=endpoint_key,
            normalize=self.pipeline.normalize,
        )
        operations = merge_by_identity(
            regular,
            authorization_ops,
            key=endpoint_key,
            normalize=self.pipeline.normalize,
        )

        schemas, unresolved = await self._complement(step, operations)
        document: dict[str, JSONValue] = {"operations": operations, "schemas": schemas}
        compiled, document, document_failure = await self._validate_document(step, document)

        failure: PipelineError | None = next(
            (
                result.failure
                for result in (*endpoints_by_group, *batches)
                if result.failure is not None
            ),
            None,
        )
        if failure is None and dropped_groups:
            failure = DecompositionIncomplete("endpoints", dropped_groups, phase=self.phase)
        if failure is None and unresolved:
            failure = DecompositionIncomplete("schemas", unresolved, phase=self.phase)
        if failure is None:
            failure = document_failure
        missing_authorizations = [
            role for role, item in zip(roles, authorizations, strict=True) if item is None
        ]
        if failure is None and missing_authorizations:
            failure = DecompositionIncomplete(
                "authorization", missing_authorizations, phase=self.phase
            )

        complete = (
            all(result.complete for result in batches)
            and not dropped_groups
            and not unresolved
            and not missing_authorizations
        )
        payload: dict[str, JSONValue] = {
            **document,
            "endpoints": [endpoint_key(item) for item in endpoints],
            "authorizations": [endpoint_key(item) for item in authorization_ops],
            "dropped_groups": dropped_groups,
            "unresolved_types": sorted(unresolved),
        }
        return PhaseDraft(payload=payload, compiled=compiled, complete=complete, failure=failure)

    async def _endpoints(self, step: int, group: str) -> CoverageResult[Operation]:
        """One decomposition round per group; duplicate endpoints collapse by key."""
        decomposer = self.pipeline.decomposer(self.loop(step, LoopKind.INTERFACE), self.phase, step)
        return await decomposer.run(
            ComponentTask(identity=group, expected=()),
            self.context("interface.endpoints", step, group=group),
            parse=lambda candidate: parse_operations(candidate, "interface.endpoints", "endpoints"),
            render=lambda items: {f"{group}.endpoints.json": canonical_json(list(items))},
            key=endpoint_key,
            dump=lambda item: item,
        )

    async def _drop_group(self, step: int, group: str, rejection: str | None) -> None:
        reason = "rejected" if rejection is not None else "empty"
        await self.reporter.emit(
            EventType.UNIT_DROPPED,
            {"unit": f"endpoints/{group}", "reason": reason, "error": rejection, "kept": None},
            phase=self.phase,
            step=step,
        )
        self._logger.warning(
            "phase_interface_group_dropped",
            phase=self.phase.value,
            step=step,
            group=group,
            reason=reason,
        )

    async def _authorization(self, step: int, role: str) -> Operation | None:
        loop = self.loop(step, LoopKind.INTERFACE)
        outcome = await loop.run(
            self.context("interface.authorization", step, role=role),
            RetryBudget(self.pipeline.budgets.correction_retries),
            parse=lambda candidate: [
                {**item, "role": role}
                for item in parse_operations(candidate, "interface.authorization")
            ],
            render=lambda items: {f"authorization/{role}.json": canonical_json(list(items))},
            label=f"authorization:{role}",
        )
        if outcome.candidate is None or not outcome.candidate:
            return None
        return outcome.candidate[0]

    async def _operations(
        self,
        step: int,
        endpoints: list[Operation],
    ) -> list[CoverageResult[Operation]]:
        capacity = self.pipeline.concurrency.interface_batch_capacity
        chunks = [endpoints[i : i + capacity] for i in range(0, len(endpoints), capacity)]
        tracker = CoverageTracker(
            ComponentTask(identity=f"batch-{index}", expected=tuple(map(endpoint_key, chunk)))
            for index, chunk in enumerate(chunks)
        )
        counter = tracker.counter("operations")
        await self.reporter.progress(counter, phase=self.phase, step=step)
        return await self.gather(
            self._operation_batch(step, task, counter) for task in tracker.tasks
        )

    async def _operation_batch(
        self,
        step: int,
        task: ComponentTask[Operation],
        counter: ProgressCounter,
    ) -> CoverageResult[Operation]:
        decomposer = self.pipeline.decomposer(self.loop(step, LoopKind.INTERFACE), self.phase, step)
        wanted = set(task.expected)
        return await decomposer.run(
            task,
            self.context("interface.operations", step, endpoints=list(task.expected)),
            parse=lambda candidate: [
                item
                for item in parse_operations(candidate, "interface.operations")
                if endpoint_key(item) in wanted
            ],
            render=lambda items: {f"{task.identity}.json": canonical_json(list(items))},
            key=endpoint_key,
            dump=lambda item: item,
            counter=counter,
        )

    async def _complement(
        self,
        step: int,
        operations: list[Operation],
    ) -> tuple[list[TypeSchema], set[str]]:
        """Request referenced-but-undefined types; existing schemas are never overridden."""

        schemas: list[TypeSchema] = []
        missing = _undefined_types(operations, schemas)
        for round_number in range(1, self.pipeline.budgets.complement_rounds + 1):
            if not missing:
                break
            outcome = await self.loop(step, LoopKind.INTERFACE).run(
                self.context("interface.complement", step, types=sorted(missing)),
                RetryBudget(self.pipeline.budgets.correction_retries),
                parse=parse_types,
                render=lambda items: {"complement.json": canonical_json(list(items))},
                label=f"complement#{round_number}",
            )
            if outcome.candidate is not None:
                schemas = union_by_identity(
                    schemas, outcome.candidate, key=type_name, normalize=self.pipeline.normalize
                )
            missing = _undefined_types(operations, schemas)
            if missing:
                await self.reporter.emit(
                    EventType.COVERAGE_INSUFFICIENT,
                    {
                        "component": "schemas",
                        "round": round_number,
                        "missing": sorted(missing),
                        "produced": sorted(type_name(item) for item in schemas),
                        "rejection": outcome.rejection,
                    },
                    phase=self.phase,
                    step=step,
                )
            if outcome.rejected:
                break
        return schemas, missing

    async def _validate_document(
        self,
        step: int,
        document: dict[str, JSONValue],
    ) -> tuple[ValidationResult, dict[str, JSONValue], BudgetExhausted | None]:
        validator = self.pipeline.validators.interface
        compiled = await self.compile_files(
            validator,
            render_document(document),
            step=step,
            kind=LoopKind.INTERFACE,
            label="document",
        )
        if compiled.succeeded:
            return compiled, document, None

        outcome = await self.loop(step, LoopKind.INTERFACE, validator).run(
            self.context("interface.document", step).with_correction(
                document, compiled.diagnostics
            ),
            RetryBudget(self.pipeline.budgets.correction_retries),
            parse=_parse_document,
            render=render_document,
            label="document",
        )
        if outcome.succeeded and outcome.candidate is not None:
            return ValidationResult.success(outcome.compiled), outcome.candidate, None
        if outcome.candidate is None:
            return compiled, document, outcome.failure
        return ValidationResult.failure(outcome.diagnostics), outcome.candidate, outcome.failure


def _parse_document(candidate: JSONValue) -> dict[str, JSONValue]:
    source = "interface.document"
    data = expect_object(candidate, source)
    operations = parse_operations(data, source)
    schemas = parse_types({"schemas": data.get("schemas", [])})
    return {"operations": operations, "schemas": schemas}


def _undefined_types(operations: list[Operation], schemas: list[TypeSchema]) -> set[str]:
    referenced: set[str] = set()
    for item in (*operations, *schemas):
        referenced |= referenced_types(item)
    return referenced - {type_name(item) for item in schemas}


def _groups(schema: dict[str, JSONValue]) -> list[str]:
    groups: list[str] = []
    for item in schema.get("files", []) or []:
        if not isinstance(item, dict):
            continue
        namespace = item.get("namespace")
        if isinstance(namespace, str) and namespace and namespace not in groups:
            groups.append(namespace)
    return groups


__all__ = [
    "DOCUMENT_FILENAME",
    "InterfaceOrchestrator",
    "endpoint_key",
    "parse_operations",
    "parse_types",
    "referenced_types",
    "render_document",
    "type_name",
]
