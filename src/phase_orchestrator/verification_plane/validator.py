"""Validator Gateway contract, per-phase validator set, and diagnostic partitioning."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from phase_orchestrator.domain.models import Diagnostic, FileSet, Phase, ValidationResult

_MAX_CAUSE_LEN = 8192


@runtime_checkable
class Validator(Protocol):
    """Opaque compiler/validator for one artifact kind."""

    async def validate(self, files: FileSet) -> ValidationResult: ...


class CallableValidator:
    """Adapts ``async def fn(files) -> ValidationResult`` to the Validator protocol."""

    def __init__(self, fn: Callable[[FileSet], Awaitable[ValidationResult]]) -> None:
        if not callable(fn):
            raise ValueError("fn must be callable")
        self._fn = fn

    async def validate(self, files: FileSet) -> ValidationResult:
        return await self._fn(files)


async def run_validator(validator: Validator, files: FileSet) -> ValidationResult:
    """Call ``validator`` and normalize raised errors into an ``exception`` result."""

    try:
        result = await validator.validate(dict(files))
    except Exception as exc:  # noqa: BLE001
        return ValidationResult.exception(_cause(f"{exc.__class__.__name__}: {exc}"))
    if not isinstance(result, ValidationResult):
        return ValidationResult.exception(
            f"validator returned {type(result).__name__}, expected ValidationResult"
        )
    return result


@dataclass(frozen=True, slots=True)
class ValidatorSet:
    """One validator per artifact kind.

    Requirements have no compiler of their own, so that slot is optional.
    Authorization providers compile with the implementation validator unless a
    dedicated one is given.
    """

    schema: Validator
    interface: Validator
    test: Validator
    implementation: Validator
    requirements: Validator | None = None
    authorization: Validator | None = None

    def for_phase(self, phase: Phase) -> Validator | None:
        return {
            Phase.REQUIREMENTS: self.requirements,
            Phase.SCHEMA: self.schema,
            Phase.INTERFACE: self.interface,
            Phase.TEST: self.test,
            Phase.IMPLEMENTATION: self.implementation,
        }[Phase(phase)]

    @property
    def authorization_validator(self) -> Validator:
        return self.authorization if self.authorization is not None else self.implementation


def diagnostic_key(diagnostic: Diagnostic) -> str:
    """Default unit key: the named entity, else the file location."""
    return diagnostic.entity if diagnostic.entity is not None else diagnostic.location


def partition_diagnostics(
    diagnostics: Iterable[Diagnostic],
    key: Callable[[Diagnostic], str | None] = diagnostic_key,
) -> dict[str, tuple[Diagnostic, ...]]:
    """Group diagnostics by the unit they reference; unattributable ones are dropped."""

    grouped: dict[str, list[Diagnostic]] = {}
    for item in diagnostics:
        unit = key(item)
        if unit is None:
            continue
        grouped.setdefault(unit, []).append(item)
    return {
        unit: tuple(sorted(items, key=Diagnostic.sort_key))
        for unit, items in sorted(grouped.items())
    }


def unattributed_diagnostics(
    diagnostics: Iterable[Diagnostic],
    units: Mapping[str, object],
    key: Callable[[Diagnostic], str | None] = diagnostic_key,
) -> tuple[Diagnostic, ...]:
    """Diagnostics whose key matches none of ``units``."""
    return tuple(item for item in diagnostics if key(item) not in units)


def _cause(text: str) -> str:
    if len(text) <= _MAX_CAUSE_LEN:
        return text
    return text[: _MAX_CAUSE_LEN - 3] + "..."


__all__ = [
    "CallableValidator",
    "Validator",
    "ValidatorSet",
    "diagnostic_key",
    "partition_diagnostics",
    "run_validator",
    "unattributed_diagnostics",
]
