"""Oracle context: an ordered, append-only history plus jinja2 instruction rendering."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Final

from jinja2 import Environment, StrictUndefined, TemplateError, UndefinedError

from phase_orchestrator.domain.models import (
    Diagnostic,
    JSONValue,
    Phase,
    StrEnum,
    _as_json_value,
    as_json_object,
    canonical_json,
)


class ContextEntryKind(StrEnum):
    """Kinds of history entries an oracle sees, in the order they were appended."""

    INSTRUCTION = "instruction"
    ARTIFACT = "artifact"
    CANDIDATE = "candidate"
    DIAGNOSTICS = "diagnostics"
    MISSING = "missing"
    FINDINGS = "findings"
    NOTE = "note"


@dataclass(frozen=True, slots=True)
class ContextEntry:
    kind: ContextEntryKind
    text: str
    data: JSONValue = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", ContextEntryKind(self.kind))
        if not isinstance(self.text, str):
            raise ValueError("ContextEntry.text: expected string")
        object.__setattr__(self, "data", _as_json_value(self.data, "ContextEntry.data"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {"kind": self.kind.value, "text": self.text, "data": self.data}


@dataclass(frozen=True, slots=True)
class OracleContext:
    """Immutable history handed to ``Oracle.propose``.

    Every ``with_*`` method returns a new context with one more entry; nothing
    already in the history is ever removed or rewritten.
    """

    source: str
    phase: Phase
    entries: tuple[ContextEntry, ...] = ()
    metadata: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.source, str) or not self.source.strip():
            raise ValueError("OracleContext.source: must not be empty")
        object.__setattr__(self, "source", self.source.strip())
        object.__setattr__(self, "phase", Phase(self.phase))
        entries = tuple(self.entries)
        for entry in entries:
            if not isinstance(entry, ContextEntry):
                raise ValueError("OracleContext.entries: expected ContextEntry items")
        object.__setattr__(self, "entries", entries)
        metadata = as_json_object(dict(self.metadata), "OracleContext.metadata")
        object.__setattr__(self, "metadata", MappingProxyType(metadata))

    def extend(self, *entries: ContextEntry) -> OracleContext:
        return OracleContext(
            source=self.source,
            phase=self.phase,
            entries=(*self.entries, *entries),
            metadata=dict(self.metadata),
        )

    def for_source(self, source: str) -> OracleContext:
        """Same history, addressed to another call site."""
        return OracleContext(
            source=source, phase=self.phase, entries=self.entries, metadata=dict(self.metadata)
        )

    def with_instruction(self, text: str, data: JSONValue = None) -> OracleContext:
        return self.extend(ContextEntry(ContextEntryKind.INSTRUCTION, text, data))

    def with_artifact(self, name: str, payload: JSONValue) -> OracleContext:
        return self.extend(ContextEntry(ContextEntryKind.ARTIFACT, name, payload))

    def with_note(self, text: str) -> OracleContext:
        return self.extend(ContextEntry(ContextEntryKind.NOTE, text))

    def with_correction(
        self,
        candidate: JSONValue,
        diagnostics: Iterable[Diagnostic],
        feedback: str = "",
    ) -> OracleContext:
        """Append a rejected candidate followed by the diagnostics it produced."""
        diagnostic_list = [item.to_dict() for item in diagnostics]
        return self.extend(
            ContextEntry(ContextEntryKind.CANDIDATE, "previous candidate", candidate),
            ContextEntry(ContextEntryKind.DIAGNOSTICS, feedback, diagnostic_list),
        )

    def with_missing(self, names: Iterable[str], *, produced: Iterable[str] = ()) -> OracleContext:
        missing = sorted(set(names))
        text = "missing: " + ", ".join(missing)
        return self.extend(
            ContextEntry(
                ContextEntryKind.MISSING,
                text,
                {"missing": list(missing), "produced": sorted(set(produced))},
            )
        )

    def with_findings(self, findings: Iterable[str]) -> OracleContext:
        items = [item for item in findings if item.strip()]
        return self.extend(ContextEntry(ContextEntryKind.FINDINGS, "\n".join(items), list(items)))

    def latest(self, kind: ContextEntryKind) -> ContextEntry | None:
        for entry in reversed(self.entries):
            if entry.kind is kind:
                return entry
        return None

    def count(self, kind: ContextEntryKind) -> int:
        return sum(1 for entry in self.entries if entry.kind is kind)

    @property
    def missing(self) -> tuple[str, ...]:
        """Gap list of the most recent coverage request, if any."""
        entry = self.latest(ContextEntryKind.MISSING)
        if entry is None or not isinstance(entry.data, dict):
            return ()
        raw = entry.data.get("missing")
        if not isinstance(raw, list):
            return ()
        return tuple(item for item in raw if isinstance(item, str))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "source": self.source,
            "phase": self.phase.value,
            "metadata": dict(self.metadata),
            "entries": [entry.to_dict() for entry in self.entries],
        }


class InstructionTemplateError(ValueError):
    """Instruction template is unknown or references an undefined variable."""


_DEFAULT_TEMPLATES: Final[dict[str, str]] = {
    "requirements.scenario": (
        "Plan the requirements documents for: {{ request }}\n"
        "Reject when more information is needed."
    ),
    "requirements.write": (
        "Write requirements document {{ filename }}.\nOutline: {{ outline }}"
    ),
    "requirements.review": "Review requirements document {{ filename }} against the request.",
    "schema.components": "Group the data model for {{ prefix }} into schema files.",
    "schema.component": (
        "Write schema file {{ filename }} ({{ namespace }}) defining: {{ tables | join(', ') }}"
    ),
    "schema.review": "Review schema file {{ filename }} and propose model modifications.",
    "schema.correct": "Rewrite models {{ models | join(', ') }} to fix the reported diagnostics.",
    "interface.endpoints": "List endpoints for group {{ group }}.",
    "interface.operations": "Write operations for: {{ endpoints | join(', ') }}",
    "interface.authorization": "Write the authorization operation for role {{ role }}.",
    "interface.complement": "Define the missing types: {{ types | join(', ') }}",
    "interface.document": "Correct the interface document.",
    "test.scenarios": "Plan test scenarios for {{ operations | length }} operation(s).",
    "test.write": "Write test file {{ filename }} for {{ endpoint }}.",
    "implementation.authorization": "Write the authorization provider for role {{ role }}.",
    "implementation.function": "Implement {{ endpoint }} in {{ filename }}.",
}


class InstructionRenderer:
    """Strict jinja2 renderer for instruction entries keyed by call site."""

    def __init__(self, templates: Mapping[str, str] | None = None) -> None:
        merged = dict(_DEFAULT_TEMPLATES)
        if templates is not None:
            merged.update(templates)
        self._templates = merged
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=False,
            newline_sequence="\n",
        )
        self._environment.filters["json"] = lambda value: canonical_json(
            _as_json_value(value, "template.json")
        )

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._templates))

    def render(self, name: str, /, **variables: object) -> str:
        source = self._templates.get(name)
        if source is None:
            raise InstructionTemplateError(f"unknown instruction template {name!r}")
        try:
            return self._environment.from_string(source).render(**variables)
        except UndefinedError as exc:
            raise InstructionTemplateError(f"{name}: {exc.message}") from exc
        except TemplateError as exc:
            raise InstructionTemplateError(f"{name}: {exc}") from exc


__all__ = [
    "ContextEntry",
    "ContextEntryKind",
    "InstructionRenderer",
    "InstructionTemplateError",
    "OracleContext",
]
