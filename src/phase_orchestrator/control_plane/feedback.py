"""
Correction feedback synthesizer.

Turns validator diagnostics into a deterministic, machine-readable feedback
package that is appended to the oracle context before a correction attempt:
- diagnostics grouped by location, errors before warnings
- stable remediation hints keyed by diagnostic code
- a short text rendering for the context entry
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

from phase_orchestrator.domain.models import Diagnostic, JSONValue, Severity

_SCHEMA_VERSION: Final[int] = 1
_MAX_RENDERED_DIAGNOSTICS: Final[int] = 200

_CODE_HINTS: Final[dict[str, str]] = {
    "syntax": "Fix the syntax error at the reported location before anything else.",
    "undefined": "Define or import every referenced name; do not rename existing ones.",
    "duplicate": "Remove duplicate definitions; keep a single definition per name.",
    "type": "Align types with the upstream schema and interface definitions.",
    "missing": "Add the missing entities listed in the diagnostics.",
}


@dataclass(frozen=True, slots=True)
class FeedbackPackage:
    """Deterministically ordered correction feedback for one failed attempt."""

    schema_version: int
    label: str
    attempt: int
    error_count: int
    warning_count: int
    locations: tuple[str, ...]
    codes: tuple[str, ...]
    hints: tuple[str, ...]
    diagnostics: tuple[Diagnostic, ...]

    @property
    def accepted(self) -> bool:
        return self.error_count == 0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "label": self.label,
            "attempt": self.attempt,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "locations": list(self.locations),
            "codes": list(self.codes),
            "hints": list(self.hints),
            "diagnostics": [item.to_dict() for item in self.diagnostics],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def render(self) -> str:
        lines = [
            f"{self.label}: attempt {self.attempt} failed with "
            f"{self.error_count} error(s) and {self.warning_count} warning(s).",
        ]
        for item in self.diagnostics[:_MAX_RENDERED_DIAGNOSTICS]:
            position = ""
            if item.line is not None:
                position = f":{item.line}"
                if item.column is not None:
                    position += f":{item.column}"
            lines.append(
                f"- [{item.severity.value}] {item.location}{position} ({item.code}): {item.message}"
            )
        hidden = len(self.diagnostics) - _MAX_RENDERED_DIAGNOSTICS
        if hidden > 0:
            lines.append(f"- ... {hidden} more diagnostic(s)")
        lines.extend(f"hint: {hint}" for hint in self.hints)
        return "\n".join(lines)


class FeedbackSynthesizer:
    """Build deterministic feedback packages from diagnostics."""

    def __init__(self, *, hints: Mapping[str, str] | None = None) -> None:
        merged = dict(_CODE_HINTS)
        if hints is not None:
            merged.update(hints)
        self._hints = merged

    def synthesize(
        self,
        diagnostics: Iterable[Diagnostic],
        *,
        label: str,
        attempt: int,
    ) -> FeedbackPackage:
        if attempt <= 0:
            raise ValueError("attempt must be > 0")
        ordered = tuple(sorted(diagnostics, key=_severity_first))
        codes = tuple(sorted({item.code for item in ordered}))
        return FeedbackPackage(
            schema_version=_SCHEMA_VERSION,
            label=label,
            attempt=attempt,
            error_count=sum(1 for item in ordered if item.severity is Severity.ERROR),
            warning_count=sum(1 for item in ordered if item.severity is Severity.WARNING),
            locations=tuple(sorted({item.location for item in ordered})),
            codes=codes,
            hints=tuple(self._hints[code] for code in codes if code in self._hints),
            diagnostics=ordered,
        )


_SEVERITY_RANK: Final[dict[Severity, int]] = {
    Severity.ERROR: 0,
    Severity.WARNING: 1,
    Severity.INFO: 2,
}


def _severity_first(item: Diagnostic) -> tuple[int, tuple[str, int, int, str, str, str]]:
    return (_SEVERITY_RANK[item.severity], item.sort_key())


__all__ = ["FeedbackPackage", "FeedbackSynthesizer"]
