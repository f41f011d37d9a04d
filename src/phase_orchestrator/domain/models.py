"""Core pipeline domain types: phases, diagnostics, merge entries, and artifacts."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final, TypeAlias

from phase_orchestrator.domain import ids
from phase_orchestrator.utils.hashing import sha256_text

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

FileSet: TypeAlias = Mapping[str, str]

_MAX_JSON_DEPTH: Final[int] = 32


class Phase(StrEnum):
    """Pipeline phases in execution order."""

    REQUIREMENTS = "requirements"
    SCHEMA = "schema"
    INTERFACE = "interface"
    TEST = "test"
    IMPLEMENTATION = "implementation"

    @property
    def position(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def upstream(self) -> Phase | None:
        """Phase whose artifact must be fresh before this one may start."""
        position = self.position
        return None if position == 0 else PHASE_ORDER[position - 1]

    @property
    def downstream(self) -> tuple[Phase, ...]:
        return PHASE_ORDER[self.position + 1 :]


PHASE_ORDER: Final[tuple[Phase, ...]] = (
    Phase.REQUIREMENTS,
    Phase.SCHEMA,
    Phase.INTERFACE,
    Phase.TEST,
    Phase.IMPLEMENTATION,
)


class Severity(StrEnum):
    """Diagnostic severity reported by validators."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationStatus(StrEnum):
    """Three-way validator verdict."""

    SUCCESS = "success"
    FAILURE = "failure"
    EXCEPTION = "exception"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Structured, immutable validator finding against a candidate."""

    location: str
    message: str
    code: str = "error"
    severity: Severity = Severity.ERROR
    entity: str | None = None
    line: int | None = None
    column: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "location", _as_str(self.location, "Diagnostic.location"))
        object.__setattr__(self, "message", _as_str(self.message, "Diagnostic.message"))
        object.__setattr__(self, "code", _as_str(self.code, "Diagnostic.code", max_len=128))
        object.__setattr__(self, "severity", _as_severity(self.severity, "Diagnostic.severity"))
        object.__setattr__(
            self, "entity", _as_optional_str(self.entity, "Diagnostic.entity")
        )
        object.__setattr__(self, "line", _as_positive_int_or_none(self.line, "Diagnostic.line"))
        object.__setattr__(
            self, "column", _as_positive_int_or_none(self.column, "Diagnostic.column")
        )

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    def sort_key(self) -> tuple[str, int, int, str, str, str]:
        return (
            self.location,
            self.line if self.line is not None else -1,
            self.column if self.column is not None else -1,
            self.code,
            self.entity or "",
            self.message,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "location": self.location,
            "message": self.message,
            "code": self.code,
            "severity": self.severity.value,
            "entity": self.entity,
            "line": self.line,
            "column": self.column,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Diagnostic:
        parsed = _expect_object(
            data,
            "Diagnostic",
            required={"location", "message"},
            optional={"code", "severity", "entity", "line", "column"},
        )
        return cls(
            location=_as_str(parsed["location"], "Diagnostic.location"),
            message=_as_str(parsed["message"], "Diagnostic.message"),
            code=_as_str(parsed.get("code", "error"), "Diagnostic.code", max_len=128),
            severity=_as_severity(parsed.get("severity", "error"), "Diagnostic.severity"),
            entity=_as_optional_str(parsed.get("entity"), "Diagnostic.entity"),
            line=_as_positive_int_or_none(parsed.get("line"), "Diagnostic.line"),
            column=_as_positive_int_or_none(parsed.get("column"), "Diagnostic.column"),
        )


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of one Validator Gateway call: success, failure, or exception."""

    status: ValidationStatus
    diagnostics: tuple[Diagnostic, ...] = ()
    compiled: JSONValue = None
    cause: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "status", _as_validation_status(self.status, "ValidationResult.status")
        )
        diagnostics = tuple(self.diagnostics)
        for index, item in enumerate(diagnostics):
            if not isinstance(item, Diagnostic):
                raise ValueError(
                    f"ValidationResult.diagnostics[{index}]: expected Diagnostic, "
                    f"got {type(item).__name__}"
                )
        if self.status is ValidationStatus.FAILURE and not diagnostics:
            raise ValueError("ValidationResult.diagnostics: failure requires diagnostics")
        object.__setattr__(
            self, "diagnostics", tuple(sorted(diagnostics, key=Diagnostic.sort_key))
        )
        object.__setattr__(
            self, "compiled", _as_json_value(self.compiled, "ValidationResult.compiled")
        )
        object.__setattr__(
            self, "cause", _as_optional_str(self.cause, "ValidationResult.cause", max_len=8192)
        )

    @classmethod
    def success(cls, compiled: JSONValue = None) -> ValidationResult:
        return cls(status=ValidationStatus.SUCCESS, compiled=compiled)

    @classmethod
    def failure(cls, diagnostics: tuple[Diagnostic, ...] | list[Diagnostic]) -> ValidationResult:
        return cls(status=ValidationStatus.FAILURE, diagnostics=tuple(diagnostics))

    @classmethod
    def exception(cls, cause: str) -> ValidationResult:
        return cls(status=ValidationStatus.EXCEPTION, cause=cause)

    @property
    def succeeded(self) -> bool:
        return self.status is ValidationStatus.SUCCESS

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "diagnostics": [item.to_dict() for item in self.diagnostics],
            "compiled": self.compiled,
            "cause": self.cause,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ValidationResult:
        parsed = _expect_object(
            data,
            "ValidationResult",
            required={"status"},
            optional={"diagnostics", "compiled", "cause"},
        )
        raw_diagnostics = parsed.get("diagnostics", [])
        if not isinstance(raw_diagnostics, list):
            raise ValueError("ValidationResult.diagnostics: expected list")
        return cls(
            status=_as_validation_status(parsed["status"], "ValidationResult.status"),
            diagnostics=tuple(Diagnostic.from_dict(_as_mapping(item)) for item in raw_diagnostics),
            compiled=_as_json_value(parsed.get("compiled"), "ValidationResult.compiled"),
            cause=_as_optional_str(parsed.get("cause"), "ValidationResult.cause", max_len=8192),
        )


@dataclass(frozen=True, slots=True)
class Entry:
    """Named entity keyed by identity for coverage tracking and merging."""

    name: str
    content: JSONValue = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "Entry.name", max_len=512))
        object.__setattr__(self, "content", _as_json_value(self.content, "Entry.content"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {"name": self.name, "content": self.content}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Entry:
        parsed = _expect_object(data, "Entry", required={"name"}, optional={"content"})
        return cls(
            name=_as_str(parsed["name"], "Entry.name", max_len=512),
            content=parsed.get("content"),
        )


@dataclass(frozen=True, slots=True)
class Artifact:
    """Committed output of one phase, stamped with the requirements step it was built from."""

    phase: Phase
    step: int
    payload: dict[str, JSONValue]
    compiled: ValidationResult
    complete: bool = True
    artifact_id: str = field(default_factory=ids.generate_artifact_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "phase", _as_phase(self.phase, "Artifact.phase"))
        if isinstance(self.step, bool) or not isinstance(self.step, int) or self.step < 0:
            raise ValueError("Artifact.step: expected non-negative integer")
        payload = _as_json_value(self.payload, "Artifact.payload")
        if not isinstance(payload, dict):
            raise ValueError("Artifact.payload: expected object")
        object.__setattr__(self, "payload", payload)
        if not isinstance(self.compiled, ValidationResult):
            raise ValueError("Artifact.compiled: expected ValidationResult")
        object.__setattr__(self, "complete", bool(self.complete))
        ids.validate_artifact_id(self.artifact_id)
        object.__setattr__(
            self, "created_at", _as_utc_datetime(self.created_at, "Artifact.created_at")
        )

    @property
    def compiled_ok(self) -> bool:
        return self.compiled.succeeded

    @property
    def fingerprint(self) -> str:
        """Content hash of the payload, stable across key ordering."""
        return sha256_text(canonical_json(self.payload))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "artifact_id": self.artifact_id,
            "phase": self.phase.value,
            "step": self.step,
            "payload": self.payload,
            "compiled": self.compiled.to_dict(),
            "complete": self.complete,
            "created_at": self.created_at.isoformat(timespec="microseconds").replace(
                "+00:00", "Z"
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Artifact:
        parsed = _expect_object(
            data,
            "Artifact",
            required={"artifact_id", "phase", "step", "payload", "compiled"},
            optional={"complete", "created_at"},
        )
        payload = _as_json_value(parsed["payload"], "Artifact.payload")
        if not isinstance(payload, dict):
            raise ValueError("Artifact.payload: expected object")
        raw_step = parsed["step"]
        if isinstance(raw_step, bool) or not isinstance(raw_step, int):
            raise ValueError("Artifact.step: expected integer")
        created_raw = parsed.get("created_at")
        return cls(
            artifact_id=_as_str(parsed["artifact_id"], "Artifact.artifact_id", max_len=128),
            phase=_as_phase(parsed["phase"], "Artifact.phase"),
            step=raw_step,
            payload=payload,
            compiled=ValidationResult.from_dict(_as_mapping(parsed["compiled"])),
            complete=bool(parsed.get("complete", True)),
            created_at=(
                datetime.now(tz=UTC)
                if created_raw is None
                else _as_utc_datetime(created_raw, "Artifact.created_at")
            ),
        )


def canonical_json(value: JSONValue) -> str:
    """Deterministic JSON text used for hashing and rendering file sets."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    """Validate ``value`` as a JSON object and return a normalized copy."""
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected object")
    return parsed


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str],
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected object, got {type(value).__name__}")

    for key in value:
        if not isinstance(key, str):
            raise ValueError(f"{path}: object keys must be strings")

    unknown = sorted(key for key in value if key not in required and key not in optional)
    if unknown:
        raise ValueError(f"{path}: unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in value)
    if missing:
        raise ValueError(f"{path}: missing required fields: {missing}")

    return dict(value)


def _as_mapping(value: object) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"expected object, got {type(value).__name__}")
    return value


def _as_str(value: object, path: str, *, max_len: int = 4096) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{path}: must not be empty")
    if len(parsed) > max_len:
        raise ValueError(f"{path}: must be <= {max_len} characters")
    return parsed


def _as_optional_str(value: object, path: str, *, max_len: int = 512) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_positive_int_or_none(value: object, path: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer, got {type(value).__name__}")
    if value <= 0:
        raise ValueError(f"{path}: must be > 0")
    return value


def _as_severity(value: object, path: str) -> Severity:
    if isinstance(value, Severity):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    try:
        return Severity(value.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in Severity)
        raise ValueError(f"{path}: unsupported severity {value!r}; allowed: {allowed}") from exc


def _as_validation_status(value: object, path: str) -> ValidationStatus:
    if isinstance(value, ValidationStatus):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    try:
        return ValidationStatus(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in ValidationStatus)
        raise ValueError(f"{path}: unsupported status {value!r}; allowed: {allowed}") from exc


def _as_phase(value: object, path: str) -> Phase:
    if isinstance(value, Phase):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    try:
        return Phase(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in Phase)
        raise ValueError(f"{path}: unsupported phase {value!r}; allowed: {allowed}") from exc


def _as_utc_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise ValueError(f"{path}: invalid ISO-8601 datetime: {value!r}") from exc
    else:
        raise ValueError(
            f"{path}: expected datetime or ISO-8601 string, got {type(value).__name__}"
        )

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"{path}: datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        raise ValueError(f"{path}: JSON nesting too deep")

    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: float value must be finite")
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: object keys must be strings")
            out[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return out
    raise ValueError(f"{path}: value is not JSON-serializable ({type(value).__name__})")


__all__ = [
    "PHASE_ORDER",
    "Artifact",
    "Diagnostic",
    "Entry",
    "FileSet",
    "JSONScalar",
    "JSONValue",
    "Phase",
    "Severity",
    "StrEnum",
    "ValidationResult",
    "ValidationStatus",
    "as_json_object",
    "canonical_json",
]
