"""Typed pipeline lifecycle events and their JSON envelope."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Final

from phase_orchestrator.domain import ids
from phase_orchestrator.domain.models import (
    JSONValue,
    Phase,
    StrEnum,
    _as_json_value,
    _as_optional_str,
    _as_phase,
    _as_str,
    _as_utc_datetime,
    _expect_object,
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = ("secret", "password", "token", "api_key")
_REDACTED_VALUE: Final[str] = "***REDACTED***"


class EventType(StrEnum):
    """Lifecycle events emitted while running pipeline phases."""

    PHASE_STARTED = "PhaseStarted"
    PHASE_BLOCKED = "PhaseBlocked"
    PHASE_REJECTED = "PhaseRejected"
    PHASE_COMPLETED = "PhaseCompleted"
    PHASE_FAILED = "PhaseFailed"

    PROGRESS_UPDATED = "ProgressUpdated"

    CANDIDATE_PROPOSED = "CandidateProposed"
    CANDIDATE_REJECTED = "CandidateRejected"
    CANDIDATE_VALIDATED = "CandidateValidated"
    CORRECTION_REQUESTED = "CorrectionRequested"

    COVERAGE_INSUFFICIENT = "CoverageInsufficient"
    REVIEW_COMPLETED = "ReviewCompleted"
    REGENERATION_ROUND = "RegenerationRound"
    UNIT_DROPPED = "UnitDropped"

    BUDGET_EXHAUSTED = "BudgetExhausted"
    REQUIREMENTS_REVISED = "RequirementsRevised"


@dataclass(slots=True)
class PipelineEvent:
    """Serializable event envelope shared by reporters, subscribers, and replay."""

    event_id: str
    event_type: EventType
    timestamp: datetime
    phase: Phase | None
    step: int | None
    correlation_id: str | None
    payload: dict[str, JSONValue]

    def __post_init__(self) -> None:
        ids.validate_event_id(self.event_id)
        self.event_type = _as_event_type(self.event_type, "PipelineEvent.event_type")
        self.timestamp = _as_utc_datetime(self.timestamp, "PipelineEvent.timestamp")
        self.phase = None if self.phase is None else _as_phase(self.phase, "PipelineEvent.phase")
        self.step = _as_optional_step(self.step, "PipelineEvent.step")
        self.correlation_id = _as_optional_str(
            self.correlation_id, "PipelineEvent.correlation_id", max_len=256
        )
        self.payload = _as_json_object(self.payload, "PipelineEvent.payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": _datetime_to_iso8601z(self.timestamp),
            "phase": None if self.phase is None else self.phase.value,
            "step": self.step,
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> PipelineEvent:
        parsed = _expect_object(
            data,
            "PipelineEvent",
            required={"event_id", "event_type", "timestamp", "payload"},
            optional={"phase", "step", "correlation_id"},
        )
        raw_phase = parsed.get("phase")
        return cls(
            event_id=_as_str(parsed["event_id"], "PipelineEvent.event_id", max_len=128),
            event_type=_as_event_type(parsed["event_type"], "PipelineEvent.event_type"),
            timestamp=_as_utc_datetime(parsed["timestamp"], "PipelineEvent.timestamp"),
            phase=None if raw_phase is None else _as_phase(raw_phase, "PipelineEvent.phase"),
            step=_as_optional_step(parsed.get("step"), "PipelineEvent.step"),
            correlation_id=_as_optional_str(
                parsed.get("correlation_id"), "PipelineEvent.correlation_id", max_len=256
            ),
            payload=_as_json_object(parsed["payload"], "PipelineEvent.payload"),
        )

    @classmethod
    def from_json(cls, raw: str) -> PipelineEvent:
        if not isinstance(raw, str):
            raise ValueError(f"PipelineEvent: expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"PipelineEvent: invalid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValueError("PipelineEvent: JSON root must be an object")
        return cls.from_dict(parsed)


def redact_sensitive(event: PipelineEvent) -> PipelineEvent:
    """Return a new event with sensitive payload keys deeply redacted."""
    redacted_payload = _redact_value(event.payload, key_context=None)
    if not isinstance(redacted_payload, dict):
        raise ValueError("redacted payload must remain a JSON object")
    return PipelineEvent(
        event_id=event.event_id,
        event_type=event.event_type,
        timestamp=event.timestamp,
        phase=event.phase,
        step=event.step,
        correlation_id=event.correlation_id,
        payload=redacted_payload,
    )


def _as_event_type(value: object, path: str) -> EventType:
    if isinstance(value, EventType):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string event type, got {type(value).__name__}")
    try:
        return EventType(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in EventType)
        raise ValueError(f"{path}: unsupported event type {value!r}; allowed: {allowed}") from exc


def _as_optional_step(value: object, path: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{path}: must be >= 0")
    return value


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        raise ValueError(f"{path}: expected object")
    return parsed


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_utc_datetime(value, "PipelineEvent.timestamp")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _redact_value(value: JSONValue, key_context: str | None) -> JSONValue:
    if key_context is not None and _is_sensitive_key(key_context):
        return _REDACTED_VALUE

    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]

    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}

    return value


__all__ = ["EventType", "PipelineEvent", "redact_sensitive"]
