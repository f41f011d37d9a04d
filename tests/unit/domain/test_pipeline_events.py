"""Unit tests for pipeline events and redaction behavior."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from phase_orchestrator.domain import ids
from phase_orchestrator.domain.events import EventType, PipelineEvent, redact_sensitive
from phase_orchestrator.domain.models import Phase


def _event(**overrides: object) -> PipelineEvent:
    fields: dict[str, object] = {
        "event_id": ids.generate_event_id(timestamp_ms=1),
        "event_type": EventType.PHASE_COMPLETED,
        "timestamp": datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC),
        "phase": Phase.SCHEMA,
        "step": 3,
        "correlation_id": "run-1",
        "payload": {"status": "committed"},
    }
    fields.update(overrides)
    return PipelineEvent(**fields)  # type: ignore[arg-type]


def test_event_type_covers_pipeline_lifecycle() -> None:
    assert {member.value for member in EventType} == {
        "PhaseStarted",
        "PhaseBlocked",
        "PhaseRejected",
        "PhaseCompleted",
        "PhaseFailed",
        "ProgressUpdated",
        "CandidateProposed",
        "CandidateRejected",
        "CandidateValidated",
        "CorrectionRequested",
        "CoverageInsufficient",
        "ReviewCompleted",
        "RegenerationRound",
        "UnitDropped",
        "BudgetExhausted",
        "RequirementsRevised",
    }


def test_event_json_round_trip_is_stable() -> None:
    event = _event()

    encoded = event.to_json()
    decoded = PipelineEvent.from_json(encoded)

    assert decoded == event
    assert decoded.to_json() == encoded
    assert json.loads(encoded)["timestamp"] == "2026-02-01T12:00:00.000000Z"
    assert json.loads(encoded)["phase"] == "schema"


def test_event_accepts_string_forms_and_optional_phase() -> None:
    event = _event(
        event_type="UnitDropped", phase=None, step=None, timestamp="2026-02-01T12:00:00Z"
    )

    assert event.event_type is EventType.UNIT_DROPPED
    assert event.phase is None
    assert event.timestamp.tzinfo is not None


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"event_type": "RunStarted"}, "unsupported event type"),
        ({"event_id": "art-" + "0" * 26}, "expected prefix"),
        ({"step": -1}, "PipelineEvent.step: must be >= 0"),
        ({"phase": "deploy"}, "unsupported phase"),
        ({"payload": ["list"]}, "PipelineEvent.payload: expected object"),
        ({"timestamp": datetime(2026, 2, 1)}, "timezone-aware"),
    ],
)
def test_event_validation(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _event(**overrides)


def test_from_json_rejects_bad_documents() -> None:
    with pytest.raises(ValueError, match="invalid JSON"):
        PipelineEvent.from_json("{")
    with pytest.raises(ValueError, match="root must be an object"):
        PipelineEvent.from_json("[]")
    with pytest.raises(ValueError, match="missing required fields"):
        PipelineEvent.from_json('{"event_id": "x"}')


def test_redact_sensitive_masks_nested_keys_without_mutating() -> None:
    event = _event(
        payload={
            "config": {"api_key": "abc", "nested": [{"password": "p"}]},
            "label": "users",
            "oracle_token": "t",
        }
    )

    redacted = redact_sensitive(event)

    assert redacted.payload == {
        "config": {"api_key": "***REDACTED***", "nested": [{"password": "***REDACTED***"}]},
        "label": "users",
        "oracle_token": "***REDACTED***",
    }
    assert event.payload["config"]["api_key"] == "abc"  # type: ignore[index]
    assert redacted.event_id == event.event_id
