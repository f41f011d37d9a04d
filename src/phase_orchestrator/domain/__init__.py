"""Domain types shared across planes: phases, artifacts, diagnostics, events, errors."""

from phase_orchestrator.domain import ids
from phase_orchestrator.domain.errors import (
    BudgetExhausted,
    CandidateFormatError,
    DecompositionIncomplete,
    GatewayException,
    OracleException,
    PipelineError,
    ReplayInteractionError,
    StaleDependency,
    ValidationFailure,
    ValidatorException,
)
from phase_orchestrator.domain.events import EventType, PipelineEvent, redact_sensitive
from phase_orchestrator.domain.models import (
    PHASE_ORDER,
    Artifact,
    Diagnostic,
    Entry,
    FileSet,
    JSONValue,
    Phase,
    Severity,
    ValidationResult,
    ValidationStatus,
    canonical_json,
)

__all__ = [
    "PHASE_ORDER",
    "Artifact",
    "BudgetExhausted",
    "CandidateFormatError",
    "DecompositionIncomplete",
    "Diagnostic",
    "Entry",
    "EventType",
    "FileSet",
    "GatewayException",
    "JSONValue",
    "OracleException",
    "Phase",
    "PipelineError",
    "PipelineEvent",
    "ReplayInteractionError",
    "Severity",
    "StaleDependency",
    "ValidationFailure",
    "ValidationResult",
    "ValidationStatus",
    "ValidatorException",
    "canonical_json",
    "ids",
    "redact_sensitive",
]
