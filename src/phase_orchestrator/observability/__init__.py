"""Public observability primitives: structured logging, metrics, usage, and event streaming."""

from phase_orchestrator.observability.events import (
    DispatchError,
    EventBus,
    EventChannel,
    PersistenceCallback,
    Subscriber,
)
from phase_orchestrator.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_correlation_context,
    setup_structured_logging,
    shutdown_logging,
)
from phase_orchestrator.observability.metrics import MetricsRegistry
from phase_orchestrator.observability.progress import ProgressCounter, ProgressReporter
from phase_orchestrator.observability.usage import TokenUsage, UsageLedger

__all__ = [
    "DispatchError",
    "EventBus",
    "EventChannel",
    "LoggingConfig",
    "MetricsRegistry",
    "PersistenceCallback",
    "ProgressCounter",
    "ProgressReporter",
    "Subscriber",
    "TokenUsage",
    "UsageLedger",
    "correlation_scope",
    "get_correlation_context",
    "setup_structured_logging",
    "shutdown_logging",
]
