"""Per-phase orchestrators built on the shared gate/run/commit envelope."""

from phase_orchestrator.domain.models import Phase
from phase_orchestrator.phases.base import (
    PhaseDraft,
    PhaseOrchestrator,
    PhaseResult,
    PhaseStatus,
    PipelineContext,
)
from phase_orchestrator.phases.implementation import ImplementationOrchestrator
from phase_orchestrator.phases.interface import InterfaceOrchestrator
from phase_orchestrator.phases.requirements import RequirementsOrchestrator
from phase_orchestrator.phases.schema import SchemaOrchestrator
from phase_orchestrator.phases.testsuite import TestSuiteOrchestrator

ORCHESTRATORS: dict[Phase, type[PhaseOrchestrator]] = {
    Phase.REQUIREMENTS: RequirementsOrchestrator,
    Phase.SCHEMA: SchemaOrchestrator,
    Phase.INTERFACE: InterfaceOrchestrator,
    Phase.TEST: TestSuiteOrchestrator,
    Phase.IMPLEMENTATION: ImplementationOrchestrator,
}

__all__ = [
    "ORCHESTRATORS",
    "ImplementationOrchestrator",
    "InterfaceOrchestrator",
    "PhaseDraft",
    "PhaseOrchestrator",
    "PhaseResult",
    "PhaseStatus",
    "PipelineContext",
    "RequirementsOrchestrator",
    "SchemaOrchestrator",
    "TestSuiteOrchestrator",
]
