"""Control-plane primitives: budgets, the GVC loop, review, the dependency gate, and state.

``PipelineController`` lives in ``phase_orchestrator.control_plane.controller``; it
depends on the phase orchestrators, which in turn build on these primitives.
"""

from phase_orchestrator.control_plane.budgets import (
    BudgetSettings,
    BudgetTracker,
    ConcurrencySettings,
    FailurePolicy,
    LoopKind,
    PolicySettings,
    RetryBudget,
)
from phase_orchestrator.control_plane.feedback import FeedbackPackage, FeedbackSynthesizer
from phase_orchestrator.control_plane.gate import BlockReason, GateDecision, PhaseDependencyGate
from phase_orchestrator.control_plane.gvc import (
    GenerateValidateCorrectLoop,
    LoopOutcome,
    LoopStatus,
)
from phase_orchestrator.control_plane.review import (
    ReviewFeedback,
    ReviewOutcome,
    ReviewVerdict,
    SemanticReviewPass,
)
from phase_orchestrator.control_plane.state import PipelineState

__all__ = [
    "BlockReason",
    "BudgetSettings",
    "BudgetTracker",
    "ConcurrencySettings",
    "FailurePolicy",
    "FeedbackPackage",
    "FeedbackSynthesizer",
    "GateDecision",
    "GenerateValidateCorrectLoop",
    "LoopKind",
    "LoopOutcome",
    "LoopStatus",
    "PhaseDependencyGate",
    "PipelineState",
    "PolicySettings",
    "RetryBudget",
    "ReviewFeedback",
    "ReviewOutcome",
    "ReviewVerdict",
    "SemanticReviewPass",
]
