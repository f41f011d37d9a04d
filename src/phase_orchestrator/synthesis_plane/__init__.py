"""Synthesis-plane public API: oracle contexts, the oracle gateway, and identity merges."""

from phase_orchestrator.synthesis_plane.context import (
    ContextEntry,
    ContextEntryKind,
    InstructionRenderer,
    OracleContext,
)
from phase_orchestrator.synthesis_plane.merge import (
    DuplicateIdentityError,
    IdentityNormalization,
    dedupe_first,
    identity_normalizer,
    merge_by_identity,
    union_by_identity,
)
from phase_orchestrator.synthesis_plane.oracle import (
    BackoffConfig,
    BoundedOracle,
    CallableOracle,
    Oracle,
    OracleReply,
    Proposal,
    Rejection,
    RetryingOracle,
)

__all__ = [
    "BackoffConfig",
    "BoundedOracle",
    "CallableOracle",
    "ContextEntry",
    "ContextEntryKind",
    "DuplicateIdentityError",
    "IdentityNormalization",
    "InstructionRenderer",
    "Oracle",
    "OracleContext",
    "OracleReply",
    "Proposal",
    "Rejection",
    "RetryingOracle",
    "dedupe_first",
    "identity_normalizer",
    "merge_by_identity",
    "union_by_identity",
]
