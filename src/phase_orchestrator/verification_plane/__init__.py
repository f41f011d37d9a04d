"""Verification-plane public API."""

from phase_orchestrator.verification_plane.validator import (
    CallableValidator,
    Validator,
    ValidatorSet,
    partition_diagnostics,
    run_validator,
)

__all__ = [
    "CallableValidator",
    "Validator",
    "ValidatorSet",
    "partition_diagnostics",
    "run_validator",
]
