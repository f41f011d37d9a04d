"""Orchestrator error taxonomy.

Loops return ``ValidationFailure``, ``DecompositionIncomplete``, ``StaleDependency``
and ``BudgetExhausted`` as outcome values; they are only raised when a caller asks
for it (``PhaseResult.raise_for_status``). ``OracleException``, ``ValidatorException``
and ``CandidateFormatError`` propagate.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from phase_orchestrator.domain.models import Diagnostic, Phase


class PipelineError(RuntimeError):
    """Base error with a stable machine-readable code."""

    code = "pipeline_error"

    def __init__(self, message: str, *, phase: Phase | None = None) -> None:
        self.phase = phase
        self.detail = message
        prefix = f"[{phase.value}] " if phase is not None else ""
        super().__init__(f"{prefix}{message}")


class ValidationFailure(PipelineError):
    """Diagnostics were reported for a candidate; retryable inside GVC."""

    code = "validation_failure"

    def __init__(
        self,
        diagnostics: Iterable[Diagnostic],
        *,
        phase: Phase | None = None,
    ) -> None:
        self.diagnostics = tuple(diagnostics)
        super().__init__(f"{len(self.diagnostics)} diagnostic(s) reported", phase=phase)


class GatewayException(PipelineError):
    """Transport or unexpected fault from an external gateway."""

    code = "gateway_exception"


class OracleException(GatewayException):
    """Oracle call failed without producing a candidate or a rejection."""

    code = "oracle_exception"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        phase: Phase | None = None,
    ) -> None:
        self.retryable = bool(retryable)
        super().__init__(message, phase=phase)


class ValidatorException(GatewayException):
    """Validator reported an ``exception`` result under the abort policy."""

    code = "validator_exception"


class CandidateFormatError(PipelineError):
    """Oracle candidate is empty or does not match the expected shape."""

    code = "candidate_format"


class DecompositionIncomplete(PipelineError):
    """Expected entities were still missing when the coverage budget ran out."""

    code = "decomposition_incomplete"

    def __init__(
        self,
        component: str,
        missing: Iterable[str],
        *,
        phase: Phase | None = None,
    ) -> None:
        self.component = component
        self.missing = tuple(sorted(missing))
        super().__init__(
            f"component {component!r} is missing {len(self.missing)} entit(y/ies): "
            f"{', '.join(self.missing)}",
            phase=phase,
        )


class StaleDependency(PipelineError):
    """Upstream artifact does not match the current requirements step."""

    code = "stale_dependency"

    def __init__(
        self,
        message: str,
        *,
        upstream: Phase | None = None,
        artifact_step: int | None = None,
        requirements_step: int | None = None,
        phase: Phase | None = None,
    ) -> None:
        self.upstream = upstream
        self.artifact_step = artifact_step
        self.requirements_step = requirements_step
        super().__init__(message, phase=phase)


class BudgetExhausted(PipelineError):
    """A retry loop spent its whole budget without a successful candidate."""

    code = "budget_exhausted"

    def __init__(
        self,
        label: str,
        *,
        attempts: int,
        diagnostics: Iterable[Diagnostic] = (),
        phase: Phase | None = None,
    ) -> None:
        self.label = label
        self.attempts = attempts
        self.diagnostics = tuple(diagnostics)
        super().__init__(
            f"{label}: budget exhausted after {attempts} attempt(s) "
            f"with {len(self.diagnostics)} diagnostic(s)",
            phase=phase,
        )


class ReplayInteractionError(OracleException):
    """An oracle call was attempted while replaying in no-interaction mode."""

    code = "replay_interaction"

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(
            f"oracle call {source!r} is not allowed during non-interactive replay",
            retryable=False,
        )


__all__ = [
    "BudgetExhausted",
    "CandidateFormatError",
    "DecompositionIncomplete",
    "GatewayException",
    "OracleException",
    "PipelineError",
    "ReplayInteractionError",
    "StaleDependency",
    "ValidationFailure",
    "ValidatorException",
]
