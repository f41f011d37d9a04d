"""Phase dependency gate.

Before phase P runs, the artifact of phase P-1 must exist, must carry the
current requirements step, and must have compiled successfully with full
coverage. The check is synchronous and runs before any oracle call for P, so
a blocked phase costs nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from phase_orchestrator.control_plane.state import PipelineState
from phase_orchestrator.domain.errors import StaleDependency
from phase_orchestrator.domain.models import JSONValue, Phase, StrEnum


class BlockReason(StrEnum):
    MISSING_UPSTREAM = "missing_upstream"
    STALE_UPSTREAM = "stale_upstream"
    UPSTREAM_NOT_COMPILED = "upstream_not_compiled"
    UPSTREAM_INCOMPLETE = "upstream_incomplete"


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Outcome of one gate check; ``allowed`` is False when a condition failed."""

    phase: Phase
    allowed: bool
    upstream: Phase | None = None
    reason: BlockReason | None = None
    artifact_step: int | None = None
    requirements_step: int | None = None
    message: str = ""

    @property
    def blocked(self) -> bool:
        return not self.allowed

    def as_error(self) -> StaleDependency:
        return StaleDependency(
            self.message or "upstream dependency is not usable",
            upstream=self.upstream,
            artifact_step=self.artifact_step,
            requirements_step=self.requirements_step,
            phase=self.phase,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "phase": self.phase.value,
            "allowed": self.allowed,
            "upstream": None if self.upstream is None else self.upstream.value,
            "reason": None if self.reason is None else self.reason.value,
            "artifact_step": self.artifact_step,
            "requirements_step": self.requirements_step,
            "message": self.message,
        }


class PhaseDependencyGate:
    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def check(self, state: PipelineState, phase: Phase) -> GateDecision:
        phase = Phase(phase)
        upstream = phase.upstream
        requirements_step = state.requirements_step
        if upstream is None:
            return GateDecision(phase=phase, allowed=True, requirements_step=requirements_step)

        artifact = state.get(upstream)
        if artifact is None:
            decision = GateDecision(
                phase=phase,
                allowed=False,
                upstream=upstream,
                reason=BlockReason.MISSING_UPSTREAM,
                requirements_step=requirements_step,
                message=f"{upstream.value} artifact does not exist",
            )
        elif artifact.step != requirements_step:
            decision = GateDecision(
                phase=phase,
                allowed=False,
                upstream=upstream,
                reason=BlockReason.STALE_UPSTREAM,
                artifact_step=artifact.step,
                requirements_step=requirements_step,
                message=(
                    f"{upstream.value} step {artifact.step} does not match "
                    f"requirements step {requirements_step}"
                ),
            )
        elif not artifact.compiled_ok:
            decision = GateDecision(
                phase=phase,
                allowed=False,
                upstream=upstream,
                reason=BlockReason.UPSTREAM_NOT_COMPILED,
                artifact_step=artifact.step,
                requirements_step=requirements_step,
                message=f"{upstream.value} artifact did not compile",
            )
        elif not artifact.complete:
            decision = GateDecision(
                phase=phase,
                allowed=False,
                upstream=upstream,
                reason=BlockReason.UPSTREAM_INCOMPLETE,
                artifact_step=artifact.step,
                requirements_step=requirements_step,
                message=f"{upstream.value} artifact has incomplete coverage",
            )
        else:
            decision = GateDecision(
                phase=phase,
                allowed=True,
                upstream=upstream,
                artifact_step=artifact.step,
                requirements_step=requirements_step,
            )

        self._logger.info("control_plane_gate_checked", **decision.to_dict())
        return decision


__all__ = ["BlockReason", "GateDecision", "PhaseDependencyGate"]
