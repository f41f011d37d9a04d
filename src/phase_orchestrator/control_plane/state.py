"""Pipeline state: the latest artifact per phase and its requirements revision step."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import structlog

from phase_orchestrator.constants import STATE_SCHEMA_VERSION
from phase_orchestrator.domain.errors import StaleDependency
from phase_orchestrator.domain.models import PHASE_ORDER, Artifact, JSONValue, Phase


class PipelineState:
    """One slot per phase, each empty or holding an ``Artifact``.

    An artifact is fresh iff its ``step`` equals the requirements step at query
    time. Commits are the only mutation and are serialized by an asyncio lock;
    they run after a phase's concurrent branches have joined.
    """

    def __init__(self, *, logger: Any | None = None) -> None:
        self._slots: dict[Phase, Artifact | None] = {phase: None for phase in PHASE_ORDER}
        self._lock = asyncio.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def get(self, phase: Phase) -> Artifact | None:
        return self._slots[Phase(phase)]

    @property
    def requirements_step(self) -> int | None:
        requirements = self._slots[Phase.REQUIREMENTS]
        return None if requirements is None else requirements.step

    def next_requirements_step(self) -> int:
        current = self.requirements_step
        return 0 if current is None else current + 1

    def is_fresh(self, phase: Phase) -> bool:
        artifact = self._slots[Phase(phase)]
        if artifact is None:
            return False
        return artifact.step == self.requirements_step

    def stale_phases(self) -> tuple[Phase, ...]:
        """Phases holding an artifact built from an older requirements step."""
        return tuple(
            phase
            for phase in PHASE_ORDER
            if self._slots[phase] is not None and not self.is_fresh(phase)
        )

    def snapshot(self) -> Mapping[Phase, Artifact | None]:
        return MappingProxyType(dict(self._slots))

    async def commit(self, artifact: Artifact) -> Artifact:
        """Install ``artifact`` in its phase slot, replacing the previous one wholesale.

        Raises ``StaleDependency`` when the artifact's step no longer matches the
        requirements step (requirements were revised while the phase ran).
        """

        async with self._lock:
            self._install(artifact)
        self._logger.info(
            "control_plane_state_committed",
            phase=artifact.phase.value,
            step=artifact.step,
            artifact_id=artifact.artifact_id,
            compiled=artifact.compiled.status.value,
            complete=artifact.complete,
        )
        return artifact

    def restore(self, artifact: Artifact) -> None:
        """Apply an artifact from a replayed event stream under the same invariants."""
        self._install(artifact)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": STATE_SCHEMA_VERSION,
            "slots": {
                phase.value: (None if artifact is None else artifact.to_dict())
                for phase, artifact in self._slots.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PipelineState:
        version = data.get("schema_version")
        if version != STATE_SCHEMA_VERSION:
            raise ValueError(
                f"PipelineState.schema_version: expected {STATE_SCHEMA_VERSION}, got {version!r}"
            )
        raw_slots = data.get("slots")
        if not isinstance(raw_slots, Mapping):
            raise ValueError("PipelineState.slots: expected object")
        # Stale downstream slots are legal in a snapshot; freshness is a query-time property.
        artifacts: dict[Phase, Artifact] = {}
        for phase in PHASE_ORDER:
            raw = raw_slots.get(phase.value)
            if raw is None:
                continue
            path = f"PipelineState.slots.{phase.value}"
            if not isinstance(raw, Mapping):
                raise ValueError(f"{path}: expected object or null")
            artifact = Artifact.from_dict(raw)
            if artifact.phase is not phase:
                raise ValueError(f"{path}: holds a {artifact.phase.value} artifact")
            artifacts[phase] = artifact

        requirements = artifacts.get(Phase.REQUIREMENTS)
        for phase, artifact in artifacts.items():
            if phase is Phase.REQUIREMENTS:
                continue
            path = f"PipelineState.slots.{phase.value}.step"
            if requirements is None:
                raise ValueError(f"{path}: no requirements artifact to derive from")
            if artifact.step > requirements.step:
                raise ValueError(
                    f"{path}: {artifact.step} is ahead of requirements step {requirements.step}"
                )
        state = cls()
        state._slots.update(artifacts)
        return state

    def _install(self, artifact: Artifact) -> None:
        if not isinstance(artifact, Artifact):
            raise ValueError(f"expected Artifact, got {type(artifact).__name__}")
        if artifact.phase is Phase.REQUIREMENTS:
            current = self.requirements_step
            if current is not None and artifact.step <= current:
                raise StaleDependency(
                    f"requirements step must increase (current {current}, got {artifact.step})",
                    upstream=Phase.REQUIREMENTS,
                    artifact_step=artifact.step,
                    requirements_step=current,
                    phase=Phase.REQUIREMENTS,
                )
        else:
            current = self.requirements_step
            if current is None or artifact.step != current:
                raise StaleDependency(
                    f"artifact step {artifact.step} does not match requirements step {current}",
                    upstream=Phase.REQUIREMENTS,
                    artifact_step=artifact.step,
                    requirements_step=current,
                    phase=artifact.phase,
                )
        self._slots[artifact.phase] = artifact


__all__ = ["PipelineState"]
