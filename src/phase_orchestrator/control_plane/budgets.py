"""
Retry budgets, failure policies, and deterministic continue/stop decisions.

This module enforces bounded correction for every loop in the pipeline:
- `RetryBudget` counts correction rounds down and never goes back up
- `FailurePolicy` decides whether an exception aborts a loop or spends budget
- `BudgetTracker` turns a budget into a logged `continue` or `stop` decision
- `BudgetSettings`, `ConcurrencySettings` and `PolicySettings` are the typed
  views of the validated configuration
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

import structlog

from phase_orchestrator.constants import (
    DEFAULT_AUTHORIZATION_CORRECTION_ROUNDS,
    DEFAULT_COMPLEMENT_ROUNDS,
    DEFAULT_CORRECTION_RETRIES,
    DEFAULT_COVERAGE_ROUNDS,
    DEFAULT_INTERFACE_BATCH_CAPACITY,
    DEFAULT_ORACLE_MAX_CONCURRENT,
    DEFAULT_REGENERATION_ROUNDS,
    DEFAULT_REVIEW_ROUNDS,
    DEFAULT_SCHEMA_CORRECTION_BATCH,
    DEFAULT_SCHEMA_CORRECTION_ROUNDS,
    DEFAULT_TEST_CORRECTION_ROUNDS,
)
from phase_orchestrator.domain.models import Phase, StrEnum


class FailurePolicy(StrEnum):
    """How a loop treats oracle exceptions and validator ``exception`` results."""

    ABORT_ON_EXCEPTION = "abort_on_exception"
    CONSUME_BUDGET = "consume_budget"


class LoopKind(StrEnum):
    """Call sites that choose a failure policy."""

    REQUIREMENTS = "requirements"
    SCHEMA = "schema"
    INTERFACE = "interface"
    TEST = "test"
    IMPLEMENTATION = "implementation"
    AUTHORIZATION = "authorization"


DEFAULT_POLICIES: dict[LoopKind, FailurePolicy] = {
    LoopKind.REQUIREMENTS: FailurePolicy.CONSUME_BUDGET,
    LoopKind.SCHEMA: FailurePolicy.CONSUME_BUDGET,
    LoopKind.INTERFACE: FailurePolicy.CONSUME_BUDGET,
    LoopKind.TEST: FailurePolicy.CONSUME_BUDGET,
    LoopKind.IMPLEMENTATION: FailurePolicy.ABORT_ON_EXCEPTION,
    LoopKind.AUTHORIZATION: FailurePolicy.ABORT_ON_EXCEPTION,
}


class RetryBudget:
    """Non-negative correction counter for one loop instance.

    Reaching zero is terminal for the loop but is not an error by itself.
    """

    __slots__ = ("_limit", "_remaining")

    def __init__(self, limit: int) -> None:
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError(f"limit must be an integer, got {type(limit).__name__}")
        if limit < 0:
            raise ValueError("limit must be >= 0")
        self._limit = limit
        self._remaining = limit

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def spent(self) -> int:
        return self._limit - self._remaining

    @property
    def exhausted(self) -> bool:
        return self._remaining == 0

    def consume(self) -> int:
        """Spend one round and return what is left."""
        if self._remaining == 0:
            raise ValueError("budget already exhausted")
        self._remaining -= 1
        return self._remaining

    def __repr__(self) -> str:
        return f"RetryBudget(limit={self._limit}, remaining={self._remaining})"


class BudgetAction(StrEnum):
    """Deterministic control action after a failed attempt."""

    CONTINUE = "continue"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    action: BudgetAction
    reason_codes: tuple[str, ...]
    label: str
    attempt: int
    remaining: int
    limit: int

    @property
    def should_stop(self) -> bool:
        return self.action is BudgetAction.STOP

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason_codes": list(self.reason_codes),
            "label": self.label,
            "attempt": self.attempt,
            "remaining": self.remaining,
            "limit": self.limit,
        }


class BudgetTracker:
    """
    Derive and log continue/stop decisions for retry loops.

    Action semantics:
    - `continue`: spend one round and try again
    - `stop`: the budget is spent; the loop returns its degraded result
    """

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def decide(
        self,
        budget: RetryBudget,
        *,
        label: str,
        attempt: int,
        phase: Phase | None = None,
        reason: str | None = None,
    ) -> BudgetDecision:
        if not isinstance(label, str) or not label.strip():
            raise ValueError("label must be a non-empty string")
        if attempt <= 0:
            raise ValueError("attempt must be > 0")

        reasons: list[str] = []
        if reason is not None:
            reasons.append(reason)
        if budget.exhausted:
            action = BudgetAction.STOP
            reasons.append("budget_exhausted")
        else:
            action = BudgetAction.CONTINUE
            reasons.append("within_budget")

        decision = BudgetDecision(
            action=action,
            reason_codes=tuple(reasons),
            label=label.strip(),
            attempt=attempt,
            remaining=budget.remaining,
            limit=budget.limit,
        )
        self._logger.info(
            "control_plane_budget_decision",
            phase=None if phase is None else phase.value,
            **decision.to_dict(),
        )
        return decision


@dataclass(frozen=True, slots=True)
class BudgetSettings:
    """Per-loop correction limits."""

    correction_retries: int = DEFAULT_CORRECTION_RETRIES
    coverage_rounds: int = DEFAULT_COVERAGE_ROUNDS
    review_rounds: int = DEFAULT_REVIEW_ROUNDS
    regeneration_rounds: int = DEFAULT_REGENERATION_ROUNDS
    schema_correction_rounds: int = DEFAULT_SCHEMA_CORRECTION_ROUNDS
    complement_rounds: int = DEFAULT_COMPLEMENT_ROUNDS
    test_correction_rounds: int = DEFAULT_TEST_CORRECTION_ROUNDS
    authorization_correction_rounds: int = DEFAULT_AUTHORIZATION_CORRECTION_ROUNDS

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"BudgetSettings.{item.name}: expected integer >= 0")

    def budget(self, name: str) -> RetryBudget:
        if name not in {item.name for item in fields(self)}:
            raise ValueError(f"unknown budget {name!r}")
        return RetryBudget(getattr(self, name))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> BudgetSettings:
        section = _section(config, "budgets")
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in section.items() if key in known})


@dataclass(frozen=True, slots=True)
class ConcurrencySettings:
    oracle_max_concurrent: int = DEFAULT_ORACLE_MAX_CONCURRENT
    interface_batch_capacity: int = DEFAULT_INTERFACE_BATCH_CAPACITY
    schema_correction_batch: int = DEFAULT_SCHEMA_CORRECTION_BATCH

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"ConcurrencySettings.{item.name}: expected integer >= 1")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ConcurrencySettings:
        section = _section(config, "concurrency")
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in section.items() if key in known})


@dataclass(frozen=True, slots=True)
class PolicySettings:
    """Failure policy chosen per loop type."""

    policies: Mapping[LoopKind, FailurePolicy] = field(
        default_factory=lambda: dict(DEFAULT_POLICIES)
    )

    def __post_init__(self) -> None:
        merged = dict(DEFAULT_POLICIES)
        for key, value in self.policies.items():
            merged[LoopKind(key)] = FailurePolicy(value)
        object.__setattr__(self, "policies", merged)

    def for_loop(self, kind: LoopKind) -> FailurePolicy:
        return self.policies[LoopKind(kind)]

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> PolicySettings:
        section = _section(config, "policies")
        return cls(
            policies={LoopKind(key): FailurePolicy(value) for key, value in section.items()}
        )


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name, {})
    if not isinstance(section, Mapping):
        raise ValueError(f"{name}: expected table")
    return section


__all__ = [
    "DEFAULT_POLICIES",
    "BudgetAction",
    "BudgetDecision",
    "BudgetSettings",
    "BudgetTracker",
    "ConcurrencySettings",
    "FailurePolicy",
    "LoopKind",
    "PolicySettings",
    "RetryBudget",
]
