"""Oracle Gateway contract and the wrappers the orchestrator puts around it.

An oracle proposes a candidate for a context or rejects it with a reason.
Transport retries and the concurrency ceiling live in wrappers so the
orchestration loops stay independent of any particular backend (an LLM
agent, a rules engine, a human, or a test double).
"""

from __future__ import annotations

import asyncio
import random as random_module
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias, runtime_checkable

import structlog

from phase_orchestrator.constants import (
    DEFAULT_BACKOFF_BASE_DELAY_MS,
    DEFAULT_BACKOFF_JITTER_RATIO,
    DEFAULT_BACKOFF_MAX_DELAY_MS,
    DEFAULT_BACKOFF_MAX_RETRIES,
)
from phase_orchestrator.domain.errors import CandidateFormatError, OracleException
from phase_orchestrator.domain.models import JSONValue, _as_json_value
from phase_orchestrator.observability.usage import TokenUsage
from phase_orchestrator.synthesis_plane.context import OracleContext
from phase_orchestrator.utils.concurrency import BoundedSemaphore

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (ConnectionError, TimeoutError, OSError)


@dataclass(frozen=True, slots=True)
class Proposal:
    """Candidate produced by the oracle (JSON-shaped)."""

    candidate: JSONValue
    usage: TokenUsage | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "candidate", _as_json_value(self.candidate, "Proposal.candidate"))


@dataclass(frozen=True, slots=True)
class Rejection:
    """Oracle declined to produce a candidate (e.g. not enough information yet)."""

    reason: str
    usage: TokenUsage | None = None


OracleReply: TypeAlias = Proposal | Rejection


@runtime_checkable
class Oracle(Protocol):
    async def propose(self, context: OracleContext) -> OracleReply: ...


def ensure_reply(value: object, *, source: str) -> OracleReply:
    """Check an oracle return value has the reply shape."""
    if isinstance(value, (Proposal, Rejection)):
        return value
    raise CandidateFormatError(
        f"oracle call {source!r} returned {type(value).__name__}, expected Proposal or Rejection"
    )


class CallableOracle:
    """Adapts ``async def fn(context) -> Proposal | Rejection`` to the Oracle protocol."""

    def __init__(self, fn: Callable[[OracleContext], Awaitable[OracleReply]]) -> None:
        if not callable(fn):
            raise ValueError("fn must be callable")
        self._fn = fn

    async def propose(self, context: OracleContext) -> OracleReply:
        return ensure_reply(await self._fn(context), source=context.source)


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy for transient oracle faults."""

    max_retries: int = DEFAULT_BACKOFF_MAX_RETRIES
    base_delay_ms: int = DEFAULT_BACKOFF_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_BACKOFF_MAX_DELAY_MS
    jitter_ratio: float = DEFAULT_BACKOFF_JITTER_RATIO
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay_ms < 0:
            raise ValueError("max_delay_ms must be >= 0")
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError("base_delay_ms must be <= max_delay_ms")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> BackoffConfig:
        section = config.get("backoff", {})
        if not isinstance(section, Mapping):
            raise ValueError("backoff: expected table")
        return cls(
            max_retries=int(section.get("max_retries", DEFAULT_BACKOFF_MAX_RETRIES)),
            base_delay_ms=int(section.get("base_delay_ms", DEFAULT_BACKOFF_BASE_DELAY_MS)),
            max_delay_ms=int(section.get("max_delay_ms", DEFAULT_BACKOFF_MAX_DELAY_MS)),
            jitter_ratio=float(section.get("jitter_ratio", DEFAULT_BACKOFF_JITTER_RATIO)),
        )


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Return the delay in seconds before retry N (1-based)."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    max_delay = config.max_delay_ms / 1000.0
    base_delay = (config.base_delay_ms / 1000.0) * (config.multiplier ** (retry_number - 1))
    bounded_delay = min(base_delay, max_delay)

    if config.jitter_ratio == 0.0:
        return bounded_delay

    random_value = random_fn()
    if not (0.0 <= random_value <= 1.0):
        raise ValueError("random_fn must return values in [0.0, 1.0]")

    max_jitter = bounded_delay * config.jitter_ratio
    jitter = ((random_value * 2.0) - 1.0) * max_jitter
    return max(0.0, min(max_delay, bounded_delay + jitter))


class RetryingOracle:
    """Retries retryable oracle faults with bounded backoff; re-raises everything else.

    Non-``OracleException`` errors are mapped first: connection and timeout
    errors become retryable faults, anything else a non-retryable one.
    """

    def __init__(
        self,
        inner: Oracle,
        *,
        backoff: BackoffConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
        random_fn: RandomFn = random_module.random,
        logger: Any | None = None,
    ) -> None:
        self._inner = inner
        self._backoff = backoff if backoff is not None else BackoffConfig()
        self._sleep = sleep
        self._random_fn = random_fn
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def propose(self, context: OracleContext) -> OracleReply:
        retry_count = 0
        while True:
            try:
                reply = await self._inner.propose(context)
                return ensure_reply(reply, source=context.source)
            except CandidateFormatError:
                raise
            except Exception as exc:  # noqa: BLE001
                mapped = _map_exception(exc, context)
                if not mapped.retryable or retry_count >= self._backoff.max_retries:
                    if mapped is exc:
                        raise
                    raise mapped from exc

                retry_count += 1
                delay_seconds = compute_backoff_delay(
                    retry_number=retry_count,
                    config=self._backoff,
                    random_fn=self._random_fn,
                )
                self._logger.warning(
                    "synthesis_plane_oracle_retry",
                    source=context.source,
                    phase=context.phase.value,
                    retry=retry_count,
                    delay_seconds=delay_seconds,
                    error=str(mapped),
                )
                await self._sleep(delay_seconds)


class BoundedOracle:
    """Caps in-flight oracle calls with a run-scoped semaphore."""

    def __init__(self, inner: Oracle, semaphore: BoundedSemaphore) -> None:
        self._inner = inner
        self.semaphore = semaphore

    async def propose(self, context: OracleContext) -> OracleReply:
        async with self.semaphore.permit():
            return await self._inner.propose(context)


def _map_exception(exc: Exception, context: OracleContext) -> OracleException:
    if isinstance(exc, OracleException):
        return exc
    retryable = isinstance(exc, _TRANSIENT_ERRORS)
    return OracleException(
        f"{context.source}: {exc.__class__.__name__}: {exc}",
        retryable=retryable,
        phase=context.phase,
    )


__all__ = [
    "BackoffConfig",
    "BoundedOracle",
    "CallableOracle",
    "Oracle",
    "OracleReply",
    "Proposal",
    "RandomFn",
    "Rejection",
    "RetryingOracle",
    "SleepFn",
    "compute_backoff_delay",
    "ensure_reply",
]
