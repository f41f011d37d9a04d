"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_SCHEMA_VERSION: Final[int] = 1

# Default configuration file looked up in the working directory.
DEFAULT_CONFIG_FILENAME: Final[str] = "pipeline.toml"

# Retry budgets (number of correction rounds after the first attempt).
DEFAULT_CORRECTION_RETRIES: Final[int] = 4
DEFAULT_COVERAGE_ROUNDS: Final[int] = 4
DEFAULT_REVIEW_ROUNDS: Final[int] = 3
DEFAULT_REGENERATION_ROUNDS: Final[int] = 5
DEFAULT_SCHEMA_CORRECTION_ROUNDS: Final[int] = 4
DEFAULT_COMPLEMENT_ROUNDS: Final[int] = 8
DEFAULT_TEST_CORRECTION_ROUNDS: Final[int] = 4
DEFAULT_AUTHORIZATION_CORRECTION_ROUNDS: Final[int] = 4

# Fan-out limits.
DEFAULT_ORACLE_MAX_CONCURRENT: Final[int] = 8
DEFAULT_INTERFACE_BATCH_CAPACITY: Final[int] = 8
DEFAULT_SCHEMA_CORRECTION_BATCH: Final[int] = 8

# Oracle transport retry (exponential backoff with jitter).
DEFAULT_BACKOFF_MAX_RETRIES: Final[int] = 5
DEFAULT_BACKOFF_BASE_DELAY_MS: Final[int] = 4_000
DEFAULT_BACKOFF_MAX_DELAY_MS: Final[int] = 60_000
DEFAULT_BACKOFF_JITTER_RATIO: Final[float] = 0.8

# Event stream sizing.
DEFAULT_EVENT_BUFFER_SIZE: Final[int] = 4_096
DEFAULT_EVENT_CHANNEL_SIZE: Final[int] = 256

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_AUTHORIZATION_CORRECTION_ROUNDS",
    "DEFAULT_BACKOFF_BASE_DELAY_MS",
    "DEFAULT_BACKOFF_JITTER_RATIO",
    "DEFAULT_BACKOFF_MAX_DELAY_MS",
    "DEFAULT_BACKOFF_MAX_RETRIES",
    "DEFAULT_COMPLEMENT_ROUNDS",
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_CORRECTION_RETRIES",
    "DEFAULT_COVERAGE_ROUNDS",
    "DEFAULT_EVENT_BUFFER_SIZE",
    "DEFAULT_EVENT_CHANNEL_SIZE",
    "DEFAULT_INTERFACE_BATCH_CAPACITY",
    "DEFAULT_ORACLE_MAX_CONCURRENT",
    "DEFAULT_REGENERATION_ROUNDS",
    "DEFAULT_REVIEW_ROUNDS",
    "DEFAULT_SCHEMA_CORRECTION_BATCH",
    "DEFAULT_SCHEMA_CORRECTION_ROUNDS",
    "DEFAULT_TEST_CORRECTION_ROUNDS",
    "STATE_SCHEMA_VERSION",
]
