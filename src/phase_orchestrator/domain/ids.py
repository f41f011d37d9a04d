"""Sortable identifiers for runs, events, artifacts, and GVC attempts.

Every id is ``<kind>-<ulid>``: a short kind tag followed by a 26-character
Crockford Base32 ULID, so ids sort by creation time within a kind.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"
EVENT_ID_PREFIX: Final[str] = "evt"
ARTIFACT_ID_PREFIX: Final[str] = "art"
ATTEMPT_ID_PREFIX: Final[str] = "att"

_RANDOM_BYTES: Final[int] = 10
_DIGITS: Final[dict[str, int]] = {
    char: value for value, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

RandBytes = Callable[[int], bytes]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: RandBytes | None = None) -> str:
    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(stamp, bool) or not isinstance(stamp, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(stamp).__name__}")
    if not 0 <= stamp <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {stamp}")
    noise = bytes((randbytes or secrets.token_bytes)(_RANDOM_BYTES))
    if len(noise) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (stamp << 80) | int.from_bytes(noise, "big")
    chars: list[str] = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    return "".join(reversed(chars))


def validate_ulid(value: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    bad = [char for char in value if char.upper() not in _DIGITS]
    if bad:
        raise ValueError(f"invalid ULID character {bad[0]!r}")
    # 26 base32 digits carry 130 bits; a ULID only has 128.
    if _DIGITS[value[0].upper()] > 7:
        raise ValueError("ulid overflow: value exceeds 128 bits")


def ulid_timestamp_ms(value: str) -> int:
    validate_ulid(value)
    decoded = 0
    for char in value:
        decoded = (decoded << 5) | _DIGITS[char.upper()]
    return decoded >> 80


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    _check_prefix(prefix)
    return f"{prefix}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"id must be a string, got {type(id_str).__name__}")
    head, sep, tail = id_str.partition("-")
    if not sep or head != expected_prefix:
        raise ValueError(f"expected prefix '{expected_prefix}-'")
    try:
        validate_ulid(tail)
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_run_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms)


def generate_event_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX, timestamp_ms=timestamp_ms)


def validate_event_id(id_str: str) -> None:
    validate_prefixed_id(id_str, EVENT_ID_PREFIX)


def generate_artifact_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(ARTIFACT_ID_PREFIX, timestamp_ms=timestamp_ms)


def validate_artifact_id(id_str: str) -> None:
    validate_prefixed_id(id_str, ARTIFACT_ID_PREFIX)


def generate_attempt_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(ATTEMPT_ID_PREFIX, timestamp_ms=timestamp_ms)


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix or "-" in prefix:
        raise ValueError(f"invalid id prefix {prefix!r}")


__all__ = [
    "ARTIFACT_ID_PREFIX",
    "ATTEMPT_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "ULID_MAX_TIMESTAMP_MS",
    "generate_artifact_id",
    "generate_attempt_id",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_ulid",
    "ulid_timestamp_ms",
    "validate_artifact_id",
    "validate_event_id",
    "validate_prefixed_id",
    "validate_ulid",
]
