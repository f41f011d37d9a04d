"""Merge-by-identity for named entities (tables, models, operations, functions)."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from phase_orchestrator.domain.models import Entry, StrEnum

E = TypeVar("E")

IdentityKey = Callable[[Any], str]
IdentityNormalizer = Callable[[str], str]


class IdentityNormalization(StrEnum):
    """How entity names are compared before merging."""

    EXACT = "exact"
    CASEFOLD = "casefold"
    CASEFOLD_STRIP = "casefold_strip"


class DuplicateIdentityError(ValueError):
    """One input list holds two entries with the same (normalized) identity."""

    def __init__(self, identity: str, *, source: str) -> None:
        self.identity = identity
        self.source = source
        super().__init__(f"{source}: duplicate identity {identity!r}")


def identity_normalizer(mode: IdentityNormalization | str) -> IdentityNormalizer:
    resolved = IdentityNormalization(mode)
    if resolved is IdentityNormalization.CASEFOLD:
        return str.casefold
    if resolved is IdentityNormalization.CASEFOLD_STRIP:
        return _casefold_strip
    return _exact


def entry_name(entry: Entry) -> str:
    return entry.name


def merge_by_identity(
    draft: Iterable[E],
    modifications: Iterable[E],
    *,
    key: IdentityKey = entry_name,
    normalize: IdentityNormalizer | None = None,
) -> list[E]:
    """Overlay ``modifications`` on ``draft`` by identity; modifications win.

    Unmatched draft entries pass through unchanged. The result is ordered by
    identity, so it does not depend on input order, and merging the result
    with the same modifications again is a no-op. Identities must be unique
    within each input list.
    """

    normalizer = normalize if normalize is not None else _exact
    merged = _index(draft, key, normalizer, source="draft")
    merged.update(_index(modifications, key, normalizer, source="modifications"))
    return [merged[identity] for identity in sorted(merged)]


def union_by_identity(
    existing: Iterable[E],
    additions: Iterable[E],
    *,
    key: IdentityKey = entry_name,
    normalize: IdentityNormalizer | None = None,
) -> list[E]:
    """Add entries whose identity is not present yet; existing entries win.

    Keeps ``existing`` order and appends new identities in first-seen order.
    """

    normalizer = normalize if normalize is not None else _exact
    result = list(existing)
    seen = {normalizer(key(item)) for item in result}
    for item in additions:
        identity = normalizer(key(item))
        if identity in seen:
            continue
        seen.add(identity)
        result.append(item)
    return result


def dedupe_first(
    entries: Iterable[E],
    *,
    key: IdentityKey = entry_name,
    normalize: IdentityNormalizer | None = None,
) -> list[E]:
    """Drop later entries that repeat an identity; the first occurrence wins."""
    return union_by_identity((), entries, key=key, normalize=normalize)


def _index(
    entries: Iterable[E],
    key: IdentityKey,
    normalizer: IdentityNormalizer,
    *,
    source: str,
) -> dict[str, E]:
    indexed: dict[str, E] = {}
    for item in entries:
        identity = normalizer(key(item))
        if identity in indexed:
            raise DuplicateIdentityError(identity, source=source)
        indexed[identity] = item
    return indexed


def _exact(value: str) -> str:
    return value


def _casefold_strip(value: str) -> str:
    return "".join(value.split()).casefold()


__all__ = [
    "DuplicateIdentityError",
    "IdentityKey",
    "IdentityNormalization",
    "IdentityNormalizer",
    "dedupe_first",
    "entry_name",
    "identity_normalizer",
    "merge_by_identity",
    "union_by_identity",
]
