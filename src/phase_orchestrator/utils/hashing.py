"""SHA-256 digests for artifact fingerprints and rendered file sets."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return hashlib.sha256(text.encode(encoding)).hexdigest()


def file_set_manifest(files: Mapping[str, str]) -> dict[str, str]:
    """``{location: digest}`` for a rendered file set, keyed in sorted order."""
    manifest: dict[str, str] = {}
    for location in sorted(files):
        content = files[location]
        if not isinstance(content, str):
            raise ValueError(f"file content for {location!r} must be a string")
        manifest[location] = sha256_text(content)
    return manifest


@dataclass(frozen=True, slots=True)
class ManifestDiff:
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    changed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()

    @property
    def touched(self) -> tuple[str, ...]:
        return tuple(sorted({*self.added, *self.removed, *self.changed}))


def diff_manifests(before: Mapping[str, str], after: Mapping[str, str]) -> ManifestDiff:
    shared = before.keys() & after.keys()
    return ManifestDiff(
        added=tuple(sorted(after.keys() - before.keys())),
        removed=tuple(sorted(before.keys() - after.keys())),
        changed=tuple(sorted(name for name in shared if before[name] != after[name])),
        unchanged=tuple(sorted(name for name in shared if before[name] == after[name])),
    )


__all__ = ["ManifestDiff", "diff_manifests", "file_set_manifest", "sha256_text"]
