"""Utility exports for hashing and concurrency helpers."""

from phase_orchestrator.utils.concurrency import BoundedSemaphore, gather_all
from phase_orchestrator.utils.hashing import (
    ManifestDiff,
    diff_manifests,
    file_set_manifest,
    sha256_text,
)

__all__ = [
    "BoundedSemaphore",
    "ManifestDiff",
    "diff_manifests",
    "file_set_manifest",
    "gather_all",
    "sha256_text",
]
