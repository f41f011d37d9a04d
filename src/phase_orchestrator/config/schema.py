"""
phase-orchestrator — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support profile overlays including strict/thorough/fast.
- Keep merges deterministic so the effective config is reproducible from its inputs.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from phase_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_AUTHORIZATION_CORRECTION_ROUNDS,
    DEFAULT_BACKOFF_BASE_DELAY_MS,
    DEFAULT_BACKOFF_JITTER_RATIO,
    DEFAULT_BACKOFF_MAX_DELAY_MS,
    DEFAULT_BACKOFF_MAX_RETRIES,
    DEFAULT_COMPLEMENT_ROUNDS,
    DEFAULT_CORRECTION_RETRIES,
    DEFAULT_COVERAGE_ROUNDS,
    DEFAULT_EVENT_BUFFER_SIZE,
    DEFAULT_EVENT_CHANNEL_SIZE,
    DEFAULT_INTERFACE_BATCH_CAPACITY,
    DEFAULT_ORACLE_MAX_CONCURRENT,
    DEFAULT_REGENERATION_ROUNDS,
    DEFAULT_REVIEW_ROUNDS,
    DEFAULT_SCHEMA_CORRECTION_BATCH,
    DEFAULT_SCHEMA_CORRECTION_ROUNDS,
    DEFAULT_TEST_CORRECTION_ROUNDS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "thorough", "fast")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

BUDGET_FIELDS: Final[tuple[str, ...]] = (
    "correction_retries",
    "coverage_rounds",
    "review_rounds",
    "regeneration_rounds",
    "schema_correction_rounds",
    "complement_rounds",
    "test_correction_rounds",
    "authorization_correction_rounds",
)
CONCURRENCY_FIELDS: Final[tuple[str, ...]] = (
    "oracle_max_concurrent",
    "interface_batch_capacity",
    "schema_correction_batch",
)
POLICY_LOOPS: Final[tuple[str, ...]] = (
    "requirements",
    "schema",
    "interface",
    "test",
    "implementation",
    "authorization",
)
POLICY_VALUES: Final[tuple[str, ...]] = ("abort_on_exception", "consume_budget")
NORMALIZATION_VALUES: Final[tuple[str, ...]] = ("exact", "casefold", "casefold_strip")

_SECTIONS: Final[tuple[str, ...]] = (
    "meta",
    "budgets",
    "concurrency",
    "backoff",
    "policies",
    "merge",
    "observability",
)
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = _SECTIONS[1:]


class MetaConfig(TypedDict):
    schema_version: int


class BudgetsConfig(TypedDict):
    correction_retries: int
    coverage_rounds: int
    review_rounds: int
    regeneration_rounds: int
    schema_correction_rounds: int
    complement_rounds: int
    test_correction_rounds: int
    authorization_correction_rounds: int


class ConcurrencyConfig(TypedDict):
    oracle_max_concurrent: int
    interface_batch_capacity: int
    schema_correction_batch: int


class BackoffSection(TypedDict):
    max_retries: int
    base_delay_ms: int
    max_delay_ms: int
    jitter_ratio: float


PolicyValue = Literal["abort_on_exception", "consume_budget"]


class PoliciesConfig(TypedDict):
    requirements: PolicyValue
    schema: PolicyValue
    interface: PolicyValue
    test: PolicyValue
    implementation: PolicyValue
    authorization: PolicyValue


class MergeConfig(TypedDict):
    identity_normalization: Literal["exact", "casefold", "casefold_strip"]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_format: Literal["json", "text"]
    log_dir: str
    event_buffer_size: int
    event_channel_size: int
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    budgets: dict[str, object]
    concurrency: dict[str, object]
    backoff: dict[str, object]
    policies: dict[str, object]
    merge: dict[str, object]
    observability: dict[str, object]


class PipelineConfig(TypedDict):
    meta: MetaConfig
    budgets: BudgetsConfig
    concurrency: ConcurrencyConfig
    backoff: BackoffSection
    policies: PoliciesConfig
    merge: MergeConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[PipelineConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "budgets": {
        "correction_retries": DEFAULT_CORRECTION_RETRIES,
        "coverage_rounds": DEFAULT_COVERAGE_ROUNDS,
        "review_rounds": DEFAULT_REVIEW_ROUNDS,
        "regeneration_rounds": DEFAULT_REGENERATION_ROUNDS,
        "schema_correction_rounds": DEFAULT_SCHEMA_CORRECTION_ROUNDS,
        "complement_rounds": DEFAULT_COMPLEMENT_ROUNDS,
        "test_correction_rounds": DEFAULT_TEST_CORRECTION_ROUNDS,
        "authorization_correction_rounds": DEFAULT_AUTHORIZATION_CORRECTION_ROUNDS,
    },
    "concurrency": {
        "oracle_max_concurrent": DEFAULT_ORACLE_MAX_CONCURRENT,
        "interface_batch_capacity": DEFAULT_INTERFACE_BATCH_CAPACITY,
        "schema_correction_batch": DEFAULT_SCHEMA_CORRECTION_BATCH,
    },
    "backoff": {
        "max_retries": DEFAULT_BACKOFF_MAX_RETRIES,
        "base_delay_ms": DEFAULT_BACKOFF_BASE_DELAY_MS,
        "max_delay_ms": DEFAULT_BACKOFF_MAX_DELAY_MS,
        "jitter_ratio": DEFAULT_BACKOFF_JITTER_RATIO,
    },
    "policies": {
        "requirements": "consume_budget",
        "schema": "consume_budget",
        "interface": "consume_budget",
        "test": "consume_budget",
        "implementation": "abort_on_exception",
        "authorization": "abort_on_exception",
    },
    "merge": {
        "identity_normalization": "exact",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "logs/",
        "event_buffer_size": DEFAULT_EVENT_BUFFER_SIZE,
        "event_channel_size": DEFAULT_EVENT_CHANNEL_SIZE,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "budgets": {"correction_retries": 2, "regeneration_rounds": 2},
            "policies": {"test": "abort_on_exception"},
        },
        "thorough": {
            "budgets": {
                "coverage_rounds": 8,
                "review_rounds": 5,
                "regeneration_rounds": 8,
                "complement_rounds": 12,
            },
        },
        "fast": {
            "budgets": {"review_rounds": 0, "coverage_rounds": 2, "complement_rounds": 2},
            "merge": {"identity_normalization": "casefold_strip"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Outcome of ``validate_config``; ``config`` is set only when no issue was found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {item.path}: {item.message}" for item in self.issues]
        rendered = "\n".join(lines) if lines else "unknown validation failure"
        super().__init__(f"invalid config:\n{rendered}")


class _Issues(list[ConfigValidationIssue]):
    """Issue accumulator threaded through the section validators."""

    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


def default_config() -> PipelineConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade pipeline.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the phase-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``.

    Nested tables merge key by key; any other overlay value replaces the base
    value outright. Keys come out sorted so two merges of the same layers are
    identical, and neither input is mutated.
    """

    merged: dict[str, Any] = {key: copy.deepcopy(base[key]) for key in sorted(base)}
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = merge_config({}, config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles = materialized.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay = profiles.get(selected)
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _Issues()
    root = _as_object(config, "<root>", issues)
    normalized = _validate_root(root, issues) if root is not None else None
    if issues or normalized is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Sorted copy of ``config`` with secret-looking keys masked, safe to log."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: "<redacted>" if _looks_sensitive_key(key) else _redact_nested(value)
        for key, value in sorted(config.items())
    }


def _redact_nested(value: object) -> object:
    if isinstance(value, Mapping):
        return dump_redacted(value)
    if isinstance(value, (list, tuple)):
        return [_redact_nested(item) for item in value]
    return value


_SectionValidator = Callable[[Mapping[str, object], str, _Issues, bool], dict[str, Any]]


def _validate_root(payload: Mapping[str, object], issues: _Issues) -> dict[str, Any]:
    _check_keys(payload, {*_SECTIONS, "profiles"}, "", issues, required=_SECTIONS)

    out: dict[str, Any] = {}
    for key in _SECTIONS:
        section = _section(payload, key, "", issues)
        if section is not None:
            out[key] = _VALIDATORS[key](section, key, issues, False)

    profiles = _section(payload, "profiles", "", issues)
    if profiles is not None:
        out["profiles"] = _validate_profiles(profiles, "profiles", issues)
    return out


def _section(
    payload: Mapping[str, object], key: str, path: str, issues: _Issues
) -> dict[str, object] | None:
    raw = payload.get(key)
    if raw is None:
        return None
    return _as_object(raw, _join(path, key), issues)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _Issues, partial: bool
) -> dict[str, Any]:
    out = _int_section(payload, path, issues, partial, names=("schema_version",), minimum=1)
    version = out.get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.add(_join(path, "schema_version"), migration_guidance(version))
    return out


def _validate_budgets(
    payload: Mapping[str, object], path: str, issues: _Issues, partial: bool
) -> dict[str, Any]:
    return _int_section(payload, path, issues, partial, names=BUDGET_FIELDS, minimum=0)


def _validate_concurrency(
    payload: Mapping[str, object], path: str, issues: _Issues, partial: bool
) -> dict[str, Any]:
    return _int_section(payload, path, issues, partial, names=CONCURRENCY_FIELDS, minimum=1)


def _validate_backoff(
    payload: Mapping[str, object], path: str, issues: _Issues, partial: bool
) -> dict[str, Any]:
    delays = ("max_retries", "base_delay_ms", "max_delay_ms")
    _check_keys(payload, {*delays, "jitter_ratio"}, path, issues, partial=partial)
    out = _int_section(payload, path, issues, True, names=delays, minimum=0, check=False)

    if "jitter_ratio" in payload:
        jitter_path = _join(path, "jitter_ratio")
        jitter = _as_ratio(payload["jitter_ratio"], jitter_path, issues)
        if jitter is not None:
            out["jitter_ratio"] = jitter

    base, ceiling = out.get("base_delay_ms"), out.get("max_delay_ms")
    if base is not None and ceiling is not None and base > ceiling:
        issues.add(_join(path, "base_delay_ms"), "must be <= max_delay_ms")
    return out


def _validate_policies(
    payload: Mapping[str, object], path: str, issues: _Issues, partial: bool
) -> dict[str, Any]:
    choices = {key: POLICY_VALUES for key in POLICY_LOOPS}
    return _enum_section(payload, path, issues, partial, choices)


def _validate_merge(
    payload: Mapping[str, object], path: str, issues: _Issues, partial: bool
) -> dict[str, Any]:
    choices = {"identity_normalization": NORMALIZATION_VALUES}
    return _enum_section(payload, path, issues, partial, choices)


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _Issues, partial: bool
) -> dict[str, Any]:
    choices = {
        "log_level": ("DEBUG", "INFO", "WARNING", "ERROR"),
        "log_format": ("json", "text"),
    }
    sizes = ("event_buffer_size", "event_channel_size")
    allowed = {*choices, *sizes, "log_dir", "redact_secrets"}
    _check_keys(payload, allowed, path, issues, partial=partial)

    out = _enum_section(payload, path, issues, True, choices, check=False)
    if "log_dir" in payload:
        log_dir = _as_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if log_dir is not None and "\x00" in log_dir:
            issues.add(_join(path, "log_dir"), "must not contain NUL bytes")
        elif log_dir is not None:
            out["log_dir"] = log_dir
    out.update(_int_section(payload, path, issues, True, names=sizes, minimum=1, check=False))
    if "redact_secrets" in payload:
        flag = payload["redact_secrets"]
        if isinstance(flag, bool):
            out["redact_secrets"] = flag
        else:
            _wrong_type(issues, _join(path, "redact_secrets"), "boolean", flag)
    return out


_VALIDATORS: Final[dict[str, _SectionValidator]] = {
    "meta": _validate_meta,
    "budgets": _validate_budgets,
    "concurrency": _validate_concurrency,
    "backoff": _validate_backoff,
    "policies": _validate_policies,
    "merge": _validate_merge,
    "observability": _validate_observability,
}


def _validate_profiles(
    payload: Mapping[str, object], path: str, issues: _Issues
) -> dict[str, Any]:
    # Overlays are partial: only the sections and keys they name are checked.
    out: dict[str, Any] = {}
    for name in sorted(payload):
        profile_path = _join(path, name)
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[name], profile_path, issues)
        if overlay is None:
            continue
        _check_keys(overlay, set(_OVERLAY_SECTIONS), profile_path, issues)
        validated: dict[str, Any] = {}
        for key in _OVERLAY_SECTIONS:
            section = _section(overlay, key, profile_path, issues)
            if section is not None:
                validated[key] = _VALIDATORS[key](
                    section, _join(profile_path, key), issues, True
                )
        out[name] = validated
    return out


def _int_section(
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    partial: bool,
    *,
    names: tuple[str, ...],
    minimum: int,
    check: bool = True,
) -> dict[str, Any]:
    if check:
        _check_keys(payload, set(names), path, issues, partial=partial)
    out: dict[str, Any] = {}
    for key in names:
        if key not in payload:
            continue
        value = payload[key]
        if isinstance(value, bool) or not isinstance(value, int):
            _wrong_type(issues, _join(path, key), "integer", value)
        elif value < minimum:
            issues.add(_join(path, key), f"must be >= {minimum}")
        else:
            out[key] = value
    return out


def _enum_section(
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    partial: bool,
    choices: Mapping[str, tuple[str, ...]],
    *,
    check: bool = True,
) -> dict[str, Any]:
    if check:
        _check_keys(payload, set(choices), path, issues, partial=partial)
    out: dict[str, Any] = {}
    for key, allowed in choices.items():
        if key not in payload:
            continue
        key_path = _join(path, key)
        parsed = _as_text(payload[key], key_path, issues)
        if parsed is None:
            continue
        if parsed in allowed:
            out[key] = parsed
        else:
            expected = ", ".join(sorted(allowed))
            issues.add(key_path, f"invalid value {parsed!r}; expected one of: {expected}")
    return out


def _as_object(value: object, path: str, issues: _Issues) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        _wrong_type(issues, path, "object", value)
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if isinstance(key, str):
            out[key] = item
        else:
            issues.add(path, f"object key must be string, got {type(key).__name__}")
    return out


def _as_text(value: object, path: str, issues: _Issues) -> str | None:
    if not isinstance(value, str):
        _wrong_type(issues, path, "string", value)
        return None
    if not value.strip():
        issues.add(path, "must not be empty")
        return None
    return value.strip()


def _as_ratio(value: object, path: str, issues: _Issues) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _wrong_type(issues, path, "number", value)
        return None
    ratio = float(value)
    if not math.isfinite(ratio):
        issues.add(path, "must be finite")
    elif ratio < 0.0:
        issues.add(path, "must be >= 0.0")
    elif ratio > 1.0:
        issues.add(path, "must be <= 1.0")
    else:
        return ratio
    return None


def _wrong_type(issues: _Issues, path: str, expected: str, value: object) -> None:
    issues.add(path, f"expected {expected}, got {type(value).__name__}")


def _check_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _Issues,
    *,
    partial: bool = True,
    required: Sequence[str] = (),
) -> None:
    """Flag unknown (or secret-looking) keys, then missing ones unless ``partial``."""

    for key in sorted(set(payload) - allowed):
        if _looks_sensitive_key(key):
            issues.add(_join(path, key), "embedded secret values are forbidden in pipeline config")
        else:
            issues.add(_join(path, key), "unknown field")
    needed = set(required) if required else (set() if partial else allowed)
    for key in sorted(needed - set(payload)):
        issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    spaced = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    normalized = _NON_ALNUM.sub("_", spaced.lower()).strip("_")
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "BUDGET_FIELDS",
    "BUILTIN_PROFILE_NAMES",
    "CONCURRENCY_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "NORMALIZATION_VALUES",
    "PATH_FIELDS",
    "POLICY_LOOPS",
    "POLICY_VALUES",
    "PipelineConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
