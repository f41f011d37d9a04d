"""
phase-orchestrator: layered runtime config loader.

Purpose
- Build the effective pipeline config from defaults, ``pipeline.toml``, a named
  profile, ``PHASE_*`` environment variables and CLI overrides.

Functional requirements
- Precedence: CLI > env > profile > file > defaults.
- Every layer is validated before the next one is applied.
- Record which layer supplied each effective value.
- Normalize path fields relative to the config file location.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from phase_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)
from phase_orchestrator.constants import DEFAULT_CONFIG_FILENAME

DEFAULT_CONFIG_FILE: Final[str] = DEFAULT_CONFIG_FILENAME
ENV_PREFIX: Final[str] = "PHASE_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Config file is missing or unreadable, or an override cannot be coerced."""


@dataclass(frozen=True, slots=True)
class LoadedConfig:
    """Effective config plus where it came from.

    ``sources`` maps dotted keys (``budgets.review_rounds``) to the layer that
    last set them: ``default``, ``file``, ``profile:<name>``, ``env:<VAR>`` or
    ``cli``.
    """

    config: dict[str, Any]
    path: Path
    profile: str | None = None
    sources: dict[str, str] = field(default_factory=dict)

    def source_of(self, dotted_key: str) -> str | None:
        return self.sources.get(dotted_key)


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the effective config dict; see ``resolve_config``."""
    return resolve_config(
        config_path, profile=profile, cli_overrides=cli_overrides, environ=environ
    ).config


def resolve_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> LoadedConfig:
    """Fold every config layer in precedence order.

    A missing default ``pipeline.toml`` is an empty layer; a missing explicit
    ``config_path`` is an error. The profile is chosen by argument, then the
    ``profile`` CLI key, then ``PHASE_PROFILE``.
    """

    path = (
        Path.cwd() / DEFAULT_CONFIG_FILE
        if config_path is None
        else Path(config_path).expanduser()
    ).resolve()
    env = dict(os.environ if environ is None else environ)
    cli = dict(cli_overrides or {})

    config = default_config()
    sources = {_dotted(key): "default" for key, _ in _leaves(config, skip_profiles=True)}

    file_layer = _read_toml(path, required=config_path is not None)
    config = assert_valid_config(merge_config(config, file_layer))
    _record(sources, file_layer, "file")

    selected = _select_profile(profile, cli, env)
    if selected is not None:
        before = dict(_leaves(config, skip_profiles=True))
        config = apply_profile_overlay(config, selected)
        for key, value in _leaves(config, skip_profiles=True):
            if before.get(key) != value:
                sources[_dotted(key)] = f"profile:{selected}"

    env_layer, env_names = _env_layer(config, env)
    config = merge_config(config, env_layer)
    for key, name in env_names.items():
        sources[_dotted(key)] = f"env:{name}"

    cli_layer = _cli_layer(cli)
    config = assert_valid_config(merge_config(config, cli_layer))
    _record(sources, cli_layer, "cli")

    config = assert_valid_config(normalize_paths(config, base_dir=path.parent))
    return LoadedConfig(config=config, path=path, profile=selected, sources=sources)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve relative path fields (top level and inside profiles) against ``base_dir``."""

    result = merge_config({}, config)
    targets: list[ConfigPath] = list(PATH_FIELDS)
    profiles = result.get("profiles")
    if isinstance(profiles, Mapping):
        targets.extend(
            ("profiles", name, *suffix)
            for name in sorted(profiles)
            for suffix in PATH_FIELDS
            if isinstance(profiles[name], Mapping) and suffix[0] in profiles[name]
        )
    for target in targets:
        raw = _lookup(result, target)
        if isinstance(raw, str):
            _assign(result, target, _absolute_posix(raw, base_dir))
    return result


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of the redacted config."""
    return json.dumps(
        dump_redacted(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_name_for_path(path: ConfigPath) -> str:
    """``("budgets", "review_rounds")`` becomes ``PHASE_BUDGETS_REVIEW_ROUNDS``."""
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None,
    cli: Mapping[str, object],
    env: Mapping[str, str],
) -> str | None:
    if explicit is not None:
        candidate: object = explicit
    elif "profile" in cli:
        candidate = cli["profile"]
        if not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        candidate = env.get(PROFILE_ENV_VAR)
    if candidate is None:
        return None
    return str(candidate).strip() or None


def _env_layer(
    config: Mapping[str, object],
    env: Mapping[str, str],
) -> tuple[dict[str, Any], dict[ConfigPath, str]]:
    """Overrides for every scalar config key that has a ``PHASE_*`` variable set."""

    layer: dict[str, Any] = {}
    names: dict[ConfigPath, str] = {}
    for key, current in _leaves(config, skip_profiles=True):
        name = env_name_for_path(key)
        raw = env.get(name)
        if raw is None:
            continue
        _assign(layer, key, _coerce(raw, current, name, key))
        names[key] = name
    return layer, names


def _coerce(raw: str, current: object, name: str, key: ConfigPath) -> object:
    text = raw.strip()
    target = ".".join(key)
    if isinstance(current, bool):
        lowered = text.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ConfigLoadError(
            f"{name} -> {target} must be a boolean (true/false/1/0/yes/no/on/off)"
        )
    if isinstance(current, int):
        try:
            return int(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {target} must be an integer") from exc
    if isinstance(current, float):
        try:
            return float(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {target} must be a number") from exc
    return text


def _cli_layer(cli: Mapping[str, object]) -> dict[str, Any]:
    """Dotted keys (``budgets.review_rounds``) or nested tables; ``profile`` is consumed."""

    layer: dict[str, Any] = {}
    for raw_key in sorted(cli):
        if raw_key == "profile":
            continue
        key = tuple(part for part in raw_key.split(".") if part)
        if not key:
            raise ConfigLoadError(f"invalid CLI override key {raw_key!r}")
        value = cli[raw_key]
        if isinstance(value, Mapping):
            value = merge_config(_lookup(layer, key) or {}, value)
        _assign(layer, key, value)
    return layer


def _record(sources: dict[str, str], layer: Mapping[str, object], label: str) -> None:
    for key, _ in _leaves(layer, skip_profiles=True):
        sources[_dotted(key)] = label


def _leaves(
    payload: Mapping[str, object],
    prefix: ConfigPath = (),
    *,
    skip_profiles: bool = False,
) -> Iterator[tuple[ConfigPath, object]]:
    for name in sorted(payload):
        if skip_profiles and not prefix and name == "profiles":
            continue
        value = payload[name]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, name))
        else:
            yield (*prefix, name), value


def _lookup(payload: Mapping[str, object], key: ConfigPath) -> Any:
    node: object = payload
    for part in key:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _assign(payload: dict[str, Any], key: ConfigPath, value: object) -> None:
    node = payload
    for part in key[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[key[-1]] = value


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _dotted(key: ConfigPath) -> str:
    return ".".join(key)


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "ConfigLoadError",
    "LoadedConfig",
    "dump_effective_config",
    "env_name_for_path",
    "load_config",
    "normalize_paths",
    "resolve_config",
]
