"""
phase-orchestrator — unit tests for config loader

File: tests/unit/config/test_loader.py
Last updated: 2026-10-19

Purpose
- Validate deterministic config loading from defaults, TOML, profiles, env overrides,
  and CLI overrides.

What this test file should cover
- Precedence: CLI > env > profile > file > defaults.
- Source tracking for every effective value.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.

Functional requirements
- Works offline and never reads the process environment when ``environ`` is given.

Non-functional requirements
- Deterministic output across repeated loads.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import pytest

import phase_orchestrator.config as config_pkg
from phase_orchestrator.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
    resolve_config,
)
from phase_orchestrator.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _sha256_json(data: dict[str, object]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def test_loader_precedence_default_file_profile_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    empty_path = tmp_path / "empty.toml"
    _write_config(empty_path, "")
    _write_config(
        config_path,
        """
[budgets]
review_rounds = 1
coverage_rounds = 6
""".strip(),
    )
    env = {"PHASE_BUDGETS_REVIEW_ROUNDS": "6"}

    default_loaded = load_config(empty_path, environ={})
    file_loaded = load_config(config_path, environ={})
    profile_loaded = load_config(config_path, profile="thorough", environ={})
    env_loaded = load_config(config_path, profile="thorough", environ=env)
    cli_loaded = load_config(
        config_path,
        profile="thorough",
        environ=env,
        cli_overrides={"budgets.review_rounds": 7},
    )

    assert default_loaded["budgets"]["review_rounds"] == 3
    assert file_loaded["budgets"]["review_rounds"] == 1
    assert profile_loaded["budgets"]["review_rounds"] == 5
    assert env_loaded["budgets"]["review_rounds"] == 6
    assert cli_loaded["budgets"]["review_rounds"] == 7
    assert cli_loaded["budgets"]["coverage_rounds"] == 8


def test_sources_record_the_layer_that_set_each_value(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    _write_config(config_path, '[merge]\nidentity_normalization = "casefold"\n')

    loaded = resolve_config(
        config_path,
        environ={"PHASE_PROFILE": "strict", "PHASE_CONCURRENCY_ORACLE_MAX_CONCURRENT": "3"},
        cli_overrides={"observability": {"log_level": "DEBUG"}},
    )

    assert loaded.profile == "strict"
    assert loaded.path == config_path.resolve()
    assert loaded.source_of("budgets.coverage_rounds") == "default"
    assert loaded.source_of("merge.identity_normalization") == "file"
    assert loaded.source_of("budgets.correction_retries") == "profile:strict"
    assert loaded.source_of("policies.test") == "profile:strict"
    assert loaded.source_of("concurrency.oracle_max_concurrent") == (
        "env:PHASE_CONCURRENCY_ORACLE_MAX_CONCURRENT"
    )
    assert loaded.source_of("observability.log_level") == "cli"
    assert loaded.source_of("profiles.strict.budgets.correction_retries") is None
    assert loaded.config["concurrency"]["oracle_max_concurrent"] == 3


def test_profile_selection_order(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    _write_config(config_path, "")
    env = {"PHASE_PROFILE": "strict"}

    cli = {"profile": "fast"}

    assert resolve_config(config_path, environ=env).profile == "strict"
    assert resolve_config(config_path, environ=env, cli_overrides=cli).profile == "fast"
    explicit = resolve_config(config_path, profile="thorough", environ=env, cli_overrides=cli)
    assert explicit.profile == "thorough"
    with pytest.raises(ConfigValidationError, match="profile 'missing' is not defined"):
        resolve_config(config_path, profile="missing", environ={})


def test_env_coercion_covers_bool_float_and_text(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "PHASE_OBSERVABILITY_REDACT_SECRETS": "off",
            "PHASE_BACKOFF_JITTER_RATIO": "0.25",
            "PHASE_POLICIES_IMPLEMENTATION": "consume_budget",
            "UNRELATED_VAR": "ignored",
        },
    )

    assert loaded["observability"]["redact_secrets"] is False
    assert loaded["backoff"]["jitter_ratio"] == 0.25
    assert loaded["policies"]["implementation"] == "consume_budget"
    assert env_name_for_path(("budgets", "review_rounds")) == "PHASE_BUDGETS_REVIEW_ROUNDS"


def test_invalid_env_values_raise_actionable_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    _write_config(config_path, "")

    with pytest.raises(ConfigLoadError, match="PHASE_BUDGETS_REVIEW_ROUNDS"):
        load_config(config_path, environ={"PHASE_BUDGETS_REVIEW_ROUNDS": "lots"})
    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(config_path, environ={"PHASE_OBSERVABILITY_REDACT_SECRETS": "maybe"})
    with pytest.raises(ConfigValidationError, match="budgets.review_rounds: must be >= 0"):
        load_config(config_path, environ={"PHASE_BUDGETS_REVIEW_ROUNDS": "-1"})


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    _write_config(broken, "[budgets\n")

    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_default_file_is_optional(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = resolve_config(environ={})

    assert loaded.path == (tmp_path / "pipeline.toml").resolve()
    assert loaded.config["budgets"]["regeneration_rounds"] == 5


def test_loader_is_deterministic_for_same_inputs(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    _write_config(config_path, "")
    env = {"PHASE_BUDGETS_REVIEW_ROUNDS": "2", "PHASE_OBSERVABILITY_REDACT_SECRETS": "true"}
    cli = {"backoff.base_delay_ms": 10}

    first = load_config(config_path, environ=env, cli_overrides=cli)
    second = load_config(config_path, environ=env, cli_overrides=cli)

    assert _sha256_json(first) == _sha256_json(second)


def test_path_normalization_is_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "pipeline.toml"
    _write_config(config_path, '[observability]\nlog_dir = "run-logs"\n')

    loaded = load_config(config_path, environ={})
    overridden = load_config(
        config_path, environ={}, cli_overrides={"observability.log_dir": "logs/"}
    )

    assert loaded["observability"]["log_dir"] == (config_path.parent / "run-logs").as_posix()
    assert overridden["observability"]["log_dir"] == (config_path.parent / "logs").as_posix()


def test_dump_effective_config_is_compact_and_sorted(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    _write_config(config_path, "")

    dumped = dump_effective_config(load_config(config_path, environ={}))

    assert dumped == dump_effective_config(json.loads(dumped))
    assert ", " not in dumped
    assert dumped.index('"backoff"') < dumped.index('"budgets"')


def test_config_package_exports_loader_and_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.toml"
    _write_config(config_path, "")

    loaded = config_pkg.load_config(config_path, environ={})

    assert loaded["meta"]["schema_version"] == config_pkg.ConfigSchemaVersion
    assert issubclass(config_pkg.ConfigLoadError, ValueError)
