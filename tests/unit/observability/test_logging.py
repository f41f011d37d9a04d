"""
phase-orchestrator — unit tests for observability logging

File: tests/unit/observability/test_logging.py
Last updated: 2026-10-19

Purpose
- Validate structured JSON logging with redaction and correlation metadata.

What this test file should cover
- JSON line validity and redaction guarantees for structlog and stdlib loggers.
- Correlation field propagation through contextvars.
- Token-usage counters are not mistaken for credentials.
- Handler shutdown and reconfiguration.

Functional requirements
- Offline operation.

Non-functional requirements
- Deterministic and non-flaky.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest
import structlog

from phase_orchestrator.domain.models import Phase
from phase_orchestrator.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_correlation_context,
    redact_value,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_keeps_correlation_fields(tmp_path: Path) -> None:
    setup_structured_logging(
        LoggingConfig(run_id="run-logging", log_dir=tmp_path, log_to_stdout=False)
    )
    logger = structlog.get_logger("phase_orchestrator.tests")

    with correlation_scope(phase=Phase.SCHEMA, step=2):
        logger.info(
            "control_plane_gvc_success",
            api_key="sk-FAKE123456789012345",
            note="retry with token=abc123",
            total_tokens=42,
        )
    logger.info("after_scope")
    shutdown_logging()

    records = _read_json_lines(tmp_path / "run-logging" / "pipeline.jsonl")
    first, second = records
    assert first["event"] == "control_plane_gvc_success"
    assert first["api_key"] == "***REDACTED***"
    assert first["note"] == "retry with token=***REDACTED***"
    assert first["total_tokens"] == 42
    assert first["run_id"] == "run-logging"
    assert first["phase"] == "schema"
    assert first["step"] == 2
    assert first["level"] == "info"
    assert "timestamp" in first
    assert "phase" not in second


def test_stdlib_records_share_the_pipeline_formatter(tmp_path: Path) -> None:
    setup_structured_logging(
        LoggingConfig(run_id="run-stdlib", log_dir=tmp_path, log_to_stdout=False)
    )

    logging.getLogger("phase_orchestrator.foreign").warning("Authorization: Bearer abc.def")
    shutdown_logging()

    (record,) = _read_json_lines(tmp_path / "run-stdlib" / "pipeline.jsonl")
    assert record["event"] == "Authorization: Bearer ***REDACTED***"
    assert record["level"] == "warning"


def test_level_filter_and_redaction_toggle(tmp_path: Path) -> None:
    setup_structured_logging(
        LoggingConfig(
            run_id="run-level",
            level="WARNING",
            log_dir=tmp_path,
            log_to_stdout=False,
            redact_secrets=False,
        )
    )
    logger = structlog.get_logger("phase_orchestrator.tests")

    logger.info("dropped")
    logger.warning("kept", password="visible")
    shutdown_logging()

    (record,) = _read_json_lines(tmp_path / "run-level" / "pipeline.jsonl")
    assert record["event"] == "kept"
    assert record["password"] == "visible"


def test_setup_validates_config() -> None:
    with pytest.raises(ValueError, match="run_id must not be empty"):
        setup_structured_logging(LoggingConfig(run_id=" ", log_to_stdout=False))
    with pytest.raises(ValueError, match="unsupported log_format"):
        setup_structured_logging(LoggingConfig(run_id="r", log_format="xml"))
    with pytest.raises(ValueError, match="unsupported logging level"):
        setup_structured_logging(LoggingConfig(run_id="r", level="LOUD"))


def test_logging_config_from_observability_section(tmp_path: Path) -> None:
    config = LoggingConfig.from_observability(
        {"log_level": "DEBUG", "log_format": "text", "log_dir": str(tmp_path), "extra": 1},
        run_id="run-x",
    )

    assert config.level == "DEBUG"
    assert config.log_format == "text"
    assert config.log_dir == str(tmp_path)
    assert config.redact_secrets


def test_correlation_scope_binds_and_unbinds() -> None:
    with correlation_scope(run_id="run-1", phase=Phase.TEST, attempt_id=None):
        assert get_correlation_context() == {"run_id": "run-1", "phase": "test"}
    assert get_correlation_context() == {}


def test_redact_value_handles_nested_structures() -> None:
    redacted = redact_value(
        {"token_usage": {"total": 3}, "headers": [{"authorization": "Bearer x"}], "safe": "ok"}
    )

    assert redacted == {
        "token_usage": {"total": 3},
        "headers": [{"authorization": "***REDACTED***"}],
        "safe": "ok",
    }
