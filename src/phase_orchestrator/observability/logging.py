"""Structured logging setup: structlog processors rendered through stdlib handlers."""

from __future__ import annotations

import logging
import re
import sys
import threading
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOG_FILENAME: Final[str] = "pipeline.jsonl"
_ROOT_LOGGER_NAME: Final[str] = "phase_orchestrator"
_LOG_FORMATS: Final[frozenset[str]] = frozenset({"json", "text"})

_CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "phase",
    "step",
    "attempt_id",
    "component",
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*(?!bearer\b)([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_SECRET_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-[A-Za-z0-9_-]{12,}\b")

# Token-usage fields are counters, not credentials.
_SAFE_KEYS: Final[frozenset[str]] = frozenset({"tokens", "token_usage", "total_tokens"})

_ACTIVE_LOCK = threading.Lock()
_ACTIVE_HANDLERS: list[logging.Handler] = []


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for one run's structured logging."""

    run_id: str
    level: int | str = "INFO"
    log_format: str = "json"
    log_dir: Path | str | None = None
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stdout: bool = True
    redact_secrets: bool = True

    @classmethod
    def from_observability(
        cls,
        observability: Mapping[str, object],
        *,
        run_id: str,
    ) -> LoggingConfig:
        """Build from an ``[observability]`` config section."""
        raw_level = observability.get("log_level", "INFO")
        raw_format = observability.get("log_format", "json")
        raw_dir = observability.get("log_dir")
        return cls(
            run_id=run_id,
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_format=raw_format if isinstance(raw_format, str) else "json",
            log_dir=raw_dir if isinstance(raw_dir, (str, Path)) else None,
            redact_secrets=bool(observability.get("redact_secrets", True)),
        )


def setup_structured_logging(config: LoggingConfig) -> logging.Logger:
    """Configure structlog for a run and return the stdlib logger it renders through.

    Calling this again replaces the previous configuration and closes the
    handlers it created.
    """

    run_id = _require_text(config.run_id, "run_id")
    level = _parse_log_level(config.level)
    log_format = config.log_format.strip().lower()
    if log_format not in _LOG_FORMATS:
        raise ValueError(f"unsupported log_format {config.log_format!r}")

    shutdown_logging()

    renderer: Any
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if config.redact_secrets:
        shared_processors.append(redact_event_dict)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = []
    if config.log_dir is not None:
        run_dir = Path(config.log_dir) / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(run_dir / config.log_filename, encoding="utf-8")
        handlers.append(file_handler)
    if config.log_to_stdout:
        handlers.append(logging.StreamHandler(sys.stdout))

    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.bind_contextvars(run_id=run_id)

    with _ACTIVE_LOCK:
        _ACTIVE_HANDLERS.extend(handlers)
    return logger


def shutdown_logging() -> None:
    """Detach and close handlers installed by ``setup_structured_logging``."""

    with _ACTIVE_LOCK:
        handlers = tuple(_ACTIVE_HANDLERS)
        _ACTIVE_HANDLERS.clear()

    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    for handler in handlers:
        logger.removeHandler(handler)
        handler.flush()
        handler.close()
    structlog.contextvars.clear_contextvars()


@contextmanager
def correlation_scope(**fields: object) -> Iterator[None]:
    """Temporarily bind correlation fields (run, phase, step, ...) for log lines in scope."""

    bound = {key: _correlation_value(value) for key, value in fields.items() if value is not None}
    for key in bound:
        _require_text(key, "correlation key")
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_correlation_context() -> dict[str, object]:
    """Return correlation fields bound in the current context."""

    context = structlog.contextvars.get_contextvars()
    return {key: value for key, value in context.items() if key in _CORRELATION_KEYS}


def redact_event_dict(
    _logger: object,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor masking secrets in keys and string values."""

    for key in list(event_dict):
        event_dict[key] = redact_value(event_dict[key], key_context=key)
    return event_dict


def redact_value(value: object, *, key_context: str | None = None) -> object:
    """Deeply redact sensitive keys and secret-looking substrings."""

    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, Mapping):
        return {key: redact_value(item, key_context=str(key)) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(item) for item in value]
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in _SAFE_KEYS:
        return False
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", text)
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", redacted
    )
    return _SECRET_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, bool):
        raise ValueError("level must be int or str, got bool")
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"level must be int or str, got {type(value).__name__}")
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _require_text(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{name} must not be empty")
    return normalized


def _correlation_value(value: object) -> object:
    enum_value = getattr(value, "value", None)
    if isinstance(enum_value, str):
        return enum_value
    return value


__all__ = [
    "LoggingConfig",
    "correlation_scope",
    "get_correlation_context",
    "redact_event_dict",
    "redact_value",
    "setup_structured_logging",
    "shutdown_logging",
]
