"""Structured logging setup: structlog processors, correlation scope and secret redaction."""

from __future__ import annotations

import logging
import re
import sys
import threading
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_REDACTED_VALUE: Final[str] = "***REDACTED***"

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "session_id",
    "message_id",
    "tool_call_id",
    "capability_id",
    "correlation_id",
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
    "cookie",
    "private_key",
)
# Token accounting fields carry counts, not credentials.
_SAFE_KEYS: Final[frozenset[str]] = frozenset(
    {"tokens", "input_tokens", "output_tokens", "total_tokens", "max_tokens"}
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_ANTHROPIC_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,}")
_OPENAI_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bsk-[A-Za-z0-9_-]{12,}")

_CONFIGURE_LOCK = threading.Lock()
_ACTIVE_CONFIG: LoggingConfig | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: int | str = "INFO"
    json_output: bool = False
    redact_secrets: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "level", _parse_log_level(self.level))


def configure_logging(
    level: int | str = "INFO",
    *,
    json_output: bool = False,
    redact_secrets: bool = True,
) -> LoggingConfig:
    """Configure structlog once; repeated calls with the same settings are no-ops."""

    global _ACTIVE_CONFIG
    config = LoggingConfig(level=level, json_output=json_output, redact_secrets=redact_secrets)
    with _CONFIGURE_LOCK:
        if _ACTIVE_CONFIG == config:
            return config

        processors: list[Any] = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]
        if redact_secrets:
            processors.append(redact_event_dict)
        if json_output:
            processors.append(structlog.processors.JSONRenderer(sort_keys=True))
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=False))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.make_filtering_bound_logger(int(config.level)),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
            cache_logger_on_first_use=False,
        )
        _ACTIVE_CONFIG = config
    return config


def setup_logging(observability_config: Mapping[str, object] | None = None) -> LoggingConfig:
    """Configure logging from an ``[observability]`` config mapping."""

    cfg = dict(observability_config or {})
    raw_level = cfg.get("log_level", "INFO")
    level: int | str = raw_level if isinstance(raw_level, (int, str)) else "INFO"
    return configure_logging(
        level,
        json_output=bool(cfg.get("json_logs", False)),
        redact_secrets=bool(cfg.get("redact_secrets", True)),
    )


def reset_logging() -> None:
    global _ACTIVE_CONFIG
    with _CONFIGURE_LOCK:
        structlog.reset_defaults()
        structlog.contextvars.clear_contextvars()
        _ACTIVE_CONFIG = None


def get_correlation_context() -> dict[str, str]:
    context = structlog.contextvars.get_contextvars()
    return {key: str(value) for key, value in context.items() if key in CORRELATION_KEYS}


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields for log events in scope."""

    bound: dict[str, str] = {}
    for key, value in fields.items():
        key_name = _validate_correlation_key(key)
        if value is None:
            continue
        bound[key_name] = _validate_correlation_value(value)
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact_event_dict(
    logger: object, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask sensitive keys and key-shaped values."""

    for key in list(event_dict):
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    return event_dict


def default_log_redactor(value: JSONValue) -> JSONValue:
    return _redact_value(value, key_context=None)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, bool):
        raise ValueError("log level must be an int or level name")
    if isinstance(value, int):
        return value
    normalized = value.strip().upper()
    resolved = logging.getLevelName(normalized)
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {value!r}")
    return resolved


def _validate_correlation_key(value: str) -> str:
    if value not in CORRELATION_KEYS:
        raise ValueError(f"unsupported correlation key: {value!r}")
    return value


def _validate_correlation_value(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError("correlation values must be strings")
    stripped = value.strip()
    if not stripped:
        raise ValueError("correlation values cannot be empty")
    return stripped


def _redact_value(value: Any, *, key_context: str | None) -> Any:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE

    if isinstance(value, str):
        return _redact_string(value)

    if isinstance(value, list):
        return [_redact_value(item, key_context=None) for item in value]

    if isinstance(value, dict):
        return {key: _redact_value(item, key_context=key) for key, item in value.items()}

    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in _SAFE_KEYS:
        return False
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    redacted = _ANTHROPIC_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)
    redacted = _OPENAI_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)
    return redacted


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "LoggingConfig",
    "configure_logging",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "redact_event_dict",
    "reset_logging",
    "setup_logging",
]
