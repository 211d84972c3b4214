"""Observability public API."""

from nox_core.observability.logging import (
    CORRELATION_KEYS,
    LoggingConfig,
    configure_logging,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    redact_event_dict,
    reset_logging,
    setup_logging,
)

__all__ = [
    "CORRELATION_KEYS",
    "LoggingConfig",
    "configure_logging",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "redact_event_dict",
    "reset_logging",
    "setup_logging",
]
