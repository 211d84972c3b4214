"""Capability execution with rollback and retry."""

from __future__ import annotations

from nox_core.execution.engine import (
    ExecutionEngine,
    RetryCallback,
    RetryPolicy,
    SleepFn,
    compute_retry_delay,
)

__all__ = [
    "ExecutionEngine",
    "RetryCallback",
    "RetryPolicy",
    "SleepFn",
    "compute_retry_delay",
]
