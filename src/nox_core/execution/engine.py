"""
nox-core — capability execution engine

File: src/nox_core/execution/engine.py
Last updated: 2026-10-18

Purpose
- Orchestrate one capability invocation: validation, rollback-point capture, execute,
  compensating rollback on failure, bounded retry with exponential backoff.

What should be included in this file
- Retry policy and deterministic backoff delay computation.
- Rollback isolation: rollback failures are logged, the original error surfaces.

Functional requirements
- Validation failures raise before any side effect and are never retried.
- A fresh rollback point is captured per attempt.
- Retries surface only the final attempt's error.

Non-functional requirements
- Backoff sleeps are cooperative and cancellable; the sleep function is injectable.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeAlias

import structlog

from nox_core.capabilities.base import CapabilityInstance, ExecutionStatus, Parameters
from nox_core.errors import ExecutionError, PolicyError, ValidationError

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RetryCallback: TypeAlias = Callable[[int, BaseException, float], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: delay after failed attempt N is ``base * multiplier ** N``."""

    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay_seconds is not None and self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")

    @classmethod
    def from_config(cls, execution: Mapping[str, object]) -> RetryPolicy:
        base = execution.get("base_delay_seconds", 1.0)
        ceiling = execution.get("max_delay_seconds")
        return cls(
            base_delay_seconds=float(base) if isinstance(base, (int, float)) else 1.0,
            max_delay_seconds=float(ceiling) if isinstance(ceiling, (int, float)) else None,
        )


def compute_retry_delay(*, attempt: int, policy: RetryPolicy) -> float:
    """Return the backoff delay after failed attempt ``attempt`` (1-based)."""

    if attempt <= 0:
        raise ValueError("attempt must be > 0")
    delay = policy.base_delay_seconds * (policy.multiplier**attempt)
    if policy.max_delay_seconds is not None:
        delay = min(delay, policy.max_delay_seconds)
    return delay


def _is_retryable(error: BaseException) -> bool:
    return not isinstance(error, (ValidationError, PolicyError))


class ExecutionEngine:
    """Runs capability instances with rollback and retry semantics."""

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
        enforce_timeouts: bool = True,
        logger: Any | None = None,
    ) -> None:
        self._retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self._sleep = sleep
        self._enforce_timeouts = enforce_timeouts
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def ensure_valid(self, instance: CapabilityInstance, parameters: Parameters) -> None:
        result = instance.validate(parameters)
        if not result.valid:
            raise ValidationError(
                f"{instance.capability_id}: validation failed: {', '.join(result.errors)}",
                errors=result.errors,
            )

    async def execute_with_rollback(
        self, instance: CapabilityInstance, parameters: Parameters
    ) -> Any:
        """Validate, then run a single attempt with compensating rollback on failure."""

        self.ensure_valid(instance, parameters)
        return await self._attempt(instance, parameters, attempt=1)

    async def execute_with_retry(
        self,
        instance: CapabilityInstance,
        parameters: Parameters,
        *,
        on_retry: RetryCallback | None = None,
    ) -> Any:
        """Run up to ``constraints.max_retries`` attempts, backing off between them."""

        self.ensure_valid(instance, parameters)
        constraints = instance.metadata.constraints
        max_attempts = constraints.max_retries

        attempt = 1
        while True:
            try:
                return await self._attempt(instance, parameters, attempt=attempt)
            except Exception as exc:  # noqa: BLE001
                if (
                    attempt >= max_attempts
                    or not constraints.retryable
                    or not _is_retryable(exc)
                ):
                    raise
                delay = compute_retry_delay(attempt=attempt, policy=self._retry_policy)
                self._logger.warning(
                    "capability_retry_scheduled",
                    capability_id=instance.capability_id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await self._sleep(delay)
                attempt += 1

    async def _attempt(
        self, instance: CapabilityInstance, parameters: Parameters, *, attempt: int
    ) -> Any:
        point = None
        try:
            if instance.supports_rollback:
                point = await instance.create_rollback_point(parameters)
                if point is not None:
                    instance.push_rollback_point(point)

            result = await self._run_execute(instance, parameters, attempt=attempt)
        except Exception as exc:  # noqa: BLE001
            instance.record_execution(parameters, status=ExecutionStatus.FAILED, error=exc)
            if point is not None:
                await self._rollback_quietly(instance, point, original=exc)
            raise

        instance.record_execution(parameters, status=ExecutionStatus.SUCCESS, result=result)
        return result

    async def _run_execute(
        self, instance: CapabilityInstance, parameters: Parameters, *, attempt: int
    ) -> Any:
        timeout = instance.metadata.constraints.timeout_seconds
        try:
            if self._enforce_timeouts:
                return await asyncio.wait_for(instance.execute(parameters), timeout=timeout)
            return await instance.execute(parameters)
        except TimeoutError as exc:
            raise ExecutionError(
                f"timed out after {timeout}s",
                capability_id=instance.capability_id,
                attempt=attempt,
            ) from exc
        except ExecutionError as exc:
            if exc.attempt is None:
                exc.attempt = attempt
            raise

    async def _rollback_quietly(
        self,
        instance: CapabilityInstance,
        point: Any,
        *,
        original: BaseException,
    ) -> None:
        try:
            await instance.rollback(point)
        except Exception as rollback_exc:  # noqa: BLE001
            self._logger.error(
                "rollback_failed",
                capability_id=instance.capability_id,
                error=str(rollback_exc),
                original_error=str(original),
            )
            return
        instance.discard_rollback_point(point)
        self._logger.info("rollback_succeeded", capability_id=instance.capability_id)


__all__ = [
    "ExecutionEngine",
    "RetryCallback",
    "RetryPolicy",
    "SleepFn",
    "compute_retry_delay",
]
