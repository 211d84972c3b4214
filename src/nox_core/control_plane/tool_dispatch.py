"""
nox-core — tool-call dispatch

File: src/nox_core/control_plane/tool_dispatch.py
Last updated: 2026-10-18

Purpose
- Carry one assembled tool call through the decision-and-execution pipeline:
  registry lookup -> mode policy -> human approval -> execution with retry/rollback.

What should be included in this file
- Status updates (starting, executing, success, denied, error) for the UI surface.
- Bounded approval wait; no approver or a timeout counts as denial.
- Tool outcomes shaped for return to the model as tool results.

Functional requirements
- Unknown capabilities, policy rejections and execution failures become failed outcomes;
  ``handle`` does not raise for them.
- The policy verdict is captured before approval so a later mode change does not alter it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeAlias

import structlog

from nox_core.capabilities.base import CapabilityContext, CapabilityMetadata, thaw_json
from nox_core.capabilities.registry import CapabilityRegistry
from nox_core.errors import PolicyError
from nox_core.execution.engine import ExecutionEngine
from nox_core.modes.policy import (
    ExecutionContext,
    ModePolicyEngine,
    OperationRequest,
    PolicyVerdict,
)
from nox_core.observability.logging import correlation_scope
from nox_core.providers.base import ToolCall

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 30.0


class ToolStatus(StrEnum):
    STARTING = "starting"
    EXECUTING = "executing"
    SUCCESS = "success"
    DENIED = "denied"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ToolStatusUpdate:
    tool_call_id: str
    capability_id: str
    status: ToolStatus
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "toolCallId": self.tool_call_id,
            "toolName": self.capability_id,
            "status": self.status.value,
        }
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    """What a human approver is asked to confirm."""

    tool_call: ToolCall
    metadata: CapabilityMetadata
    verdict: PolicyVerdict

    def to_dict(self) -> dict[str, object]:
        return {
            "tool_call": self.tool_call.to_dict(),
            "capability": self.metadata.format_for_display(),
            "verdict": self.verdict.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class ToolOutcome:
    tool_call_id: str
    capability_id: str
    success: bool
    result: Any = None
    error: str | None = None
    verdict: PolicyVerdict | None = None

    def to_tool_result(self) -> dict[str, object]:
        """Payload handed back to the model as the tool result content."""

        if self.success:
            return {"success": True, "result": thaw_json(self.result)}
        return {"success": False, "error": self.error or "unknown error"}

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "tool_call_id": self.tool_call_id,
            "capability_id": self.capability_id,
            **self.to_tool_result(),
        }
        if self.verdict is not None:
            payload["verdict"] = self.verdict.to_dict()
        return payload


ApprovalCallback: TypeAlias = Callable[[ApprovalRequest], Awaitable[bool]]
StatusCallback: TypeAlias = Callable[[ToolStatusUpdate], None]


class ToolCallDispatcher:
    """Routes assembled tool calls to capabilities under the current mode policy."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        policy: ModePolicyEngine,
        engine: ExecutionEngine,
        *,
        approve: ApprovalCallback | None = None,
        approval_timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        on_status: StatusCallback | None = None,
        capability_context: CapabilityContext | None = None,
        logger: Any | None = None,
    ) -> None:
        if approval_timeout_seconds <= 0:
            raise ValueError("approval_timeout_seconds must be > 0")
        self._registry = registry
        self._policy = policy
        self._engine = engine
        self._approve = approve
        self._approval_timeout_seconds = approval_timeout_seconds
        self._on_status = on_status
        self._capability_context = capability_context
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def handle(
        self,
        tool_call: ToolCall,
        context: ExecutionContext | Mapping[str, object] | None = None,
    ) -> ToolOutcome:
        with correlation_scope(tool_call_id=tool_call.call_id, capability_id=tool_call.name):
            return await self._handle(tool_call, context)

    async def handle_many(
        self,
        tool_calls: Iterable[ToolCall],
        context: ExecutionContext | Mapping[str, object] | None = None,
    ) -> list[ToolOutcome]:
        """Dispatch calls in stream order; one failure does not stop the rest."""

        return [await self.handle(tool_call, context) for tool_call in tool_calls]

    async def _handle(
        self,
        tool_call: ToolCall,
        context: ExecutionContext | Mapping[str, object] | None,
    ) -> ToolOutcome:
        self._emit(tool_call, ToolStatus.STARTING)

        if not self._registry.has(tool_call.name):
            detail = f"Unknown capability: {tool_call.name}"
            self._logger.warning("tool_call_unknown_capability", tool_name=tool_call.name)
            self._emit(tool_call, ToolStatus.ERROR, detail)
            return self._failed(tool_call, detail)

        metadata = self._registry.get_metadata(tool_call.name)
        request = OperationRequest(
            capability_type=tool_call.name, parameters=dict(tool_call.parameters)
        )
        try:
            verdict = self._policy.evaluate(request, context)
            validation = self._policy.validate_operation(request, context)
        except PolicyError as exc:
            self._logger.warning("tool_call_blocked", tool_name=tool_call.name, error=str(exc))
            self._emit(tool_call, ToolStatus.DENIED, str(exc))
            return self._failed(tool_call, str(exc))

        errors = list(validation.errors)
        if not metadata.is_available_in(verdict.mode):
            errors.append(f"Capability {metadata.id} is disabled in {verdict.mode.value} mode")
        if errors:
            detail = "; ".join(errors)
            self._logger.warning("tool_call_rejected", tool_name=tool_call.name, errors=errors)
            self._emit(tool_call, ToolStatus.DENIED, detail)
            return self._failed(tool_call, detail, verdict=verdict)

        if verdict.requires_approval:
            approved = await self._request_approval(
                ApprovalRequest(tool_call=tool_call, metadata=metadata, verdict=verdict)
            )
            if not approved:
                detail = "Operation denied by user"
                self._emit(tool_call, ToolStatus.DENIED, detail)
                return self._failed(tool_call, detail, verdict=verdict)

        self._emit(tool_call, ToolStatus.EXECUTING)
        instance = self._registry.create(tool_call.name, self._capability_context)
        try:
            result = await self._engine.execute_with_retry(instance, dict(tool_call.parameters))
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "tool_call_failed", tool_name=tool_call.name, error=str(exc) or type(exc).__name__
            )
            self._emit(tool_call, ToolStatus.ERROR, str(exc))
            return self._failed(tool_call, str(exc) or type(exc).__name__, verdict=verdict)

        self._emit(tool_call, ToolStatus.SUCCESS)
        self._logger.info("tool_call_succeeded", tool_name=tool_call.name)
        return ToolOutcome(
            tool_call_id=tool_call.call_id,
            capability_id=tool_call.name,
            success=True,
            result=result,
            verdict=verdict,
        )

    async def _request_approval(self, request: ApprovalRequest) -> bool:
        if self._approve is None:
            self._logger.warning(
                "approval_unavailable",
                tool_name=request.tool_call.name,
                strategy=request.verdict.strategy.value,
            )
            return False
        try:
            approved = await asyncio.wait_for(
                self._approve(request), timeout=self._approval_timeout_seconds
            )
        except TimeoutError:
            self._logger.warning(
                "approval_timed_out",
                tool_name=request.tool_call.name,
                timeout_seconds=self._approval_timeout_seconds,
            )
            return False
        self._logger.info(
            "approval_decided", tool_name=request.tool_call.name, approved=bool(approved)
        )
        return bool(approved)

    def _emit(self, tool_call: ToolCall, status: ToolStatus, detail: str | None = None) -> None:
        if self._on_status is None:
            return
        self._on_status(
            ToolStatusUpdate(
                tool_call_id=tool_call.call_id,
                capability_id=tool_call.name,
                status=status,
                detail=detail,
            )
        )

    @staticmethod
    def _failed(
        tool_call: ToolCall, error: str, *, verdict: PolicyVerdict | None = None
    ) -> ToolOutcome:
        return ToolOutcome(
            tool_call_id=tool_call.call_id,
            capability_id=tool_call.name,
            success=False,
            error=error,
            verdict=verdict,
        )


__all__ = [
    "ApprovalCallback",
    "ApprovalRequest",
    "DEFAULT_APPROVAL_TIMEOUT_SECONDS",
    "StatusCallback",
    "ToolCallDispatcher",
    "ToolOutcome",
    "ToolStatus",
    "ToolStatusUpdate",
]
