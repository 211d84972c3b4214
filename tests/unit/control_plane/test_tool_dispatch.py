"""
nox-core — unit tests for tool-call dispatch

File: tests/unit/control_plane/test_tool_dispatch.py
Last updated: 2026-10-18

Purpose
- Validate the lookup -> policy -> approval -> execution pipeline for assembled tool calls.

What this test file should cover
- Unknown capabilities and blocked operations become failed outcomes without raising.
- Approval: denied, timed out and missing approver all count as denial.
- Successful execution against a real workspace emits starting/executing/success.
- Execution failures surface as error outcomes after retries.

Functional requirements
- Filesystem access only under pytest's tmp_path; no network.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from nox_core.capabilities import CapabilityContext, CapabilityRegistry, initialize_capabilities
from nox_core.capabilities.workspace import LocalWorkspace
from nox_core.control_plane.tool_dispatch import (
    ApprovalRequest,
    ToolCallDispatcher,
    ToolStatus,
    ToolStatusUpdate,
)
from nox_core.execution.engine import ExecutionEngine
from nox_core.modes import ApprovalStrategy, ModeName
from nox_core.modes.policy import ModePolicyEngine, UserRestrictions
from nox_core.providers import ToolCall


@dataclass(slots=True)
class _RecordingLogger:
    events: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def debug(self, event: str, **fields: Any) -> None:
        self.events.append(("debug", event, fields))

    def info(self, event: str, **fields: Any) -> None:
        self.events.append(("info", event, fields))

    def warning(self, event: str, **fields: Any) -> None:
        self.events.append(("warning", event, fields))

    def error(self, event: str, **fields: Any) -> None:
        self.events.append(("error", event, fields))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


@dataclass(slots=True)
class _SleepRecorder:
    calls: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@dataclass(slots=True)
class _ScriptedApprover:
    answer: bool
    requests: list[ApprovalRequest] = field(default_factory=list)

    async def __call__(self, request: ApprovalRequest) -> bool:
        self.requests.append(request)
        return self.answer


@dataclass(slots=True)
class _Harness:
    dispatcher: ToolCallDispatcher
    policy: ModePolicyEngine
    logger: _RecordingLogger
    sleep: _SleepRecorder
    statuses: list[ToolStatusUpdate]


def _harness(
    root: Path,
    *,
    mode: ModeName = ModeName.AUTONOMOUS,
    restrictions: UserRestrictions | None = None,
    approve: Any | None = None,
    approval_timeout_seconds: float = 30.0,
) -> _Harness:
    logger = _RecordingLogger()
    sleep = _SleepRecorder()
    statuses: list[ToolStatusUpdate] = []
    registry = initialize_capabilities(CapabilityRegistry(logger=logger))
    policy = ModePolicyEngine(restrictions, initial_mode=mode, logger=logger)
    dispatcher = ToolCallDispatcher(
        registry,
        policy,
        ExecutionEngine(sleep=sleep, logger=logger),
        approve=approve,
        approval_timeout_seconds=approval_timeout_seconds,
        on_status=statuses.append,
        capability_context=CapabilityContext(workspace_root=root, file_ops=LocalWorkspace(root)),
        logger=logger,
    )
    return _Harness(dispatcher, policy, logger, sleep, statuses)


def _create_call(path: str = "src/app.py", call_id: str = "call_1") -> ToolCall:
    return ToolCall(call_id=call_id, name="file_create", parameters={"path": path, "content": "x"})


@pytest.mark.asyncio
async def test_autonomous_create_succeeds_without_approval(tmp_path: Path) -> None:
    harness = _harness(tmp_path)

    outcome = await harness.dispatcher.handle(_create_call())

    assert outcome.success
    assert (tmp_path / "src" / "app.py").read_text(encoding="utf-8") == "x"
    assert [update.status for update in harness.statuses] == [
        ToolStatus.STARTING,
        ToolStatus.EXECUTING,
        ToolStatus.SUCCESS,
    ]
    assert outcome.verdict is not None
    assert outcome.verdict.strategy is ApprovalStrategy.NONE
    tool_result = outcome.to_tool_result()
    assert tool_result["success"] is True
    assert tool_result["result"]["file_path"] == "src/app.py"  # type: ignore[index]
    assert harness.statuses[0].to_dict() == {
        "toolCallId": "call_1",
        "toolName": "file_create",
        "status": "starting",
    }


@pytest.mark.asyncio
async def test_unknown_capability_is_an_error_outcome(tmp_path: Path) -> None:
    harness = _harness(tmp_path)

    outcome = await harness.dispatcher.handle(ToolCall(call_id="c", name="teleport"))

    assert not outcome.success
    assert outcome.error == "Unknown capability: teleport"
    assert [update.status for update in harness.statuses] == [
        ToolStatus.STARTING,
        ToolStatus.ERROR,
    ]
    assert outcome.to_tool_result() == {"success": False, "error": "Unknown capability: teleport"}


@pytest.mark.asyncio
async def test_blocked_operation_is_denied(tmp_path: Path) -> None:
    harness = _harness(tmp_path, restrictions=UserRestrictions(never_execute=("file_create",)))

    outcome = await harness.dispatcher.handle(_create_call())

    assert not outcome.success
    assert outcome.error == "Operation file_create is blocked by user settings"
    assert harness.statuses[-1].status is ToolStatus.DENIED
    assert not (tmp_path / "src" / "app.py").exists()
    assert "tool_call_blocked" in harness.logger.names()


@pytest.mark.asyncio
async def test_path_outside_allowed_directories_is_rejected(tmp_path: Path) -> None:
    harness = _harness(tmp_path)

    outcome = await harness.dispatcher.handle(_create_call("scripts/run.py"))

    assert not outcome.success
    assert outcome.error == (
        "Path scripts/run.py is not in allowed directories: src/, tests/, docs/"
    )
    assert outcome.verdict is not None
    assert harness.statuses[-1].status is ToolStatus.DENIED


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", [True, False])
async def test_assistant_mode_asks_for_approval(tmp_path: Path, answer: bool) -> None:
    approver = _ScriptedApprover(answer)
    harness = _harness(tmp_path, mode=ModeName.ASSISTANT, approve=approver)

    outcome = await harness.dispatcher.handle(_create_call())

    assert len(approver.requests) == 1
    request = approver.requests[0]
    assert request.verdict.strategy is ApprovalStrategy.PER_ACTION
    assert request.to_dict()["tool_call"] == _create_call().to_dict()
    assert outcome.success is answer
    assert (tmp_path / "src" / "app.py").exists() is answer
    if not answer:
        assert outcome.error == "Operation denied by user"


@pytest.mark.asyncio
async def test_missing_approver_counts_as_denial(tmp_path: Path) -> None:
    harness = _harness(tmp_path, mode=ModeName.AGENT)

    outcome = await harness.dispatcher.handle(_create_call())

    assert not outcome.success
    assert "approval_unavailable" in harness.logger.names()


@pytest.mark.asyncio
async def test_approval_timeout_counts_as_denial(tmp_path: Path) -> None:
    async def _never(request: ApprovalRequest) -> bool:
        await asyncio.sleep(10)
        return True

    harness = _harness(
        tmp_path, mode=ModeName.ASSISTANT, approve=_never, approval_timeout_seconds=0.01
    )

    outcome = await harness.dispatcher.handle(_create_call())

    assert not outcome.success
    assert outcome.error == "Operation denied by user"
    assert "approval_timed_out" in harness.logger.names()


@pytest.mark.asyncio
async def test_verdict_is_captured_before_approval(tmp_path: Path) -> None:
    harness_box: list[_Harness] = []

    async def _switch_then_deny(request: ApprovalRequest) -> bool:
        harness_box[0].policy.set_mode(ModeName.AUTONOMOUS)
        return False

    harness = _harness(tmp_path, mode=ModeName.ASSISTANT, approve=_switch_then_deny)
    harness_box.append(harness)

    outcome = await harness.dispatcher.handle(_create_call())

    assert not outcome.success
    assert outcome.verdict is not None
    assert outcome.verdict.mode is ModeName.ASSISTANT


@pytest.mark.asyncio
async def test_execution_failure_is_an_error_outcome(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("keep", encoding="utf-8")
    harness = _harness(tmp_path)

    outcome = await harness.dispatcher.handle(_create_call())

    assert not outcome.success
    assert outcome.error is not None and "file already exists: src/app.py" in outcome.error
    assert harness.sleep.calls == [2.0, 4.0]
    assert (tmp_path / "src" / "app.py").read_text(encoding="utf-8") == "keep"
    assert harness.statuses[-1].status is ToolStatus.ERROR
    assert "tool_call_failed" in harness.logger.names()


@pytest.mark.asyncio
async def test_handle_many_continues_after_failures(tmp_path: Path) -> None:
    harness = _harness(tmp_path)

    outcomes = await harness.dispatcher.handle_many(
        [
            ToolCall(call_id="a", name="teleport"),
            _create_call("src/one.py", call_id="b"),
            ToolCall(call_id="c", name="file_read", parameters={"path": "src/one.py"}),
        ]
    )

    assert [outcome.success for outcome in outcomes] == [False, True, True]
    assert outcomes[2].to_dict()["tool_call_id"] == "c"


def test_dispatcher_rejects_non_positive_approval_timeout(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="approval_timeout_seconds"):
        _harness(tmp_path, approval_timeout_seconds=0)
