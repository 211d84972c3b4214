"""Built-in ``file_read`` capability."""

from __future__ import annotations

from typing import Any

from nox_core.capabilities.base import (
    ApprovalRequirements,
    Capability,
    CapabilityContext,
    CapabilityMetadata,
    ExecutionConstraints,
    Parameters,
    RiskLevel,
)
from nox_core.modes import ApprovalStrategy

FILE_READ_METADATA = CapabilityMetadata(
    id="file_read",
    name="Read File",
    category="read",
    description="Read the contents of a file in the workspace",
    risk_level=RiskLevel.LOW,
    approval=ApprovalRequirements(
        assistant=ApprovalStrategy.NONE,
        agent=ApprovalStrategy.NONE,
        autonomous=ApprovalStrategy.NONE,
        high_risk=ApprovalStrategy.NONE,
    ),
    constraints=ExecutionConstraints(
        max_executions_per_batch=100,
        timeout_seconds=5.0,
        retryable=True,
        max_retries=2,
    ),
    permissions=("workspace.read", "filesystem.read"),
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": 'File path relative to workspace root (e.g., "src/index.py")',
            },
        },
        "required": ["path"],
    },
)


async def _read_file(parameters: Parameters, context: CapabilityContext) -> dict[str, Any]:
    file_path = str(parameters["path"])
    content = context.require_file_ops(FILE_READ_METADATA.id).read_text(file_path)
    return {
        "success": True,
        "file_path": file_path,
        "content": content,
        "size": len(content),
        "lines": len(content.split("\n")),
        "message": f"Read file: {file_path}",
    }


FILE_READ_CAPABILITY = Capability(metadata=FILE_READ_METADATA, execute=_read_file)

__all__ = ["FILE_READ_CAPABILITY", "FILE_READ_METADATA"]
