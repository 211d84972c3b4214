"""Built-in ``file_create`` capability. Rollback deletes the created file."""

from __future__ import annotations

import time
from typing import Any, Final

from nox_core.capabilities.base import (
    ApprovalRequirements,
    Capability,
    CapabilityContext,
    CapabilityMetadata,
    ExecutionConstraints,
    Parameters,
    RiskLevel,
    RollbackDescriptor,
    RollbackPoint,
    RollbackStrategy,
    ValidationResult,
)
from nox_core.errors import ExecutionError
from nox_core.modes import ApprovalStrategy

SUPPORTED_LANGUAGES: Final[tuple[str, ...]] = (
    "javascript",
    "typescript",
    "python",
    "java",
    "csharp",
    "go",
    "rust",
    "html",
    "css",
    "json",
    "markdown",
)

FILE_CREATE_METADATA = CapabilityMetadata(
    id="file_create",
    name="Create File",
    category="write",
    description="Create a new file in the workspace with specified content",
    risk_level=RiskLevel.MEDIUM,
    approval=ApprovalRequirements(
        assistant=ApprovalStrategy.ALWAYS,
        agent=ApprovalStrategy.BATCH,
        autonomous=ApprovalStrategy.NONE,
        high_risk=ApprovalStrategy.ALWAYS,
    ),
    constraints=ExecutionConstraints(
        max_executions_per_batch=50,
        timeout_seconds=10.0,
        retryable=True,
        max_retries=3,
    ),
    permissions=("workspace.write", "filesystem.create"),
    rollback=RollbackDescriptor(supported=True, strategy=RollbackStrategy.BACKUP),
    parameters={
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": (
                    'File path relative to workspace root (e.g., "src/components/button.py")'
                ),
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "language": {
                "type": "string",
                "description": "Programming language for syntax highlighting (optional)",
                "enum": list(SUPPORTED_LANGUAGES),
            },
        },
        "required": ["path", "content"],
    },
)


def _validate(parameters: Parameters) -> ValidationResult:
    errors: list[str] = []
    content = parameters.get("content")
    if content is not None and not isinstance(content, str):
        errors.append("Parameter content must be a string")
    language = parameters.get("language")
    if language is not None and language not in SUPPORTED_LANGUAGES:
        errors.append(f"Unsupported language: {language}")
    return ValidationResult.from_errors(errors)


async def _create_file(parameters: Parameters, context: CapabilityContext) -> dict[str, Any]:
    file_path = str(parameters["path"])
    content = str(parameters["content"])
    file_ops = context.require_file_ops(FILE_CREATE_METADATA.id)
    if file_ops.exists(file_path):
        raise ExecutionError(
            f"file already exists: {file_path}", capability_id=FILE_CREATE_METADATA.id
        )
    file_ops.write_text(file_path, content)
    return {
        "success": True,
        "file_path": file_path,
        "size": len(content),
        "message": f"Created file: {file_path}",
    }


async def _create_rollback_point(
    parameters: Parameters, context: CapabilityContext
) -> dict[str, Any]:
    file_path = str(parameters["path"])
    file_ops = context.require_file_ops(FILE_CREATE_METADATA.id)
    return {
        "type": FILE_CREATE_METADATA.id,
        "file_path": file_path,
        "existed": file_ops.exists(file_path),
        "timestamp": time.time(),
    }


async def _rollback(point: RollbackPoint, context: CapabilityContext) -> dict[str, Any]:
    file_path = str(point.payload["file_path"])
    if point.payload.get("existed"):
        return {"success": True, "file_path": file_path, "message": "Pre-existing file kept"}
    context.require_file_ops(FILE_CREATE_METADATA.id).delete(file_path)
    return {"success": True, "file_path": file_path, "message": f"Deleted file: {file_path}"}


FILE_CREATE_CAPABILITY = Capability(
    metadata=FILE_CREATE_METADATA,
    execute=_create_file,
    validate=_validate,
    create_rollback_point=_create_rollback_point,
    rollback=_rollback,
)

__all__ = ["FILE_CREATE_CAPABILITY", "FILE_CREATE_METADATA", "SUPPORTED_LANGUAGES"]
