"""
nox-core capabilities package public API.

File: src/nox_core/capabilities/__init__.py
Last updated: 2026-10-18

Purpose
- Export the capability contract, registry and built-in capability catalog.

Functional requirements
- ``initialize_capabilities`` clears before registering so hot reload never hits duplicates.
"""

from __future__ import annotations

from collections.abc import Iterable

from nox_core.capabilities.base import (
    ApprovalRequirements,
    Capability,
    CapabilityContext,
    CapabilityDefinition,
    CapabilityInstance,
    CapabilityMetadata,
    ExecutionConstraints,
    ExecutionRecord,
    ExecutionStatus,
    FileOperations,
    RiskLevel,
    RollbackDescriptor,
    RollbackPoint,
    RollbackStrategy,
    ValidationResult,
    validate_parameters,
)
from nox_core.capabilities.file_create import FILE_CREATE_CAPABILITY
from nox_core.capabilities.file_read import FILE_READ_CAPABILITY
from nox_core.capabilities.registry import CapabilityRegistry
from nox_core.capabilities.workspace import LocalWorkspace, WorkspaceBoundaryError


def builtin_capabilities() -> tuple[CapabilityDefinition, ...]:
    return (FILE_READ_CAPABILITY, FILE_CREATE_CAPABILITY)


def initialize_capabilities(
    registry: CapabilityRegistry,
    *,
    extra: Iterable[CapabilityDefinition] = (),
) -> CapabilityRegistry:
    """Reset ``registry`` and register the built-in catalog plus ``extra`` definitions."""

    registry.clear()
    registry.register_many(builtin_capabilities())
    registry.register_many(extra)
    return registry


__all__ = [
    "ApprovalRequirements",
    "Capability",
    "CapabilityContext",
    "CapabilityDefinition",
    "CapabilityInstance",
    "CapabilityMetadata",
    "CapabilityRegistry",
    "ExecutionConstraints",
    "ExecutionRecord",
    "ExecutionStatus",
    "FILE_CREATE_CAPABILITY",
    "FILE_READ_CAPABILITY",
    "FileOperations",
    "LocalWorkspace",
    "RiskLevel",
    "RollbackDescriptor",
    "RollbackPoint",
    "RollbackStrategy",
    "ValidationResult",
    "WorkspaceBoundaryError",
    "builtin_capabilities",
    "initialize_capabilities",
    "validate_parameters",
]
