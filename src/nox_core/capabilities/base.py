"""
nox-core — capability contract

File: src/nox_core/capabilities/base.py
Last updated: 2026-10-18

Purpose
- Data-driven capability model: an immutable metadata record plus a small set of callables
  satisfying {validate, execute, create_rollback_point?, rollback?}.

What should be included in this file
- Metadata records (risk, mode availability, approval requirements, constraints, rollback).
- Base parameter validation shared by every capability.
- Per-invocation instance state: execution history and rollback-point stack.

Functional requirements
- Validation is pure and never raises for bad input; it returns a result.
- File-addressing parameters must be workspace-relative and non-traversing.
- Rollback on a capability without rollback support raises ``RollbackNotSupportedError``.

Non-functional requirements
- Metadata is immutable so registry queries can hand out snapshots.
- Instance state is never shared across concurrent invocations.
"""

from __future__ import annotations

import math
import re
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path, PurePosixPath, PureWindowsPath
from types import MappingProxyType
from typing import Any, Final, Protocol, TypeAlias, runtime_checkable

from nox_core.errors import (
    ExecutionError,
    NoxError,
    RollbackError,
    RollbackNotSupportedError,
)
from nox_core.modes import ApprovalStrategy, ModeName, parse_mode_name

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
Parameters: TypeAlias = Mapping[str, Any]

_IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9_]*$")
_PATH_PARAMETER_NAMES: Final[frozenset[str]] = frozenset(
    {"path", "file_path", "filepath", "directory", "target", "source"}
)
_RISK_BADGES: Final[Mapping[str, str]] = MappingProxyType(
    {"low": "[low]", "medium": "[medium]", "high": "[HIGH]", "critical": "[CRITICAL]"}
)


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RollbackStrategy(StrEnum):
    BACKUP = "backup"
    TRANSACTION = "transaction"
    COMPENSATING = "compensating"


class ExecutionStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _validate_identifier(value: str, field_name: str) -> str:
    normalized = _validate_non_empty_str(value, field_name)
    if _IDENTIFIER_RE.fullmatch(normalized) is None:
        raise ValueError(f"{field_name} must match ^[a-z][a-z0-9_]*$, got {normalized!r}")
    return normalized


def _freeze_json(value: object, *, path: str) -> Any:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path} must be finite")
        return value
    if isinstance(value, Mapping):
        frozen: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path} contains non-string key")
            frozen[key] = _freeze_json(item, path=f"{path}.{key}")
        return MappingProxyType(frozen)
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return tuple(
            _freeze_json(item, path=f"{path}[{index}]") for index, item in enumerate(value)
        )
    raise ValueError(f"{path} contains unsupported value type: {type(value).__name__}")


def thaw_json(value: object) -> JSONValue:
    """Return a plain JSON-compatible copy of a frozen mapping/tuple tree."""

    if isinstance(value, Mapping):
        return {str(key): thaw_json(item) for key, item in value.items()}
    if isinstance(value, (tuple, list)):
        return [thaw_json(item) for item in value]
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


@dataclass(frozen=True, slots=True)
class ApprovalRequirements:
    """Approval requirement per mode, plus the override applied to high-risk calls."""

    assistant: ApprovalStrategy = ApprovalStrategy.ALWAYS
    agent: ApprovalStrategy = ApprovalStrategy.BATCH
    autonomous: ApprovalStrategy = ApprovalStrategy.NONE
    high_risk: ApprovalStrategy = ApprovalStrategy.ALWAYS

    def __post_init__(self) -> None:
        for name in ("assistant", "agent", "autonomous", "high_risk"):
            raw = getattr(self, name)
            strategy = ApprovalStrategy(raw)
            if strategy is ApprovalStrategy.PER_ACTION:
                raise ValueError(f"ApprovalRequirements.{name} cannot be per_action")
            object.__setattr__(self, name, strategy)

    def for_mode(self, mode: ModeName | str, *, high_risk: bool = False) -> ApprovalStrategy:
        if high_risk:
            return self.high_risk
        resolved = parse_mode_name(mode)
        return getattr(self, resolved.value)


@dataclass(frozen=True, slots=True)
class ExecutionConstraints:
    max_executions_per_batch: int = 1
    timeout_seconds: float = 30.0
    retryable: bool = True
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.max_executions_per_batch <= 0:
            raise ValueError("max_executions_per_batch must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if isinstance(self.max_retries, bool) or self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")


@dataclass(frozen=True, slots=True)
class RollbackDescriptor:
    supported: bool = False
    strategy: RollbackStrategy | None = None

    def __post_init__(self) -> None:
        if self.strategy is not None:
            object.__setattr__(self, "strategy", RollbackStrategy(self.strategy))
        if self.supported and self.strategy is None:
            raise ValueError("RollbackDescriptor.strategy is required when rollback is supported")
        if not self.supported and self.strategy is not None:
            raise ValueError(
                "RollbackDescriptor.strategy must be None when rollback is unsupported"
            )


@dataclass(frozen=True, slots=True)
class CapabilityMetadata:
    """Immutable description of one capability. Registry queries return these as snapshots."""

    id: str
    name: str
    category: str
    description: str
    version: str = "1.0.0"
    risk_level: RiskLevel = RiskLevel.LOW
    modes: Mapping[ModeName, bool] = field(
        default_factory=lambda: {mode: True for mode in ModeName}
    )
    approval: ApprovalRequirements = field(default_factory=ApprovalRequirements)
    constraints: ExecutionConstraints = field(default_factory=ExecutionConstraints)
    permissions: tuple[str, ...] = ()
    rollback: RollbackDescriptor = field(default_factory=RollbackDescriptor)
    dependencies: tuple[str, ...] = ()
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _validate_identifier(self.id, "CapabilityMetadata.id"))
        object.__setattr__(
            self, "name", _validate_non_empty_str(self.name, "CapabilityMetadata.name")
        )
        object.__setattr__(
            self, "category", _validate_non_empty_str(self.category, "CapabilityMetadata.category")
        )
        if not isinstance(self.description, str):
            raise TypeError("CapabilityMetadata.description must be a string")
        object.__setattr__(self, "risk_level", RiskLevel(self.risk_level))

        if not isinstance(self.modes, Mapping):
            raise TypeError("CapabilityMetadata.modes must be a mapping")
        modes: dict[ModeName, bool] = {mode: False for mode in ModeName}
        for key, enabled in self.modes.items():
            modes[parse_mode_name(key)] = bool(enabled)
        object.__setattr__(self, "modes", MappingProxyType(modes))

        if not isinstance(self.approval, ApprovalRequirements):
            raise TypeError("CapabilityMetadata.approval must be ApprovalRequirements")
        if not isinstance(self.constraints, ExecutionConstraints):
            raise TypeError("CapabilityMetadata.constraints must be ExecutionConstraints")
        if not isinstance(self.rollback, RollbackDescriptor):
            raise TypeError("CapabilityMetadata.rollback must be RollbackDescriptor")

        object.__setattr__(
            self,
            "permissions",
            tuple(
                _validate_non_empty_str(item, "CapabilityMetadata.permissions")
                for item in self.permissions
            ),
        )

        dependencies: list[str] = []
        for item in self.dependencies:
            dependency = _validate_identifier(item, "CapabilityMetadata.dependencies")
            if dependency == self.id:
                raise ValueError(f"capability {self.id!r} cannot depend on itself")
            if dependency not in dependencies:
                dependencies.append(dependency)
        object.__setattr__(self, "dependencies", tuple(dependencies))

        if not isinstance(self.parameters, Mapping):
            raise TypeError("CapabilityMetadata.parameters must be a mapping")
        object.__setattr__(
            self,
            "parameters",
            _freeze_json(self.parameters, path="CapabilityMetadata.parameters"),
        )

    @property
    def supports_rollback(self) -> bool:
        return self.rollback.supported

    def is_available_in(self, mode: ModeName | str) -> bool:
        return self.modes.get(parse_mode_name(mode), False)

    def approval_requirement(
        self, mode: ModeName | str, *, high_risk: bool = False
    ) -> ApprovalStrategy:
        return self.approval.for_mode(mode, high_risk=high_risk)

    def required_parameters(self) -> tuple[str, ...]:
        """Required parameter names from either a JSON schema or per-field definitions."""

        if self.parameters.get("type") == "object":
            required = self.parameters.get("required", ())
            return tuple(str(item) for item in required)
        return tuple(
            name
            for name, definition in self.parameters.items()
            if isinstance(definition, Mapping) and definition.get("required") is True
        )

    def parameter_schema(self) -> dict[str, JSONValue]:
        thawed = thaw_json(self.parameters)
        return thawed if isinstance(thawed, dict) else {}

    def format_for_display(self) -> dict[str, str | bool]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "risk_level": self.risk_level.value,
            "badge": _RISK_BADGES.get(self.risk_level.value, "[?]"),
            "rollback": self.rollback.supported,
        }

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "version": self.version,
            "risk_level": self.risk_level.value,
            "modes": {mode.value: enabled for mode, enabled in self.modes.items()},
            "approval": {
                "assistant": self.approval.assistant.value,
                "agent": self.approval.agent.value,
                "autonomous": self.approval.autonomous.value,
                "high_risk": self.approval.high_risk.value,
            },
            "constraints": {
                "max_executions_per_batch": self.constraints.max_executions_per_batch,
                "timeout_seconds": self.constraints.timeout_seconds,
                "retryable": self.constraints.retryable,
                "max_retries": self.constraints.max_retries,
            },
            "permissions": list(self.permissions),
            "rollback": {
                "supported": self.rollback.supported,
                "strategy": self.rollback.strategy.value if self.rollback.strategy else None,
            },
            "dependencies": list(self.dependencies),
            "parameters": self.parameter_schema(),
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()
    warning: str | None = None

    @classmethod
    def ok(cls, *, warning: str | None = None) -> ValidationResult:
        return cls(valid=True, errors=(), warning=warning)

    @classmethod
    def from_errors(cls, errors: Sequence[str]) -> ValidationResult:
        return cls(valid=not errors, errors=tuple(errors))

    def merge(self, other: ValidationResult) -> ValidationResult:
        errors = self.errors + tuple(item for item in other.errors if item not in self.errors)
        return ValidationResult(
            valid=not errors, errors=errors, warning=self.warning or other.warning
        )

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"valid": self.valid, "errors": list(self.errors)}
        if self.warning is not None:
            payload["warning"] = self.warning
        return payload


def is_path_parameter(name: str) -> bool:
    lowered = name.lower()
    return lowered in _PATH_PARAMETER_NAMES or lowered.endswith("_path")


def path_errors(name: str, value: str) -> list[str]:
    """Return workspace-relative path violations for one file-addressing parameter."""

    errors: list[str] = []
    if not value.strip():
        errors.append(f"Parameter {name} cannot be empty")
        return errors
    segments = re.split(r"[\\/]+", value)
    if ".." in segments:
        errors.append(f"Parameter {name} cannot contain '..' (path traversal)")
    if PurePosixPath(value).is_absolute() or PureWindowsPath(value).is_absolute() or (
        PureWindowsPath(value).drive
    ):
        errors.append(f"Parameter {name} must be relative to the workspace root")
    return errors


def validate_parameters(metadata: CapabilityMetadata, parameters: object) -> ValidationResult:
    """Base rule set: required fields present, path parameters workspace-relative."""

    if not isinstance(parameters, Mapping):
        return ValidationResult.from_errors(["Parameters must be an object"])

    errors: list[str] = []
    for name in metadata.required_parameters():
        if parameters.get(name) is None:
            errors.append(f"Missing required parameter: {name}")

    for name in sorted(parameters):
        value = parameters[name]
        if isinstance(name, str) and is_path_parameter(name) and isinstance(value, str):
            errors.extend(path_errors(name, value))

    return ValidationResult.from_errors(errors)


@runtime_checkable
class FileOperations(Protocol):
    """Workspace file collaborator consumed by file capabilities."""

    def read_text(self, relative_path: str) -> str: ...

    def write_text(self, relative_path: str, content: str) -> None: ...

    def exists(self, relative_path: str) -> bool: ...

    def delete(self, relative_path: str) -> None: ...


@dataclass(frozen=True, slots=True)
class CapabilityContext:
    """Injected collaborators available to a capability instance."""

    workspace_root: Path | None = None
    file_ops: FileOperations | None = None
    services: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.workspace_root is not None:
            object.__setattr__(self, "workspace_root", Path(self.workspace_root))
        object.__setattr__(self, "services", MappingProxyType(dict(self.services)))

    def require_file_ops(self, capability_id: str) -> FileOperations:
        if self.file_ops is None:
            raise ExecutionError(
                "no workspace file operations configured", capability_id=capability_id
            )
        return self.file_ops


@dataclass(frozen=True, slots=True)
class RollbackPoint:
    """Opaque state sufficient to undo one execution. Owned by the instance that created it."""

    capability_id: str
    payload: Mapping[str, Any]
    created_at: float

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "capability_id": self.capability_id,
            "payload": thaw_json(self.payload),
            "created_at": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class ExecutionRecord:
    timestamp: float
    parameters: Mapping[str, Any]
    status: ExecutionStatus
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "timestamp": self.timestamp,
            "parameters": thaw_json(self.parameters),
            "status": self.status.value,
            "result": thaw_json(self.result),
            "error": self.error,
        }


ExecuteFn: TypeAlias = Callable[[Parameters, CapabilityContext], Awaitable[Any]]
ValidateFn: TypeAlias = Callable[[Parameters], ValidationResult]
RollbackPointFn: TypeAlias = Callable[
    [Parameters, CapabilityContext], Awaitable[Mapping[str, Any] | None]
]
RollbackFn: TypeAlias = Callable[[RollbackPoint, CapabilityContext], Awaitable[Any]]


@runtime_checkable
class CapabilityDefinition(Protocol):
    """Interface a registered capability must satisfy; optional hooks are looked up by name."""

    metadata: CapabilityMetadata

    def execute(self, parameters: Parameters, context: CapabilityContext) -> Awaitable[Any]: ...


@dataclass(frozen=True, slots=True)
class Capability:
    """Closure-backed capability definition."""

    metadata: CapabilityMetadata
    execute: ExecuteFn
    validate: ValidateFn | None = None
    create_rollback_point: RollbackPointFn | None = None
    rollback: RollbackFn | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.metadata, CapabilityMetadata):
            raise TypeError("Capability.metadata must be CapabilityMetadata")
        if not callable(self.execute):
            raise TypeError(f"Capability {self.metadata.id}: execute must be callable")
        if self.metadata.rollback.supported and (
            self.create_rollback_point is None or self.rollback is None
        ):
            raise TypeError(
                f"Capability {self.metadata.id}: rollback support requires "
                "create_rollback_point and rollback"
            )


def satisfies_contract(definition: object) -> bool:
    if not isinstance(definition, CapabilityDefinition):
        return False
    return isinstance(definition.metadata, CapabilityMetadata) and callable(definition.execute)


class CapabilityInstance:
    """A capability bound to one context, with private history and rollback stack."""

    def __init__(
        self,
        definition: CapabilityDefinition,
        context: CapabilityContext | None = None,
        *,
        rollback_point_limit: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if rollback_point_limit is not None and rollback_point_limit <= 0:
            raise ValueError("rollback_point_limit must be > 0")
        self._definition = definition
        self._context = context if context is not None else CapabilityContext()
        self._rollback_point_limit = rollback_point_limit
        self._clock = clock
        self._history: list[ExecutionRecord] = []
        self._rollback_points: list[RollbackPoint] = []

    @property
    def metadata(self) -> CapabilityMetadata:
        return self._definition.metadata

    @property
    def capability_id(self) -> str:
        return self._definition.metadata.id

    @property
    def context(self) -> CapabilityContext:
        return self._context

    @property
    def supports_rollback(self) -> bool:
        return self.metadata.rollback.supported

    @property
    def history(self) -> tuple[ExecutionRecord, ...]:
        return tuple(self._history)

    @property
    def rollback_points(self) -> tuple[RollbackPoint, ...]:
        return tuple(self._rollback_points)

    def validate(self, parameters: object) -> ValidationResult:
        result = validate_parameters(self.metadata, parameters)
        extra = getattr(self._definition, "validate", None)
        if extra is None or not isinstance(parameters, Mapping):
            return result
        return result.merge(extra(parameters))

    async def execute(self, parameters: Parameters) -> Any:
        try:
            return await self._definition.execute(parameters, self._context)
        except NoxError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ExecutionError(
                str(exc) or type(exc).__name__, capability_id=self.capability_id
            ) from exc

    async def create_rollback_point(self, parameters: Parameters) -> RollbackPoint | None:
        hook = getattr(self._definition, "create_rollback_point", None)
        if not self.supports_rollback or hook is None:
            return None
        payload = await hook(parameters, self._context)
        if payload is None:
            return None
        return RollbackPoint(
            capability_id=self.capability_id,
            payload=_freeze_json(payload, path="RollbackPoint.payload"),
            created_at=self._clock(),
        )

    async def rollback(self, point: RollbackPoint) -> Any:
        hook = getattr(self._definition, "rollback", None)
        if not self.supports_rollback or hook is None:
            raise RollbackNotSupportedError(f"rollback not supported for {self.capability_id}")
        try:
            return await hook(point, self._context)
        except RollbackError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise RollbackError(f"{self.capability_id}: {exc}") from exc

    def push_rollback_point(self, point: RollbackPoint) -> None:
        self._rollback_points.append(point)
        limit = self._rollback_point_limit
        if limit is not None and len(self._rollback_points) > limit:
            del self._rollback_points[: len(self._rollback_points) - limit]

    def discard_rollback_point(self, point: RollbackPoint) -> None:
        for index in range(len(self._rollback_points) - 1, -1, -1):
            if self._rollback_points[index] is point:
                del self._rollback_points[index]
                return

    def last_rollback_point(self) -> RollbackPoint | None:
        return self._rollback_points[-1] if self._rollback_points else None

    def clear_rollback_points(self) -> None:
        self._rollback_points.clear()

    def record_execution(
        self,
        parameters: Parameters,
        *,
        status: ExecutionStatus,
        result: Any = None,
        error: BaseException | None = None,
    ) -> ExecutionRecord:
        record = ExecutionRecord(
            timestamp=self._clock(),
            parameters=dict(parameters),
            status=status,
            result=result if status is ExecutionStatus.SUCCESS else None,
            error=str(error) if error is not None else None,
        )
        self._history.append(record)
        return record

    def is_available_in(self, mode: ModeName | str) -> bool:
        return self.metadata.is_available_in(mode)

    def approval_requirement(
        self, mode: ModeName | str, *, high_risk: bool = False
    ) -> ApprovalStrategy:
        return self.metadata.approval_requirement(mode, high_risk=high_risk)


__all__ = [
    "ApprovalRequirements",
    "Capability",
    "CapabilityContext",
    "CapabilityDefinition",
    "CapabilityInstance",
    "CapabilityMetadata",
    "ExecuteFn",
    "ExecutionConstraints",
    "ExecutionRecord",
    "ExecutionStatus",
    "FileOperations",
    "JSONValue",
    "Parameters",
    "RiskLevel",
    "RollbackDescriptor",
    "RollbackFn",
    "RollbackPoint",
    "RollbackPointFn",
    "RollbackStrategy",
    "ValidateFn",
    "ValidationResult",
    "is_path_parameter",
    "path_errors",
    "satisfies_contract",
    "thaw_json",
    "validate_parameters",
]
