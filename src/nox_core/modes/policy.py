"""
nox-core — mode policy engine

File: src/nox_core/modes/policy.py
Last updated: 2026-10-18

Purpose
- Decide, for a requested operation and execution context, which approval strategy applies
  under the current operating mode, and whether the operation is permitted at all.

What should be included in this file
- Immutable user restrictions (allow/block lists, batch and task limits, path prefixes).
- High-risk operation classification.
- Approval strategy resolution per mode, operation validation, path validation.
- Mode transitions with change notifications.

Functional requirements
- Assistant mode always resolves to ``per_action``.
- Agent mode resolves high-risk operations to ``always`` even inside an approved plan.
- Blocked paths win over allowed paths.
- Blocked operations are a hard failure; every other policy failure is reported, not raised.

Non-functional requirements
- ``evaluate`` snapshots its decision so later mode changes never alter an in-flight verdict.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Final

import structlog

from nox_core.errors import OperationBlockedError
from nox_core.modes import (
    CAPABILITY_FLAG_BY_TYPE,
    DEFAULT_MODE_REGISTRY,
    ApprovalStrategy,
    ModeConfig,
    ModeName,
    ModeRegistry,
    parse_mode_name,
)

HIGH_RISK_OPERATIONS: Final[frozenset[str]] = frozenset(
    {
        "git_push",
        "git_force_push",
        "deploy_production",
        "database_migration",
        "file_deletion_bulk",
        "npm_uninstall",
        "sudo_command",
        "rm_rf",
    }
)

DEFAULT_ALWAYS_APPROVE: Final[tuple[str, ...]] = (
    "git_push",
    "deploy_production",
    "database_migration",
)
DEFAULT_NEVER_EXECUTE: Final[tuple[str, ...]] = ("git_force_push", "rm_rf", "sudo_command")
DEFAULT_ALLOWED_PATHS: Final[tuple[str, ...]] = ("src/", "tests/", "docs/")
DEFAULT_BLOCKED_PATHS: Final[tuple[str, ...]] = ("node_modules/", ".git/", "dist/", "build/")

ModeListener = Callable[[ModeConfig], None]


def _string_tuple(value: object, *, field_name: str) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, Iterable):
        raise ValueError(f"{field_name} must be a list of strings")
    items: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"{field_name} entries must be strings")
        stripped = item.strip()
        if stripped and stripped not in items:
            items.append(stripped)
    return tuple(items)


def _positive_int(value: object, *, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer")
    if value <= 0:
        raise ValueError(f"{field_name} must be > 0")
    return value


@dataclass(frozen=True, slots=True)
class UserRestrictions:
    """User-configured limits, read once when a policy engine is constructed."""

    always_approve: tuple[str, ...] = DEFAULT_ALWAYS_APPROVE
    never_execute: tuple[str, ...] = DEFAULT_NEVER_EXECUTE
    max_operations_per_task: int = 100
    max_files_per_batch: int = 50
    allowed_paths: tuple[str, ...] = DEFAULT_ALLOWED_PATHS
    blocked_paths: tuple[str, ...] = DEFAULT_BLOCKED_PATHS

    def __post_init__(self) -> None:
        for name in ("always_approve", "never_execute", "allowed_paths", "blocked_paths"):
            object.__setattr__(
                self,
                name,
                _string_tuple(getattr(self, name), field_name=f"UserRestrictions.{name}"),
            )
        object.__setattr__(
            self,
            "max_operations_per_task",
            _positive_int(
                self.max_operations_per_task,
                field_name="UserRestrictions.max_operations_per_task",
            ),
        )
        object.__setattr__(
            self,
            "max_files_per_batch",
            _positive_int(
                self.max_files_per_batch, field_name="UserRestrictions.max_files_per_batch"
            ),
        )

    @classmethod
    def from_config(cls, restrictions: Mapping[str, object] | None) -> UserRestrictions:
        """Build from a ``[restrictions]`` config table; absent keys keep their defaults."""

        if restrictions is None:
            return cls()
        known = {name for name in cls.__dataclass_fields__}
        unknown = sorted(str(key) for key in restrictions if key not in known)
        if unknown:
            raise ValueError(f"unknown restriction keys: {', '.join(unknown)}")
        values = {str(key): value for key, value in restrictions.items()}
        return cls(**values)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        return {
            "always_approve": list(self.always_approve),
            "never_execute": list(self.never_execute),
            "max_operations_per_task": self.max_operations_per_task,
            "max_files_per_batch": self.max_files_per_batch,
            "allowed_paths": list(self.allowed_paths),
            "blocked_paths": list(self.blocked_paths),
        }


@dataclass(frozen=True, slots=True)
class OperationRequest:
    """A concrete operation the model asked for: capability type plus its parameters."""

    capability_type: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.capability_type, str) or not self.capability_type.strip():
            raise ValueError("OperationRequest.capability_type cannot be empty")
        if not isinstance(self.parameters, Mapping):
            raise ValueError("OperationRequest.parameters must be a mapping")
        object.__setattr__(self, "capability_type", self.capability_type.strip())
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @property
    def path(self) -> str | None:
        value = self.parameters.get("path")
        return value if isinstance(value, str) and value else None


_CONTEXT_KEY_ALIASES: Final[Mapping[str, str]] = MappingProxyType(
    {
        "isPartOfPlan": "is_part_of_plan",
        "planApproved": "plan_approved",
        "batchSize": "batch_size",
        "operationCount": "operation_count",
    }
)


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    is_part_of_plan: bool = False
    plan_approved: bool = False
    batch_size: int | None = None
    operation_count: int | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object] | None) -> ExecutionContext:
        """Build from a snake_case or wire (camelCase) context mapping; unknown keys raise."""

        if payload is None:
            return cls()
        values: dict[str, object] = {}
        unknown: list[str] = []
        for key, value in payload.items():
            name = _CONTEXT_KEY_ALIASES.get(str(key), str(key))
            if name not in cls.__dataclass_fields__:
                unknown.append(str(key))
            elif name in values:
                raise ValueError(f"duplicate execution context key: {key}")
            else:
                values[name] = value
        if unknown:
            raise ValueError(f"unknown execution context keys: {', '.join(sorted(unknown))}")

        def _optional_int(name: str) -> int | None:
            value = values.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                return None
            return value

        return cls(
            is_part_of_plan=bool(values.get("is_part_of_plan", False)),
            plan_approved=bool(values.get("plan_approved", False)),
            batch_size=_optional_int("batch_size"),
            operation_count=_optional_int("operation_count"),
        )


@dataclass(frozen=True, slots=True)
class PolicyVerdict:
    """Approval decision captured at evaluation time."""

    capability_type: str
    mode: ModeName
    strategy: ApprovalStrategy
    high_risk: bool

    @property
    def requires_approval(self) -> bool:
        return self.strategy is not ApprovalStrategy.NONE

    def to_dict(self) -> dict[str, object]:
        return {
            "capability_type": self.capability_type,
            "mode": self.mode.value,
            "strategy": self.strategy.value,
            "high_risk": self.high_risk,
            "requires_approval": self.requires_approval,
        }


@dataclass(frozen=True, slots=True)
class OperationValidation:
    valid: bool
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _coerce_request(request: OperationRequest | str) -> OperationRequest:
    if isinstance(request, OperationRequest):
        return request
    return OperationRequest(capability_type=request)


def _coerce_context(context: ExecutionContext | Mapping[str, object] | None) -> ExecutionContext:
    if isinstance(context, ExecutionContext):
        return context
    return ExecutionContext.from_mapping(context)


class ModePolicyEngine:
    """Per-mode approval and restriction policy over a single current mode."""

    def __init__(
        self,
        restrictions: UserRestrictions | None = None,
        *,
        registry: ModeRegistry = DEFAULT_MODE_REGISTRY,
        initial_mode: ModeName | str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._restrictions = restrictions if restrictions is not None else UserRestrictions()
        self._registry = registry
        self._current_mode = (
            registry.default_mode_name if initial_mode is None else parse_mode_name(initial_mode)
        )
        self._listeners: list[ModeListener] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def restrictions(self) -> UserRestrictions:
        return self._restrictions

    @property
    def current_mode(self) -> ModeName:
        return self._current_mode

    def mode_config(self, mode: ModeName | str | None = None) -> ModeConfig:
        return self._registry.resolve(self._current_mode if mode is None else mode)

    def all_modes(self) -> tuple[ModeConfig, ...]:
        return self._registry.all()

    def set_mode(self, mode: ModeName | str) -> ModeConfig:
        """Switch the current mode; raises ``InvalidModeError`` for unknown values."""

        resolved = parse_mode_name(mode)
        previous = self._current_mode
        self._current_mode = resolved
        config = self._registry.resolve(resolved)
        self._logger.info("mode_changed", previous=previous.value, mode=resolved.value)
        for listener in tuple(self._listeners):
            listener(config)
        return config

    def subscribe(self, listener: ModeListener) -> Callable[[], None]:
        """Register a mode-change listener; returns a callable that unsubscribes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def is_capability_available(self, capability_type: str) -> bool:
        flag = CAPABILITY_FLAG_BY_TYPE.get(capability_type)
        if flag is None:
            return False
        return self.mode_config().is_enabled(flag)

    def is_high_risk(self, request: OperationRequest | str) -> bool:
        return _coerce_request(request).capability_type in HIGH_RISK_OPERATIONS

    def is_operation_blocked(self, request: OperationRequest | str) -> bool:
        return _coerce_request(request).capability_type in self._restrictions.never_execute

    def get_approval_strategy(
        self,
        request: OperationRequest | str,
        context: ExecutionContext | Mapping[str, object] | None = None,
    ) -> ApprovalStrategy:
        return self._resolve_strategy(
            _coerce_request(request), _coerce_context(context), self._current_mode
        )

    def evaluate(
        self,
        request: OperationRequest | str,
        context: ExecutionContext | Mapping[str, object] | None = None,
    ) -> PolicyVerdict:
        operation = _coerce_request(request)
        mode = self._current_mode
        strategy = self._resolve_strategy(operation, _coerce_context(context), mode)
        return PolicyVerdict(
            capability_type=operation.capability_type,
            mode=mode,
            strategy=strategy,
            high_risk=self.is_high_risk(operation),
        )

    def validate_operation(
        self,
        request: OperationRequest | str,
        context: ExecutionContext | Mapping[str, object] | None = None,
    ) -> OperationValidation:
        operation = _coerce_request(request)
        execution = _coerce_context(context)
        self._ensure_not_blocked(operation)

        errors: list[str] = []
        if not self.is_capability_available(operation.capability_type):
            errors.append(
                f"Capability {operation.capability_type} not available in "
                f"{self._current_mode.value} mode"
            )
        if operation.path is not None:
            errors.extend(self.validate_path(operation.path))

        limit = self._restrictions.max_files_per_batch
        if execution.batch_size and execution.batch_size > limit:
            errors.append(f"Batch size {execution.batch_size} exceeds limit of {limit}")

        task_limit = self._restrictions.max_operations_per_task
        if execution.operation_count is not None and execution.operation_count > task_limit:
            errors.append(
                f"Operation count {execution.operation_count} exceeds task limit of {task_limit}"
            )
        return OperationValidation(valid=not errors, errors=tuple(errors))

    def validate_path(self, file_path: str) -> list[str]:
        errors: list[str] = []
        for blocked in self._restrictions.blocked_paths:
            if file_path.startswith(blocked):
                errors.append(f"Path {file_path} is in blocked directory: {blocked}")

        allowed = self._restrictions.allowed_paths
        if self._current_mode is ModeName.AUTONOMOUS and allowed:
            if not any(file_path.startswith(prefix) for prefix in allowed):
                errors.append(
                    f"Path {file_path} is not in allowed directories: {', '.join(allowed)}"
                )
        return errors

    def _ensure_not_blocked(self, operation: OperationRequest) -> None:
        if self.is_operation_blocked(operation):
            raise OperationBlockedError(
                f"Operation {operation.capability_type} is blocked by user settings",
                capability_type=operation.capability_type,
            )

    def _resolve_strategy(
        self,
        operation: OperationRequest,
        context: ExecutionContext,
        mode: ModeName,
    ) -> ApprovalStrategy:
        self._ensure_not_blocked(operation)

        if mode is ModeName.AUTONOMOUS:
            if operation.capability_type in self._restrictions.always_approve:
                return ApprovalStrategy.ALWAYS
            return ApprovalStrategy.NONE

        if mode is ModeName.AGENT:
            if self.is_high_risk(operation):
                return ApprovalStrategy.ALWAYS
            if context.is_part_of_plan and context.plan_approved:
                return ApprovalStrategy.NONE
            return ApprovalStrategy.PER_PLAN

        return ApprovalStrategy.PER_ACTION


__all__ = [
    "DEFAULT_ALLOWED_PATHS",
    "DEFAULT_ALWAYS_APPROVE",
    "DEFAULT_BLOCKED_PATHS",
    "DEFAULT_NEVER_EXECUTE",
    "HIGH_RISK_OPERATIONS",
    "ExecutionContext",
    "ModeListener",
    "ModePolicyEngine",
    "OperationRequest",
    "OperationValidation",
    "PolicyVerdict",
    "UserRestrictions",
]
