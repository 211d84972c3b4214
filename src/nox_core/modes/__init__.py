"""Operating mode enums, immutable per-mode configuration and mode registry."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Final

from nox_core.errors import InvalidModeError


class ModeName(StrEnum):
    ASSISTANT = "assistant"
    AGENT = "agent"
    AUTONOMOUS = "autonomous"


class ModeCapabilityFlag(StrEnum):
    """Abstract capability switches a mode can enable."""

    READ = "read"
    WRITE = "write"
    TERMINAL = "terminal"
    GIT = "git"
    WEB = "web"
    MULTI_STEP = "multi_step"
    BATCH = "batch"
    ITERATIVE = "iterative"
    PLANNING = "planning"
    ERROR_RECOVERY = "error_recovery"
    PROJECT_SCAFFOLDING = "project_scaffolding"
    CODEBASE_MIGRATION = "codebase_migration"
    DEPLOYMENT = "deployment"


class ApprovalStrategy(StrEnum):
    NONE = "none"
    PER_ACTION = "per_action"
    PER_PLAN = "per_plan"
    ALWAYS = "always"
    BATCH = "batch"


DEFAULT_MODE: Final[ModeName] = ModeName.ASSISTANT

# Concrete capability type -> abstract mode flag.
CAPABILITY_FLAG_BY_TYPE: Final[Mapping[str, ModeCapabilityFlag]] = MappingProxyType(
    {
        "file_read": ModeCapabilityFlag.READ,
        "file_create": ModeCapabilityFlag.WRITE,
        "file_edit": ModeCapabilityFlag.WRITE,
        "file_delete": ModeCapabilityFlag.WRITE,
        "terminal_command": ModeCapabilityFlag.TERMINAL,
        "git_commit": ModeCapabilityFlag.GIT,
        "git_push": ModeCapabilityFlag.GIT,
        "web_search": ModeCapabilityFlag.WEB,
        "multi_step": ModeCapabilityFlag.MULTI_STEP,
        "batch_operation": ModeCapabilityFlag.BATCH,
        "iterative_workflow": ModeCapabilityFlag.ITERATIVE,
    }
)


def _validate_non_empty_str(value: str, *, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{field_name} cannot be empty")
    return parsed


def parse_mode_name(value: str | ModeName) -> ModeName:
    """Return the enum member for ``value`` or raise ``InvalidModeError``."""

    if isinstance(value, ModeName):
        return value
    if isinstance(value, str):
        try:
            return ModeName(value.strip().lower())
        except ValueError:
            pass
    options = ", ".join(mode.value for mode in ModeName)
    raise InvalidModeError(f"invalid mode {value!r}; expected one of: {options}")


def _normalize_flags(
    flags: Mapping[ModeCapabilityFlag | str, bool],
) -> Mapping[ModeCapabilityFlag, bool]:
    if not isinstance(flags, Mapping):
        raise ValueError("ModeConfig.capabilities must be a mapping")
    normalized: dict[ModeCapabilityFlag, bool] = {flag: False for flag in ModeCapabilityFlag}
    for key, enabled in flags.items():
        try:
            flag = ModeCapabilityFlag(key)
        except ValueError as exc:
            raise ValueError(f"unknown mode capability flag: {key!r}") from exc
        if not isinstance(enabled, bool):
            raise ValueError(f"ModeConfig.capabilities[{flag.value!r}] must be a boolean")
        normalized[flag] = enabled
    return MappingProxyType(normalized)


@dataclass(frozen=True, slots=True)
class ModeConfig:
    """Fully-resolved immutable configuration for one operating mode."""

    name: ModeName
    display_name: str
    description: str
    approval_strategy: ApprovalStrategy
    capabilities: Mapping[ModeCapabilityFlag, bool]
    multi_step_enabled: bool = False
    batch_operations_enabled: bool = False
    autonomous_execution_enabled: bool = False
    high_risk_requires_approval: bool = True
    user_configurable_restrictions: bool = False
    recommended_for: str = ""
    warning: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", parse_mode_name(self.name))
        object.__setattr__(
            self,
            "display_name",
            _validate_non_empty_str(self.display_name, field_name="ModeConfig.display_name"),
        )
        object.__setattr__(
            self,
            "description",
            _validate_non_empty_str(self.description, field_name="ModeConfig.description"),
        )
        object.__setattr__(self, "approval_strategy", ApprovalStrategy(self.approval_strategy))
        object.__setattr__(self, "capabilities", _normalize_flags(self.capabilities))

    def is_enabled(self, flag: ModeCapabilityFlag | str) -> bool:
        return self.capabilities.get(ModeCapabilityFlag(flag), False)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.name.value,
            "display_name": self.display_name,
            "description": self.description,
            "approval_strategy": self.approval_strategy.value,
            "multi_step_enabled": self.multi_step_enabled,
            "batch_operations_enabled": self.batch_operations_enabled,
            "autonomous_execution_enabled": self.autonomous_execution_enabled,
            "high_risk_requires_approval": self.high_risk_requires_approval,
            "user_configurable_restrictions": self.user_configurable_restrictions,
            "recommended_for": self.recommended_for,
            "capabilities": {flag.value: enabled for flag, enabled in self.capabilities.items()},
        }
        if self.warning is not None:
            payload["warning"] = self.warning
        return payload


class ModeRegistry:
    """Deterministic registry for mode configuration lookup."""

    __slots__ = ("_default_mode_name", "_mode_names", "_modes_by_name")

    def __init__(
        self,
        modes: Sequence[ModeConfig],
        *,
        default_mode: ModeName | str = DEFAULT_MODE,
    ) -> None:
        if not modes:
            raise ValueError("ModeRegistry.modes cannot be empty")

        by_name: dict[ModeName, ModeConfig] = {}
        ordered: list[ModeName] = []
        for mode in modes:
            if not isinstance(mode, ModeConfig):
                raise ValueError("ModeRegistry.modes entries must be ModeConfig")
            if mode.name in by_name:
                raise ValueError(f"duplicate mode name: {mode.name.value}")
            by_name[mode.name] = mode
            ordered.append(mode.name)

        missing = [mode.value for mode in ModeName if mode not in by_name]
        if missing:
            raise ValueError(f"ModeRegistry is missing modes: {', '.join(missing)}")

        self._modes_by_name = MappingProxyType(by_name)
        self._mode_names = tuple(ordered)
        self._default_mode_name = parse_mode_name(default_mode)

    @classmethod
    def default(cls) -> ModeRegistry:
        return DEFAULT_MODE_REGISTRY

    @property
    def mode_names(self) -> tuple[ModeName, ...]:
        return self._mode_names

    @property
    def default_mode_name(self) -> ModeName:
        return self._default_mode_name

    def resolve(self, mode_name: ModeName | str | None = None) -> ModeConfig:
        if mode_name is None:
            return self._modes_by_name[self._default_mode_name]
        return self._modes_by_name[parse_mode_name(mode_name)]

    def all(self) -> tuple[ModeConfig, ...]:
        return tuple(self._modes_by_name[name] for name in self._mode_names)


def _build_default_mode_registry() -> ModeRegistry:
    from .agent import AGENT_MODE
    from .assistant import ASSISTANT_MODE
    from .autonomous import AUTONOMOUS_MODE

    return ModeRegistry(
        modes=(ASSISTANT_MODE, AGENT_MODE, AUTONOMOUS_MODE),
        default_mode=DEFAULT_MODE,
    )


DEFAULT_MODE_REGISTRY = _build_default_mode_registry()

__all__ = [
    "CAPABILITY_FLAG_BY_TYPE",
    "DEFAULT_MODE",
    "DEFAULT_MODE_REGISTRY",
    "ApprovalStrategy",
    "ModeCapabilityFlag",
    "ModeConfig",
    "ModeName",
    "ModeRegistry",
    "parse_mode_name",
]
