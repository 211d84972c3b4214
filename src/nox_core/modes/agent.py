"""Agent mode: approve a plan once, then execute it; high-risk steps still ask."""

from __future__ import annotations

from nox_core.modes import ApprovalStrategy, ModeCapabilityFlag, ModeConfig, ModeName

AGENT_MODE = ModeConfig(
    name=ModeName.AGENT,
    display_name="Agent",
    description="Intelligent partner that approves a plan once, then executes autonomously.",
    approval_strategy=ApprovalStrategy.PER_PLAN,
    multi_step_enabled=True,
    batch_operations_enabled=True,
    autonomous_execution_enabled=True,
    high_risk_requires_approval=True,
    recommended_for="Feature development, refactoring, complex tasks",
    capabilities={
        ModeCapabilityFlag.READ: True,
        ModeCapabilityFlag.WRITE: True,
        ModeCapabilityFlag.TERMINAL: True,
        ModeCapabilityFlag.GIT: True,
        ModeCapabilityFlag.WEB: True,
        ModeCapabilityFlag.MULTI_STEP: True,
        ModeCapabilityFlag.BATCH: True,
        ModeCapabilityFlag.ITERATIVE: True,
        ModeCapabilityFlag.PLANNING: True,
        ModeCapabilityFlag.ERROR_RECOVERY: True,
    },
)

__all__ = ["AGENT_MODE"]
