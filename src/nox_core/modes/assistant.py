"""Assistant mode: collaborative, approval on every action."""

from __future__ import annotations

from nox_core.modes import ApprovalStrategy, ModeCapabilityFlag, ModeConfig, ModeName

ASSISTANT_MODE = ModeConfig(
    name=ModeName.ASSISTANT,
    display_name="Assistant",
    description="Collaborative AI that asks for approval on every action.",
    approval_strategy=ApprovalStrategy.PER_ACTION,
    multi_step_enabled=False,
    batch_operations_enabled=False,
    autonomous_execution_enabled=False,
    high_risk_requires_approval=True,
    recommended_for="Beginners, learning, code review, quick questions",
    capabilities={
        ModeCapabilityFlag.READ: True,
        ModeCapabilityFlag.WRITE: True,
        ModeCapabilityFlag.TERMINAL: True,
        ModeCapabilityFlag.GIT: True,
        ModeCapabilityFlag.WEB: True,
        ModeCapabilityFlag.MULTI_STEP: False,
        ModeCapabilityFlag.BATCH: False,
        ModeCapabilityFlag.ITERATIVE: False,
    },
)

__all__ = ["ASSISTANT_MODE"]
