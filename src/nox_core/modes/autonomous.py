"""Autonomous mode: no approval unless the user restrictions demand it."""

from __future__ import annotations

from nox_core.modes import ApprovalStrategy, ModeCapabilityFlag, ModeConfig, ModeName

AUTONOMOUS_MODE = ModeConfig(
    name=ModeName.AUTONOMOUS,
    display_name="Autonomous",
    description="Full autonomy with configurable restrictions for trusted execution.",
    approval_strategy=ApprovalStrategy.NONE,
    multi_step_enabled=True,
    batch_operations_enabled=True,
    autonomous_execution_enabled=True,
    high_risk_requires_approval=False,
    user_configurable_restrictions=True,
    recommended_for="Rapid prototyping, trusted projects, experienced developers",
    warning="Advanced users only: the model has full control within the configured restrictions.",
    capabilities={flag: True for flag in ModeCapabilityFlag},
)

__all__ = ["AUTONOMOUS_MODE"]
