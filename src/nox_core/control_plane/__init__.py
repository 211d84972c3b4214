"""Control-plane public API."""

from nox_core.control_plane.runtime import NoxRuntime, build_provider, build_runtime
from nox_core.control_plane.tool_dispatch import (
    ApprovalRequest,
    ToolCallDispatcher,
    ToolOutcome,
    ToolStatus,
    ToolStatusUpdate,
)

__all__ = [
    "ApprovalRequest",
    "NoxRuntime",
    "ToolCallDispatcher",
    "ToolOutcome",
    "ToolStatus",
    "ToolStatusUpdate",
    "build_provider",
    "build_runtime",
]
