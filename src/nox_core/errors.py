"""
nox-core — error taxonomy

File: src/nox_core/errors.py
Last updated: 2026-10-18

Purpose
- Normalized exception hierarchy shared by registry, policy, execution, protocol and streaming.

What should be included in this file
- One base error with deterministic machine-readable fields.
- One exception family per failure domain (see the class hierarchy below).

Functional requirements
- Every failure names the capability/operation and the underlying cause.

Non-functional requirements
- Subclasses must be uniformly constructible from a single ``detail`` string.
"""

from __future__ import annotations

from collections.abc import Sequence


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


class NoxError(RuntimeError):
    """Base error with deterministic ``code``/``detail`` fields."""

    code: str = "error"

    def __init__(self, detail: str, *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.detail = _normalize_detail(detail)
        super().__init__(f"code={self.code} detail={self.detail}")


class ValidationError(NoxError):
    """Bad or missing parameters, detected before any side effect."""

    code = "validation"

    def __init__(self, detail: str, *, errors: Sequence[str] = ()) -> None:
        self.errors = tuple(errors)
        super().__init__(detail)


class PolicyError(NoxError):
    """Operation refused by the mode policy; the action never executes."""

    code = "policy"


class OperationBlockedError(PolicyError):
    code = "operation_blocked"

    def __init__(self, detail: str, *, capability_type: str | None = None) -> None:
        self.capability_type = capability_type
        super().__init__(detail)


class InvalidModeError(PolicyError):
    code = "invalid_mode"


class CapabilityUnavailableError(PolicyError):
    code = "capability_unavailable"


class PathRestrictedError(PolicyError):
    code = "path_restricted"


class ExecutionError(NoxError):
    """Capability-internal failure raised from ``execute``."""

    code = "execution"

    def __init__(
        self,
        detail: str,
        *,
        capability_id: str | None = None,
        attempt: int | None = None,
    ) -> None:
        self.capability_id = capability_id
        self.attempt = attempt
        prefix = f"{capability_id}: " if capability_id else ""
        super().__init__(f"{prefix}{detail}")


class RollbackError(NoxError):
    """Failure during compensating rollback. Logged, never masks the original error."""

    code = "rollback"


class RollbackNotSupportedError(RollbackError):
    code = "rollback_not_supported"


class ProtocolError(NoxError):
    """Malformed or unsupported message envelope."""

    code = "protocol"


class StreamError(NoxError):
    """Remote error event, transport failure or cancellation of a streaming response."""

    code = "stream"

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        self.provider = provider
        super().__init__(f"provider={provider} {detail}")


class StreamCancelledError(StreamError):
    code = "stream_cancelled"


class RegistryError(NoxError):
    """Registration/lookup failure. Fatal to the call site, never retried."""

    code = "registry"


class DuplicateCapabilityError(RegistryError):
    code = "duplicate_id"


class CapabilityNotFoundError(RegistryError):
    code = "not_found"


class InvalidCapabilityError(RegistryError):
    code = "invalid_capability"


class DependencyCycleError(RegistryError):
    code = "dependency_cycle"

    def __init__(self, detail: str, *, cycle: Sequence[str] = ()) -> None:
        self.cycle = tuple(cycle)
        super().__init__(detail)


def nox_error_subclasses() -> tuple[type[NoxError], ...]:
    """Return all NoxError subclasses in deterministic order."""

    discovered: set[type[NoxError]] = set()
    pending = list(NoxError.__subclasses__())
    while pending:
        current = pending.pop()
        discovered.add(current)
        pending.extend(current.__subclasses__())
    scoped = tuple(
        error_type for error_type in discovered if error_type.__module__.startswith("nox_core")
    )
    return tuple(sorted(scoped, key=lambda error_type: error_type.__qualname__))


__all__ = [
    "CapabilityNotFoundError",
    "CapabilityUnavailableError",
    "DependencyCycleError",
    "DuplicateCapabilityError",
    "ExecutionError",
    "InvalidCapabilityError",
    "InvalidModeError",
    "NoxError",
    "OperationBlockedError",
    "PathRestrictedError",
    "PolicyError",
    "ProtocolError",
    "RegistryError",
    "RollbackError",
    "RollbackNotSupportedError",
    "StreamCancelledError",
    "StreamError",
    "ValidationError",
    "nox_error_subclasses",
]
