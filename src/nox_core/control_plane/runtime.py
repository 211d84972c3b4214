"""Assemble registry, policy, engine, protocol and dispatcher from an effective config."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from nox_core.capabilities import CapabilityContext, CapabilityRegistry, initialize_capabilities
from nox_core.capabilities.workspace import LocalWorkspace
from nox_core.config.schema import assert_valid_config, default_config, merge_config
from nox_core.control_plane.tool_dispatch import (
    ApprovalCallback,
    StatusCallback,
    ToolCallDispatcher,
)
from nox_core.execution.engine import ExecutionEngine, RetryPolicy, SleepFn
from nox_core.modes.policy import ModePolicyEngine, UserRestrictions
from nox_core.protocol.envelope import MessageProtocol
from nox_core.providers.anthropic_adapter import AnthropicProvider, AnthropicSDKTransport
from nox_core.providers.openai_adapter import OpenAIProvider, OpenAISDKTransport
from nox_core.providers.stream import StreamingProvider, StreamTransport


@dataclass(frozen=True, slots=True)
class NoxRuntime:
    config: Mapping[str, Any]
    registry: CapabilityRegistry
    policy: ModePolicyEngine
    engine: ExecutionEngine
    protocol: MessageProtocol
    dispatcher: ToolCallDispatcher


def build_runtime(
    config: Mapping[str, object] | None = None,
    *,
    workspace_root: str | Path | None = None,
    approve: ApprovalCallback | None = None,
    on_status: StatusCallback | None = None,
    sleep: SleepFn = asyncio.sleep,
    logger: Any | None = None,
) -> NoxRuntime:
    effective = assert_valid_config(merge_config(default_config(), config or {}))
    execution = effective["execution"]

    registry = initialize_capabilities(
        CapabilityRegistry(
            rollback_point_limit=execution.get("rollback_point_limit"), logger=logger
        )
    )
    policy = ModePolicyEngine(
        UserRestrictions.from_config(effective["restrictions"]),
        initial_mode=effective["modes"]["default"],
        logger=logger,
    )
    engine = ExecutionEngine(
        retry_policy=RetryPolicy.from_config(execution), sleep=sleep, logger=logger
    )
    protocol = MessageProtocol(
        current_version=effective["protocol"]["current_version"],
        min_supported_version=effective["protocol"]["min_supported_version"],
        logger=logger,
    )
    capability_context = CapabilityContext(
        workspace_root=Path(workspace_root) if workspace_root is not None else None,
        file_ops=LocalWorkspace(workspace_root) if workspace_root is not None else None,
    )
    dispatcher = ToolCallDispatcher(
        registry,
        policy,
        engine,
        approve=approve,
        approval_timeout_seconds=effective["approval"]["timeout_seconds"],
        on_status=on_status,
        capability_context=capability_context,
        logger=logger,
    )
    return NoxRuntime(
        config=effective,
        registry=registry,
        policy=policy,
        engine=engine,
        protocol=protocol,
        dispatcher=dispatcher,
    )


def build_provider(
    config: Mapping[str, object] | None = None,
    *,
    provider: str | None = None,
    transport: StreamTransport | None = None,
    logger: Any | None = None,
) -> StreamingProvider:
    """Construct the configured provider; the SDK transport is used unless one is injected."""

    effective = assert_valid_config(merge_config(default_config(), config or {}))
    providers = effective["providers"]
    name = provider if provider is not None else providers["default"]
    settings = providers.get(name)
    if settings is None:
        raise ValueError(f"unknown provider: {name}")

    if name == "anthropic":
        return AnthropicProvider(
            transport=transport
            if transport is not None
            else AnthropicSDKTransport(
                api_key_env=settings.get("api_key_env"),
                timeout_seconds=settings.get("timeout_seconds"),
            ),
            model=settings.get("model"),
            max_tokens=settings.get("max_tokens"),
            temperature=settings.get("temperature"),
            logger=logger,
        )
    return OpenAIProvider(
        transport=transport
        if transport is not None
        else OpenAISDKTransport(
            api_key_env=settings.get("api_key_env"),
            timeout_seconds=settings.get("timeout_seconds"),
        ),
        model=settings.get("model"),
        max_tokens=settings.get("max_tokens"),
        temperature=settings.get("temperature"),
        logger=logger,
    )


__all__ = ["NoxRuntime", "build_provider", "build_runtime"]
