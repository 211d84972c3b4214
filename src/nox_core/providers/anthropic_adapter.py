"""
nox-core — Anthropic provider adapter

File: src/nox_core/providers/anthropic_adapter.py
Last updated: 2026-10-18

Purpose
- Anthropic (Claude) translation layer: tool schema export, tool-choice mapping, request
  payload, wire-event parsing and the SDK-backed streaming transport.

What should be included in this file
- Claude provider profile (models, pricing per 1M tokens, API-key format).
- Wire parser for Messages API streaming events.
- Lazy SDK import; an injected client or transport replaces it in tests.

Functional requirements
- Unparseable SSE lines are skipped, never fatal.
- ``required`` tool choice maps to Claude's ``any``.

Non-functional requirements
- Must be configurable and safe; no secrets in logs.
"""

from __future__ import annotations

import importlib
import json
import os
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any, Final, Protocol, cast

import structlog

from nox_core.capabilities.base import CapabilityDefinition, CapabilityMetadata
from nox_core.providers.base import (
    ModelPricing,
    ProviderAuthenticationError,
    ProviderProfile,
    ProviderUnavailableError,
    ToolCall,
    build_parameter_schema,
    read_int,
    read_sequence,
    read_str,
    read_value,
)
from nox_core.providers.stream import (
    StreamEvent,
    StreamEventKind,
    StreamingProvider,
    StreamRequest,
    StreamTransport,
    WireRecord,
    decode_sse_json,
)

PROVIDER_NAME: Final[str] = "anthropic"

ANTHROPIC_PROFILE: Final[ProviderProfile] = ProviderProfile(
    provider=PROVIDER_NAME,
    display_name="Anthropic Claude",
    models=(
        "claude-sonnet-4-5-20250929",
        "claude-sonnet-4-20250514",
        "claude-3-5-haiku-20241022",
        "claude-3-haiku-20240307",
    ),
    default_model="claude-sonnet-4-5-20250929",
    pricing={
        "claude-sonnet-4-5-20250929": ModelPricing(input=3.00, output=15.00),
        "claude-sonnet-4-20250514": ModelPricing(input=3.00, output=15.00),
        "claude-3-5-haiku-20241022": ModelPricing(input=0.80, output=4.00),
        "claude-3-haiku-20240307": ModelPricing(input=0.25, output=1.25),
    },
    pricing_unit_tokens=1_000_000,
    api_key_pattern=r"sk-ant-[A-Za-z0-9_-]+",
    max_tools=64,
    tool_format="claude_tools",
    api_version="2023-06-01",
)


def _metadata_of(item: CapabilityMetadata | CapabilityDefinition) -> CapabilityMetadata:
    return item if isinstance(item, CapabilityMetadata) else item.metadata


class AnthropicToolAdapter:
    """Capability catalog <-> Claude ``tools`` / ``tool_use`` / ``tool_result`` shapes."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def convert_capabilities_to_tools(
        self, capabilities: Iterable[CapabilityMetadata | CapabilityDefinition]
    ) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        for item in capabilities:
            metadata = _metadata_of(item)
            tools.append(
                {
                    "name": metadata.id,
                    "description": metadata.description or metadata.name,
                    "input_schema": build_parameter_schema(metadata.parameter_schema()),
                }
            )
        return tools

    def parse_tool_calls(self, response: object) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for block in read_sequence(response, "content"):
            if read_str(block, "type") != "tool_use":
                continue
            name = read_str(block, "name")
            call_id = read_str(block, "id")
            if name is None or call_id is None:
                self._logger.warning("tool_use_block_incomplete", provider=PROVIDER_NAME)
                continue
            arguments = read_value(block, "input")
            parameters = dict(arguments) if isinstance(arguments, Mapping) else {}
            calls.append(ToolCall(call_id=call_id, name=name, parameters=parameters))
        return calls

    def build_tool_result(self, tool_call_id: str, result: object) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": tool_call_id,
            "content": json.dumps(result, default=str),
        }

    def map_tool_choice(self, tool_choice: object) -> dict[str, Any] | None:
        if not tool_choice:
            return None
        if tool_choice == "auto":
            return {"type": "auto"}
        if tool_choice == "required":
            return {"type": "any"}
        if isinstance(tool_choice, Mapping):
            return dict(tool_choice)
        return None

    def validate_tool(self, tool: object) -> bool:
        name = read_value(tool, "name")
        if not isinstance(name, str) or not name:
            self._logger.warning("tool_invalid", provider=PROVIDER_NAME, reason="missing name")
            return False
        description = read_value(tool, "description")
        if not isinstance(description, str) or not description:
            self._logger.warning(
                "tool_invalid", provider=PROVIDER_NAME, tool=name, reason="missing description"
            )
            return False
        if not isinstance(read_value(tool, "input_schema"), Mapping):
            self._logger.warning(
                "tool_invalid", provider=PROVIDER_NAME, tool=name, reason="missing input_schema"
            )
            return False
        return True

    def validate_tools(self, tools: object) -> bool:
        if not isinstance(tools, list):
            self._logger.warning("tools_invalid", provider=PROVIDER_NAME, reason="not a list")
            return False
        return all(self.validate_tool(tool) for tool in tools)


class AnthropicWireParser:
    """Messages API stream events -> normalized stream events. Stateless per line."""

    def parse(self, record: Mapping[str, Any] | str) -> list[StreamEvent]:
        event = decode_sse_json(record) if isinstance(record, str) else record
        if event is None:
            return []

        event_type = read_str(event, "type")
        if event_type == "content_block_delta":
            delta = read_value(event, "delta")
            delta_type = read_str(delta, "type")
            if delta_type == "text_delta":
                text = read_value(delta, "text")
                return [StreamEvent.text_delta(text)] if isinstance(text, str) else []
            if delta_type == "input_json_delta":
                fragment = read_value(delta, "partial_json")
                if not isinstance(fragment, str):
                    return []
                return [StreamEvent.tool_input_delta(fragment)]
            return []

        if event_type == "content_block_start":
            block = read_value(event, "content_block")
            if read_str(block, "type") != "tool_use":
                return []
            tool_id = read_str(block, "id") or ""
            return [StreamEvent.tool_use_start(tool_id, read_str(block, "name") or "")]

        if event_type == "content_block_stop":
            return [StreamEvent.block_stop()]

        if event_type == "message_start":
            usage = read_value(read_value(event, "message"), "usage")
            return [
                StreamEvent(
                    kind=StreamEventKind.MESSAGE_START,
                    input_tokens=read_int(usage, "input_tokens") if usage is not None else None,
                )
            ]

        if event_type == "message_delta":
            usage = read_value(event, "usage")
            if usage is None:
                return []
            return [
                StreamEvent.usage(
                    input_tokens=read_int(usage, "input_tokens"),
                    output_tokens=read_int(usage, "output_tokens"),
                )
            ]

        if event_type == "message_stop":
            return [StreamEvent(kind=StreamEventKind.MESSAGE_STOP)]

        if event_type == "error":
            error = read_value(event, "error")
            return [
                StreamEvent.error(
                    read_str(error, "type") or "unknown",
                    read_str(error, "message") or "Unknown error",
                )
            ]
        return []

    def finish(self) -> list[StreamEvent]:
        return []


class _AnthropicMessagesAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _AnthropicClient(Protocol):
    messages: _AnthropicMessagesAPI


def _event_to_mapping(event: object) -> Mapping[str, Any]:
    if isinstance(event, Mapping):
        return event
    model_dump = getattr(event, "model_dump", None)
    if callable(model_dump):
        return cast("Mapping[str, Any]", model_dump())
    raise TypeError(f"unsupported stream event type: {type(event).__name__}")


class AnthropicSDKTransport:
    """Streams Messages API events through the ``anthropic`` SDK, imported on first use."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        client: _AnthropicClient | None = None,
    ) -> None:
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._api_key = api_key
        self._api_key_env = api_key_env
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[WireRecord]:
        client = self._ensure_client()
        stream = await client.messages.create(**payload)
        try:
            async for event in cast("AsyncIterator[object]", stream):
                yield _event_to_mapping(event)
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                await close()

    def _ensure_client(self) -> _AnthropicClient:
        if self._client is not None:
            return self._client
        try:
            anthropic_module = importlib.import_module("anthropic")
        except ImportError as exc:
            raise ProviderUnavailableError(
                "anthropic SDK is not installed", provider=PROVIDER_NAME
            ) from exc

        async_anthropic = getattr(anthropic_module, "AsyncAnthropic", None)
        if async_anthropic is None:
            raise ProviderUnavailableError(
                "anthropic SDK does not expose AsyncAnthropic", provider=PROVIDER_NAME
            )
        init_kwargs: dict[str, object] = {"api_key": self._resolve_api_key()}
        if self._base_url is not None:
            init_kwargs["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            init_kwargs["timeout"] = self._timeout_seconds
        self._client = cast("_AnthropicClient", async_anthropic(**init_kwargs))
        return self._client

    def _resolve_api_key(self) -> str:
        if self._api_key is not None:
            return self._api_key
        if self._api_key_env is not None:
            configured = os.getenv(self._api_key_env)
            if configured is None or not configured.strip():
                raise ProviderAuthenticationError(
                    f"missing Anthropic API key in configured env var {self._api_key_env}",
                    provider=PROVIDER_NAME,
                    http_status=401,
                )
            return configured
        fallback = os.getenv("ANTHROPIC_API_KEY") or os.getenv("NOX_ANTHROPIC_API_KEY")
        if fallback is None or not fallback.strip():
            raise ProviderAuthenticationError(
                "missing Anthropic API key; set ANTHROPIC_API_KEY or NOX_ANTHROPIC_API_KEY",
                provider=PROVIDER_NAME,
                http_status=401,
            )
        return fallback


class AnthropicProvider(StreamingProvider):
    """Claude streaming provider with tool calling."""

    provider_name = PROVIDER_NAME

    def __init__(
        self,
        *,
        transport: StreamTransport | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        profile: ProviderProfile = ANTHROPIC_PROFILE,
        logger: Any | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            profile=profile,
            transport=transport if transport is not None else AnthropicSDKTransport(),
            model=model,
            logger=logger,
            **kwargs,
        )
        self.max_tokens = max_tokens if max_tokens is not None else profile.default_max_tokens
        self.temperature = temperature if temperature is not None else profile.default_temperature
        self.tools = AnthropicToolAdapter(logger=self._logger)

    def convert_capabilities_to_tools(
        self, capabilities: Iterable[CapabilityMetadata | CapabilityDefinition]
    ) -> list[dict[str, Any]]:
        tools = self.tools.convert_capabilities_to_tools(capabilities)
        if len(tools) > self.profile.max_tools:
            self._logger.warning(
                "tool_limit_exceeded",
                provider=self.provider_name,
                tool_count=len(tools),
                max_tools=self.profile.max_tools,
            )
        return tools

    def parse_tool_calls(self, response: object) -> list[ToolCall]:
        return self.tools.parse_tool_calls(response)

    def build_tool_result(self, tool_call_id: str, result: object) -> dict[str, Any]:
        return self.tools.build_tool_result(tool_call_id, result)

    def build_request(self, request: StreamRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens or self.max_tokens,
            "messages": [dict(message) for message in request.messages],
            "stream": True,
            "temperature": (
                request.temperature if request.temperature is not None else self.temperature
            ),
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.tools:
            payload["tools"] = [dict(tool) for tool in request.tools]
        tool_choice = self.tools.map_tool_choice(request.tool_choice)
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice
        return payload

    def create_parser(self) -> AnthropicWireParser:
        return AnthropicWireParser()


AnthropicAdapter = AnthropicProvider

__all__ = [
    "ANTHROPIC_PROFILE",
    "AnthropicAdapter",
    "AnthropicProvider",
    "AnthropicSDKTransport",
    "AnthropicToolAdapter",
    "AnthropicWireParser",
]
