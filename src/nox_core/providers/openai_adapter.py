"""
nox-core — OpenAI provider adapter

File: src/nox_core/providers/openai_adapter.py
Last updated: 2026-10-18

Purpose
- OpenAI chat-completions translation layer: function-tool export, index-keyed tool-call
  delta accumulation, request payload and the SDK-backed streaming transport.

What should be included in this file
- OpenAI provider profile (models, pricing per 1K tokens, API-key format).
- Wire parser that re-expresses index-keyed deltas as start/delta/stop stream events.

Functional requirements
- Tool calls close when ``finish_reason == "tool_calls"`` or at end of stream.
- ``[DONE]`` terminates the stream.

Non-functional requirements
- SDK import is lazy; an injected client or transport replaces it in tests.
"""

from __future__ import annotations

import importlib
import json
import os
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Final, Protocol, cast

import structlog

from nox_core.capabilities.base import CapabilityDefinition, CapabilityMetadata
from nox_core.providers.base import (
    ModelPricing,
    ProviderAuthenticationError,
    ProviderProfile,
    ProviderResponseError,
    ProviderUnavailableError,
    ToolCall,
    build_parameter_schema,
    parse_tool_arguments,
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
    sse_payload,
)

PROVIDER_NAME: Final[str] = "openai"
DONE_SENTINEL: Final[str] = "[DONE]"

_GPT4O_PRICING: Final[ModelPricing] = ModelPricing(input=0.0025, output=0.01)

OPENAI_PROFILE: Final[ProviderProfile] = ProviderProfile(
    provider=PROVIDER_NAME,
    display_name="OpenAI",
    models=(
        "chatgpt-4o-latest",
        "gpt-4o",
        "gpt-4o-mini",
        "gpt-4-turbo",
        "gpt-3.5-turbo",
        "gpt-4.1",
        "gpt-5",
        "gpt-4o-audio-preview",
        "gpt-4o-search-preview",
        "gpt-4o-realtime-preview",
    ),
    default_model="gpt-4o-mini",
    pricing={
        "chatgpt-4o-latest": _GPT4O_PRICING,
        "gpt-4o": _GPT4O_PRICING,
        "gpt-4o-mini": ModelPricing(input=0.00015, output=0.0006),
        "gpt-4-turbo": ModelPricing(input=0.01, output=0.03),
        "gpt-3.5-turbo": ModelPricing(input=0.0005, output=0.0015),
        "gpt-4.1": ModelPricing(input=0.01, output=0.03),
        "gpt-5": ModelPricing(input=0.02, output=0.06),
        "gpt-4o-audio-preview": _GPT4O_PRICING,
        "gpt-4o-search-preview": _GPT4O_PRICING,
        "gpt-4o-realtime-preview": ModelPricing(input=0.005, output=0.02),
    },
    pricing_unit_tokens=1_000,
    api_key_pattern=r"sk-[A-Za-z0-9_-]+",
    max_tools=128,
    tool_format="openai_functions",
)


@dataclass(slots=True)
class _IndexedToolCall:
    call_id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


def accumulate_tool_call_delta(
    pending: dict[int, _IndexedToolCall], delta: object
) -> _IndexedToolCall | None:
    """Merge one ``delta.tool_calls[i]`` fragment into the per-index accumulator."""

    index = read_int(delta, "index")
    if index is None:
        return None
    entry = pending.setdefault(index, _IndexedToolCall())
    call_id = read_str(delta, "id")
    if call_id:
        entry.call_id = call_id
    function = read_value(delta, "function")
    name = read_str(function, "name")
    if name:
        entry.name = name
    fragment = read_value(function, "arguments")
    if isinstance(fragment, str) and fragment:
        entry.arguments.append(fragment)
    return entry


def _metadata_of(item: CapabilityMetadata | CapabilityDefinition) -> CapabilityMetadata:
    return item if isinstance(item, CapabilityMetadata) else item.metadata


class OpenAIToolAdapter:
    """Capability catalog <-> OpenAI function-tool shapes."""

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
                    "type": "function",
                    "function": {
                        "name": metadata.id,
                        "description": metadata.description or metadata.name,
                        "parameters": build_parameter_schema(metadata.parameter_schema()),
                    },
                }
            )
        return tools

    def parse_tool_calls(self, response: object) -> list[ToolCall]:
        """Extract tool calls from a non-streamed chat completion."""

        choices = read_sequence(response, "choices")
        if not choices:
            return []
        message = read_value(choices[0], "message")
        calls: list[ToolCall] = []
        for raw_call in read_sequence(message, "tool_calls"):
            function = read_value(raw_call, "function")
            name = read_str(function, "name")
            call_id = read_str(raw_call, "id")
            if name is None or call_id is None:
                raise ProviderResponseError(
                    "tool call is missing id or function name", provider=PROVIDER_NAME
                )
            parameters = parse_tool_arguments(
                read_value(function, "arguments"), provider=PROVIDER_NAME, tool_name=name
            )
            calls.append(ToolCall(call_id=call_id, name=name, parameters=parameters))
        return calls

    def build_tool_result(self, tool_call_id: str, result: object) -> dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": tool_call_id,
            "content": json.dumps(result, default=str),
        }

    def map_tool_choice(self, tool_choice: object) -> str | dict[str, Any] | None:
        if not tool_choice:
            return None
        if isinstance(tool_choice, Mapping):
            return dict(tool_choice)
        return str(tool_choice)

    def validate_tool(self, tool: object) -> bool:
        if read_str(tool, "type") != "function":
            self._logger.warning("tool_invalid", provider=PROVIDER_NAME, reason="type")
            return False
        function = read_value(tool, "function")
        name = read_str(function, "name")
        if not name:
            self._logger.warning("tool_invalid", provider=PROVIDER_NAME, reason="missing name")
            return False
        if not read_str(function, "description"):
            self._logger.warning(
                "tool_invalid", provider=PROVIDER_NAME, tool=name, reason="missing description"
            )
            return False
        if not isinstance(read_value(function, "parameters"), Mapping):
            self._logger.warning(
                "tool_invalid", provider=PROVIDER_NAME, tool=name, reason="missing parameters"
            )
            return False
        return True

    def validate_tools(self, tools: object) -> bool:
        if not isinstance(tools, list):
            self._logger.warning("tools_invalid", provider=PROVIDER_NAME, reason="not a list")
            return False
        return all(self.validate_tool(tool) for tool in tools)


class OpenAIWireParser:
    """Chat-completion chunks -> normalized stream events.

    OpenAI streams tool calls as fragments keyed by ``index``; they are buffered here and
    released as start/delta/stop triples so the shared assembler sees one block at a time.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _IndexedToolCall] = {}

    def parse(self, record: Mapping[str, Any] | str) -> list[StreamEvent]:
        if isinstance(record, str):
            payload = sse_payload(record)
            if payload is None:
                return []
            if payload == DONE_SENTINEL:
                return [*self._release(), StreamEvent(kind=StreamEventKind.DONE)]
            try:
                decoded = json.loads(payload)
            except json.JSONDecodeError:
                return []
            if not isinstance(decoded, Mapping):
                return []
            record = decoded

        events: list[StreamEvent] = []
        error = read_value(record, "error")
        if error is not None:
            events.append(
                StreamEvent.error(
                    read_str(error, "type") or read_str(error, "code") or "unknown",
                    read_str(error, "message") or "Unknown error",
                )
            )
            return events

        for choice in read_sequence(record, "choices"):
            delta = read_value(choice, "delta")
            text = read_value(delta, "content")
            if isinstance(text, str) and text:
                events.append(StreamEvent.text_delta(text))
            for tool_delta in read_sequence(delta, "tool_calls"):
                accumulate_tool_call_delta(self._pending, tool_delta)
            if read_str(choice, "finish_reason") == "tool_calls":
                events.extend(self._release())

        usage = read_value(record, "usage")
        if usage is not None:
            events.append(
                StreamEvent.usage(
                    input_tokens=read_int(usage, "prompt_tokens"),
                    output_tokens=read_int(usage, "completion_tokens"),
                )
            )
        return events

    def finish(self) -> list[StreamEvent]:
        return self._release()

    def _release(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for index in sorted(self._pending):
            entry = self._pending[index]
            events.append(StreamEvent.tool_use_start(entry.call_id, entry.name))
            events.append(StreamEvent.tool_input_delta("".join(entry.arguments)))
            events.append(StreamEvent.block_stop())
        self._pending.clear()
        return events


class _OpenAICompletionsAPI(Protocol):
    async def create(self, **kwargs: object) -> object: ...


class _OpenAIChatAPI(Protocol):
    completions: _OpenAICompletionsAPI


class _OpenAIClient(Protocol):
    chat: _OpenAIChatAPI


def _chunk_to_mapping(chunk: object) -> Mapping[str, Any]:
    if isinstance(chunk, Mapping):
        return chunk
    model_dump = getattr(chunk, "model_dump", None)
    if callable(model_dump):
        return cast("Mapping[str, Any]", model_dump())
    raise TypeError(f"unsupported stream chunk type: {type(chunk).__name__}")


class OpenAISDKTransport:
    """Streams chat-completion chunks through the ``openai`` SDK, imported on first use."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_key_env: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        client: _OpenAIClient | None = None,
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
        stream = await client.chat.completions.create(**payload)
        try:
            async for chunk in cast("AsyncIterator[object]", stream):
                yield _chunk_to_mapping(chunk)
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                await close()

    def _ensure_client(self) -> _OpenAIClient:
        if self._client is not None:
            return self._client
        try:
            openai_module = importlib.import_module("openai")
        except ImportError as exc:
            raise ProviderUnavailableError(
                "openai SDK is not installed", provider=PROVIDER_NAME
            ) from exc

        async_openai = getattr(openai_module, "AsyncOpenAI", None)
        if async_openai is None:
            raise ProviderUnavailableError(
                "openai SDK does not expose AsyncOpenAI", provider=PROVIDER_NAME
            )
        init_kwargs: dict[str, object] = {"api_key": self._resolve_api_key()}
        if self._base_url is not None:
            init_kwargs["base_url"] = self._base_url
        if self._timeout_seconds is not None:
            init_kwargs["timeout"] = self._timeout_seconds
        self._client = cast("_OpenAIClient", async_openai(**init_kwargs))
        return self._client

    def _resolve_api_key(self) -> str:
        if self._api_key is not None:
            return self._api_key
        if self._api_key_env is not None:
            configured = os.getenv(self._api_key_env)
            if configured is None or not configured.strip():
                raise ProviderAuthenticationError(
                    f"missing OpenAI API key in configured env var {self._api_key_env}",
                    provider=PROVIDER_NAME,
                    http_status=401,
                )
            return configured
        fallback = os.getenv("OPENAI_API_KEY") or os.getenv("NOX_OPENAI_API_KEY")
        if fallback is None or not fallback.strip():
            raise ProviderAuthenticationError(
                "missing OpenAI API key; set OPENAI_API_KEY or NOX_OPENAI_API_KEY",
                provider=PROVIDER_NAME,
                http_status=401,
            )
        return fallback


class OpenAIProvider(StreamingProvider):
    """OpenAI chat-completions streaming provider with function calling."""

    provider_name = PROVIDER_NAME

    def __init__(
        self,
        *,
        transport: StreamTransport | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        profile: ProviderProfile = OPENAI_PROFILE,
        logger: Any | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            profile=profile,
            transport=transport if transport is not None else OpenAISDKTransport(),
            model=model,
            logger=logger,
            **kwargs,
        )
        self.max_tokens = max_tokens if max_tokens is not None else profile.default_max_tokens
        self.temperature = temperature if temperature is not None else profile.default_temperature
        self.tools = OpenAIToolAdapter(logger=self._logger)

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
        messages: list[dict[str, object]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(dict(message) for message in request.messages)
        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "messages": messages,
            "max_tokens": request.max_tokens or self.max_tokens,
            "temperature": (
                request.temperature if request.temperature is not None else self.temperature
            ),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            payload["tools"] = [dict(tool) for tool in request.tools]
            tool_choice = self.tools.map_tool_choice(request.tool_choice or "auto")
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        return payload

    def create_parser(self) -> OpenAIWireParser:
        return OpenAIWireParser()


OpenAIAdapter = OpenAIProvider

__all__ = [
    "DONE_SENTINEL",
    "OPENAI_PROFILE",
    "OpenAIAdapter",
    "OpenAIProvider",
    "OpenAISDKTransport",
    "OpenAIToolAdapter",
    "OpenAIWireParser",
    "accumulate_tool_call_delta",
]
