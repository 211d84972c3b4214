"""
Unit tests for the OpenAI provider adapter.

Coverage:
- Function-tool conversion and non-streamed tool-call parsing.
- Index-keyed streaming tool-call accumulation and ``[DONE]`` handling.
- Usage mapping and per-1K-token pricing.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from nox_core.capabilities import FILE_CREATE_CAPABILITY, FILE_READ_CAPABILITY
from nox_core.providers import (
    OPENAI_PROFILE,
    OpenAIProvider,
    OpenAIToolAdapter,
    OpenAIWireParser,
    ProviderResponseError,
    ProviderUsage,
    StreamEventKind,
    StreamRequest,
    ToolCall,
)


@dataclass(slots=True)
class _RecordingLogger:
    events: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def debug(self, event: str, **fields: Any) -> None:
        self.events.append(("debug", event, fields))

    def info(self, event: str, **fields: Any) -> None:
        self.events.append(("info", event, fields))

    def warning(self, event: str, **fields: Any) -> None:
        self.events.append(("warning", event, fields))

    def error(self, event: str, **fields: Any) -> None:
        self.events.append(("error", event, fields))


@dataclass(slots=True)
class _ScriptedTransport:
    records: list[object]
    payloads: list[dict[str, Any]] = field(default_factory=list)

    async def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[object]:
        self.payloads.append(dict(payload))
        for record in self.records:
            yield record


def _tool_delta(
    index: int,
    *,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
    finish_reason: str | None = None,
) -> dict[str, Any]:
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    tool_call: dict[str, Any] = {"index": index, "function": function}
    if call_id is not None:
        tool_call["id"] = call_id
    return {"choices": [{"delta": {"tool_calls": [tool_call]}, "finish_reason": finish_reason}]}


def _provider(records: list[object]) -> tuple[OpenAIProvider, _ScriptedTransport]:
    transport = _ScriptedTransport(records)
    return OpenAIProvider(transport=transport, logger=_RecordingLogger()), transport


def test_convert_capabilities_to_function_tools() -> None:
    adapter = OpenAIToolAdapter(logger=_RecordingLogger())

    tools = adapter.convert_capabilities_to_tools([FILE_READ_CAPABILITY, FILE_CREATE_CAPABILITY])

    assert tools[0]["type"] == "function"
    assert tools[0]["function"]["name"] == "file_read"
    assert tools[1]["function"]["parameters"]["required"] == ["path", "content"]
    assert adapter.validate_tools(tools)
    assert not adapter.validate_tool({"type": "other"})


def test_parse_tool_calls_from_chat_completion() -> None:
    adapter = OpenAIToolAdapter(logger=_RecordingLogger())
    response = {
        "choices": [
            {
                "message": {
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "function": {"name": "file_read", "arguments": '{"path": "a"}'},
                        },
                        {"id": "call_2", "function": {"name": "clear_chat", "arguments": ""}},
                    ]
                }
            }
        ]
    }

    assert adapter.parse_tool_calls(response) == [
        ToolCall(call_id="call_1", name="file_read", parameters={"path": "a"}),
        ToolCall(call_id="call_2", name="clear_chat", parameters={}),
    ]
    assert adapter.parse_tool_calls({"choices": []}) == []


@pytest.mark.parametrize(
    "raw_call",
    [
        {"function": {"name": "file_read", "arguments": "{}"}},
        {"id": "call_1", "function": {"name": "file_read", "arguments": "{not json"}},
        {"id": "call_1", "function": {"name": "file_read", "arguments": "[1]"}},
    ],
)
def test_parse_tool_calls_rejects_malformed_calls(raw_call: dict[str, Any]) -> None:
    adapter = OpenAIToolAdapter(logger=_RecordingLogger())

    with pytest.raises(ProviderResponseError):
        adapter.parse_tool_calls({"choices": [{"message": {"tool_calls": [raw_call]}}]})


def test_build_tool_result_and_tool_choice() -> None:
    adapter = OpenAIToolAdapter(logger=_RecordingLogger())

    assert adapter.build_tool_result("call_1", {"ok": 1}) == {
        "role": "tool",
        "tool_call_id": "call_1",
        "content": '{"ok": 1}',
    }
    assert adapter.map_tool_choice("required") == "required"
    assert adapter.map_tool_choice({"type": "function"}) == {"type": "function"}
    assert adapter.map_tool_choice(None) is None


def test_build_request_prepends_system_message_and_defaults_tool_choice() -> None:
    provider, _ = _provider([])
    tools = provider.convert_capabilities_to_tools([FILE_READ_CAPABILITY])

    payload = provider.build_request(
        StreamRequest.from_prompt("hi", system_prompt="be brief", tools=tuple(tools))
    )

    assert payload["model"] == "gpt-4o-mini"
    assert payload["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["tool_choice"] == "auto"
    assert "tool_choice" not in provider.build_request(StreamRequest.from_prompt("hi"))


def test_wire_parser_accumulates_index_keyed_fragments() -> None:
    parser = OpenAIWireParser()

    assert parser.parse(_tool_delta(0, call_id="call_a", name="file_read")) == []
    assert parser.parse(_tool_delta(1, call_id="call_b", name="file_create")) == []
    assert parser.parse(_tool_delta(0, arguments='{"path"')) == []
    assert parser.parse(_tool_delta(1, arguments='{"path": "b", "content": ""}')) == []
    events = parser.parse(_tool_delta(0, arguments=': "a"}', finish_reason="tool_calls"))

    assert [event.kind for event in events] == [
        StreamEventKind.TOOL_USE_START,
        StreamEventKind.TOOL_INPUT_DELTA,
        StreamEventKind.CONTENT_BLOCK_STOP,
    ] * 2
    assert (events[0].tool_id, events[0].tool_name, events[1].text) == (
        "call_a",
        "file_read",
        '{"path": "a"}',
    )
    assert events[3].tool_id == "call_b"
    assert parser.finish() == []


def test_wire_parser_handles_text_usage_errors_and_done() -> None:
    parser = OpenAIWireParser()

    assert parser.parse(": keep-alive") == []
    text = parser.parse('data: {"choices":[{"delta":{"content":" "}}]}')
    assert [(event.kind, event.text) for event in text] == [(StreamEventKind.TEXT, " ")]
    usage = parser.parse({"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 9}})
    assert (usage[0].input_tokens, usage[0].output_tokens) == (5, 9)
    error = parser.parse({"error": {"code": "rate_limit_exceeded", "message": "slow down"}})
    assert (error[0].kind, error[0].error_type) == (StreamEventKind.ERROR, "rate_limit_exceeded")
    parser.parse(_tool_delta(0, call_id="call_a", name="file_read", arguments="{}"))
    done = parser.parse("data: [DONE]")
    assert [event.kind for event in done] == [
        StreamEventKind.TOOL_USE_START,
        StreamEventKind.TOOL_INPUT_DELTA,
        StreamEventKind.CONTENT_BLOCK_STOP,
        StreamEventKind.DONE,
    ]


@pytest.mark.asyncio
async def test_stream_with_tools_over_sse_lines() -> None:
    provider, transport = _provider(
        [
            'data: {"choices":[{"delta":{"content":"Reading"}}]}\n\n',
            'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"call_1",'
            '"function":{"name":"file_read","arguments":"{\\"pa"}}]}}]}\n\n',
            'data: {"choices":[{"delta":{"tool_calls":[{"index":0,'
            '"function":{"arguments":"th\\": \\"a.py\\"}"}}]},"finish_reason":"tool_calls"}]}\n\n',
            'data: {"choices":[],"usage":{"prompt_tokens":11,"completion_tokens":4}}\n\n',
            "data: [DONE]\n\n",
            'data: {"choices":[{"delta":{"content":"ignored"}}]}\n\n',
        ]
    )
    calls: list[ToolCall] = []

    async def _on_tool_call(call: ToolCall) -> None:
        calls.append(call)

    result = await provider.stream_with_tools(
        StreamRequest.from_prompt("read a.py"), on_tool_call=_on_tool_call
    )

    assert result.content == "Reading"
    assert calls == [ToolCall(call_id="call_1", name="file_read", parameters={"path": "a.py"})]
    assert result.usage == ProviderUsage(input_tokens=11, output_tokens=4)
    assert result.cost == pytest.approx((11 / 1000) * 0.00015 + (4 / 1000) * 0.0006)
    assert transport.payloads[0]["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_stream_releases_pending_calls_when_stream_ends_without_finish_reason() -> None:
    provider, _ = _provider(
        [
            _tool_delta(0, call_id="call_1", name="file_read", arguments='{"path": "x"}'),
        ]
    )

    result = await provider.stream_with_tools(StreamRequest.from_prompt("go"))

    assert [call.call_id for call in result.tool_calls] == ["call_1"]
    assert result.was_silent


def test_profile_prices_per_thousand_tokens() -> None:
    usage = ProviderUsage(input_tokens=2000, output_tokens=1000)

    assert OPENAI_PROFILE.calculate_cost(usage, "gpt-4o") == pytest.approx(0.015)
    assert OPENAI_PROFILE.validate_api_key("sk-proj-abc_123")
    assert not OPENAI_PROFILE.validate_api_key("pk-abc")
