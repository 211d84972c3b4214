"""
nox-core — unit tests for streaming tool-call assembly

File: tests/unit/providers/test_stream.py
Last updated: 2026-10-18

Purpose
- Validate the provider-neutral assembler, SSE helpers and the streaming loop.

What this test file should cover
- Text and tool-call channels stay independent.
- Fragmented tool input is concatenated and parsed once per block.
- Malformed input degrades to empty parameters with a warning.
- Error events abort with the provider message; cancellation keeps emitted calls.

Functional requirements
- No network; transports are scripted async generators.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from nox_core.errors import StreamError
from nox_core.providers import (
    ANTHROPIC_PROFILE,
    AnthropicProvider,
    CancellationToken,
    SSELineBuffer,
    StreamChunk,
    StreamEvent,
    StreamRequest,
    ToolCall,
    ToolCallAssembler,
)
from nox_core.providers.stream import AssemblerState, TextDelta, decode_sse_json, sse_payload


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

    def names(self) -> list[str]:
        return [name for _, name, _ in self.events]


@dataclass(slots=True)
class _ScriptedTransport:
    records: list[object]
    payloads: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False

    async def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[object]:
        self.payloads.append(dict(payload))
        try:
            for record in self.records:
                if isinstance(record, Exception):
                    raise record
                yield record
        finally:
            self.closed = True


def _feed_all(assembler: ToolCallAssembler, events: list[StreamEvent]) -> list[object]:
    outputs = [assembler.feed(event) for event in events]
    return [output for output in outputs if output is not None]


def test_assembler_emits_one_call_per_closed_block() -> None:
    assembler = ToolCallAssembler(provider="anthropic", logger=_RecordingLogger())

    outputs = _feed_all(
        assembler,
        [
            StreamEvent.tool_use_start("t1", "file_read"),
            StreamEvent.tool_input_delta('{"path":'),
            StreamEvent.tool_input_delta('"a.ts"}'),
            StreamEvent.block_stop(),
        ],
    )

    assert outputs == [ToolCall(call_id="t1", name="file_read", parameters={"path": "a.ts"})]
    assert assembler.state is AssemblerState.IDLE


def test_assembler_keeps_text_and_tool_channels_independent() -> None:
    assembler = ToolCallAssembler(logger=_RecordingLogger())

    outputs = _feed_all(
        assembler,
        [
            StreamEvent.text_delta("Let me "),
            StreamEvent.tool_use_start("t1", "file_read"),
            StreamEvent.tool_input_delta('{"path": "src/a.py"}'),
            StreamEvent.text_delta("check."),
            StreamEvent.block_stop(),
            StreamEvent.block_stop(),
        ],
    )

    assert outputs[0] == TextDelta("Let me ")
    assert outputs[1] == TextDelta("check.")
    assert isinstance(outputs[2], ToolCall)
    assert len(outputs) == 3
    assert assembler.content == "Let me check."
    assert len(assembler.tool_calls) == 1


def test_assembler_handles_sequential_tool_blocks() -> None:
    assembler = ToolCallAssembler(logger=_RecordingLogger())

    outputs = _feed_all(
        assembler,
        [
            StreamEvent.tool_use_start("t1", "file_read"),
            StreamEvent.tool_input_delta('{"path": "a.py"}'),
            StreamEvent.block_stop(),
            StreamEvent.tool_use_start("t2", "file_create"),
            StreamEvent.tool_input_delta('{"path": "b.py", "content": ""}'),
            StreamEvent.block_stop(),
        ],
    )

    assert [call.call_id for call in outputs] == ["t1", "t2"]  # type: ignore[attr-defined]
    assert outputs[1].parameters == {"path": "b.py", "content": ""}  # type: ignore[attr-defined]


@pytest.mark.parametrize("raw", ['{"path": ', "[1, 2]", "not json"])
def test_malformed_tool_input_becomes_empty_parameters(raw: str) -> None:
    logger = _RecordingLogger()
    assembler = ToolCallAssembler(logger=logger)

    outputs = _feed_all(
        assembler,
        [
            StreamEvent.tool_use_start("t1", "file_read"),
            StreamEvent.tool_input_delta(raw),
            StreamEvent.block_stop(),
        ],
    )

    assert outputs == [ToolCall(call_id="t1", name="file_read", parameters={})]
    assert "tool_input_malformed" in logger.names()


def test_empty_tool_input_is_an_empty_object_without_warning() -> None:
    logger = _RecordingLogger()
    assembler = ToolCallAssembler(logger=logger)

    outputs = _feed_all(
        assembler, [StreamEvent.tool_use_start("t1", "clear_chat"), StreamEvent.block_stop()]
    )

    assert outputs == [ToolCall(call_id="t1", name="clear_chat", parameters={})]
    assert "tool_input_malformed" not in logger.names()


def test_error_event_aborts_with_provider_message() -> None:
    assembler = ToolCallAssembler(provider="anthropic", logger=_RecordingLogger())

    with pytest.raises(StreamError, match="overloaded_error: Overloaded") as excinfo:
        assembler.feed(StreamEvent.error("overloaded_error", "Overloaded"))

    assert excinfo.value.provider == "anthropic"


def test_unclosed_tool_block_is_dropped_at_finish() -> None:
    logger = _RecordingLogger()
    assembler = ToolCallAssembler(logger=logger)
    assembler.feed(StreamEvent.tool_use_start("t1", "file_read"))

    assembler.finish()

    assert assembler.tool_calls == ()
    assert assembler.state is AssemblerState.IDLE
    assert "tool_call_incomplete" in logger.names()


def test_usage_events_override_estimated_output_tokens() -> None:
    assembler = ToolCallAssembler(logger=_RecordingLogger())

    assembler.feed(StreamEvent.text_delta("a"))
    assembler.feed(StreamEvent.text_delta("b"))
    assert assembler.usage.output_tokens == 2
    assembler.feed(StreamEvent.usage(input_tokens=12, output_tokens=30))

    assert assembler.usage.input_tokens == 12
    assert assembler.usage.output_tokens == 30


def test_sse_line_buffer_holds_back_partial_lines() -> None:
    buffer = SSELineBuffer()

    assert buffer.feed('data: {"a"') == []
    assert buffer.feed(': 1}\r\n\ndata: {"b": 2}\n') == ['data: {"a": 1}', 'data: {"b": 2}']
    assert buffer.feed("data: tail") == []
    assert buffer.flush() == ["data: tail"]
    assert buffer.flush() == []


def test_sse_payload_and_json_decoding() -> None:
    assert sse_payload('data: {"x": 1}') == '{"x": 1}'
    assert sse_payload("event: message_start") is None
    assert sse_payload(": keep-alive") is None
    assert decode_sse_json('data: {"x": 1}') == {"x": 1}
    assert decode_sse_json("data: [1]") is None
    assert decode_sse_json("data: {broken") is None


def _sse(*events: str) -> list[object]:
    return [f"data: {event}\n\n" for event in events]


@pytest.mark.asyncio
async def test_streaming_loop_dispatches_chunks_and_tool_calls() -> None:
    transport = _ScriptedTransport(
        _sse(
            '{"type":"message_start","message":{"usage":{"input_tokens":10}}}',
            '{"type":"content_block_delta","delta":{"type":"text_delta","text":"Hi"}}',
            '{"type":"content_block_start","content_block":'
            '{"type":"tool_use","id":"t1","name":"file_read"}}',
            '{"type":"content_block_delta","delta":'
            '{"type":"input_json_delta","partial_json":"{\\"path\\":"}}',
            '{"type":"content_block_delta","delta":'
            '{"type":"input_json_delta","partial_json":"\\"a.ts\\"}"}}',
            '{"type":"content_block_stop"}',
            '{"type":"message_delta","usage":{"output_tokens":20}}',
            '{"type":"message_stop"}',
        )
    )
    provider = AnthropicProvider(transport=transport, logger=_RecordingLogger())
    chunks: list[StreamChunk] = []
    calls: list[ToolCall] = []

    async def _on_tool_call(call: ToolCall) -> None:
        calls.append(call)

    result = await provider.stream_with_tools(
        StreamRequest.from_prompt("read a.ts", message_id="m1"),
        on_chunk=chunks.append,
        on_tool_call=_on_tool_call,
    )

    assert [chunk.chunk for chunk in chunks] == ["Hi"]
    assert chunks[0].message_id == "m1"
    assert calls == [ToolCall(call_id="t1", name="file_read", parameters={"path": "a.ts"})]
    assert result.content == "Hi"
    assert result.tool_calls == tuple(calls)
    assert result.usage.input_tokens == 10 and result.usage.output_tokens == 20
    expected_cost = ANTHROPIC_PROFILE.calculate_cost(result.usage, result.model)
    assert result.cost == pytest.approx(expected_cost)
    assert not result.was_silent
    assert transport.closed


@pytest.mark.asyncio
async def test_silent_tool_only_response_is_flagged() -> None:
    transport = _ScriptedTransport(
        _sse(
            '{"type":"content_block_start","content_block":'
            '{"type":"tool_use","id":"t1","name":"file_read"}}',
            '{"type":"content_block_stop"}',
        )
    )
    provider = AnthropicProvider(transport=transport, logger=_RecordingLogger())

    result = await provider.stream_with_tools(StreamRequest.from_prompt("go"))

    assert result.was_silent
    assert result.to_dict()["was_silent"] is True


@pytest.mark.asyncio
async def test_error_event_fails_the_stream() -> None:
    transport = _ScriptedTransport(
        _sse(
            '{"type":"content_block_delta","delta":{"type":"text_delta","text":"partial"}}',
            '{"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}',
        )
    )
    logger = _RecordingLogger()
    provider = AnthropicProvider(transport=transport, logger=logger)

    with pytest.raises(StreamError, match="Overloaded"):
        await provider.stream_with_tools(StreamRequest.from_prompt("go"))

    assert "stream_failed" in logger.names()
    assert provider.stats()["error_count"] == 1
    assert transport.closed


@pytest.mark.asyncio
async def test_cancellation_keeps_tool_calls_emitted_before_cancel() -> None:
    transport = _ScriptedTransport(
        _sse(
            '{"type":"content_block_start","content_block":'
            '{"type":"tool_use","id":"t1","name":"file_read"}}',
            '{"type":"content_block_delta","delta":'
            '{"type":"input_json_delta","partial_json":"{}"}}',
            '{"type":"content_block_stop"}',
            '{"type":"content_block_delta","delta":{"type":"text_delta","text":"never"}}',
        )
    )
    provider = AnthropicProvider(transport=transport, logger=_RecordingLogger())
    token = CancellationToken()

    async def _cancel_after_first_call(call: ToolCall) -> None:
        token.cancel()

    result = await provider.stream_with_tools(
        StreamRequest.from_prompt("go"), on_tool_call=_cancel_after_first_call, cancel=token
    )

    assert result.cancelled
    assert [call.call_id for call in result.tool_calls] == ["t1"]
    assert result.content == ""
    assert transport.closed


@dataclass(slots=True)
class _StallingTransport:
    """Delivers its records and then hangs as a provider would on a stalled connection."""

    records: list[object]
    stalled: asyncio.Event = field(default_factory=asyncio.Event)
    closed: bool = False

    async def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[object]:
        try:
            for record in self.records:
                yield record
            self.stalled.set()
            await asyncio.sleep(3600)
        finally:
            self.closed = True


@pytest.mark.asyncio
async def test_cancel_aborts_a_read_stalled_on_the_provider() -> None:
    transport = _StallingTransport(
        _sse(
            '{"type":"content_block_start","content_block":'
            '{"type":"tool_use","id":"t1","name":"file_read"}}',
            '{"type":"content_block_delta","delta":'
            '{"type":"input_json_delta","partial_json":"{\\"path\\":\\"a.md\\"}"}}',
            '{"type":"content_block_stop"}',
            '{"type":"content_block_delta","delta":{"type":"text_delta","text":"reading"}}',
        )
    )
    logger = _RecordingLogger()
    provider = AnthropicProvider(transport=transport, logger=logger)
    token = CancellationToken()
    chunks: list[StreamChunk] = []

    task = asyncio.ensure_future(
        provider.stream_with_tools(
            StreamRequest.from_prompt("go"), on_chunk=chunks.append, cancel=token
        )
    )
    await asyncio.wait_for(transport.stalled.wait(), timeout=1.0)
    token.cancel()
    result = await asyncio.wait_for(task, timeout=1.0)

    assert result.cancelled
    assert [(call.call_id, dict(call.parameters)) for call in result.tool_calls] == [
        ("t1", {"path": "a.md"})
    ]
    assert [chunk.chunk for chunk in chunks] == ["reading"]
    assert transport.closed
    assert "stream_cancelled" in logger.names()
    assert provider.stats()["error_count"] == 0


@pytest.mark.asyncio
async def test_transport_exceptions_map_to_provider_errors() -> None:
    from nox_core.providers import ProviderRateLimitError

    class RateLimitError(Exception):
        status_code = 429

    transport = _ScriptedTransport([RateLimitError("slow down")])
    provider = AnthropicProvider(transport=transport, logger=_RecordingLogger())

    with pytest.raises(ProviderRateLimitError) as excinfo:
        await provider.stream_with_tools(StreamRequest.from_prompt("go"))

    assert excinfo.value.retryable
    assert excinfo.value.http_status == 429
