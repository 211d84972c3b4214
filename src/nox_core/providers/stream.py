"""
nox-core — streaming tool-call assembly

File: src/nox_core/providers/stream.py
Last updated: 2026-10-18

Purpose
- Turn an ordered sequence of provider wire events into two independent output channels:
  text deltas and fully assembled ``{id, name, parameters}`` tool calls.

What should be included in this file
- Closed event-kind enum and normalized stream events.
- ``ToolCallAssembler``: IDLE -> ACCUMULATING(id, name, buffer) -> emit -> IDLE.
- Cooperative cancellation token and SSE line buffering.
- ``StreamingProvider``: the provider-neutral streaming loop driven by an injected transport.

Functional requirements
- Malformed tool input becomes an empty parameters object plus a warning; never an abort.
- Error events abort the stream with the provider's message.
- Tool calls emitted before cancellation remain valid.

Non-functional requirements
- One assembler per streaming response; no state is shared across responses.
"""

from __future__ import annotations

import abc
import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import aclosing, suppress
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, TypeAlias

import structlog

from nox_core.errors import StreamCancelledError, StreamError
from nox_core.providers.base import (
    ProviderError,
    ProviderProfile,
    ProviderUsage,
    ToolCall,
    build_messages,
    map_provider_exception,
)

WireRecord: TypeAlias = str | Mapping[str, Any]


class StreamEventKind(StrEnum):
    TEXT = "text"
    TOOL_USE_START = "tool_use_start"
    TOOL_INPUT_DELTA = "tool_input_delta"
    CONTENT_BLOCK_STOP = "content_block_stop"
    MESSAGE_START = "message_start"
    USAGE_DELTA = "usage_delta"
    MESSAGE_STOP = "message_stop"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    tool_id: str | None = None
    tool_name: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    error_type: str | None = None
    error_message: str | None = None

    @classmethod
    def text_delta(cls, text: str) -> StreamEvent:
        return cls(kind=StreamEventKind.TEXT, text=text)

    @classmethod
    def tool_use_start(cls, tool_id: str, tool_name: str) -> StreamEvent:
        return cls(kind=StreamEventKind.TOOL_USE_START, tool_id=tool_id, tool_name=tool_name)

    @classmethod
    def tool_input_delta(cls, fragment: str) -> StreamEvent:
        return cls(kind=StreamEventKind.TOOL_INPUT_DELTA, text=fragment)

    @classmethod
    def block_stop(cls) -> StreamEvent:
        return cls(kind=StreamEventKind.CONTENT_BLOCK_STOP)

    @classmethod
    def usage(
        cls, *, input_tokens: int | None = None, output_tokens: int | None = None
    ) -> StreamEvent:
        return cls(
            kind=StreamEventKind.USAGE_DELTA,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    @classmethod
    def error(cls, error_type: str, message: str) -> StreamEvent:
        return cls(kind=StreamEventKind.ERROR, error_type=error_type, error_message=message)


class AssemblerState(StrEnum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(slots=True)
class _PendingToolCall:
    tool_id: str
    name: str
    buffer: list[str] = field(default_factory=list)


class ToolCallAssembler:
    """Streaming state machine for one response.

    ``feed`` returns a ``TextDelta`` for text, a ``ToolCall`` when a tool-use block closes,
    and ``None`` for every other event. Error events raise ``StreamError``.
    """

    def __init__(self, *, provider: str = "provider", logger: Any | None = None) -> None:
        self._provider = provider
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._pending: _PendingToolCall | None = None
        self._text: list[str] = []
        self._tool_calls: list[ToolCall] = []
        self._input_tokens = 0
        self._output_tokens = 0

    @property
    def state(self) -> AssemblerState:
        return AssemblerState.IDLE if self._pending is None else AssemblerState.ACCUMULATING

    @property
    def content(self) -> str:
        return "".join(self._text)

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return tuple(self._tool_calls)

    @property
    def usage(self) -> ProviderUsage:
        return ProviderUsage(input_tokens=self._input_tokens, output_tokens=self._output_tokens)

    def feed(self, event: StreamEvent) -> TextDelta | ToolCall | None:
        kind = event.kind
        if kind is StreamEventKind.TEXT:
            if not event.text:
                return None
            self._text.append(event.text)
            self._output_tokens += 1
            return TextDelta(event.text)

        if kind is StreamEventKind.TOOL_USE_START:
            if self._pending is not None:
                self._logger.warning(
                    "tool_call_abandoned",
                    provider=self._provider,
                    tool_call_id=self._pending.tool_id,
                    tool_name=self._pending.name,
                )
            self._pending = _PendingToolCall(
                tool_id=event.tool_id
                or f"{self._provider}-tool-call-{len(self._tool_calls) + 1}",
                name=event.tool_name or "",
            )
            return None

        if kind is StreamEventKind.TOOL_INPUT_DELTA:
            if self._pending is not None:
                self._pending.buffer.append(event.text)
            return None

        if kind is StreamEventKind.CONTENT_BLOCK_STOP:
            if self._pending is None:
                return None
            pending, self._pending = self._pending, None
            return self._emit(pending)

        if kind in (StreamEventKind.MESSAGE_START, StreamEventKind.USAGE_DELTA):
            if event.input_tokens:
                self._input_tokens = event.input_tokens
            if event.output_tokens:
                self._output_tokens = event.output_tokens
            return None

        if kind is StreamEventKind.ERROR:
            raise StreamError(
                f"{event.error_type or 'unknown'}: {event.error_message or 'Unknown error'}",
                provider=self._provider,
            )
        return None

    def finish(self) -> None:
        """Drop a tool call still open at end of stream."""

        if self._pending is not None:
            self._logger.warning(
                "tool_call_incomplete",
                provider=self._provider,
                tool_call_id=self._pending.tool_id,
                tool_name=self._pending.name,
            )
            self._pending = None

    def _emit(self, pending: _PendingToolCall) -> ToolCall | None:
        if not pending.name:
            self._logger.warning(
                "tool_call_unnamed", provider=self._provider, tool_call_id=pending.tool_id
            )
            return None
        raw = "".join(pending.buffer)
        parameters: dict[str, Any] = {}
        if raw.strip():
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                parameters = decoded
            else:
                self._logger.warning(
                    "tool_input_malformed",
                    provider=self._provider,
                    tool_call_id=pending.tool_id,
                    tool_name=pending.name,
                    raw_length=len(raw),
                )
        call = ToolCall(call_id=pending.tool_id, name=pending.name, parameters=parameters)
        self._tool_calls.append(call)
        return call


class CancellationToken:
    """Externally owned cancel signal.

    The streaming loop races every pending transport read against ``wait()``, so a cancel
    aborts a read that is stalled on the provider as well as one between records.
    """

    __slots__ = ("_cancelled", "_event")

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, *, provider: str = "provider") -> None:
        if self._cancelled:
            raise StreamCancelledError("stream cancelled", provider=provider)


class SSELineBuffer:
    """Split decoded text chunks into complete lines, holding back a trailing partial line."""

    __slots__ = ("_buffer",)

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in lines if line.strip()]

    def flush(self) -> list[str]:
        remainder, self._buffer = self._buffer, ""
        return [remainder.rstrip("\r")] if remainder.strip() else []


def sse_payload(line: str) -> str | None:
    """Return the JSON payload of an SSE line, or ``None`` for blank/event/comment lines."""

    if line.startswith("data:"):
        line = line[5:].lstrip(" ")
    stripped = line.strip()
    if not stripped or stripped.startswith("event:") or stripped.startswith(":"):
        return None
    return stripped


def decode_sse_json(line: str) -> Mapping[str, Any] | None:
    payload = sse_payload(line)
    if payload is None:
        return None
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, Mapping) else None


class WireParser(Protocol):
    """Per-response translator from provider wire records to stream events."""

    def parse(self, record: Mapping[str, Any] | str) -> list[StreamEvent]: ...

    def finish(self) -> list[StreamEvent]: ...


class StreamTransport(Protocol):
    def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[WireRecord]: ...


@dataclass(frozen=True, slots=True)
class StreamRequest:
    """Provider-neutral streaming request."""

    messages: tuple[Mapping[str, object], ...]
    system_prompt: str | None = None
    model: str | None = None
    tools: tuple[Mapping[str, Any], ...] = ()
    max_tokens: int | None = None
    temperature: float | None = None
    tool_choice: str | Mapping[str, Any] | None = None
    message_id: str | None = None

    @classmethod
    def from_prompt(
        cls,
        prompt_or_messages: str | Iterable[Mapping[str, object]],
        **kwargs: Any,
    ) -> StreamRequest:
        return cls(messages=tuple(build_messages(prompt_or_messages)), **kwargs)


@dataclass(frozen=True, slots=True)
class StreamChunk:
    message_id: str
    chunk: str
    tokens: int
    is_complete: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "messageId": self.message_id,
            "chunk": self.chunk,
            "tokens": self.tokens,
            "isComplete": self.is_complete,
        }


@dataclass(frozen=True, slots=True)
class StreamResult:
    """Final message of one streaming response."""

    message_id: str
    provider: str
    model: str
    content: str
    tool_calls: tuple[ToolCall, ...]
    usage: ProviderUsage
    cost: float
    cancelled: bool = False

    @property
    def tokens(self) -> int:
        return self.usage.total_tokens

    @property
    def was_silent(self) -> bool:
        return not self.content.strip() and bool(self.tool_calls)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.message_id,
            "type": "assistant",
            "provider": self.provider,
            "model": self.model,
            "content": self.content,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "tokens": self.tokens,
            "cost": self.cost,
            "was_silent": self.was_silent,
            "cancelled": self.cancelled,
        }


ChunkCallback: TypeAlias = Callable[[StreamChunk], None]
ToolCallCallback: TypeAlias = Callable[[ToolCall], Awaitable[None]]


class StreamingProvider(abc.ABC):
    """Provider-neutral streaming loop; subclasses supply payload shape and wire parsing."""

    provider_name: str = "provider"

    def __init__(
        self,
        *,
        profile: ProviderProfile,
        transport: StreamTransport,
        model: str | None = None,
        clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        self.profile = profile
        self.model = model if model is not None else profile.default_model
        self._transport = transport
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._request_count = 0
        self._error_count = 0
        self._total_tokens = 0
        self._total_cost = 0.0

    @abc.abstractmethod
    def build_request(self, request: StreamRequest) -> dict[str, Any]:
        """Return the provider-shaped streaming payload."""

    @abc.abstractmethod
    def create_parser(self) -> WireParser:
        """Return a fresh wire parser for one response."""

    def calculate_cost(self, usage: ProviderUsage, model: str) -> float:
        if not self.profile.has_pricing(model):
            self._logger.warning("pricing_unknown", provider=self.provider_name, model=model)
        return self.profile.calculate_cost(usage, model)

    async def stream_with_tools(
        self,
        request: StreamRequest,
        *,
        on_chunk: ChunkCallback | None = None,
        on_tool_call: ToolCallCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> StreamResult:
        payload = self.build_request(request)
        model = str(payload.get("model") or self.model)
        message_id = request.message_id or str(int(self._clock() * 1000))
        assembler = ToolCallAssembler(provider=self.provider_name, logger=self._logger)
        cancelled = False
        self._request_count += 1
        self._logger.info(
            "stream_started",
            provider=self.provider_name,
            model=model,
            message_id=message_id,
            tool_count=len(request.tools),
        )

        try:
            async with aclosing(self._events(payload, cancel)) as events:
                async for event in events:
                    output = assembler.feed(event)
                    if isinstance(output, TextDelta):
                        if on_chunk is not None:
                            on_chunk(
                                StreamChunk(
                                    message_id=message_id,
                                    chunk=output.text,
                                    tokens=assembler.usage.output_tokens,
                                )
                            )
                    elif isinstance(output, ToolCall):
                        self._logger.info(
                            "tool_call_assembled",
                            provider=self.provider_name,
                            tool_call_id=output.call_id,
                            tool_name=output.name,
                        )
                        if on_tool_call is not None:
                            await on_tool_call(output)
        except StreamCancelledError:
            cancelled = True
            self._logger.info(
                "stream_cancelled", provider=self.provider_name, message_id=message_id
            )
        except (StreamError, ProviderError) as exc:
            self._error_count += 1
            self._logger.error(
                "stream_failed", provider=self.provider_name, message_id=message_id, error=str(exc)
            )
            raise
        assembler.finish()

        usage = assembler.usage
        cost = self.calculate_cost(usage, model)
        self._total_tokens += usage.total_tokens
        self._total_cost += cost
        result = StreamResult(
            message_id=message_id,
            provider=self.provider_name,
            model=model,
            content=assembler.content,
            tool_calls=assembler.tool_calls,
            usage=usage,
            cost=cost,
            cancelled=cancelled,
        )
        self._logger.info(
            "stream_completed",
            provider=self.provider_name,
            message_id=message_id,
            tokens=result.tokens,
            cost=result.cost,
            tool_calls=len(result.tool_calls),
            was_silent=result.was_silent,
        )
        return result

    def stats(self) -> dict[str, object]:
        return {
            "provider": self.provider_name,
            "model": self.model,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "total_tokens": self._total_tokens,
            "total_cost": self._total_cost,
        }

    def _map_exception(self, exc: Exception) -> ProviderError:
        return map_provider_exception(exc, provider=self.provider_name)

    async def _events(
        self, payload: Mapping[str, Any], cancel: CancellationToken | None
    ) -> AsyncIterator[StreamEvent]:
        parser = self.create_parser()
        lines = SSELineBuffer()
        try:
            async with aclosing(self._transport.open_stream(payload)) as records:
                while True:
                    try:
                        record = await self._next_record(records, cancel)
                    except StopAsyncIteration:
                        break
                    for event in self._parse_record(parser, lines, record):
                        if event.kind is StreamEventKind.DONE:
                            return
                        yield event
        except (StreamError, ProviderError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise self._map_exception(exc) from exc

        for line in lines.flush():
            for event in parser.parse(line):
                if event.kind is StreamEventKind.DONE:
                    return
                yield event
        for event in parser.finish():
            yield event

    async def _next_record(
        self, records: AsyncIterator[WireRecord], cancel: CancellationToken | None
    ) -> WireRecord:
        """Await the next transport record, aborting the read as soon as ``cancel`` fires.

        Raises ``StopAsyncIteration`` at end of stream and ``StreamCancelledError`` on cancel.
        """
        if cancel is None:
            return await anext(records)
        cancel.raise_if_cancelled(provider=self.provider_name)
        read = asyncio.ensure_future(anext(records))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait((read, waiter), return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not read.done():
                # The transport generator must stop running before aclosing can close it.
                read.cancel()
                with suppress(asyncio.CancelledError):
                    await read
        if read.cancelled():
            raise StreamCancelledError("stream cancelled", provider=self.provider_name)
        record = read.result()
        cancel.raise_if_cancelled(provider=self.provider_name)
        return record

    @staticmethod
    def _parse_record(
        parser: WireParser, lines: SSELineBuffer, record: WireRecord
    ) -> list[StreamEvent]:
        if isinstance(record, str):
            events: list[StreamEvent] = []
            for line in lines.feed(record):
                events.extend(parser.parse(line))
            return events
        return parser.parse(record)


__all__ = [
    "AssemblerState",
    "CancellationToken",
    "ChunkCallback",
    "SSELineBuffer",
    "StreamChunk",
    "StreamEvent",
    "StreamEventKind",
    "StreamRequest",
    "StreamResult",
    "StreamTransport",
    "StreamingProvider",
    "TextDelta",
    "ToolCallAssembler",
    "ToolCallCallback",
    "WireParser",
    "WireRecord",
    "decode_sse_json",
    "sse_payload",
]
