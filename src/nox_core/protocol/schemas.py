"""Message envelope schemas: required fields and primitive wire types per message type."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Final


class FieldType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"


def wire_type_of(value: object) -> str:
    """Name the wire-level primitive type of ``value``; ``null`` and arrays are objects."""

    if isinstance(value, bool):
        return FieldType.BOOLEAN.value
    if isinstance(value, (int, float)):
        return FieldType.NUMBER.value
    if isinstance(value, str):
        return FieldType.STRING.value
    if value is None or isinstance(value, (Mapping, list, tuple)):
        return FieldType.OBJECT.value
    return type(value).__name__


FieldTypes = Mapping[str, tuple[FieldType, ...]]


def _types(spec: Mapping[str, FieldType | tuple[FieldType, ...]]) -> FieldTypes:
    normalized: dict[str, tuple[FieldType, ...]] = {}
    for name, expected in spec.items():
        normalized[name] = expected if isinstance(expected, tuple) else (expected,)
    return MappingProxyType(normalized)


@dataclass(frozen=True, slots=True)
class MessageSchema:
    required: tuple[str, ...] = ()
    types: FieldTypes = field(default_factory=lambda: MappingProxyType({}))
    optional: FieldTypes = field(default_factory=lambda: MappingProxyType({}))

    def check(self, message: Mapping[str, object]) -> list[str]:
        """Return one error per missing required field or mistyped field, in field order."""

        errors: list[str] = []
        for name in self.required:
            if name not in message:
                errors.append(f"Message missing required field: {name}")
        for table in (self.types, self.optional):
            for name, expected in table.items():
                if name not in message:
                    continue
                actual = wire_type_of(message[name])
                if actual not in expected:
                    allowed = " or ".join(item.value for item in expected)
                    errors.append(
                        f"Field '{name}' has wrong type. Expected {allowed}, got {actual}"
                    )
        return errors


def _schema(
    required: tuple[str, ...] = (),
    types: Mapping[str, FieldType | tuple[FieldType, ...]] | None = None,
    optional: Mapping[str, FieldType | tuple[FieldType, ...]] | None = None,
) -> MessageSchema:
    return MessageSchema(
        required=required,
        types=_types(types or {}),
        optional=_types(optional or {}),
    )


S = FieldType.STRING
N = FieldType.NUMBER
B = FieldType.BOOLEAN
O = FieldType.OBJECT  # noqa: E741

HANDSHAKE_REQUEST_TYPE: Final[str] = "protocolHandshake"
HANDSHAKE_RESPONSE_TYPE: Final[str] = "protocolHandshakeResponse"

MESSAGE_SCHEMAS: Final[Mapping[str, MessageSchema]] = MappingProxyType(
    {
        # UI -> host requests
        "sendMessage": _schema(("content",), {"content": S}),
        "sendStreamingMessage": _schema(("content",), {"content": S}),
        "streamStop": _schema(("messageId",), {"messageId": S}),
        "streamContinue": _schema(("messageId",), {"messageId": S}),
        "changeProvider": _schema(("provider",), {"provider": S}),
        "changeModel": _schema(("model",), {"model": S}),
        "regenerateMessage": _schema(("messageId",), {"messageId": S}),
        "clearHistory": _schema(),
        "clearChat": _schema(),
        "openSettings": _schema(),
        "setApiKey": _schema(("provider", "apiKey"), {"provider": S, "apiKey": S}),
        "changeTheme": _schema(("themeId",), {"themeId": S}),
        "startVoiceRecording": _schema(),
        "stopVoiceRecording": _schema(),
        "ready": _schema(),
        # handshake, both directions
        HANDSHAKE_REQUEST_TYPE: _schema(
            ("version", "minVersion", "clientType"),
            {"version": N, "minVersion": N, "clientType": S},
            {"timestamp": N},
        ),
        HANDSHAKE_RESPONSE_TYPE: _schema(
            ("version", "minVersion", "negotiatedVersion", "compatible", "serverType"),
            {
                "version": N,
                "minVersion": N,
                "negotiatedVersion": (N, O),
                "compatible": B,
                "serverType": S,
            },
            {"timestamp": N},
        ),
        # host -> UI responses
        "userMessage": _schema(("message",), {"message": O}),
        "aiMessage": _schema(("message",), {"message": O}),
        "aiThinking": _schema(("thinking",), {"thinking": B}),
        "error": _schema(("message",), {"message": (S, O)}),
        "streamStart": _schema(("messageId",), {"messageId": S}),
        "streamChunk": _schema(
            ("messageId", "chunk"),
            {"messageId": S, "chunk": S},
            {"tokens": N, "isComplete": B},
        ),
        "streamComplete": _schema(
            ("messageId", "finalMessage"), {"messageId": S, "finalMessage": O}
        ),
        "streamStopped": _schema(("messageId",), {"messageId": S}, {"partialContent": S}),
        "providerStatus": _schema(
            ("currentProvider", "currentModel", "providers"),
            {"currentProvider": S, "currentModel": S, "providers": O},
        ),
        "clearMessages": _schema(),
        "loadHistory": _schema(("history",), {"history": O}),
        "voiceStatus": _schema(("status",), {"status": O}),
        "injectCSS": _schema(("theme",), {"theme": O}),
    }
)

del S, N, B, O

__all__ = [
    "HANDSHAKE_REQUEST_TYPE",
    "HANDSHAKE_RESPONSE_TYPE",
    "MESSAGE_SCHEMAS",
    "FieldType",
    "MessageSchema",
    "wire_type_of",
]
