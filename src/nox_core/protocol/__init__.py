"""Versioned message envelope protocol for host/UI control-plane messages."""

from __future__ import annotations

from nox_core.protocol.envelope import (
    CURRENT_PROTOCOL_VERSION,
    MIN_SUPPORTED_VERSION,
    UNKNOWN_TYPE_WARNING,
    HandshakeOutcome,
    Message,
    MessageProtocol,
    MigrationHandler,
    ProcessResult,
)
from nox_core.protocol.schemas import (
    HANDSHAKE_REQUEST_TYPE,
    HANDSHAKE_RESPONSE_TYPE,
    MESSAGE_SCHEMAS,
    FieldType,
    MessageSchema,
    wire_type_of,
)

__all__ = [
    "CURRENT_PROTOCOL_VERSION",
    "HANDSHAKE_REQUEST_TYPE",
    "HANDSHAKE_RESPONSE_TYPE",
    "MESSAGE_SCHEMAS",
    "MIN_SUPPORTED_VERSION",
    "UNKNOWN_TYPE_WARNING",
    "FieldType",
    "HandshakeOutcome",
    "Message",
    "MessageProtocol",
    "MessageSchema",
    "MigrationHandler",
    "ProcessResult",
    "wire_type_of",
]
