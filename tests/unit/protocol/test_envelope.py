"""
nox-core — unit tests for the versioned message protocol

File: tests/unit/protocol/test_envelope.py
Last updated: 2026-10-18

Purpose
- Validate envelope stamping, schema validation, migration and handshake negotiation.

What this test file should cover
- Wrapping is idempotent and never overwrites an explicit version.
- Unknown types pass with a warning; invalid messages are never returned.
- Migration handlers run in ascending order and are per instance.
- Handshake negotiates min(current) when ranges overlap and leaves state untouched otherwise.

Functional requirements
- No transport; messages are plain mappings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from nox_core.errors import ProtocolError
from nox_core.protocol import (
    HANDSHAKE_RESPONSE_TYPE,
    UNKNOWN_TYPE_WARNING,
    MessageProtocol,
    wire_type_of,
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

    def count(self, name: str) -> int:
        return sum(1 for _, event, _ in self.events if event == name)


def _protocol(
    *, current: int = 1, minimum: int = 1, logger: _RecordingLogger | None = None
) -> MessageProtocol:
    return MessageProtocol(
        current_version=current,
        min_supported_version=minimum,
        clock=lambda: 1_700_000_000.0,
        logger=logger if logger is not None else _RecordingLogger(),
    )


def test_wrap_message_stamps_current_version_once() -> None:
    from hypothesis import given, settings
    from hypothesis import strategies as st

    protocol = _protocol(current=3, minimum=1)

    @settings(max_examples=50, deadline=None)
    @given(
        message_type=st.text(min_size=1, max_size=12),
        extra=st.dictionaries(
            st.text(min_size=1, max_size=8).filter(lambda key: key not in {"type", "version"}),
            st.integers() | st.text(max_size=8),
            max_size=4,
        ),
    )
    def _check(message_type: str, extra: dict[str, object]) -> None:
        wrapped = protocol.wrap_message({"type": message_type, **extra})
        assert wrapped["version"] == 3
        assert protocol.wrap_message(wrapped) == wrapped

    _check()


def test_wrap_message_keeps_explicit_version_and_requires_type() -> None:
    protocol = _protocol(current=2)

    assert protocol.wrap_message({"type": "ready", "version": 1}) == {
        "type": "ready",
        "version": 1,
    }
    with pytest.raises(ProtocolError, match="type"):
        protocol.wrap_message({"content": "hi"})


def test_validate_message_checks_required_fields_and_types() -> None:
    protocol = _protocol()

    assert protocol.validate_message({"type": "sendMessage", "content": "hi"}).valid
    missing = protocol.validate_message({"type": "sendMessage"})
    assert missing.errors == ("Message missing required field: content",)
    wrong = protocol.validate_message({"type": "sendMessage", "content": 42})
    assert wrong.errors == ("Field 'content' has wrong type. Expected string, got number",)
    assert protocol.validate_message("nope").errors == ("Message must be an object",)
    assert protocol.validate_message({}).errors == ("Message missing required field: type",)


def test_validate_message_accepts_union_and_optional_fields() -> None:
    protocol = _protocol()

    assert protocol.validate_message({"type": "error", "message": "boom"}).valid
    assert protocol.validate_message({"type": "error", "message": {"code": 1}}).valid
    chunk = {"type": "streamChunk", "messageId": "m1", "chunk": "x", "isComplete": "no"}
    assert protocol.validate_message(chunk).errors == (
        "Field 'isComplete' has wrong type. Expected boolean, got string",
    )


def test_unknown_message_type_is_accepted_with_single_warning() -> None:
    logger = _RecordingLogger()
    protocol = _protocol(logger=logger)

    first = protocol.validate_message({"type": "futureFeature"})
    second = protocol.validate_message({"type": "futureFeature"})

    assert first.valid and first.warning == UNKNOWN_TYPE_WARNING
    assert second.valid
    assert logger.count("protocol_deprecation") == 1


def test_process_incoming_message_never_returns_invalid_messages() -> None:
    protocol = _protocol()

    result = protocol.process_incoming_message({"type": "changeModel", "version": 1})

    assert not result.valid
    assert result.message is None
    assert result.errors == ("Message missing required field: model",)


def test_process_incoming_message_migrates_unversioned_messages() -> None:
    protocol = _protocol()

    result = protocol.process_incoming_message({"type": "sendMessage", "content": "hi"})

    assert result.valid
    assert result.message == {"version": 1, "type": "sendMessage", "content": "hi"}


@pytest.mark.parametrize("version", [999, -1])
def test_process_incoming_message_rejects_unsupported_versions(version: int) -> None:
    protocol = _protocol(current=2, minimum=1)

    result = protocol.process_incoming_message({"type": "ready", "version": version})

    assert not result.valid
    assert result.message is None
    assert result.errors == (f"Unsupported protocol version {version}. Supported: 1-2",)


def test_migration_handlers_run_in_order_and_are_per_instance() -> None:
    protocol = _protocol(current=3, minimum=1)
    other = _protocol(current=3, minimum=1)
    def _rename_text(message: dict[str, Any]) -> dict[str, Any]:
        content = message.pop("text")
        return {**message, "content": content}

    protocol.register_migration_handler(1, _rename_text)

    migrated = protocol.migrate_message({"type": "sendMessage", "version": 1, "text": "hi"})
    untouched = other.migrate_message({"type": "sendMessage", "version": 1, "text": "hi"})

    assert migrated == {"type": "sendMessage", "version": 3, "content": "hi"}
    assert untouched == {"type": "sendMessage", "version": 3, "text": "hi"}
    assert protocol.stats()["registered_migrations"] == 2
    assert other.stats()["registered_migrations"] == 1


def test_failing_migration_handler_rejects_message() -> None:
    logger = _RecordingLogger()
    protocol = _protocol(current=2, minimum=1, logger=logger)

    def _broken(message: dict[str, Any]) -> dict[str, Any]:
        raise KeyError("text")

    protocol.register_migration_handler(1, _broken)

    with pytest.raises(ProtocolError, match="migration v1 -> v2 failed"):
        protocol.migrate_message({"type": "sendMessage", "version": 1})
    result = protocol.process_incoming_message({"type": "sendMessage", "version": 1})
    assert not result.valid and result.message is None
    assert logger.count("protocol_migration_failed") == 1


def test_register_migration_handler_validates_arguments() -> None:
    protocol = _protocol()

    with pytest.raises(ValueError, match="callable"):
        protocol.register_migration_handler(1, "nope")  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="non-negative"):
        protocol.register_migration_handler(-1, dict)


def test_handshake_negotiates_highest_common_version() -> None:
    local = _protocol(current=2, minimum=1)
    request = {
        "type": "protocolHandshake",
        "version": 3,
        "minVersion": 1,
        "clientType": "webview",
    }

    response = local.create_handshake_response(request)

    assert response["type"] == HANDSHAKE_RESPONSE_TYPE
    assert response["compatible"] is True
    assert response["negotiatedVersion"] == 2
    assert local.negotiated_version == 2
    assert local.validate_message(response).valid


def test_incompatible_handshake_leaves_state_untouched() -> None:
    local = _protocol(current=2, minimum=1)
    local.create_handshake_response({"type": "protocolHandshake", "version": 2, "minVersion": 1})

    response = local.create_handshake_response(
        {"type": "protocolHandshake", "version": 999, "minVersion": 999}
    )

    assert response["compatible"] is False
    assert response["negotiatedVersion"] is None
    assert local.negotiated_version == 2


def test_client_processes_handshake_response() -> None:
    client = _protocol(current=1, minimum=1)
    server = _protocol(current=2, minimum=1)

    request = client.create_handshake_request()
    assert request["timestamp"] == 1_700_000_000_000
    outcome = client.process_handshake_response(server.create_handshake_response(request))

    assert outcome.compatible and outcome.version == 1
    assert client.is_handshake_complete()
    assert client.version_info() == {"current": 1, "min": 1, "negotiated": 1}

    client.reset_handshake()
    assert not client.is_handshake_complete()
    assert not client.process_handshake_response({"type": "other"}).compatible
    rejected = client.process_handshake_response(
        {"type": HANDSHAKE_RESPONSE_TYPE, "compatible": False, "negotiatedVersion": None}
    )
    assert not rejected.compatible
    assert client.negotiated_version is None


def test_reset_handshake_rearms_deprecation_warnings() -> None:
    logger = _RecordingLogger()
    protocol = _protocol(current=2, minimum=1, logger=logger)
    message = {"type": "ready", "version": 1}

    protocol.migrate_message(message)
    protocol.migrate_message(message)
    protocol.reset_handshake()
    protocol.migrate_message(message)

    assert logger.count("protocol_deprecation") == 2


def test_constructor_rejects_inverted_version_range() -> None:
    with pytest.raises(ValueError, match="min_supported_version"):
        MessageProtocol(current_version=1, min_supported_version=2)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(True, "boolean"), (1.5, "number"), ("x", "string"), (None, "object"), ([1], "object")],
)
def test_wire_type_of(value: object, expected: str) -> None:
    assert wire_type_of(value) == expected
