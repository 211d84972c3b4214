"""
nox-core — versioned message envelope protocol

File: src/nox_core/protocol/envelope.py
Last updated: 2026-10-18

Purpose
- Version, validate and migrate control-plane messages exchanged between the host process
  and its UI surface; negotiate a mutually supported version via handshake.

What should be included in this file
- Sender role: stamp outgoing messages with the current version.
- Receiver role: reject unsupported versions, migrate older shapes, validate against schemas.
- Negotiator role: handshake request/response and response processing.

Functional requirements
- Unknown message types validate with ``warning="unknown_type"``; they are not rejected.
- Messages that fail validation are never returned to the caller.
- An incompatible handshake leaves the negotiated state untouched.
- Each distinct deprecation warning is logged once until ``reset_handshake``.

Non-functional requirements
- Migration handlers are per instance; registering one never affects other instances.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Final

import structlog

from nox_core.capabilities.base import ValidationResult
from nox_core.errors import ProtocolError
from nox_core.protocol.schemas import (
    HANDSHAKE_REQUEST_TYPE,
    HANDSHAKE_RESPONSE_TYPE,
    MESSAGE_SCHEMAS,
    MessageSchema,
)

CURRENT_PROTOCOL_VERSION: Final[int] = 1
MIN_SUPPORTED_VERSION: Final[int] = 1
UNKNOWN_TYPE_WARNING: Final[str] = "unknown_type"

Message = dict[str, Any]
MigrationHandler = Callable[[Message], Message]


def _stamp_v1(message: Message) -> Message:
    return {"version": 1, **{key: value for key, value in message.items() if key != "version"}}


def _message_version(message: Mapping[str, object]) -> int:
    value = message.get("version")
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def _read_version(payload: Mapping[str, object], key: str, default: int) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return default
    return value


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Outcome of receiving one message; ``message`` is ``None`` whenever ``valid`` is false."""

    valid: bool
    message: Message | None
    errors: tuple[str, ...] = ()
    warning: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "valid": self.valid,
            "message": self.message,
            "errors": list(self.errors),
        }
        if self.warning is not None:
            payload["warning"] = self.warning
        return payload


@dataclass(frozen=True, slots=True)
class HandshakeOutcome:
    compatible: bool
    version: int | None


class MessageProtocol:
    """Envelope sender, receiver and handshake negotiator for one connection."""

    def __init__(
        self,
        *,
        current_version: int = CURRENT_PROTOCOL_VERSION,
        min_supported_version: int = MIN_SUPPORTED_VERSION,
        client_type: str = "webview",
        server_type: str = "extension",
        schemas: Mapping[str, MessageSchema] = MESSAGE_SCHEMAS,
        clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        if current_version < 1:
            raise ValueError("current_version must be >= 1")
        if min_supported_version < 1 or min_supported_version > current_version:
            raise ValueError("min_supported_version must be between 1 and current_version")
        self._current_version = current_version
        self._min_supported_version = min_supported_version
        self._client_type = client_type
        self._server_type = server_type
        self._schemas = schemas
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._negotiated_version: int | None = None
        self._deprecation_warnings: set[str] = set()
        self._migration_handlers: dict[int, MigrationHandler] = {0: _stamp_v1}

    @property
    def current_version(self) -> int:
        return self._current_version

    @property
    def min_supported_version(self) -> int:
        return self._min_supported_version

    @property
    def negotiated_version(self) -> int | None:
        return self._negotiated_version

    def wrap_message(self, message: Mapping[str, object]) -> Message:
        if not isinstance(message, Mapping):
            raise ProtocolError("message must be a mapping")
        if not message.get("type"):
            raise ProtocolError("message must have a type field")
        if message.get("version") is None:
            return {"version": self._current_version, **message}
        return dict(message)

    def validate_message(self, message: object) -> ValidationResult:
        if not isinstance(message, Mapping):
            return ValidationResult.from_errors(["Message must be an object"])

        message_type = message.get("type")
        if not message_type:
            return ValidationResult.from_errors(["Message missing required field: type"])

        schema = self._schemas.get(str(message_type))
        if schema is None:
            self._warn_once(
                f"Unknown message type: {message_type}. This may be from a newer version."
            )
            return ValidationResult.ok(warning=UNKNOWN_TYPE_WARNING)
        return ValidationResult.from_errors(schema.check(message))

    def is_version_supported(self, message: Mapping[str, object]) -> bool:
        version = _message_version(message)
        return self._min_supported_version <= version <= self._current_version

    def migrate_message(self, message: Mapping[str, object]) -> Message:
        """Apply registered migrations in ascending order until ``current_version``.

        Steps without a registered handler only bump the version. A failing handler raises
        ``ProtocolError``.
        """

        migrated: Message = dict(message)
        version = _message_version(migrated)
        if version >= self._current_version:
            return migrated

        self._warn_once(
            f"Received message with old protocol version {version} "
            f"(type: '{message.get('type')}'). Current version: {self._current_version}."
        )
        while version < self._current_version:
            handler = self._migration_handlers.get(version)
            target = version + 1
            if handler is None:
                self._logger.warning(
                    "protocol_migration_missing", from_version=version, to_version=target
                )
                migrated = {**migrated, "version": target}
            else:
                try:
                    migrated = dict(handler(dict(migrated)))
                except Exception as exc:
                    raise ProtocolError(
                        f"migration v{version} -> v{target} failed for type "
                        f"'{message.get('type')}': {exc}"
                    ) from exc
                migrated["version"] = target
                self._logger.debug(
                    "protocol_message_migrated", from_version=version, to_version=target
                )
            version = target
        return migrated

    def process_incoming_message(self, message: object) -> ProcessResult:
        if not isinstance(message, Mapping):
            return ProcessResult(valid=False, message=None, errors=("Message must be an object",))

        if message.get("version") is not None and not self.is_version_supported(message):
            return ProcessResult(
                valid=False,
                message=None,
                errors=(
                    f"Unsupported protocol version {message.get('version')}. "
                    f"Supported: {self._min_supported_version}-{self._current_version}",
                ),
            )

        try:
            migrated = self.migrate_message(message)
        except ProtocolError as exc:
            self._logger.error(
                "protocol_migration_failed", type=message.get("type"), error=str(exc)
            )
            return ProcessResult(valid=False, message=None, errors=(str(exc),))

        validation = self.validate_message(migrated)
        if not validation.valid:
            self._logger.error(
                "protocol_validation_failed",
                type=message.get("type"),
                errors=list(validation.errors),
            )
            return ProcessResult(valid=False, message=None, errors=validation.errors)
        return ProcessResult(valid=True, message=migrated, warning=validation.warning)

    def register_migration_handler(self, from_version: int, handler: MigrationHandler) -> None:
        if not callable(handler):
            raise ValueError("migration handler must be callable")
        if isinstance(from_version, bool) or not isinstance(from_version, int) or from_version < 0:
            raise ValueError("from_version must be a non-negative integer")
        self._migration_handlers[from_version] = handler
        self._logger.info(
            "protocol_migration_registered", from_version=from_version, to_version=from_version + 1
        )

    def create_handshake_request(self) -> Message:
        return {
            "type": HANDSHAKE_REQUEST_TYPE,
            "version": self._current_version,
            "minVersion": self._min_supported_version,
            "clientType": self._client_type,
            "timestamp": int(self._clock() * 1000),
        }

    def create_handshake_response(self, request: Mapping[str, object]) -> Message:
        """Answer a peer's handshake; on success the negotiated version is stored here too."""

        if not isinstance(request, Mapping):
            raise ProtocolError("handshake request must be a mapping")
        peer_version = _read_version(request, "version", self._current_version)
        peer_min = _read_version(request, "minVersion", self._min_supported_version)

        compatible = max(peer_min, self._min_supported_version) <= min(
            peer_version, self._current_version
        )
        negotiated = min(peer_version, self._current_version) if compatible else None
        if negotiated is not None:
            self._negotiated_version = negotiated
            self._logger.info("protocol_handshake_negotiated", version=negotiated)
        else:
            self._logger.warning(
                "protocol_handshake_incompatible",
                peer_version=peer_version,
                peer_min_version=peer_min,
                current_version=self._current_version,
                min_supported_version=self._min_supported_version,
            )

        return {
            "type": HANDSHAKE_RESPONSE_TYPE,
            "version": self._current_version,
            "minVersion": self._min_supported_version,
            "negotiatedVersion": negotiated,
            "compatible": compatible,
            "serverType": self._server_type,
            "timestamp": int(self._clock() * 1000),
        }

    def process_handshake_response(self, response: object) -> HandshakeOutcome:
        if not isinstance(response, Mapping) or response.get("type") != HANDSHAKE_RESPONSE_TYPE:
            self._logger.error("protocol_handshake_invalid_response")
            return HandshakeOutcome(compatible=False, version=None)

        negotiated = response.get("negotiatedVersion")
        if response.get("compatible") is not True or not isinstance(negotiated, int):
            self._logger.error(
                "protocol_handshake_incompatible",
                peer_version=response.get("version"),
                peer_min_version=response.get("minVersion"),
                current_version=self._current_version,
                min_supported_version=self._min_supported_version,
            )
            return HandshakeOutcome(compatible=False, version=None)

        self._negotiated_version = negotiated
        self._logger.info("protocol_handshake_negotiated", version=negotiated)
        return HandshakeOutcome(compatible=True, version=negotiated)

    def is_handshake_complete(self) -> bool:
        return self._negotiated_version is not None

    def reset_handshake(self) -> None:
        self._negotiated_version = None
        self._deprecation_warnings.clear()
        self._logger.info("protocol_handshake_reset")

    def version_info(self) -> dict[str, int | None]:
        return {
            "current": self._current_version,
            "min": self._min_supported_version,
            "negotiated": self._negotiated_version,
        }

    def stats(self) -> dict[str, object]:
        return {
            "current_version": self._current_version,
            "min_supported_version": self._min_supported_version,
            "negotiated_version": self._negotiated_version,
            "handshake_complete": self.is_handshake_complete(),
            "deprecation_warnings_count": len(self._deprecation_warnings),
            "registered_migrations": len(self._migration_handlers),
        }

    def _warn_once(self, warning: str) -> None:
        if warning in self._deprecation_warnings:
            return
        self._deprecation_warnings.add(warning)
        self._logger.warning("protocol_deprecation", warning=warning)


__all__ = [
    "CURRENT_PROTOCOL_VERSION",
    "MIN_SUPPORTED_VERSION",
    "UNKNOWN_TYPE_WARNING",
    "HandshakeOutcome",
    "Message",
    "MessageProtocol",
    "MigrationHandler",
    "ProcessResult",
]
