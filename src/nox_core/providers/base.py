"""
nox-core — provider base models and shared utilities

File: src/nox_core/providers/base.py
Last updated: 2026-10-18

Purpose
- Vendor-neutral models shared by the model-provider adapters.

What should be included in this file
- Provider error taxonomy and retryability classification.
- Normalized tool-call and usage records.
- Provider profile: models, defaults, pricing, limits and API-key format.
- Parameter-schema builder used by every tool adapter.

Functional requirements
- SDK exceptions map onto the provider error family by status code and class name.
- Cost calculation never fails for an unknown model; it returns zero.

Non-functional requirements
- Must make it easy to add new providers without touching core logic.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, cast

from nox_core.capabilities.base import JSONValue


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def _validate_optional_str(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    return _validate_non_empty_str(value, field_name)


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


class ProviderError(RuntimeError):
    """Base normalized provider error with deterministic machine-readable fields."""

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        self.provider = _validate_non_empty_str(provider, "provider")
        self.code = _validate_non_empty_str(code, "code")
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [
            f"provider={self.provider}",
            f"code={self.code}",
            f"retryable={str(self.retryable).lower()}",
        ]
        if self.http_status is not None:
            parts.append(f"http_status={self.http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class ProviderUnavailableError(ProviderError):
    """Raised when the provider SDK is not installed or misconfigured."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="unavailable", detail=detail, retryable=False)


class ProviderAuthenticationError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="auth",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderInvalidRequestError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="invalid_request",
            detail=detail,
            retryable=False,
            http_status=http_status,
        )


class ProviderRateLimitError(ProviderError):
    """Provider rate-limit responses (retryable)."""

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        http_status: int | None = 429,
    ) -> None:
        super().__init__(
            provider=provider,
            code="rate_limit",
            detail=detail,
            retryable=True,
            http_status=http_status,
        )


class ProviderTimeoutError(ProviderError):
    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="timeout", detail=detail, retryable=True)


class ProviderServiceError(ProviderError):
    """Provider API/service failures."""

    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="service",
            detail=detail,
            retryable=retryable,
            http_status=http_status,
        )


class ProviderResponseError(ProviderError):
    """Raised when a provider response cannot be normalized."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="response_invalid", detail=detail, retryable=False)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def map_provider_exception(exc: Exception, *, provider: str) -> ProviderError:
    """Classify an SDK/transport exception by HTTP status code and exception class name."""

    if isinstance(exc, ProviderError):
        return exc

    status_code = read_status_code(exc)
    class_name = exc.__class__.__name__.lower()
    detail = exception_detail(exc)

    if status_code in {401, 403} or "auth" in class_name or "permission" in class_name:
        return ProviderAuthenticationError(detail, provider=provider, http_status=status_code)

    if status_code == 429 or "ratelimit" in class_name:
        return ProviderRateLimitError(detail, provider=provider, http_status=status_code)

    if isinstance(exc, asyncio.TimeoutError) or "timeout" in class_name:
        return ProviderTimeoutError(detail, provider=provider)

    if status_code is not None and status_code in {400, 404, 409, 413, 422}:
        return ProviderInvalidRequestError(detail, provider=provider, http_status=status_code)

    if "badrequest" in class_name or "invalidrequest" in class_name:
        return ProviderInvalidRequestError(detail, provider=provider)

    if status_code is not None and status_code >= 500:
        return ProviderServiceError(detail, provider=provider, http_status=status_code)

    return ProviderServiceError(detail, provider=provider, retryable=True)


def exception_detail(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return " ".join(text.split())
    return exc.__class__.__name__


def read_status_code(exc: BaseException) -> int | None:
    for key in ("status_code", "status", "http_status"):
        value = getattr(exc, key, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        nested = getattr(response, "status_code", None)
        if isinstance(nested, int):
            return nested
    return None


def read_value(value: object, key: str, *, default: object | None = None) -> object | None:
    if isinstance(value, Mapping):
        return cast("object | None", value.get(key, default))
    return cast("object | None", getattr(value, key, default))


def read_sequence(value: object, key: str) -> tuple[object, ...]:
    candidate = read_value(value, key)
    if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes, bytearray)):
        return tuple(candidate)
    return ()


def read_str(value: object, key: str) -> str | None:
    candidate = read_value(value, key)
    if isinstance(candidate, str) and candidate.strip():
        return candidate
    return None


def read_int(value: object, key: str) -> int | None:
    candidate = read_value(value, key)
    if isinstance(candidate, int) and not isinstance(candidate, bool):
        return candidate
    return None


@dataclass(frozen=True, slots=True)
class ToolCall:
    """Structured invocation request ``{id, name, parameters}`` derived from model output."""

    call_id: str
    name: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        call_id = _validate_non_empty_str(self.call_id, "ToolCall.call_id")
        object.__setattr__(self, "call_id", call_id)
        object.__setattr__(self, "name", _validate_non_empty_str(self.name, "ToolCall.name"))
        if not isinstance(self.parameters, Mapping):
            raise TypeError("ToolCall.parameters must be a mapping")
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    def to_dict(self) -> dict[str, object]:
        return {"id": self.call_id, "name": self.name, "parameters": dict(self.parameters)}


@dataclass(frozen=True, slots=True)
class ProviderUsage:
    """Token accounting for one provider response."""

    input_tokens: int = 0
    output_tokens: int = 0

    def __post_init__(self) -> None:
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """USD price per ``ProviderProfile.pricing_unit_tokens`` tokens."""

    input: float
    output: float

    def __post_init__(self) -> None:
        if self.input < 0 or self.output < 0:
            raise ValueError("ModelPricing prices must be >= 0")


@dataclass(frozen=True, slots=True)
class ProviderProfile:
    """Static description of one model provider."""

    provider: str
    display_name: str
    models: tuple[str, ...]
    default_model: str
    pricing: Mapping[str, ModelPricing]
    pricing_unit_tokens: int
    api_key_pattern: str
    max_tools: int
    tool_format: str
    api_version: str | None = None
    default_max_tokens: int = 4000
    default_temperature: float = 0.7
    default_timeout_seconds: float = 60.0
    supports_tool_calling: bool = True
    supports_streaming: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "provider", _validate_non_empty_str(self.provider, "ProviderProfile.provider")
        )
        if not self.models:
            raise ValueError("ProviderProfile.models cannot be empty")
        object.__setattr__(self, "models", tuple(self.models))
        if self.default_model not in self.models:
            raise ValueError("ProviderProfile.default_model must be one of models")
        if self.pricing_unit_tokens <= 0:
            raise ValueError("ProviderProfile.pricing_unit_tokens must be > 0")
        if self.max_tools <= 0:
            raise ValueError("ProviderProfile.max_tools must be > 0")
        object.__setattr__(self, "pricing", MappingProxyType(dict(self.pricing)))
        object.__setattr__(
            self, "api_version", _validate_optional_str(self.api_version, "api_version")
        )

    def validate_api_key(self, api_key: object) -> bool:
        if not isinstance(api_key, str) or not api_key:
            return False
        return re.fullmatch(self.api_key_pattern, api_key) is not None

    def validate_model(self, model: str) -> bool:
        return model in self.models

    def has_pricing(self, model: str) -> bool:
        return model in self.pricing

    def calculate_cost(self, usage: ProviderUsage, model: str) -> float:
        pricing = self.pricing.get(model)
        if pricing is None:
            return 0.0
        unit = float(self.pricing_unit_tokens)
        return (usage.input_tokens / unit) * pricing.input + (
            usage.output_tokens / unit
        ) * pricing.output

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "provider": self.provider,
            "display_name": self.display_name,
            "models": list(self.models),
            "default_model": self.default_model,
            "max_tools": self.max_tools,
            "tool_format": self.tool_format,
            "supports_tool_calling": self.supports_tool_calling,
            "supports_streaming": self.supports_streaming,
            "defaults": {
                "max_tokens": self.default_max_tokens,
                "temperature": self.default_temperature,
                "timeout_seconds": self.default_timeout_seconds,
            },
        }
        if self.api_version is not None:
            payload["api_version"] = self.api_version
        return payload


def build_parameter_schema(parameters: Mapping[str, Any]) -> dict[str, JSONValue]:
    """Return a JSON-Schema object for tool input.

    A mapping that is already ``{"type": "object", ...}`` passes through. Otherwise each
    entry is a per-field definition (``type``, ``description``, ``required``, ``enum``,
    ``default``) and the schema is assembled from them.
    """

    if parameters.get("type") == "object":
        return cast("dict[str, JSONValue]", json.loads(json.dumps(dict(parameters))))

    properties: dict[str, JSONValue] = {}
    required: list[JSONValue] = []
    for name, definition in parameters.items():
        spec = definition if isinstance(definition, Mapping) else {}
        entry: dict[str, JSONValue] = {
            "type": cast("JSONValue", spec.get("type", "string")),
            "description": cast("JSONValue", spec.get("description") or name),
        }
        if spec.get("enum"):
            entry["enum"] = list(spec["enum"])
        if "default" in spec:
            entry["default"] = cast("JSONValue", spec["default"])
        if spec.get("required"):
            required.append(name)
        properties[name] = entry
    return {"type": "object", "properties": properties, "required": required}


def parse_tool_arguments(arguments: object, *, provider: str, tool_name: str) -> dict[str, Any]:
    """Normalize a non-streamed tool-argument payload to a JSON object."""

    if arguments is None:
        return {}
    if isinstance(arguments, Mapping):
        return dict(arguments)
    if isinstance(arguments, str):
        candidate = arguments.strip()
        if not candidate:
            return {}
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            raise ProviderResponseError(
                f"invalid tool arguments for {tool_name}: non-JSON string", provider=provider
            ) from exc
        if not isinstance(parsed, dict):
            raise ProviderResponseError(
                f"invalid tool arguments for {tool_name}: expected JSON object", provider=provider
            )
        return parsed
    raise ProviderResponseError(
        f"invalid tool arguments for {tool_name}: unsupported type {type(arguments).__name__}",
        provider=provider,
    )


def build_messages(
    prompt_or_messages: str | Iterable[Mapping[str, object]],
) -> list[dict[str, object]]:
    """Return chat messages: a bare prompt becomes one user message."""

    if isinstance(prompt_or_messages, str):
        return [{"role": "user", "content": prompt_or_messages}]
    return [dict(message) for message in prompt_or_messages]


__all__ = [
    "ModelPricing",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderInvalidRequestError",
    "ProviderProfile",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "ProviderUsage",
    "ToolCall",
    "build_messages",
    "build_parameter_schema",
    "exception_detail",
    "is_retryable_error",
    "map_provider_exception",
    "parse_tool_arguments",
    "read_int",
    "read_sequence",
    "read_status_code",
    "read_str",
    "read_value",
]
