"""Model-provider adapters, streaming tool-call assembly and provider errors."""

from nox_core.providers.anthropic_adapter import (
    ANTHROPIC_PROFILE,
    AnthropicProvider,
    AnthropicSDKTransport,
    AnthropicToolAdapter,
    AnthropicWireParser,
)
from nox_core.providers.base import (
    ModelPricing,
    ProviderAuthenticationError,
    ProviderError,
    ProviderInvalidRequestError,
    ProviderProfile,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderUsage,
    ToolCall,
    build_parameter_schema,
    is_retryable_error,
)
from nox_core.providers.openai_adapter import (
    OPENAI_PROFILE,
    OpenAIProvider,
    OpenAISDKTransport,
    OpenAIToolAdapter,
    OpenAIWireParser,
)
from nox_core.providers.stream import (
    CancellationToken,
    SSELineBuffer,
    StreamChunk,
    StreamEvent,
    StreamEventKind,
    StreamingProvider,
    StreamRequest,
    StreamResult,
    ToolCallAssembler,
)

__all__ = [
    "ANTHROPIC_PROFILE",
    "AnthropicProvider",
    "AnthropicSDKTransport",
    "AnthropicToolAdapter",
    "AnthropicWireParser",
    "CancellationToken",
    "ModelPricing",
    "OPENAI_PROFILE",
    "OpenAIProvider",
    "OpenAISDKTransport",
    "OpenAIToolAdapter",
    "OpenAIWireParser",
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
    "SSELineBuffer",
    "StreamChunk",
    "StreamEvent",
    "StreamEventKind",
    "StreamRequest",
    "StreamResult",
    "StreamingProvider",
    "ToolCall",
    "ToolCallAssembler",
    "build_parameter_schema",
    "is_retryable_error",
]
