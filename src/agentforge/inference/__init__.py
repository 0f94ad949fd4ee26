"""LLM inference router: one request/response shape over several provider wire formats."""

from agentforge.inference.adapters import (
    ADAPTERS,
    ANTHROPIC_VERSION,
    AnthropicAdapter,
    CustomAdapter,
    GoogleAdapter,
    OpenAICompatibleAdapter,
    adapter_for,
)
from agentforge.inference.base import (
    InferenceRequest,
    InferenceResponse,
    Message,
    PreparedCall,
    ProviderAdapter,
    ProviderAPIError,
    ProviderConfigurationError,
    ProviderError,
    ProviderResponseError,
    ProviderTransportError,
    Role,
    Usage,
)
from agentforge.inference.router import (
    DEFAULT_API_KEY_ENVS,
    DEFAULT_TIMEOUT_SECONDS,
    InferenceRouter,
)

__all__ = [
    "ADAPTERS",
    "ANTHROPIC_VERSION",
    "AnthropicAdapter",
    "CustomAdapter",
    "DEFAULT_API_KEY_ENVS",
    "DEFAULT_TIMEOUT_SECONDS",
    "GoogleAdapter",
    "InferenceRequest",
    "InferenceResponse",
    "InferenceRouter",
    "Message",
    "OpenAICompatibleAdapter",
    "PreparedCall",
    "ProviderAPIError",
    "ProviderAdapter",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderResponseError",
    "ProviderTransportError",
    "Role",
    "Usage",
    "adapter_for",
]
