"""
agentforge — inference request/response model and provider error taxonomy

File: src/agentforge/inference/base.py

Purpose
- One provider-agnostic request and response shape for every LLM backend.

Functional requirements
- Messages are ordered and carry a role in {system, user, assistant}.
- Errors keep the provider's raw response body for diagnostics while the
  exception message stays short.
"""

from __future__ import annotations

import abc
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agentforge.constants import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, DEFAULT_TOP_P
from agentforge.errors import AgentForgeError, ConfigurationError

_RAW_BODY_PREVIEW = 200


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    content: str

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "role", Role(str(self.role).strip().lower()))
        except ValueError as exc:
            allowed = ", ".join(item.value for item in Role)
            raise ConfigurationError(
                f"message role must be one of {allowed}, got {self.role!r}"
            ) from exc
        if not isinstance(self.content, str):
            raise ConfigurationError("message content must be a string")

    @classmethod
    def coerce(cls, value: Message | Mapping[str, object]) -> Message:
        if isinstance(value, Message):
            return value
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"message must be an object, got {type(value).__name__}")
        role = value.get("role", "")
        return cls(role=role, content=value.get("content", ""))  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True, slots=True)
class InferenceRequest:
    """Normalized chat request handed to a provider adapter."""

    provider: str
    model: str
    messages: tuple[Message, ...]
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    max_tokens: int = DEFAULT_MAX_TOKENS

    def __post_init__(self) -> None:
        if not self.provider.strip():
            raise ConfigurationError("provider must not be empty")
        if not self.model.strip():
            raise ConfigurationError("model must not be empty")
        messages = tuple(Message.coerce(item) for item in self.messages)
        if not messages:
            raise ConfigurationError("at least one message is required")
        object.__setattr__(self, "messages", messages)
        if not math.isfinite(self.temperature) or not 0.0 <= self.temperature <= 2.0:
            raise ConfigurationError(f"temperature must be in [0, 2], got {self.temperature}")
        if not math.isfinite(self.top_p) or not 0.0 < self.top_p <= 1.0:
            raise ConfigurationError(f"top_p must be in (0, 1], got {self.top_p}")
        if isinstance(self.max_tokens, bool) or self.max_tokens < 1:
            raise ConfigurationError(f"max_tokens must be >= 1, got {self.max_tokens}")

    @property
    def system_prompt(self) -> str | None:
        """All system messages joined, for providers that hoist them out of the turn list."""

        parts = [item.content for item in self.messages if item.role is Role.SYSTEM]
        return "\n\n".join(parts) if parts else None

    @property
    def turns(self) -> tuple[Message, ...]:
        return tuple(item for item in self.messages if item.role is not Role.SYSTEM)


@dataclass(frozen=True, slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        for name in ("prompt_tokens", "completion_tokens", "total_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True, slots=True)
class InferenceResponse:
    text: str
    finish_reason: str | None
    usage: Usage = field(default_factory=Usage)
    provider: str = ""
    model: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "text": self.text,
            "finish_reason": self.finish_reason,
            "usage": self.usage.to_dict(),
            "provider": self.provider,
            "model": self.model,
        }


@dataclass(frozen=True, slots=True)
class PreparedCall:
    """Wire-level request produced by an adapter; the router performs the I/O."""

    url: str
    headers: Mapping[str, str]
    body: Mapping[str, Any]
    params: Mapping[str, str] = field(default_factory=dict)


class ProviderAdapter(abc.ABC):
    """Translates between ``InferenceRequest`` and one provider's wire format."""

    name: str = "provider"
    default_endpoint: str | None = None
    requires_api_key: bool = True

    def endpoint_for(self, request: InferenceRequest, override: str | None) -> str:
        template = override or self.default_endpoint
        if not template:
            raise ProviderConfigurationError(self.name, "no endpoint configured")
        return template.replace("{model}", request.model)

    @abc.abstractmethod
    def prepare(
        self, request: InferenceRequest, *, api_key: str | None, endpoint: str | None
    ) -> PreparedCall:
        """Build the HTTP call for ``request``."""

    @abc.abstractmethod
    def parse(self, payload: object, request: InferenceRequest) -> InferenceResponse:
        """Extract text, finish reason and usage from a 2xx response body."""


class ProviderError(AgentForgeError):
    """Base class for inference failures."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderConfigurationError(ProviderError, ConfigurationError):
    """Unknown provider, missing model, missing endpoint or missing API key."""


class ProviderAPIError(ProviderError):
    """Non-2xx response. ``raw_body`` keeps the full body; the message is truncated."""

    def __init__(self, provider: str, status: int, raw_body: str) -> None:
        self.status = status
        self.raw_body = raw_body
        preview = raw_body.strip().replace("\n", " ")
        if len(preview) > _RAW_BODY_PREVIEW:
            preview = preview[:_RAW_BODY_PREVIEW] + "..."
        super().__init__(provider, f"HTTP {status}: {preview or '<empty body>'}")


class ProviderTransportError(ProviderError):
    """Connection failure or timeout before a response arrived."""


class ProviderResponseError(ProviderError):
    """A 2xx body that does not contain the expected fields."""


def as_mapping(value: object) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def first_item(value: object) -> Mapping[str, Any]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)) and value:
        return as_mapping(value[0])
    return {}


def int_or_zero(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return max(value, 0)


__all__ = [
    "InferenceRequest",
    "InferenceResponse",
    "Message",
    "PreparedCall",
    "ProviderAPIError",
    "ProviderAdapter",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderResponseError",
    "ProviderTransportError",
    "Role",
    "Usage",
    "as_mapping",
    "first_item",
    "int_or_zero",
]
