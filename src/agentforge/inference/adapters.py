"""Wire-format adapters for each supported LLM provider."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from agentforge.inference.base import (
    InferenceRequest,
    InferenceResponse,
    PreparedCall,
    ProviderAdapter,
    ProviderConfigurationError,
    ProviderResponseError,
    Role,
    Usage,
    as_mapping,
    first_item,
    int_or_zero,
)

ANTHROPIC_VERSION = "2023-06-01"
_JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat-completions format: bearer auth, system messages stay inline."""

    def __init__(self, name: str, default_endpoint: str) -> None:
        self.name = name
        self.default_endpoint = default_endpoint

    def prepare(
        self, request: InferenceRequest, *, api_key: str | None, endpoint: str | None
    ) -> PreparedCall:
        headers = dict(_JSON_HEADERS)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return PreparedCall(
            url=self.endpoint_for(request, endpoint),
            headers=headers,
            body={
                "model": request.model,
                "messages": [item.to_dict() for item in request.messages],
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "top_p": request.top_p,
            },
        )

    def parse(self, payload: object, request: InferenceRequest) -> InferenceResponse:
        choice = first_item(as_mapping(payload).get("choices"))
        content = as_mapping(choice.get("message")).get("content")
        if not isinstance(content, str):
            raise ProviderResponseError(self.name, "response has no choices[0].message.content")
        usage = as_mapping(as_mapping(payload).get("usage"))
        return InferenceResponse(
            text=content,
            finish_reason=_optional_str(choice.get("finish_reason")),
            usage=Usage(
                prompt_tokens=int_or_zero(usage.get("prompt_tokens")),
                completion_tokens=int_or_zero(usage.get("completion_tokens")),
                total_tokens=int_or_zero(usage.get("total_tokens")),
            ),
            provider=self.name,
            model=_optional_str(as_mapping(payload).get("model")) or request.model,
        )


class AnthropicAdapter(ProviderAdapter):
    """Messages API: ``x-api-key`` auth, system prompt hoisted to the top level."""

    name = "anthropic"
    default_endpoint = "https://api.anthropic.com/v1/messages"

    def prepare(
        self, request: InferenceRequest, *, api_key: str | None, endpoint: str | None
    ) -> PreparedCall:
        headers = dict(_JSON_HEADERS)
        headers["anthropic-version"] = ANTHROPIC_VERSION
        if api_key:
            headers["x-api-key"] = api_key
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [item.to_dict() for item in request.turns],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        # Only sent when changed; several models reject temperature and top_p together.
        if request.top_p != 1.0:
            body["top_p"] = request.top_p
        system = request.system_prompt
        if system is not None:
            body["system"] = system
        return PreparedCall(url=self.endpoint_for(request, endpoint), headers=headers, body=body)

    def parse(self, payload: object, request: InferenceRequest) -> InferenceResponse:
        data = as_mapping(payload)
        blocks = data.get("content")
        if not isinstance(blocks, Sequence) or isinstance(blocks, str):
            raise ProviderResponseError(self.name, "response has no content blocks")
        text = "".join(
            str(block.get("text", ""))
            for block in blocks
            if isinstance(block, Mapping) and block.get("type") == "text"
        )
        usage = as_mapping(data.get("usage"))
        prompt_tokens = int_or_zero(usage.get("input_tokens"))
        completion_tokens = int_or_zero(usage.get("output_tokens"))
        return InferenceResponse(
            text=text,
            finish_reason=_optional_str(data.get("stop_reason")),
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            provider=self.name,
            model=_optional_str(data.get("model")) or request.model,
        )


class GoogleAdapter(ProviderAdapter):
    """Gemini ``generateContent``: key in the query string, ``assistant`` becomes ``model``."""

    default_endpoint = (
        "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
    )

    def __init__(self, name: str = "google") -> None:
        self.name = name

    def prepare(
        self, request: InferenceRequest, *, api_key: str | None, endpoint: str | None
    ) -> PreparedCall:
        contents = [
            {
                "role": "model" if item.role is Role.ASSISTANT else "user",
                "parts": [{"text": item.content}],
            }
            for item in request.turns
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": request.temperature,
                "topP": request.top_p,
                "maxOutputTokens": request.max_tokens,
            },
        }
        system = request.system_prompt
        if system is not None:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return PreparedCall(
            url=self.endpoint_for(request, endpoint),
            headers=dict(_JSON_HEADERS),
            body=body,
            params={"key": api_key} if api_key else {},
        )

    def parse(self, payload: object, request: InferenceRequest) -> InferenceResponse:
        data = as_mapping(payload)
        candidate = first_item(data.get("candidates"))
        parts = as_mapping(candidate.get("content")).get("parts")
        if not isinstance(parts, Sequence) or isinstance(parts, str):
            raise ProviderResponseError(self.name, "response has no candidates[0].content.parts")
        text = "".join(str(as_mapping(part).get("text", "")) for part in parts)
        usage = as_mapping(data.get("usageMetadata"))
        return InferenceResponse(
            text=text,
            finish_reason=_optional_str(candidate.get("finishReason")),
            usage=Usage(
                prompt_tokens=int_or_zero(usage.get("promptTokenCount")),
                completion_tokens=int_or_zero(usage.get("candidatesTokenCount")),
                total_tokens=int_or_zero(usage.get("totalTokenCount")),
            ),
            provider=self.name,
            model=_optional_str(data.get("modelVersion")) or request.model,
        )


class CustomAdapter(ProviderAdapter):
    """Caller-hosted endpoint; bearer auth when a key exists, best-effort text extraction."""

    name = "custom"
    requires_api_key = False
    _TEXT_KEYS = ("text", "response", "content")

    def endpoint_for(self, request: InferenceRequest, override: str | None) -> str:
        if not override:
            raise ProviderConfigurationError(self.name, "custom provider requires an endpoint")
        return super().endpoint_for(request, override)

    def prepare(
        self, request: InferenceRequest, *, api_key: str | None, endpoint: str | None
    ) -> PreparedCall:
        headers = dict(_JSON_HEADERS)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return PreparedCall(
            url=self.endpoint_for(request, endpoint),
            headers=headers,
            body={
                "model": request.model,
                "messages": [item.to_dict() for item in request.messages],
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "top_p": request.top_p,
            },
        )

    def parse(self, payload: object, request: InferenceRequest) -> InferenceResponse:
        text = self._scan(payload)
        if text is None:
            raise ProviderResponseError(
                self.name, "no text, response or content field in response body"
            )
        data = as_mapping(payload)
        usage = as_mapping(data.get("usage"))
        return InferenceResponse(
            text=text,
            finish_reason=_optional_str(data.get("finish_reason")),
            usage=Usage(
                prompt_tokens=int_or_zero(usage.get("prompt_tokens")),
                completion_tokens=int_or_zero(usage.get("completion_tokens")),
                total_tokens=int_or_zero(usage.get("total_tokens")),
            ),
            provider=self.name,
            model=request.model,
        )

    def _scan(self, payload: object) -> str | None:
        if isinstance(payload, str):
            return payload
        data = as_mapping(payload)
        for key in self._TEXT_KEYS:
            value = data.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, Sequence) and value:
                joined = "".join(
                    str(as_mapping(item).get("text", "")) if not isinstance(item, str) else item
                    for item in value
                )
                if joined:
                    return joined
        # OpenAI-shaped bodies from self-hosted gateways.
        message = as_mapping(first_item(data.get("choices")).get("message"))
        content = message.get("content")
        return content if isinstance(content, str) else None


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


ADAPTERS: Mapping[str, ProviderAdapter] = {
    "openai": OpenAICompatibleAdapter("openai", "https://api.openai.com/v1/chat/completions"),
    "deepseek": OpenAICompatibleAdapter(
        "deepseek", "https://api.deepseek.com/v1/chat/completions"
    ),
    "cerebras": OpenAICompatibleAdapter(
        "cerebras", "https://api.cerebras.ai/v1/chat/completions"
    ),
    "groq": OpenAICompatibleAdapter("groq", "https://api.groq.com/openai/v1/chat/completions"),
    "anthropic": AnthropicAdapter(),
    "google": GoogleAdapter("google"),
    "gemini": GoogleAdapter("gemini"),
    "custom": CustomAdapter(),
}


def adapter_for(provider: str) -> ProviderAdapter:
    normalized = provider.strip().lower()
    adapter = ADAPTERS.get(normalized)
    if adapter is None:
        allowed = ", ".join(sorted(ADAPTERS))
        raise ProviderConfigurationError(normalized or "<empty>", f"unknown provider ({allowed})")
    return adapter


__all__ = [
    "ADAPTERS",
    "ANTHROPIC_VERSION",
    "AnthropicAdapter",
    "CustomAdapter",
    "GoogleAdapter",
    "OpenAICompatibleAdapter",
    "adapter_for",
]
