"""
agentforge — unit tests for provider wire adapters

File: tests/unit/inference/test_adapters.py

Purpose
- Pin the request shape and response extraction of each provider family.
"""

from __future__ import annotations

import pytest

from agentforge.errors import ConfigurationError
from agentforge.inference import (
    ANTHROPIC_VERSION,
    InferenceRequest,
    Message,
    ProviderConfigurationError,
    ProviderResponseError,
    adapter_for,
)

SYSTEM = "You are a terse assistant."


def _request(provider: str, *, top_p: float = 1.0) -> InferenceRequest:
    return InferenceRequest(
        provider=provider,
        model="model-x",
        messages=(
            Message(role="system", content=SYSTEM),
            Message(role="user", content="hello"),
            Message(role="assistant", content="hi"),
            Message(role="user", content="bye"),
        ),
        temperature=0.2,
        top_p=top_p,
        max_tokens=64,
    )


def test_openai_keeps_system_message_inline() -> None:
    call = adapter_for("openai").prepare(_request("openai"), api_key="k-1", endpoint=None)

    assert call.url == "https://api.openai.com/v1/chat/completions"
    assert call.headers["Authorization"] == "Bearer k-1"
    assert call.body["messages"][0] == {"role": "system", "content": SYSTEM}
    assert call.body["temperature"] == 0.2
    assert call.body["max_tokens"] == 64
    assert call.body["top_p"] == 1.0


@pytest.mark.parametrize("provider", ["deepseek", "cerebras", "groq"])
def test_openai_compatible_providers_share_the_format(provider: str) -> None:
    adapter = adapter_for(provider)

    call = adapter.prepare(_request(provider), api_key="k", endpoint=None)

    assert adapter.name == provider
    assert call.url.endswith("/chat/completions")
    assert len(call.body["messages"]) == 4


def test_anthropic_hoists_system_prompt() -> None:
    call = adapter_for("anthropic").prepare(_request("anthropic"), api_key="k-2", endpoint=None)

    assert call.headers["x-api-key"] == "k-2"
    assert call.headers["anthropic-version"] == ANTHROPIC_VERSION
    assert "Authorization" not in call.headers
    assert call.body["system"] == SYSTEM
    assert [item["role"] for item in call.body["messages"]] == ["user", "assistant", "user"]
    assert "top_p" not in call.body


def test_anthropic_sends_top_p_only_when_changed() -> None:
    call = adapter_for("anthropic").prepare(
        _request("anthropic", top_p=0.5), api_key="k", endpoint=None
    )

    assert call.body["top_p"] == 0.5


def test_anthropic_joins_text_blocks() -> None:
    payload = {
        "model": "claude-x",
        "content": [
            {"type": "text", "text": "Hello "},
            {"type": "tool_use", "id": "t1"},
            {"type": "text", "text": "world"},
        ],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 7, "output_tokens": 3},
    }

    response = adapter_for("anthropic").parse(payload, _request("anthropic"))

    assert response.text == "Hello world"
    assert response.finish_reason == "end_turn"
    assert response.usage.total_tokens == 10
    assert response.model == "claude-x"


def test_google_maps_roles_and_query_key() -> None:
    request = _request("google")

    call = adapter_for("google").prepare(request, api_key="g-key", endpoint=None)

    assert call.url.endswith("/models/model-x:generateContent")
    assert call.params == {"key": "g-key"}
    assert [item["role"] for item in call.body["contents"]] == ["user", "model", "user"]
    assert call.body["systemInstruction"] == {"parts": [{"text": SYSTEM}]}
    assert call.body["generationConfig"]["maxOutputTokens"] == 64


def test_google_parse_reads_first_candidate() -> None:
    payload = {
        "candidates": [
            {"content": {"parts": [{"text": "a"}, {"text": "b"}]}, "finishReason": "STOP"}
        ],
        "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 1, "totalTokenCount": 3},
    }

    response = adapter_for("gemini").parse(payload, _request("gemini"))

    assert response.text == "ab"
    assert response.finish_reason == "STOP"
    assert response.usage.to_dict() == {
        "prompt_tokens": 2,
        "completion_tokens": 1,
        "total_tokens": 3,
    }


def test_openai_parse_rejects_missing_content() -> None:
    with pytest.raises(ProviderResponseError, match="choices"):
        adapter_for("openai").parse({"choices": []}, _request("openai"))


def test_custom_requires_endpoint_and_substitutes_model() -> None:
    adapter = adapter_for("custom")

    with pytest.raises(ProviderConfigurationError, match="requires an endpoint"):
        adapter.prepare(_request("custom"), api_key=None, endpoint=None)

    call = adapter.prepare(
        _request("custom"), api_key=None, endpoint="http://127.0.0.1:8080/{model}/chat"
    )
    assert call.url == "http://127.0.0.1:8080/model-x/chat"
    assert "Authorization" not in call.headers


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"text": "plain"}, "plain"),
        ({"response": "ollama style"}, "ollama style"),
        ({"content": [{"text": "x"}, {"text": "y"}]}, "xy"),
        ({"choices": [{"message": {"content": "gateway"}}]}, "gateway"),
    ],
)
def test_custom_extracts_text_from_common_shapes(payload: object, expected: str) -> None:
    assert adapter_for("custom").parse(payload, _request("custom")).text == expected


def test_unknown_provider_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="unknown provider"):
        adapter_for("acme")


def test_request_validation() -> None:
    with pytest.raises(ConfigurationError, match="at least one message"):
        InferenceRequest(provider="openai", model="m", messages=())
    with pytest.raises(ConfigurationError, match="temperature"):
        InferenceRequest(
            provider="openai",
            model="m",
            messages=(Message(role="user", content="x"),),
            temperature=3.0,
        )
    with pytest.raises(ConfigurationError, match="message role"):
        Message(role="tool", content="x")
