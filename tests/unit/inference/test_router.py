"""
agentforge — unit tests for the inference router

File: tests/unit/inference/test_router.py

Purpose
- Exercise the HTTP path through ``httpx.MockTransport``: key resolution,
  status handling and response normalization.
"""

from __future__ import annotations

import json

import httpx
import pytest

from agentforge.credentials import CredentialStore
from agentforge.domain.models import Credential, ModelProviderSelection
from agentforge.inference import (
    InferenceRouter,
    ProviderAPIError,
    ProviderConfigurationError,
    ProviderResponseError,
    ProviderTransportError,
)
from agentforge.security.redaction import SecretRegistry

_OPENAI_OK = {
    "model": "gpt-4o-mini",
    "choices": [{"message": {"role": "assistant", "content": "pong"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6},
}


def _recording_transport(
    status: int = 200, payload: object = _OPENAI_OK
) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if isinstance(payload, str):
            return httpx.Response(status, text=payload)
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler), seen


async def test_generate_uses_environment_key_and_normalizes() -> None:
    transport, seen = _recording_transport()
    registry = SecretRegistry()
    router = InferenceRouter(
        "openai",
        "gpt-4o-mini",
        transport=transport,
        environ={"OPENAI_API_KEY": "sk-env-key"},
        registry=registry,
    )

    response = await router.generate([{"role": "user", "content": "ping"}])

    assert response.text == "pong"
    assert response.finish_reason == "stop"
    assert response.usage.total_tokens == 6
    assert seen[0].headers["Authorization"] == "Bearer sk-env-key"
    body = json.loads(seen[0].content)
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 1000
    assert registry.snapshot() == ("sk-env-key",)


async def test_credential_store_key_wins_over_environment() -> None:
    transport, seen = _recording_transport()
    store = CredentialStore(environ={"STORE_KEY": "sk-store"}, registry=SecretRegistry())
    store.add(Credential(name="OPENAI", reference="STORE_KEY"), persist=False)
    router = InferenceRouter(
        "openai",
        "gpt-4o-mini",
        credentials=store,
        credential_name="OPENAI",
        transport=transport,
        environ={"OPENAI_API_KEY": "sk-env"},
    )

    await router.generate([{"role": "user", "content": "ping"}])

    assert seen[0].headers["Authorization"] == "Bearer sk-store"


async def test_per_call_overrides_reach_the_wire() -> None:
    transport, seen = _recording_transport()
    router = InferenceRouter(
        "openai", "gpt-4o-mini", transport=transport, environ={"OPENAI_API_KEY": "k"}
    )

    await router.generate(
        [{"role": "user", "content": "x"}], temperature=0.0, max_tokens=5, top_p=0.9
    )

    body = json.loads(seen[0].content)
    assert (body["temperature"], body["max_tokens"], body["top_p"]) == (0.0, 5, 0.9)


async def test_missing_key_is_a_configuration_error() -> None:
    transport, seen = _recording_transport()
    router = InferenceRouter("anthropic", "claude-x", transport=transport, environ={})

    with pytest.raises(ProviderConfigurationError, match="ANTHROPIC_API_KEY"):
        await router.generate([{"role": "user", "content": "x"}])
    assert seen == []


async def test_non_200_keeps_raw_body() -> None:
    raw = json.dumps({"error": {"message": "rate limited", "detail": "x" * 500}})
    transport, _ = _recording_transport(status=429, payload=raw)
    router = InferenceRouter(
        "openai", "gpt-4o-mini", transport=transport, environ={"OPENAI_API_KEY": "k"}
    )

    with pytest.raises(ProviderAPIError) as excinfo:
        await router.generate([{"role": "user", "content": "x"}])

    assert excinfo.value.status == 429
    assert excinfo.value.raw_body == raw
    assert len(str(excinfo.value)) < len(raw)
    assert str(excinfo.value).startswith("openai: HTTP 429")


async def test_non_json_body_is_a_response_error() -> None:
    transport, _ = _recording_transport(payload="<html>oops</html>")
    router = InferenceRouter(
        "openai", "gpt-4o-mini", transport=transport, environ={"OPENAI_API_KEY": "k"}
    )

    with pytest.raises(ProviderResponseError, match="not JSON"):
        await router.generate([{"role": "user", "content": "x"}])


async def test_transport_failure_hides_request_url() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach {request.url}", request=request)

    router = InferenceRouter(
        "google",
        "gemini-pro",
        transport=httpx.MockTransport(handler),
        environ={"GOOGLE_API_KEY": "g-secret"},
    )

    with pytest.raises(ProviderTransportError) as excinfo:
        await router.generate([{"role": "user", "content": "x"}])

    assert "g-secret" not in str(excinfo.value)
    assert "ConnectError" in str(excinfo.value)


async def test_timeout_is_a_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    router = InferenceRouter(
        "openai",
        "gpt-4o-mini",
        transport=httpx.MockTransport(handler),
        environ={"OPENAI_API_KEY": "k"},
        timeout_seconds=2.5,
    )

    with pytest.raises(ProviderTransportError, match="timed out after 2.5s"):
        await router.generate([{"role": "user", "content": "x"}])


async def test_from_selection_fills_gaps_from_config() -> None:
    transport, seen = _recording_transport(
        payload={"response": "local answer"},
    )
    selection = ModelProviderSelection(
        provider="custom",
        model="llama3",
        endpoint="http://127.0.0.1:11434/api/{model}",
        temperature=0.1,
    )
    router = InferenceRouter.from_selection(
        selection,
        inference_config={"timeout_seconds": 5},
        transport=transport,
        environ={},
    )

    response = await router.generate([{"role": "user", "content": "x"}])

    assert response.text == "local answer"
    assert str(seen[0].url) == "http://127.0.0.1:11434/api/llama3"
    assert "Authorization" not in seen[0].headers
    assert json.loads(seen[0].content)["temperature"] == 0.1


def test_router_rejects_non_positive_timeout() -> None:
    with pytest.raises(ProviderConfigurationError, match="timeout_seconds"):
        InferenceRouter("openai", "m", timeout_seconds=0)


@pytest.mark.parametrize("model", ["", "   "])
def test_router_requires_a_model(model: str) -> None:
    with pytest.raises(ProviderConfigurationError, match="a model is required"):
        InferenceRouter("anthropic", model)
