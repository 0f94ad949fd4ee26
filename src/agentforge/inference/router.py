"""
agentforge — LLM inference router

File: src/agentforge/inference/router.py

Purpose
- Send one chat request to the configured provider and normalize the reply.

Functional requirements
- API keys come from the credential store (by credential name) or from the
  provider's key environment variable; they never appear in logs or errors.
- Any non-200 response raises ``ProviderAPIError`` with the status and raw body.
- No retries; callers decide.
"""

from __future__ import annotations

import os
import time
from collections.abc import Mapping, Sequence
from typing import Any

import httpx
import structlog

from agentforge.constants import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
)
from agentforge.credentials import CredentialStore
from agentforge.domain.models import ModelProviderSelection
from agentforge.inference.adapters import adapter_for
from agentforge.inference.base import (
    InferenceRequest,
    InferenceResponse,
    Message,
    ProviderAPIError,
    ProviderConfigurationError,
    ProviderResponseError,
    ProviderTransportError,
)
from agentforge.security.redaction import SecretRegistry, global_secret_registry

DEFAULT_TIMEOUT_SECONDS = 60.0

DEFAULT_API_KEY_ENVS: Mapping[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "gemini": "GOOGLE_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "cerebras": "CEREBRAS_API_KEY",
    "groq": "GROQ_API_KEY",
}


class InferenceRouter:
    """Routes chat requests to one provider/model pair."""

    def __init__(
        self,
        provider: str,
        model: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        top_p: float = DEFAULT_TOP_P,
        *,
        credentials: CredentialStore | None = None,
        credential_name: str | None = None,
        api_key_env: str | None = None,
        endpoint: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        environ: Mapping[str, str] | None = None,
        registry: SecretRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._adapter = adapter_for(provider)
        self._provider = self._adapter.name
        if not isinstance(model, str) or not model.strip():
            raise ProviderConfigurationError(self._provider, "a model is required")
        self._model = model.strip()
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._top_p = top_p
        self._credentials = credentials
        self._credential_name = credential_name
        self._api_key_env = api_key_env or DEFAULT_API_KEY_ENVS.get(self._provider)
        self._endpoint = endpoint
        if timeout_seconds <= 0:
            raise ProviderConfigurationError(self._provider, "timeout_seconds must be > 0")
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._environ = environ
        self._registry = registry if registry is not None else global_secret_registry()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_selection(
        cls,
        selection: ModelProviderSelection,
        *,
        inference_config: Mapping[str, Any] | None = None,
        credentials: CredentialStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        environ: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> InferenceRouter:
        """Router for an agent's ``model_provider``, with config supplying the gaps."""

        config = dict(inference_config or {})
        endpoints = config.get("endpoints") or {}
        key_envs = config.get("api_key_envs") or {}
        return cls(
            selection.provider,
            selection.model,
            temperature=(
                DEFAULT_TEMPERATURE if selection.temperature is None else selection.temperature
            ),
            max_tokens=DEFAULT_MAX_TOKENS if selection.max_tokens is None else selection.max_tokens,
            top_p=DEFAULT_TOP_P if selection.top_p is None else selection.top_p,
            credentials=credentials,
            credential_name=selection.credential_name,
            api_key_env=key_envs.get(selection.provider),
            endpoint=selection.endpoint or endpoints.get(selection.provider),
            timeout_seconds=float(config.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            transport=transport,
            environ=environ,
            logger=logger,
        )

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def model(self) -> str:
        return self._model

    def build_request(
        self,
        messages: Sequence[Message | Mapping[str, object]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        top_p: float | None = None,
    ) -> InferenceRequest:
        return InferenceRequest(
            provider=self._provider,
            model=self._model,
            messages=tuple(Message.coerce(item) for item in messages),
            temperature=self._temperature if temperature is None else temperature,
            top_p=self._top_p if top_p is None else top_p,
            max_tokens=self._max_tokens if max_tokens is None else max_tokens,
        )

    async def generate(
        self,
        messages: Sequence[Message | Mapping[str, object]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        top_p: float | None = None,
    ) -> InferenceResponse:
        request = self.build_request(
            messages, temperature=temperature, max_tokens=max_tokens, top_p=top_p
        )
        api_key = self._resolve_api_key()
        call = self._adapter.prepare(request, api_key=api_key, endpoint=self._endpoint)

        started = time.perf_counter()
        async with httpx.AsyncClient(
            transport=self._transport, timeout=httpx.Timeout(self._timeout_seconds)
        ) as client:
            try:
                response = await client.post(
                    call.url,
                    headers=dict(call.headers),
                    params=dict(call.params),
                    json=dict(call.body),
                )
            except httpx.TimeoutException as exc:
                self._log_failure(started, reason="timeout")
                raise ProviderTransportError(
                    self._provider, f"request timed out after {self._timeout_seconds:g}s"
                ) from exc
            except httpx.HTTPError as exc:
                # The exception text can carry the request URL, which holds the
                # Google key; only the class name is surfaced.
                self._log_failure(started, reason=type(exc).__name__)
                raise ProviderTransportError(
                    self._provider, f"request failed ({type(exc).__name__})"
                ) from exc

        if response.status_code != 200:
            self._log_failure(started, reason="http_status", status=response.status_code)
            raise ProviderAPIError(self._provider, response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderResponseError(self._provider, "response body is not JSON") from exc

        result = self._adapter.parse(payload, request)
        self._logger.info(
            "inference_completed",
            provider=self._provider,
            model=self._model,
            finish_reason=result.finish_reason,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 3),
            **result.usage.to_dict(),
        )
        return result

    def _resolve_api_key(self) -> str | None:
        if self._credential_name and self._credentials is not None:
            value = self._credentials.get(self._credential_name)
            if value:
                return value
        if self._api_key_env:
            environ = os.environ if self._environ is None else self._environ
            value = environ.get(self._api_key_env, "").strip()
            if value:
                self._registry.register(value)
                return value
        if self._adapter.requires_api_key:
            hint = f" or set {self._api_key_env}" if self._api_key_env else ""
            raise ProviderConfigurationError(
                self._provider, f"no API key available; declare a credential{hint}"
            )
        return None

    def _log_failure(self, started: float, *, reason: str, status: int | None = None) -> None:
        self._logger.warning(
            "inference_failed",
            provider=self._provider,
            model=self._model,
            reason=reason,
            status=status,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )


__all__ = ["DEFAULT_API_KEY_ENVS", "DEFAULT_TIMEOUT_SECONDS", "InferenceRouter"]
