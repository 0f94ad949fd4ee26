"""
agentforge — compiled-agent runtime app

File: src/agentforge/runtime/app.py

Purpose
- Loopback HTTP surface of a running agent: health, tool calls and inference.

Functional requirements
- ``GET /health`` reports the agent name, registered tools and whether an
  inference router is attached.
- ``POST /tools/{name}`` takes the tool's parameters as a JSON object.
- ``POST /inference`` takes ordered chat messages and returns the router's
  ``InferenceResponse``.
- Errors come back as ``{"error": {"code", "message"}}``; provider raw bodies are
  never echoed to the caller.
- ``serve_runtime`` refuses any host other than loopback.
"""

from __future__ import annotations

import ipaddress
from typing import Any, Final

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agentforge import __version__
from agentforge.errors import ConfigurationError
from agentforge.inference import (
    InferenceRouter,
    ProviderAPIError,
    ProviderConfigurationError,
    ProviderError,
)
from agentforge.runtime.registry import (
    ToolArgumentsError,
    ToolNotRegisteredError,
    ToolRegistry,
)

LOOPBACK_HOST: Final[str] = "127.0.0.1"
DEFAULT_RUNTIME_PORT: Final[int] = 8787


class ChatMessage(BaseModel):
    role: str
    content: str


class InferencePayload(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None


def create_runtime_app(
    registry: ToolRegistry,
    router: InferenceRouter | None = None,
    *,
    agent_name: str = "agent",
    logger: Any | None = None,
) -> FastAPI:
    """FastAPI app serving one agent's tools and model."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    app = FastAPI(title=f"{agent_name} runtime", version=__version__, docs_url=None, redoc_url=None)
    app.state.registry = registry
    app.state.router = router

    @app.get("/health")
    async def health() -> dict[str, object]:
        return {
            "status": "ok",
            "agent": agent_name,
            "tools": list(registry.names),
            "inference": None if router is None else f"{router.provider}/{router.model}",
        }

    @app.get("/tools")
    async def list_tools() -> dict[str, object]:
        return {"tools": registry.describe()}

    @app.post("/tools/{name}")
    async def call_tool(name: str, request: Request) -> Any:
        params = await _json_object(request)
        registry.bind_arguments(name, params)
        try:
            result = await registry.invoke(name, params)
        except Exception as exc:  # noqa: BLE001
            log.warning("tool_call_failed", tool=name, error_type=type(exc).__name__)
            return _error(500, "tool_failed", f"tool {name!r} raised {type(exc).__name__}")
        return {"tool": name, "result": result}

    @app.post("/inference")
    async def inference(payload: InferencePayload) -> Any:
        if router is None:
            return _error(503, "inference_unavailable", "no model provider is configured")
        response = await router.generate(
            [message.model_dump() for message in payload.messages],
            temperature=payload.temperature,
            max_tokens=payload.max_tokens,
            top_p=payload.top_p,
        )
        return response.to_dict()

    @app.exception_handler(ToolNotRegisteredError)
    async def tool_not_registered(request: Request, exc: ToolNotRegisteredError) -> JSONResponse:
        return _error(404, "tool_not_found", str(exc))

    @app.exception_handler(ToolArgumentsError)
    async def tool_arguments(request: Request, exc: ToolArgumentsError) -> JSONResponse:
        log.info("tool_arguments_rejected", tool=exc.tool, issues=list(exc.issues))
        return _error(422, "invalid_arguments", str(exc), issues=list(exc.issues))

    @app.exception_handler(RequestValidationError)
    async def request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        issues = [
            ".".join(str(part) for part in error["loc"]) + f": {error['msg']}"
            for error in exc.errors()
        ]
        return _error(422, "invalid_request", "request validation failed", issues=issues)

    @app.exception_handler(ProviderAPIError)
    async def provider_api(request: Request, exc: ProviderAPIError) -> JSONResponse:
        log.warning("inference_provider_error", provider=exc.provider, status=exc.status)
        return _error(
            502, "provider_error", f"{exc.provider} returned HTTP {exc.status}", status=exc.status
        )

    @app.exception_handler(ProviderConfigurationError)
    async def provider_config(request: Request, exc: ProviderConfigurationError) -> JSONResponse:
        return _error(503, "provider_not_configured", str(exc))

    @app.exception_handler(ProviderError)
    async def provider_failure(request: Request, exc: ProviderError) -> JSONResponse:
        log.warning("inference_failed", provider=exc.provider, error=str(exc))
        return _error(502, "provider_error", str(exc))

    @app.exception_handler(ConfigurationError)
    async def bad_input(request: Request, exc: ConfigurationError) -> JSONResponse:
        return _error(400, "invalid_request", str(exc))

    log.info("runtime_app_created", agent=agent_name, tools=list(registry.names))
    return app


def serve_runtime(
    app: FastAPI, *, host: str = LOOPBACK_HOST, port: int = DEFAULT_RUNTIME_PORT
) -> None:
    """Run ``app`` with uvicorn; only loopback addresses are accepted."""

    if host != "localhost":
        try:
            loopback = ipaddress.ip_address(host).is_loopback
        except ValueError:
            loopback = False
        if not loopback:
            raise ConfigurationError(f"runtime host must be a loopback address, got {host!r}")
    uvicorn.run(app, host=host, port=port, log_level="warning")


async def _json_object(request: Request) -> dict[str, object]:
    body = await request.body()
    if not body.strip():
        return {}
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ToolArgumentsError(request.path_params.get("name", ""), ["body: not JSON"]) from exc
    if not isinstance(payload, dict):
        raise ToolArgumentsError(
            request.path_params.get("name", ""), ["body: expected a JSON object"]
        )
    return payload


def _error(status: int, code: str, message: str, /, **extra: object) -> JSONResponse:
    return JSONResponse(
        status_code=status, content={"error": {"code": code, "message": message, **extra}}
    )


__all__ = [
    "DEFAULT_RUNTIME_PORT",
    "LOOPBACK_HOST",
    "ChatMessage",
    "InferencePayload",
    "create_runtime_app",
    "serve_runtime",
]
