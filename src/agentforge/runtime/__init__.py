"""Runtime surface of a compiled agent: pre-validated tool registry and loopback HTTP app."""

from agentforge.runtime.app import (
    DEFAULT_RUNTIME_PORT,
    LOOPBACK_HOST,
    create_runtime_app,
    serve_runtime,
)
from agentforge.runtime.registry import (
    DEFAULT_ALLOWED_PREFIXES,
    RegisteredTool,
    ToolArgumentsError,
    ToolNotRegisteredError,
    ToolRegistrationError,
    ToolRegistry,
    ToolRegistryError,
)

__all__ = [
    "DEFAULT_ALLOWED_PREFIXES",
    "DEFAULT_RUNTIME_PORT",
    "LOOPBACK_HOST",
    "RegisteredTool",
    "ToolArgumentsError",
    "ToolNotRegisteredError",
    "ToolRegistrationError",
    "ToolRegistry",
    "ToolRegistryError",
    "create_runtime_app",
    "serve_runtime",
]
