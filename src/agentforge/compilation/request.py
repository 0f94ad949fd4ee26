"""
agentforge — build request assembly

File: src/agentforge/compilation/request.py

Purpose
- Turn the configuration UI's agent payload into an ``AgentBuildSpec``.

Functional requirements
- Required UI fields: ``name``, ``personality``, ``instructions``, ``settings``.
- Features become tools, enabled MCP servers become JSON resources, creativity
  becomes a text resource, advanced settings become the TEE policy.
- API keys typed into the UI are never embedded in the spec; each one becomes a
  credential declaration that points at the provider's key variable.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from agentforge.constants import (
    AGENT_NAME_MAX_LENGTH,
    AGENT_URN_NAMESPACE,
    AGENT_URN_PREFIX,
    DEFAULT_TEE_CPU_CORES,
    DEFAULT_TEE_MEMORY_MB,
    DEFAULT_TEE_TIMEOUT_SECONDS,
)
from agentforge.domain.ids import generate_agent_id
from agentforge.domain.models import (
    AgentBuildSpec,
    BuildTarget,
    Credential,
    CredentialSource,
    CredentialType,
    IsolationLevel,
    ModelProviderSelection,
    Platform,
    ResourceCeiling,
    ResourceDefinition,
    ResourceType,
    TEEPolicy,
    ToolDefinition,
    ToolParameter,
)
from agentforge.errors import ConfigurationError
from agentforge.inference.router import DEFAULT_API_KEY_ENVS

UNNAMED_AGENT = "unnamed-agent"
DEFAULT_VERSION = "1.0.0"
DEFAULT_MODEL_PROVIDER = ModelProviderSelection(provider="openai", model="gpt-4o-mini")

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_WHITESPACE = re.compile(r"\s+")
_REQUIRED_UI_FIELDS = ("name", "personality", "instructions", "settings")
_PLATFORM_ALIASES = {"mac": "darwin", "macos": "darwin", "osx": "darwin", "win": "windows"}

# Feature flag -> (tool name, description, parameter, parameter description).
_FEATURE_TOOLS: tuple[tuple[str, str, str, str, str], ...] = (
    ("chat", "chat", "Chat with the user", "input", "The user input"),
    ("automation", "automate", "Automate a task", "task", "The task to automate"),
    ("analytics", "analyze", "Analyze data", "data", "The data to analyze"),
)


def sanitize_agent_name(name: str | None) -> str:
    """Reduce an agent name to the form used in CI run names and artifact names.

    ``urn:agent:ns:my-agent`` becomes ``my-agent``. Characters outside
    ``[A-Za-z0-9_-]`` become ``_`` and the result is cut to 30 characters.
    """

    text = (name or "").strip()
    if text.startswith(AGENT_URN_PREFIX):
        text = text.rsplit(":", 1)[-1]
    text = _UNSAFE_NAME_CHARS.sub("_", text)[:AGENT_NAME_MAX_LENGTH]
    return text or UNNAMED_AGENT


def agent_urn(display_name: str, namespace: str = AGENT_URN_NAMESPACE) -> str:
    slug = _WHITESPACE.sub("-", display_name.strip().lower())
    return f"{AGENT_URN_PREFIX}{namespace}:{slug}"


def parse_platform(value: object) -> Platform:
    if value is None or value == "":
        return Platform.LINUX
    if isinstance(value, Platform):
        return value
    text = str(value).strip().lower()
    try:
        return Platform(_PLATFORM_ALIASES.get(text, text))
    except ValueError:
        allowed = ", ".join(item.value for item in Platform)
        message = f"unknown platform {value!r}; expected one of: {allowed}"
        raise ConfigurationError(message) from None


def build_spec_from_ui_config(
    ui_config: Mapping[str, Any],
    advanced_settings: Mapping[str, Any] | None = None,
    platform: str | Platform | None = None,
    *,
    build_target: str | BuildTarget | None = None,
    model_provider: ModelProviderSelection | None = None,
    agent_id: str | None = None,
) -> AgentBuildSpec:
    """Assemble and validate a build spec from the UI payload."""

    if not isinstance(ui_config, Mapping):
        raise ConfigurationError("UI config must be an object")
    missing = [key for key in _REQUIRED_UI_FIELDS if not ui_config.get(key)]
    if missing:
        raise ConfigurationError(
            "missing required UI config fields",
            issues=[f"{key}: required" for key in missing],
        )
    settings = ui_config["settings"]
    if not isinstance(settings, Mapping):
        raise ConfigurationError("settings: expected an object")

    display_name = str(ui_config.get("agent_name") or ui_config["name"])
    credentials = _credentials_from_api_keys(ui_config.get("apiKeys"))
    selection = model_provider or _selection_from_ui(ui_config.get("model"))
    selection = _attach_credential(selection, credentials)

    advanced = advanced_settings or {}
    spec = AgentBuildSpec(
        agent_id=agent_id or generate_agent_id(),
        name=(
            display_name
            if display_name.startswith(AGENT_URN_PREFIX)
            else agent_urn(display_name)
        ),
        description=str(ui_config["instructions"]),
        version=str(ui_config.get("version") or DEFAULT_VERSION),
        model_provider=selection,
        tools=_tools_from_features(ui_config.get("features")),
        resources=_resources_from_settings(settings),
        tee_policy=tee_policy_from_advanced_settings(advanced),
        build_target=BuildTarget.parse(build_target or "wasm"),
        platform=parse_platform(platform),
        subagent_capabilities=bool(advanced.get("subAgentCapabilities", False)),
        credentials=credentials,
    )
    spec.validate()
    return spec


def tee_policy_from_advanced_settings(advanced: Mapping[str, Any]) -> TEEPolicy:
    if not advanced:
        return TEEPolicy()
    level = str(advanced.get("isolationLevel") or IsolationLevel.PROCESS.value).lower()
    try:
        isolation = IsolationLevel(level)
    except ValueError:
        raise ConfigurationError(f"advanced.isolationLevel: unknown level {level!r}") from None
    return TEEPolicy(
        isolation_level=isolation,
        resources=ResourceCeiling(
            memory_mb=_number(advanced, "memoryLimit", DEFAULT_TEE_MEMORY_MB),
            cpu_cores=_number(advanced, "cpuCores", DEFAULT_TEE_CPU_CORES),
            timeout_seconds=_number(advanced, "timeLimit", DEFAULT_TEE_TIMEOUT_SECONDS),
        ),
        network_access=bool(advanced.get("networkAccess", True)),
        filesystem_access=bool(advanced.get("fileSystemAccess", False)),
    )


def _number(data: Mapping[str, Any], key: str, default: float) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigurationError(f"advanced.{key}: expected a number, got {value!r}")
    return value


def _tools_from_features(features: object) -> tuple[ToolDefinition, ...]:
    if not isinstance(features, Mapping):
        return ()
    tools: list[ToolDefinition] = []
    for flag, tool_name, description, parameter, parameter_description in _FEATURE_TOOLS:
        if not features.get(flag):
            continue
        tools.append(
            ToolDefinition(
                name=tool_name,
                description=description,
                parameters=(
                    ToolParameter(
                        name=parameter,
                        type="string",
                        description=parameter_description,
                        required=True,
                    ),
                ),
                return_type="object",
                implementation=f"agentforge.runtime.builtin_tools:{tool_name}",
            )
        )
    return tuple(tools)


def _resources_from_settings(settings: Mapping[str, Any]) -> tuple[ResourceDefinition, ...]:
    resources: list[ResourceDefinition] = []
    servers = settings.get("mcpServers") or []
    if not isinstance(servers, list):
        raise ConfigurationError("settings.mcpServers: expected a list")
    for index, server in enumerate(servers):
        if isinstance(server, Mapping) and server.get("enabled"):
            resources.append(
                ResourceDefinition(
                    name=f"mcp_server_{index}",
                    type=ResourceType.JSON,
                    content=json.dumps(dict(server), sort_keys=True),
                )
            )
    creativity = settings.get("creativity")
    if creativity is not None:
        resources.append(
            ResourceDefinition(
                name="creativity_parameter", type=ResourceType.TEXT, content=str(creativity)
            )
        )
    return tuple(resources)


def _credentials_from_api_keys(api_keys: object) -> tuple[Credential, ...]:
    if not isinstance(api_keys, Mapping):
        return ()
    declared: list[Credential] = []
    for provider in sorted(api_keys):
        if not api_keys[provider]:
            continue
        env_name = DEFAULT_API_KEY_ENVS.get(str(provider).lower())
        if env_name is None:
            continue
        declared.append(
            Credential(
                name=f"{str(provider).lower()}_api_key",
                type=CredentialType.API_KEY,
                source=CredentialSource.ENV,
                reference=env_name,
                description=f"API key for {provider}",
            )
        )
    return tuple(declared)


def _selection_from_ui(model: object) -> ModelProviderSelection:
    if model is None:
        return DEFAULT_MODEL_PROVIDER
    return ModelProviderSelection.from_dict(model, "model")


def _attach_credential(
    selection: ModelProviderSelection, credentials: tuple[Credential, ...]
) -> ModelProviderSelection:
    if selection.credential_name:
        return selection
    wanted = "google" if selection.provider == "gemini" else selection.provider
    for credential in credentials:
        if credential.name == f"{wanted}_api_key":
            return replace(selection, credential_name=credential.name)
    return selection


__all__ = [
    "DEFAULT_MODEL_PROVIDER",
    "UNNAMED_AGENT",
    "agent_urn",
    "build_spec_from_ui_config",
    "parse_platform",
    "sanitize_agent_name",
    "tee_policy_from_advanced_settings",
]
