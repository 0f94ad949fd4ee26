"""Subagent descriptors: what to run, with which tools, under which limits."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agentforge.domain.ids import validate_subagent_id
from agentforge.domain.models import ModelProviderSelection
from agentforge.errors import ConfigurationError

_ENTRY_POINT_RE = re.compile(r"^[A-Za-z0-9_./@-]+:[A-Za-z_$][A-Za-z0-9_$]*$")
_TOOL_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]{0,63}$")


class SubagentRuntime(StrEnum):
    PYTHON = "python"
    NODE = "node"


@dataclass(frozen=True, slots=True)
class ResourceOverride:
    """Per-subagent limits; ``None`` inherits the parent policy's value."""

    memory_mb: int | None = None
    cpu_cores: float | None = None
    timeout_seconds: float | None = None

    def as_kwargs(self) -> dict[str, Any]:
        return {
            "memory_mb": self.memory_mb,
            "cpu_cores": self.cpu_cores,
            "timeout_seconds": self.timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResourceOverride:
        unknown = set(data) - {"memory_mb", "cpu_cores", "timeout_seconds"}
        if unknown:
            raise ConfigurationError(f"unknown resource override keys: {sorted(unknown)}")
        return cls(
            memory_mb=data.get("memory_mb"),
            cpu_cores=data.get("cpu_cores"),
            timeout_seconds=data.get("timeout_seconds"),
        )


@dataclass(frozen=True, slots=True)
class SubagentDescriptor:
    """Declarative description of one child agent.

    ``tools`` maps a tool name to a ``module:function`` entry point resolved by
    the worker inside the isolate. ``env`` values may contain
    ``${credential:NAME}`` references, expanded only when the worker starts.
    """

    name: str
    runtime: SubagentRuntime
    init_script: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    tools: Mapping[str, str] = field(default_factory=dict)
    model_provider: ModelProviderSelection | None = None
    resources: ResourceOverride | None = None
    description: str = ""
    id: str | None = None

    def __post_init__(self) -> None:
        issues: list[str] = []
        if not isinstance(self.name, str) or not self.name.strip():
            issues.append("name: required")
        try:
            object.__setattr__(self, "runtime", SubagentRuntime(str(self.runtime).lower()))
        except ValueError:
            allowed = ", ".join(item.value for item in SubagentRuntime)
            issues.append(f"runtime: expected one of {allowed}, got {self.runtime!r}")
        if self.id is not None:
            try:
                validate_subagent_id(self.id)
            except ValueError as exc:
                issues.append(f"id: {exc}")
        for key, value in self.env.items():
            if not isinstance(key, str) or not isinstance(value, str):
                issues.append(f"env.{key}: keys and values must be strings")
        for tool, entry in self.tools.items():
            if not _TOOL_NAME_RE.match(str(tool)):
                issues.append(f"tools.{tool}: invalid tool name")
            if not isinstance(entry, str) or not _ENTRY_POINT_RE.match(entry):
                issues.append(f"tools.{tool}: entry point must look like 'module:function'")
        if issues:
            raise ConfigurationError("invalid subagent descriptor", issues=issues)
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "env", dict(self.env))
        object.__setattr__(self, "tools", dict(self.tools))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "runtime": self.runtime.value,
            "description": self.description,
            "init_script": self.init_script,
            "env": dict(self.env),
            "tools": dict(self.tools),
            "model_provider": (
                None if self.model_provider is None else self.model_provider.to_dict()
            ),
            "resources": None if self.resources is None else self.resources.as_kwargs(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SubagentDescriptor:
        if not isinstance(data, Mapping):
            raise ConfigurationError("subagent descriptor must be an object")
        provider = data.get("model_provider")
        resources = data.get("resources")
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            runtime=data.get("runtime", ""),
            description=str(data.get("description", "")),
            init_script=str(data.get("init_script", "")),
            env=dict(data.get("env") or {}),
            tools=dict(data.get("tools") or {}),
            model_provider=(
                None
                if provider is None
                else ModelProviderSelection.from_dict(provider, "subagent.model_provider")
            ),
            resources=None if resources is None else ResourceOverride.from_dict(resources),
        )


__all__ = ["ResourceOverride", "SubagentDescriptor", "SubagentRuntime"]
