"""
agentforge — tool registry

File: src/agentforge/runtime/registry.py

Purpose
- Map tool names to callables registered ahead of time, and validate call
  arguments against the tool's declared parameters.

Functional requirements
- ``implementation`` references (``module:function``) resolve only inside an
  allowlist of module prefixes; source text is never evaluated.
- Missing required parameters, unknown parameters and mistyped values are
  rejected before the callable runs.
- Declared defaults fill in for omitted optional parameters.
- Sync and async callables are both supported.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Final

import structlog

from agentforge.domain.models import AgentBuildSpec, ToolDefinition, ToolParameter
from agentforge.errors import AgentForgeError, ConfigurationError

DEFAULT_ALLOWED_PREFIXES: Final[tuple[str, ...]] = ("agentforge.runtime.builtin_tools",)

ToolCallable = Callable[..., Any]

# bool is an int subclass; it is excluded from the numeric types explicitly.
_TYPE_CHECKS: Final[dict[str, Callable[[object], bool]]] = {
    "string": lambda value: isinstance(value, str),
    "number": lambda value: isinstance(value, int | float) and not isinstance(value, bool),
    "integer": lambda value: isinstance(value, int) and not isinstance(value, bool),
    "boolean": lambda value: isinstance(value, bool),
    "object": lambda value: isinstance(value, Mapping),
    "array": lambda value: isinstance(value, list | tuple),
}


class ToolRegistryError(AgentForgeError):
    """Base class for registry failures."""


class ToolRegistrationError(ToolRegistryError, ConfigurationError):
    """An implementation reference is malformed, disallowed or unresolvable."""


class ToolNotRegisteredError(ToolRegistryError, KeyError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"tool {name!r} is not registered")

    def __str__(self) -> str:
        return str(self.args[0])


class ToolArgumentsError(ToolRegistryError, ValueError):
    def __init__(self, tool: str, issues: Iterable[str]) -> None:
        self.tool = tool
        self.issues = tuple(issues)
        super().__init__(f"invalid arguments for tool {tool!r}: " + "; ".join(self.issues))


@dataclass(frozen=True, slots=True)
class RegisteredTool:
    definition: ToolDefinition
    func: ToolCallable

    @property
    def name(self) -> str:
        return self.definition.name

    def describe(self) -> dict[str, object]:
        return {
            "name": self.definition.name,
            "description": self.definition.description,
            "parameters": [parameter.to_dict() for parameter in self.definition.parameters],
            "return_type": self.definition.return_type,
        }


class ToolRegistry:
    """Pre-validated name → callable table for one running agent."""

    def __init__(
        self,
        *,
        allowed_prefixes: Iterable[str] = DEFAULT_ALLOWED_PREFIXES,
        logger: Any | None = None,
    ) -> None:
        self._allowed_prefixes = tuple(prefix.rstrip(".") for prefix in allowed_prefixes)
        self._tools: dict[str, RegisteredTool] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_spec(
        cls,
        spec: AgentBuildSpec,
        *,
        allowed_prefixes: Iterable[str] = DEFAULT_ALLOWED_PREFIXES,
        logger: Any | None = None,
    ) -> ToolRegistry:
        registry = cls(allowed_prefixes=allowed_prefixes, logger=logger)
        for definition in spec.tools:
            registry.register(definition)
        return registry

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._tools))

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> RegisteredTool:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotRegisteredError(name) from None

    def describe(self) -> list[dict[str, object]]:
        return [self._tools[name].describe() for name in self.names]

    def register(self, definition: ToolDefinition, func: ToolCallable | None = None) -> None:
        """Register ``definition``; without ``func`` its implementation reference is resolved."""

        if definition.name in self._tools:
            raise ToolRegistrationError(f"tool {definition.name!r} is already registered")
        if func is None:
            func = self.resolve(definition.implementation, tool=definition.name)
        elif not callable(func):
            raise ToolRegistrationError(f"tool {definition.name!r}: implementation is not callable")
        self._tools[definition.name] = RegisteredTool(definition=definition, func=func)
        self._logger.debug("tool_registered", tool=definition.name)

    def resolve(self, reference: str | None, *, tool: str = "") -> ToolCallable:
        """Import ``module:function`` when ``module`` sits under an allowed prefix."""

        if not reference:
            raise ToolRegistrationError(f"tool {tool!r} has no implementation reference")
        module_name, sep, attribute = reference.partition(":")
        if not sep or not module_name or not attribute.isidentifier():
            raise ToolRegistrationError(
                f"tool {tool!r}: implementation must look like 'module:function'"
            )
        if not self._is_allowed(module_name):
            self._logger.warning("tool_implementation_rejected", tool=tool, module=module_name)
            raise ToolRegistrationError(
                f"tool {tool!r}: module {module_name!r} is outside the allowed prefixes"
            )
        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise ToolRegistrationError(
                f"tool {tool!r}: module {module_name!r} cannot be imported"
            ) from exc
        func = getattr(module, attribute, None)
        if func is None or not callable(func):
            raise ToolRegistrationError(
                f"tool {tool!r}: {reference!r} does not name a callable"
            )
        return func

    def bind_arguments(self, name: str, params: Mapping[str, object] | None) -> dict[str, object]:
        """Validated keyword arguments for one call, defaults filled in."""

        tool = self.get(name)
        supplied = dict(params or {})
        declared = {parameter.name: parameter for parameter in tool.definition.parameters}
        issues = [f"{key}: unknown parameter" for key in sorted(set(supplied) - set(declared))]
        bound: dict[str, object] = {}
        for parameter in tool.definition.parameters:
            if parameter.name in supplied:
                issue = _type_issue(parameter, supplied[parameter.name])
                if issue is not None:
                    issues.append(issue)
                bound[parameter.name] = supplied[parameter.name]
            elif parameter.required:
                issues.append(f"{parameter.name}: required")
            elif parameter.default is not None:
                bound[parameter.name] = parameter.default
        if issues:
            raise ToolArgumentsError(name, issues)
        return bound

    async def invoke(self, name: str, params: Mapping[str, object] | None = None) -> object:
        tool = self.get(name)
        arguments = self.bind_arguments(name, params)
        if inspect.iscoroutinefunction(tool.func):
            result = await tool.func(**arguments)
        else:
            result = await asyncio.to_thread(tool.func, **arguments)
        self._logger.info("tool_invoked", tool=name)
        return result

    def _is_allowed(self, module_name: str) -> bool:
        return any(
            module_name == prefix or module_name.startswith(prefix + ".")
            for prefix in self._allowed_prefixes
        )


def _type_issue(parameter: ToolParameter, value: object) -> str | None:
    if value is None and not parameter.required:
        return None
    check = _TYPE_CHECKS.get(parameter.type)
    if check is None or check(value):
        return None
    return f"{parameter.name}: expected {parameter.type}"


__all__ = [
    "DEFAULT_ALLOWED_PREFIXES",
    "RegisteredTool",
    "ToolArgumentsError",
    "ToolNotRegisteredError",
    "ToolRegistrationError",
    "ToolRegistry",
    "ToolRegistryError",
]
