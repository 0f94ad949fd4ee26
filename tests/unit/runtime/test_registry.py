"""
agentforge — unit tests for the tool registry

File: tests/unit/runtime/test_registry.py

Purpose
- Allowlisted resolution, argument validation and sync/async invocation.
"""

from __future__ import annotations

import pytest

from agentforge.domain.models import AgentBuildSpec, ToolDefinition, ToolParameter
from agentforge.runtime import (
    ToolArgumentsError,
    ToolNotRegisteredError,
    ToolRegistrationError,
    ToolRegistry,
)
from agentforge.runtime.builtin_tools import analyze


def _definition(**overrides: object) -> ToolDefinition:
    fields: dict[str, object] = {
        "name": "scale",
        "parameters": (
            ToolParameter(name="value", type="number", required=True),
            ToolParameter(name="factor", type="integer", default=2),
            ToolParameter(name="label", type="string"),
        ),
    }
    fields.update(overrides)
    return ToolDefinition(**fields)  # type: ignore[arg-type]


def _scale(value: float, factor: int, label: str | None = None) -> dict[str, object]:
    return {"value": value * factor, "label": label}


def test_from_spec_resolves_builtin_tools() -> None:
    spec = AgentBuildSpec.from_dict(
        {
            "name": "bot",
            "version": "1.0.0",
            "model_provider": {"provider": "openai", "model": "m"},
            "tools": [
                {"name": "analyze", "implementation": "agentforge.runtime.builtin_tools:analyze"},
                {"name": "chat", "implementation": "agentforge.runtime.builtin_tools:chat"},
            ],
        }
    )

    registry = ToolRegistry.from_spec(spec)

    assert registry.names == ("analyze", "chat")
    assert registry.get("analyze").func is analyze
    assert "chat" in registry
    assert len(registry) == 2


@pytest.mark.parametrize(
    ("reference", "message"),
    [
        (None, "has no implementation reference"),
        ("os.path", "must look like 'module:function'"),
        ("os:system", "outside the allowed prefixes"),
        ("agentforge.runtime.builtin_tools_evil:chat", "outside the allowed prefixes"),
        ("agentforge.runtime.builtin_tools:missing", "does not name a callable"),
        ("agentforge.runtime.builtin_tools.nope:chat", "cannot be imported"),
    ],
)
def test_resolve_rejects_unsafe_or_broken_references(reference: str | None, message: str) -> None:
    with pytest.raises(ToolRegistrationError, match=message):
        ToolRegistry().resolve(reference, tool="t")


def test_custom_prefixes_extend_the_allowlist() -> None:
    registry = ToolRegistry(allowed_prefixes=("json.",))

    assert registry.resolve("json:dumps") is not None


def test_duplicate_registration_is_rejected() -> None:
    registry = ToolRegistry()
    registry.register(_definition(), _scale)

    with pytest.raises(ToolRegistrationError, match="already registered"):
        registry.register(_definition(), _scale)


def test_bind_arguments_fills_defaults_and_reports_every_issue() -> None:
    registry = ToolRegistry()
    registry.register(_definition(), _scale)

    assert registry.bind_arguments("scale", {"value": 1.5}) == {"value": 1.5, "factor": 2}

    with pytest.raises(ToolArgumentsError) as excinfo:
        registry.bind_arguments("scale", {"value": True, "factor": 1.5, "extra": 1})

    assert excinfo.value.issues == (
        "extra: unknown parameter",
        "value: expected number",
        "factor: expected integer",
    )


def test_missing_required_parameter() -> None:
    registry = ToolRegistry()
    registry.register(_definition(), _scale)

    with pytest.raises(ToolArgumentsError, match="value: required"):
        registry.bind_arguments("scale", {})


async def test_invoke_sync_and_async_callables() -> None:
    async def shout(text: str) -> str:
        return text.upper()

    registry = ToolRegistry()
    registry.register(_definition(), _scale)
    registry.register(
        ToolDefinition(name="shout", parameters=(ToolParameter(name="text", required=True),)),
        shout,
    )

    assert await registry.invoke("scale", {"value": 2, "label": "x"}) == {"value": 4, "label": "x"}
    assert await registry.invoke("shout", {"text": "hi"}) == "HI"


async def test_invoke_unknown_tool() -> None:
    with pytest.raises(ToolNotRegisteredError, match="'nope' is not registered"):
        await ToolRegistry().invoke("nope")


def test_builtin_analyze_reports_terms() -> None:
    result = analyze("apples and pears\n\napples again")

    assert result["word_count"] == 5
    assert result["line_count"] == 2
    assert result["top_terms"][0] == {"term": "apples", "count": 2}
