"""
agentforge — agent source rendering

File: src/agentforge/compilation/sources.py

Purpose
- Render the Go sources and the embedded ``config.json`` for one build.

Functional requirements
- Rendering is deterministic for the same spec and job id.
- Undefined template variables are errors, never empty strings.
- Strings reach Go source only as quoted literals.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError

from agentforge.compilation.errors import BuildError
from agentforge.compilation.request import sanitize_agent_name
from agentforge.domain.models import AgentBuildSpec

DEFAULT_GO_VERSION: Final[str] = "1.21"
CONFIG_FILE: Final[str] = "config.json"
SOURCE_TEMPLATES: Final[Mapping[str, str]] = {
    "main.go": "main.go.tmpl",
    "go.mod": "go.mod.tmpl",
}


@dataclass(frozen=True, slots=True)
class RenderedSources:
    """File name -> text for everything written into the build directory."""

    files: Mapping[str, str]

    def __getitem__(self, name: str) -> str:
        return self.files[name]

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self.files))


def go_string(value: object) -> str:
    """Quote ``value`` as a Go interpreted string literal."""

    # JSON string escapes are a subset of Go's; ensure_ascii keeps the literal 7-bit.
    return json.dumps(str(value), ensure_ascii=True)


def build_config_document(spec: AgentBuildSpec, job_id: str) -> dict[str, Any]:
    document = spec.to_dict()
    document["build"] = {
        "job_id": job_id,
        "agent_name": sanitize_agent_name(spec.name),
        "build_target": spec.build_target.value,
        "platform": spec.platform.value,
    }
    return document


def render_agent_sources(
    spec: AgentBuildSpec,
    job_id: str,
    *,
    go_version: str = DEFAULT_GO_VERSION,
    environment: Environment | None = None,
) -> RenderedSources:
    env = environment or _template_environment()
    agent_name = sanitize_agent_name(spec.name)
    context = {
        "agent_name": agent_name,
        "agent_id": spec.agent_id,
        "job_id": job_id,
        "build_target": spec.build_target.value,
        "platform": spec.platform.value,
        "tools": [tool.name for tool in spec.tools],
        "module_name": f"agentforge.local/{agent_name.lower()}",
        "go_version": go_version,
    }
    files: dict[str, str] = {
        CONFIG_FILE: json.dumps(
            build_config_document(spec, job_id), indent=2, sort_keys=True, ensure_ascii=False
        )
        + "\n"
    }
    for output_name, template_name in SOURCE_TEMPLATES.items():
        try:
            files[output_name] = env.get_template(template_name).render(context)
        except TemplateError as exc:
            raise BuildError(f"failed to render {template_name}: {exc}") from exc
    return RenderedSources(files=files)


def _template_environment() -> Environment:
    env = Environment(
        loader=PackageLoader("agentforge.compilation", "templates"),
        undefined=StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
    )
    env.filters["go_string"] = go_string
    return env


__all__ = [
    "CONFIG_FILE",
    "DEFAULT_GO_VERSION",
    "RenderedSources",
    "build_config_document",
    "go_string",
    "render_agent_sources",
]
