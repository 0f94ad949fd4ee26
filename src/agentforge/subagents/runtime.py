"""Per-runtime launch details for subagent workers."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from importlib import resources

from agentforge.subagents.descriptor import SubagentRuntime

TOOLS_MANIFEST_FILE = "tools.json"


@dataclass(frozen=True, slots=True)
class RuntimeLaunch:
    """How to run the worker and the init script for one runtime."""

    runtime: SubagentRuntime
    executable: str
    worker_file: str
    init_file: str
    template: str

    def worker_source(self) -> str:
        return (
            resources.files("agentforge.subagents")
            .joinpath("worker_templates", self.template)
            .read_text(encoding="utf-8")
        )


def runtime_launch(
    runtime: SubagentRuntime,
    *,
    python_executable: str = "python3",
    node_executable: str = "node",
) -> RuntimeLaunch:
    if runtime is SubagentRuntime.PYTHON:
        return RuntimeLaunch(
            runtime=runtime,
            executable=python_executable,
            worker_file="agentforge_worker.py",
            init_file="agentforge_init.py",
            template="python_worker.tmpl",
        )
    return RuntimeLaunch(
        runtime=runtime,
        executable=node_executable,
        worker_file="agentforge_worker.js",
        init_file="agentforge_init.js",
        template="node_worker.tmpl",
    )


def render_tool_manifest(tools: Mapping[str, str]) -> str:
    return json.dumps(dict(sorted(tools.items())), indent=2) + "\n"


__all__ = ["TOOLS_MANIFEST_FILE", "RuntimeLaunch", "render_tool_manifest", "runtime_launch"]
