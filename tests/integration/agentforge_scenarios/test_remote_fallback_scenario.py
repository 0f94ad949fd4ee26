"""
agentforge — remote fallback scenario

File: tests/integration/agentforge_scenarios/test_remote_fallback_scenario.py

Purpose
- A sandboxed-bytecode build whose local toolchain is missing is dispatched to
  CI, polled through ``in_progress`` and completes with an artifact locator.

Functional requirements
- Offline; the GitHub Actions API is a scripted ``httpx.MockTransport``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import pytest

from agentforge.compilation import (
    CompilationOrchestrator,
    GitHubActionsClient,
    LocalBuilder,
    StatusPoller,
)
from agentforge.domain.models import (
    AgentBuildSpec,
    BuildMethod,
    BuildTarget,
    CompilationJob,
    JobStatus,
)
from agentforge.security.redaction import SecretRegistry
from agentforge.utils.concurrency import CancellationToken

pytestmark = pytest.mark.integration

_ARTIFACTS_PATH = re.compile(r"/actions/runs/(\d+)/artifacts$")
RUN_ID = 4242


@dataclass
class ScriptedActions:
    """Reports no run, then a running one, then a successful one."""

    inputs: dict[str, Any] = field(default_factory=dict)
    run_queries: int = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/dispatches"):
            self.inputs = json.loads(request.content)["inputs"]
            return httpx.Response(204)
        if path.endswith("/runs"):
            self.run_queries += 1
            return httpx.Response(200, json={"workflow_runs": self._runs()})
        if _ARTIFACTS_PATH.search(path):
            name = f"{self.inputs['agent_name']}-plugin-{self.inputs['job_id']}"
            return httpx.Response(
                200,
                json={
                    "artifacts": [
                        {
                            "id": 99,
                            "name": name,
                            "archive_download_url": "https://api.github.com/zip/99",
                        }
                    ]
                },
            )
        return httpx.Response(404, json={"message": "Not Found"})

    def _runs(self) -> list[dict[str, Any]]:
        if self.run_queries == 1:
            return []
        if self.run_queries == 2:
            status, conclusion = "in_progress", None
        else:
            status, conclusion = "completed", "success"
        run_name = f"Compile {self.inputs['agent_name']} - Job {self.inputs['job_id']}"
        return [{"id": RUN_ID, "name": run_name, "status": status, "conclusion": conclusion}]


async def _no_sleep(seconds: float, cancel_token: CancellationToken | None = None) -> None:
    return None


async def test_missing_toolchain_falls_back_to_ci_and_completes(tmp_path: Path) -> None:
    actions = ScriptedActions()
    ci_client = GitHubActionsClient(
        "acme",
        "agents",
        "ghp-scenario",
        transport=httpx.MockTransport(actions.handler),
        registry=SecretRegistry(),
    )
    builder = LocalBuilder(tmp_path / "out", environ={}, which=lambda _name: None)
    spec = AgentBuildSpec.from_dict(
        {
            "name": "Scenario Agent",
            "version": "1.0.0",
            "build_target": "sandboxed-bytecode",
            "model_provider": {"provider": "openai", "model": "gpt-4o-mini"},
        }
    )
    assert spec.build_target is BuildTarget.SANDBOXED_BYTECODE
    observed: list[JobStatus] = []

    def record(job: CompilationJob) -> None:
        observed.append(job.status)

    async with CompilationOrchestrator(local_builder=builder, ci_client=ci_client) as orch:
        job_id = await orch.submit(spec)
        poller = StatusPoller(
            orch.get_status,
            interval_seconds=0.0,
            max_attempts=10,
            on_update=record,
            sleep=_no_sleep,
        )
        result = await poller.wait(job_id)

    job = result.job
    assert job.method is BuildMethod.REMOTE
    assert actions.inputs["build_target"] == "wasm"
    assert JobStatus.IN_PROGRESS in observed
    assert observed.index(JobStatus.IN_PROGRESS) < observed.index(JobStatus.COMPLETED)
    assert job.status is JobStatus.COMPLETED
    assert job.artifact_url == f"https://github.com/acme/agents/actions/runs/{RUN_ID}/artifacts/99"
