"""
agentforge — unit tests for the compilation orchestrator

File: tests/unit/compilation/test_orchestrator.py

Purpose
- Route selection, remote status derivation, failure kinds and job table
  housekeeping against a fake GitHub Actions API.

Functional requirements
- Offline; the CI provider is an ``httpx.MockTransport`` over in-memory state.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest

from agentforge.compilation import (
    BuildArtifact,
    BuildError,
    CompilationOrchestrator,
    GitHubActionsClient,
    JobNotFoundError,
    LocalBuildUnavailableError,
)
from agentforge.compilation.orchestrator import RUN_NOT_FOUND_MESSAGE
from agentforge.domain.events import ProgressEvent, ProgressStatus
from agentforge.domain.models import (
    AgentBuildSpec,
    BuildMethod,
    FailureKind,
    JobStatus,
    utc_now,
)
from agentforge.errors import ConfigurationError
from agentforge.security.redaction import SecretRegistry

_ARTIFACTS_PATH = re.compile(r"/actions/runs/(\d+)/artifacts$")
_JOBS_PATH = re.compile(r"/actions/runs/(\d+)/jobs$")


@dataclass
class FakeGitHub:
    dispatched: list[dict[str, Any]] = field(default_factory=list)
    runs: list[dict[str, Any]] = field(default_factory=list)
    artifacts: dict[int, list[dict[str, Any]]] = field(default_factory=dict)
    jobs: dict[int, list[dict[str, Any]]] = field(default_factory=dict)
    dispatch_status: int = 204
    runs_status: int = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/dispatches"):
            if self.dispatch_status != 204:
                return httpx.Response(self.dispatch_status, json={"message": "Bad credentials"})
            self.dispatched.append(json.loads(request.content))
            return httpx.Response(204)
        if path.endswith("/runs"):
            if self.runs_status != 200:
                return httpx.Response(self.runs_status, text="upstream unavailable")
            return httpx.Response(200, json={"workflow_runs": self.runs})
        if match := _ARTIFACTS_PATH.search(path):
            return httpx.Response(200, json={"artifacts": self.artifacts.get(int(match[1]), [])})
        if match := _JOBS_PATH.search(path):
            return httpx.Response(200, json={"jobs": self.jobs.get(int(match[1]), [])})
        return httpx.Response(404, json={"message": "Not Found"})

    def client(self) -> GitHubActionsClient:
        return GitHubActionsClient(
            "acme",
            "agents",
            "ghp-test",
            transport=httpx.MockTransport(self.handler),
            registry=SecretRegistry(),
        )

    def add_run(self, job_id: str, status: str, conclusion: str | None = None) -> int:
        run_id = 100 + len(self.runs)
        self.runs.insert(
            0,
            {
                "id": run_id,
                "name": f"Compile Support_Bot - Job {job_id}",
                "status": status,
                "conclusion": conclusion,
            },
        )
        return run_id


class UnavailableBuilder:
    def check_available(self) -> str:
        raise LocalBuildUnavailableError("Go toolchain 'go' not found")

    async def build(self, spec: AgentBuildSpec, job_id: str) -> BuildArtifact:
        raise AssertionError("build must not run")


@dataclass
class StubBuilder:
    root: Path
    error: BaseException | None = None
    built: list[str] = field(default_factory=list)

    def check_available(self) -> str:
        return "/usr/bin/go"

    async def build(self, spec: AgentBuildSpec, job_id: str) -> BuildArtifact:
        self.built.append(job_id)
        if self.error is not None:
            raise self.error
        output = self.root / job_id
        output.mkdir(parents=True)
        artifact = output / f"agent_{job_id}.wasm"
        artifact.write_bytes(b"\0asm")
        return BuildArtifact(
            job_id=job_id,
            artifact_path=artifact,
            output_dir=output,
            files=(artifact.name, "deployment_info.json"),
            deployment_info_path=output / "deployment_info.json",
            duration_ms=1.0,
        )


@dataclass
class RecordingPublisher:
    events: list[ProgressEvent] = field(default_factory=list)

    def publish(self, event: ProgressEvent) -> None:
        self.events.append(event)


class ExplodingPublisher:
    def publish(self, event: ProgressEvent) -> None:
        raise RuntimeError("socket closed")


def _spec() -> AgentBuildSpec:
    return AgentBuildSpec.from_dict(
        {
            "name": "Support Bot",
            "version": "1.0.0",
            "model_provider": {"provider": "openai", "model": "gpt-4o-mini"},
        }
    )


async def test_unavailable_local_build_dispatches_remotely() -> None:
    github = FakeGitHub()
    publisher = RecordingPublisher()
    orchestrator = CompilationOrchestrator(
        local_builder=UnavailableBuilder(),  # type: ignore[arg-type]
        ci_client=github.client(),
        publisher=publisher,
    )
    spec = _spec()

    job_id = await orchestrator.submit(spec)

    job = await orchestrator.get_status(job_id)
    assert job.method is BuildMethod.REMOTE
    assert job.status is JobStatus.PENDING
    assert job.error is None
    inputs = github.dispatched[0]["inputs"]
    assert inputs["job_id"] == job_id
    assert inputs["agent_name"] == "Support_Bot"
    assert (inputs["build_target"], inputs["platform"]) == ("wasm", "linux")
    assert AgentBuildSpec.from_dict(json.loads(inputs["config"])) == spec
    progress = [event.progress for event in publisher.events]
    assert progress == sorted(progress)
    assert all(event.status is ProgressStatus.IN_PROGRESS for event in publisher.events)


async def test_remote_status_follows_the_run() -> None:
    github = FakeGitHub()
    orchestrator = CompilationOrchestrator(ci_client=github.client())
    job_id = await orchestrator.submit(_spec())

    pending = await orchestrator.get_status(job_id)
    assert pending.status is JobStatus.PENDING
    assert pending.logs[-1] == RUN_NOT_FOUND_MESSAGE

    run_id = github.add_run(job_id, "in_progress")
    running = await orchestrator.get_status(job_id)
    assert running.status is JobStatus.IN_PROGRESS
    assert running.run_id == run_id

    github.runs[0].update(status="completed", conclusion="success")
    github.artifacts[run_id] = [
        {
            "id": 7,
            "name": f"Support_Bot-plugin-{job_id}",
            "archive_download_url": "https://api.github.com/zip/7",
        }
    ]
    done = await orchestrator.get_status(job_id)

    assert done.status is JobStatus.COMPLETED
    assert done.progress == 100
    assert done.artifact_url == f"https://github.com/acme/agents/actions/runs/{run_id}/artifacts/7"
    assert done.raw_artifact_url == "https://api.github.com/zip/7"
    assert done.history == [
        JobStatus.QUEUED,
        JobStatus.PENDING,
        JobStatus.IN_PROGRESS,
        JobStatus.COMPLETED,
    ]


async def test_successful_run_without_artifacts_leaves_download_url_unset() -> None:
    github = FakeGitHub()
    orchestrator = CompilationOrchestrator(ci_client=github.client())
    job_id = await orchestrator.submit(_spec())
    run_id = github.add_run(job_id, "completed", "success")
    github.artifacts[run_id] = []

    job = await orchestrator.get_status(job_id)

    assert job.status is JobStatus.COMPLETED
    assert job.progress == 100
    assert job.artifact_url is None
    assert job.raw_artifact_url is None
    assert job.to_status_dict()["artifact_url"] is None


async def test_failed_run_names_the_failing_step() -> None:
    github = FakeGitHub()
    orchestrator = CompilationOrchestrator(ci_client=github.client())
    job_id = await orchestrator.submit(_spec())
    run_id = github.add_run(job_id, "completed", "failure")
    github.jobs[run_id] = [
        {
            "id": 1,
            "name": "compile",
            "conclusion": "failure",
            "steps": [
                {"name": "Render agent sources", "conclusion": "success"},
                {"name": "Compile sandboxed bytecode", "conclusion": "failure"},
            ],
        }
    ]

    job = await orchestrator.get_status(job_id)

    assert job.status is JobStatus.FAILED
    assert job.failure_kind is FailureKind.BUILD
    assert job.error == "Compilation failed in step: compile / Compile sandboxed bytecode"


async def test_status_query_failure_does_not_change_stored_job() -> None:
    github = FakeGitHub()
    orchestrator = CompilationOrchestrator(ci_client=github.client())
    job_id = await orchestrator.submit(_spec())
    github.runs_status = 502

    view = await orchestrator.get_status(job_id)

    assert view.status is JobStatus.FAILED
    assert view.failure_kind is FailureKind.STATUS_QUERY
    assert view.error is not None and view.error.startswith("Status check failed")

    github.runs_status = 200
    github.add_run(job_id, "queued")
    recovered = await orchestrator.get_status(job_id)
    assert recovered.status is JobStatus.IN_PROGRESS
    assert recovered.failure_kind is None


async def test_dispatch_failure_is_recorded_on_the_job() -> None:
    github = FakeGitHub(dispatch_status=401)
    publisher = RecordingPublisher()
    orchestrator = CompilationOrchestrator(ci_client=github.client(), publisher=publisher)

    job_id = await orchestrator.submit(_spec())

    job = await orchestrator.get_status(job_id)
    assert job.status is JobStatus.FAILED
    assert job.failure_kind is FailureKind.DISPATCH
    assert "Bad credentials" in (job.error or "")
    assert publisher.events[-1].status is ProgressStatus.ERROR


async def test_no_local_builder_and_no_ci_fails_dispatch() -> None:
    orchestrator = CompilationOrchestrator()

    job_id = await orchestrator.submit(_spec())

    job = await orchestrator.get_status(job_id)
    assert job.status is JobStatus.FAILED
    assert job.failure_kind is FailureKind.DISPATCH
    assert not orchestrator.remote_available


async def test_local_build_completes_with_file_url(tmp_path: Path) -> None:
    builder = StubBuilder(tmp_path)
    orchestrator = CompilationOrchestrator(local_builder=builder)  # type: ignore[arg-type]
    async with orchestrator:
        job_id = await orchestrator.submit(_spec())
        await orchestrator.wait_local(job_id)

        job = await orchestrator.get_status(job_id)

    assert builder.built == [job_id]
    assert job.method is BuildMethod.LOCAL
    assert job.status is JobStatus.COMPLETED
    assert job.artifact_url == (tmp_path / job_id / f"agent_{job_id}.wasm").as_uri()
    assert f"artifact file: agent_{job_id}.wasm" in job.logs


async def test_local_build_failure_keeps_compiler_output(tmp_path: Path) -> None:
    builder = StubBuilder(tmp_path, error=BuildError("go build exited with code 2", output="E1"))
    orchestrator = CompilationOrchestrator(local_builder=builder)  # type: ignore[arg-type]
    job_id = await orchestrator.submit(_spec())
    await orchestrator.wait_local(job_id)

    job = await orchestrator.get_status(job_id)

    assert job.failure_kind is FailureKind.BUILD
    assert job.error == "go build exited with code 2"
    assert "E1" in job.logs


async def test_local_build_that_becomes_unavailable_goes_remote(tmp_path: Path) -> None:
    github = FakeGitHub()
    builder = StubBuilder(tmp_path, error=LocalBuildUnavailableError("disk full"))
    orchestrator = CompilationOrchestrator(
        local_builder=builder, ci_client=github.client()  # type: ignore[arg-type]
    )
    job_id = await orchestrator.submit(_spec())
    await orchestrator.wait_local(job_id)

    job = await orchestrator.get_status(job_id)

    assert job.method is BuildMethod.REMOTE
    assert job.status is JobStatus.IN_PROGRESS
    assert len(github.dispatched) == 1


async def test_failing_publisher_never_fails_a_build(tmp_path: Path) -> None:
    orchestrator = CompilationOrchestrator(
        local_builder=StubBuilder(tmp_path),  # type: ignore[arg-type]
        publisher=ExplodingPublisher(),
    )
    job_id = await orchestrator.submit(_spec())
    await orchestrator.wait_local(job_id)

    assert (await orchestrator.get_status(job_id)).status is JobStatus.COMPLETED


async def test_submit_rejects_non_specs_without_creating_jobs() -> None:
    orchestrator = CompilationOrchestrator()

    with pytest.raises(ConfigurationError, match="expected AgentBuildSpec"):
        await orchestrator.submit({"name": "x"})  # type: ignore[arg-type]
    assert await orchestrator.list_jobs() == []


async def test_unknown_job_id() -> None:
    with pytest.raises(JobNotFoundError):
        await CompilationOrchestrator().get_status("compile-1700000000000-zzzzzzzzz")


async def test_release_and_prune(tmp_path: Path) -> None:
    orchestrator = CompilationOrchestrator(
        local_builder=StubBuilder(tmp_path),  # type: ignore[arg-type]
        job_retention_seconds=60,
    )
    first = await orchestrator.submit(_spec())
    second = await orchestrator.submit(_spec())
    await orchestrator.wait_local(first)
    await orchestrator.wait_local(second)

    assert await orchestrator.release(first) is True
    assert await orchestrator.release(first) is False
    assert await orchestrator.prune_expired(utc_now() + timedelta(seconds=10)) == []
    assert await orchestrator.prune_expired(utc_now() + timedelta(minutes=5)) == [second]
    assert await orchestrator.list_jobs() == []


async def test_track_remote_adopts_foreign_job() -> None:
    github = FakeGitHub()
    orchestrator = CompilationOrchestrator(ci_client=github.client())
    job_id = "compile-1700000000000-abc123xyz"

    tracked = await orchestrator.track_remote(_spec(), job_id)
    github.add_run(job_id, "in_progress")

    assert tracked.status is JobStatus.PENDING
    assert (await orchestrator.get_status(job_id)).status is JobStatus.IN_PROGRESS
    assert github.dispatched == []

    with pytest.raises(ConfigurationError, match="invalid job id"):
        await orchestrator.track_remote(_spec(), "job-1")
    with pytest.raises(ConfigurationError, match="remote CI is not configured"):
        await CompilationOrchestrator().track_remote(_spec(), job_id)
