"""
agentforge — unit tests for the GitHub Actions client

File: tests/unit/compilation/test_ci_client.py

Purpose
- Verify request shapes and error mapping against ``httpx.MockTransport``.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from agentforge.compilation import CIProviderError, GitHubActionsClient
from agentforge.compilation.ci_client import GITHUB_API_VERSION
from agentforge.errors import ConfigurationError
from agentforge.security.redaction import SecretRegistry


def _client(
    handler: Callable[[httpx.Request], httpx.Response], *, ref: str = "main"
) -> GitHubActionsClient:
    return GitHubActionsClient(
        "acme",
        "agents",
        "ghp-test-token",
        ref=ref,
        transport=httpx.MockTransport(handler),
        registry=SecretRegistry(),
    )


async def test_dispatch_posts_ref_and_inputs() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    await _client(handler, ref="release").dispatch_workflow({"job_id": "j"})

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/repos/acme/agents/actions/workflows/compile-agent.yml/dispatches"
    assert request.headers["Authorization"] == "Bearer ghp-test-token"
    assert request.headers["X-GitHub-Api-Version"] == GITHUB_API_VERSION
    assert json.loads(request.content) == {"ref": "release", "inputs": {"job_id": "j"}}


async def test_list_runs_parses_and_skips_malformed_items() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["per_page"] == "50"
        return httpx.Response(
            200,
            json={
                "workflow_runs": [
                    {
                        "id": 11,
                        "name": "Compile bot - Job j",
                        "status": "in_progress",
                        "head_commit": {"message": "msg"},
                    },
                    {"name": "no id"},
                ]
            },
        )

    runs = await _client(handler).list_workflow_runs()

    assert len(runs) == 1
    assert runs[0].id == 11
    assert runs[0].status == "in_progress"
    assert runs[0].head_commit_message == "msg"


async def test_list_jobs_exposes_failed_step() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "jobs": [
                    {
                        "id": 5,
                        "name": "compile",
                        "conclusion": "failure",
                        "steps": [
                            {"name": "Setup Go", "conclusion": "success"},
                            {"name": "Compile native plugin", "conclusion": "failure"},
                        ],
                    }
                ]
            },
        )

    jobs = await _client(handler).list_run_jobs(9)

    step = jobs[0].failed_step()
    assert step is not None and step.name == "Compile native plugin"


async def test_error_status_keeps_raw_body() -> None:
    body = {"message": "Workflow does not have 'workflow_dispatch' trigger", "x": "y" * 300}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json=body)

    with pytest.raises(CIProviderError) as excinfo:
        await _client(handler).dispatch_workflow({})

    assert excinfo.value.status == 422
    assert json.loads(excinfo.value.raw_body) == body
    assert str(excinfo.value) == (
        "CI dispatch failed (HTTP 422): Workflow does not have 'workflow_dispatch' trigger"
    )


async def test_transport_errors_are_provider_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(CIProviderError, match="timed out after 30s"):
        await _client(handler).list_run_artifacts(1)


def test_token_is_registered_for_redaction() -> None:
    registry = SecretRegistry()

    GitHubActionsClient("acme", "agents", "ghp-secret", registry=registry)

    assert registry.snapshot() == ("ghp-secret",)


def test_constructor_reports_missing_settings() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        GitHubActionsClient("", "agents", "", registry=SecretRegistry())

    assert excinfo.value.issues == ("owner: required", "token: required")


def test_from_config_requires_token_and_repository() -> None:
    config = {"owner": "acme", "repo": "agents", "token_env": "CI_TOKEN"}

    assert GitHubActionsClient.from_config(config, environ={}) is None
    client = GitHubActionsClient.from_config(config, environ={"CI_TOKEN": "t-123"})

    assert client is not None
    assert client.repository == "acme/agents"
    assert client.actions_url == "https://github.com/acme/agents/actions"
    assert client.artifact_browser_url(1, 2) == (
        "https://github.com/acme/agents/actions/runs/1/artifacts/2"
    )
