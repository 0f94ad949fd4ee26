"""
agentforge — GitHub Actions client

File: src/agentforge/compilation/ci_client.py

Purpose
- The four CI calls the orchestrator needs: dispatch a workflow, list recent
  runs, list a run's artifacts and list a run's jobs.

Functional requirements
- Every call runs with an explicit timeout.
- Non-2xx responses and transport failures raise ``CIProviderError``; the raw
  body is kept on the exception, the message stays short.
- The token is registered for redaction and never logged.
"""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

import httpx
import structlog

from agentforge.compilation.errors import CIProviderError
from agentforge.constants import (
    DEFAULT_CI_API_URL,
    DEFAULT_CI_REF,
    DEFAULT_CI_RUNS_PAGE_SIZE,
    DEFAULT_CI_WEB_URL,
    DEFAULT_CI_WORKFLOW,
)
from agentforge.errors import ConfigurationError
from agentforge.security.redaction import SecretRegistry, global_secret_registry

GITHUB_API_VERSION: Final[str] = "2022-11-28"
DEFAULT_CI_TIMEOUT_SECONDS: Final[float] = 30.0
_MESSAGE_BODY_LIMIT: Final[int] = 200


@dataclass(frozen=True, slots=True)
class WorkflowRun:
    id: int
    name: str = ""
    display_title: str = ""
    head_commit_message: str = ""
    status: str = ""
    conclusion: str | None = None
    created_at: str | None = None
    html_url: str | None = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> WorkflowRun:
        head_commit = payload.get("head_commit")
        message = head_commit.get("message") if isinstance(head_commit, Mapping) else None
        return cls(
            id=int(payload["id"]),
            name=str(payload.get("name") or ""),
            display_title=str(payload.get("display_title") or ""),
            head_commit_message=str(message or ""),
            status=str(payload.get("status") or ""),
            conclusion=payload.get("conclusion"),
            created_at=payload.get("created_at"),
            html_url=payload.get("html_url"),
        )

    def summary(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "display_title": self.display_title,
            "status": self.status,
            "conclusion": self.conclusion,
            "created_at": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class RunArtifact:
    id: int
    name: str
    size_in_bytes: int = 0
    archive_download_url: str = ""
    expired: bool = False

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> RunArtifact:
        return cls(
            id=int(payload["id"]),
            name=str(payload.get("name") or ""),
            size_in_bytes=int(payload.get("size_in_bytes") or 0),
            archive_download_url=str(payload.get("archive_download_url") or ""),
            expired=bool(payload.get("expired", False)),
        )


@dataclass(frozen=True, slots=True)
class RunStep:
    name: str
    status: str = ""
    conclusion: str | None = None


@dataclass(frozen=True, slots=True)
class RunJob:
    id: int
    name: str
    status: str = ""
    conclusion: str | None = None
    steps: tuple[RunStep, ...] = field(default_factory=tuple)

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> RunJob:
        steps = payload.get("steps") or []
        return cls(
            id=int(payload["id"]),
            name=str(payload.get("name") or ""),
            status=str(payload.get("status") or ""),
            conclusion=payload.get("conclusion"),
            steps=tuple(
                RunStep(
                    name=str(step.get("name") or ""),
                    status=str(step.get("status") or ""),
                    conclusion=step.get("conclusion"),
                )
                for step in steps
                if isinstance(step, Mapping)
            ),
        )

    def failed_step(self) -> RunStep | None:
        return next((step for step in self.steps if step.conclusion == "failure"), None)


class GitHubActionsClient:
    """Thin async client over the GitHub Actions REST API."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        *,
        workflow: str = DEFAULT_CI_WORKFLOW,
        ref: str = DEFAULT_CI_REF,
        api_url: str = DEFAULT_CI_API_URL,
        web_url: str = DEFAULT_CI_WEB_URL,
        timeout_seconds: float = DEFAULT_CI_TIMEOUT_SECONDS,
        runs_page_size: int = DEFAULT_CI_RUNS_PAGE_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
        registry: SecretRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        issues = [
            f"{name}: required"
            for name, value in (("owner", owner), ("repo", repo), ("token", token))
            if not value
        ]
        if timeout_seconds <= 0:
            issues.append("timeout_seconds: must be > 0")
        if issues:
            raise ConfigurationError("GitHub Actions client is not configured", issues=issues)
        self._owner = owner
        self._repo = repo
        self._token = token
        self._workflow = workflow
        self._ref = ref
        self._api_url = api_url.rstrip("/")
        self._web_url = web_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._runs_page_size = runs_page_size
        self._transport = transport
        (registry if registry is not None else global_secret_registry()).register(token)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        ci_config: Mapping[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any | None = None,
    ) -> GitHubActionsClient | None:
        """Client for a validated ``[ci]`` section; ``None`` when no token is set."""

        env = os.environ if environ is None else environ
        token = env.get(str(ci_config.get("token_env") or "GITHUB_TOKEN"), "").strip()
        if not token or not ci_config.get("owner") or not ci_config.get("repo"):
            return None
        return cls(
            str(ci_config["owner"]),
            str(ci_config["repo"]),
            token,
            workflow=str(ci_config.get("workflow") or DEFAULT_CI_WORKFLOW),
            ref=str(ci_config.get("ref") or DEFAULT_CI_REF),
            api_url=str(ci_config.get("api_url") or DEFAULT_CI_API_URL),
            web_url=str(ci_config.get("web_url") or DEFAULT_CI_WEB_URL),
            timeout_seconds=float(
                ci_config.get("timeout_seconds") or DEFAULT_CI_TIMEOUT_SECONDS
            ),
            runs_page_size=int(ci_config.get("runs_page_size") or DEFAULT_CI_RUNS_PAGE_SIZE),
            transport=transport,
            logger=logger,
        )

    @property
    def repository(self) -> str:
        return f"{self._owner}/{self._repo}"

    @property
    def actions_url(self) -> str:
        return f"{self._web_url}/{self._owner}/{self._repo}/actions"

    def artifact_browser_url(self, run_id: int, artifact_id: int) -> str:
        return f"{self.actions_url}/runs/{run_id}/artifacts/{artifact_id}"

    async def dispatch_workflow(self, inputs: Mapping[str, str]) -> None:
        await self._request(
            "dispatch",
            "POST",
            f"/actions/workflows/{self._workflow}/dispatches",
            body={"ref": self._ref, "inputs": dict(inputs)},
            expected=(204,),
        )

    async def list_workflow_runs(self, per_page: int | None = None) -> list[WorkflowRun]:
        payload = await self._request(
            "list_runs",
            "GET",
            f"/actions/workflows/{self._workflow}/runs",
            params={"per_page": per_page or self._runs_page_size},
        )
        return [WorkflowRun.from_api(item) for item in _items(payload, "workflow_runs")]

    async def list_run_artifacts(self, run_id: int) -> list[RunArtifact]:
        payload = await self._request(
            "list_artifacts", "GET", f"/actions/runs/{run_id}/artifacts"
        )
        return [RunArtifact.from_api(item) for item in _items(payload, "artifacts")]

    async def list_run_jobs(self, run_id: int) -> list[RunJob]:
        payload = await self._request("list_jobs", "GET", f"/actions/runs/{run_id}/jobs")
        return [RunJob.from_api(item) for item in _items(payload, "jobs")]

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        body: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        expected: tuple[int, ...] = (200,),
    ) -> Any:
        url = f"{self._api_url}/repos/{self._owner}/{self._repo}{path}"
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        started = time.perf_counter()
        async with httpx.AsyncClient(
            transport=self._transport, timeout=httpx.Timeout(self._timeout_seconds)
        ) as client:
            try:
                response = await client.request(
                    method, url, headers=headers, json=body, params=params
                )
            except httpx.TimeoutException as exc:
                self._log_failure(operation, started, reason="timeout")
                raise CIProviderError(
                    operation, f"timed out after {self._timeout_seconds:g}s"
                ) from exc
            except httpx.HTTPError as exc:
                self._log_failure(operation, started, reason=type(exc).__name__)
                raise CIProviderError(operation, f"transport error ({type(exc).__name__})") from exc

        if response.status_code not in expected:
            self._log_failure(operation, started, reason="http_status", status=response.status_code)
            raise CIProviderError(
                operation,
                _short_message(response) or response.reason_phrase,
                status=response.status_code,
                raw_body=response.text,
            )
        self._logger.debug(
            "ci_request_completed",
            operation=operation,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise CIProviderError(
                operation, "response body is not JSON", status=response.status_code
            ) from exc

    def _log_failure(self, operation: str, started: float, **fields: Any) -> None:
        self._logger.warning(
            "ci_request_failed",
            operation=operation,
            repository=self.repository,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 3),
            **fields,
        )


def _items(payload: Any, key: str) -> list[Mapping[str, Any]]:
    if not isinstance(payload, Mapping):
        return []
    items = payload.get(key)
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, Mapping) and "id" in item]


def _short_message(response: httpx.Response) -> str:
    # GitHub error bodies are {"message": ..., "documentation_url": ...}.
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, Mapping) and isinstance(payload.get("message"), str):
        return payload["message"][:_MESSAGE_BODY_LIMIT]
    return response.text.strip()[:_MESSAGE_BODY_LIMIT]


__all__ = [
    "DEFAULT_CI_TIMEOUT_SECONDS",
    "GITHUB_API_VERSION",
    "GitHubActionsClient",
    "RunArtifact",
    "RunJob",
    "RunStep",
    "WorkflowRun",
]
