"""
agentforge — compilation orchestrator

File: src/agentforge/compilation/orchestrator.py

Purpose
- Own the job table: accept build specs, pick the local or remote build path,
  and answer status queries for the UI's polling loop.

Functional requirements
- Invalid specs raise ``ConfigurationError`` from ``submit`` and never become jobs.
- A local build that is unavailable turns into a remote dispatch without any
  user-visible error. Dispatch failures and build failures are recorded on the
  job with their own failure kind.
- Remote status is derived fresh from the CI provider on every query; the job
  table only ever moves forward.
- A failed status query is reported on the returned view (kind
  ``status_query``) and never changes the stored job's status.
- Progress events are best effort; a failing publisher never fails a build.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Final

import httpx
import structlog

from agentforge.compilation.artifacts import find_artifact, find_run
from agentforge.compilation.ci_client import GitHubActionsClient, WorkflowRun
from agentforge.compilation.errors import (
    BuildError,
    CIProviderError,
    JobNotFoundError,
    LocalBuildUnavailableError,
)
from agentforge.compilation.local_builder import LocalBuilder
from agentforge.compilation.request import sanitize_agent_name
from agentforge.constants import DEFAULT_JOB_RETENTION_SECONDS
from agentforge.domain.events import ProgressEvent, ProgressStatus, ProgressStep
from agentforge.domain.ids import generate_job_id
from agentforge.domain.models import (
    AgentBuildSpec,
    BuildMethod,
    CompilationJob,
    FailureKind,
    JobStatus,
    utc_now,
)
from agentforge.errors import ConfigurationError
from agentforge.observability.events import ProgressPublisher
from agentforge.observability.logging import correlation_scope
from agentforge.utils.concurrency import ReadWriteLock

# CI run states that mean "located and not finished yet".
ACTIVE_RUN_STATES: Final[frozenset[str]] = frozenset(
    {"queued", "in_progress", "waiting", "requested", "pending"}
)
REMOTE_IN_PROGRESS: Final[int] = 80
RUN_NOT_FOUND_MESSAGE: Final[str] = (
    "Workflow run not found yet; the CI provider may still be scheduling it"
)

JobIdFactory = Callable[[], str]
Clock = Callable[[], datetime]


class CompilationOrchestrator:
    """Routes builds to the local builder or the CI workflow and tracks them."""

    def __init__(
        self,
        *,
        local_builder: LocalBuilder | None = None,
        ci_client: GitHubActionsClient | None = None,
        publisher: ProgressPublisher | None = None,
        job_retention_seconds: float = DEFAULT_JOB_RETENTION_SECONDS,
        job_id_factory: JobIdFactory = generate_job_id,
        clock: Clock = utc_now,
        logger: Any | None = None,
    ) -> None:
        if job_retention_seconds <= 0:
            raise ConfigurationError("job_retention_seconds must be > 0")
        self._local_builder = local_builder
        self._ci_client = ci_client
        self._publisher = publisher
        self._retention = timedelta(seconds=job_retention_seconds)
        self._job_id_factory = job_id_factory
        self._clock = clock
        self._jobs: dict[str, CompilationJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = ReadWriteLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
        publisher: ProgressPublisher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: Any | None = None,
    ) -> CompilationOrchestrator:
        orchestrator = config["orchestrator"]
        builder = LocalBuilder(
            orchestrator["output_dir"],
            build_dir=orchestrator.get("build_dir") or None,
            go_binary=orchestrator.get("go_binary") or "go",
            enabled=bool(orchestrator.get("local_build_enabled", True)),
            environ=environ,
            logger=logger,
        )
        return cls(
            local_builder=builder,
            ci_client=GitHubActionsClient.from_config(
                config["ci"], environ=environ, transport=transport, logger=logger
            ),
            publisher=publisher,
            job_retention_seconds=float(
                orchestrator.get("job_retention_seconds") or DEFAULT_JOB_RETENTION_SECONDS
            ),
            logger=logger,
        )

    @property
    def remote_available(self) -> bool:
        return self._ci_client is not None

    async def submit(self, spec: AgentBuildSpec) -> str:
        """Validate ``spec``, create its job and start the build; returns the job id."""

        if not isinstance(spec, AgentBuildSpec):
            raise ConfigurationError(f"expected AgentBuildSpec, got {type(spec).__name__}")
        spec.validate()

        job_id = self._job_id_factory()
        job = CompilationJob(job_id=job_id, spec=spec)
        async with self._lock.write():
            if job_id in self._jobs:
                raise ConfigurationError(f"job id {job_id!r} is already in use")
            self._jobs[job_id] = job

        with correlation_scope(job_id=job_id):
            self._logger.info(
                "compilation_submitted",
                job_id=job_id,
                agent_name=sanitize_agent_name(spec.name),
                build_target=spec.build_target.value,
                platform=spec.platform.value,
            )
            self._publish(job_id, ProgressStep.INITIALIZATION, 10, "Initializing compiler")
            self._publish(job_id, ProgressStep.CONFIGURATION, 30, "Processing agent configuration")

            unavailable: LocalBuildUnavailableError | None = None
            if self._local_builder is None:
                unavailable = LocalBuildUnavailableError("no local builder configured")
            else:
                try:
                    await asyncio.to_thread(self._local_builder.check_available)
                except LocalBuildUnavailableError as exc:
                    unavailable = exc

            if unavailable is None:
                await self._start_local(job)
            else:
                self._logger.info(
                    "local_build_unavailable", job_id=job_id, reason=unavailable.reason
                )
                await self._dispatch_remote(job)
        return job_id

    async def track_remote(self, spec: AgentBuildSpec, job_id: str) -> CompilationJob:
        """Adopt a job dispatched by another process so its CI run can be followed."""

        if self._ci_client is None:
            raise ConfigurationError("remote CI is not configured; cannot track remote jobs")
        try:
            job = CompilationJob(job_id=job_id, spec=spec, method=BuildMethod.REMOTE)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        async with self._lock.write():
            existing = self._jobs.get(job_id)
            if existing is not None:
                return _snapshot(existing)
            job.transition(
                JobStatus.PENDING, progress=REMOTE_IN_PROGRESS, message="tracking remote job"
            )
            self._jobs[job_id] = job
            self._logger.info("ci_job_tracked", job_id=job_id)
            return _snapshot(job)

    async def get_status(self, job_id: str) -> CompilationJob:
        """Current view of ``job_id``; remote jobs are refreshed from the CI provider."""

        async with self._lock.read():
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.method is BuildMethod.LOCAL or job.status.is_terminal:
                return _snapshot(job)

        try:
            observation = await self._observe_remote(job_id)
        except CIProviderError as exc:
            self._logger.warning("ci_status_query_failed", job_id=job_id, error=str(exc))
            async with self._lock.write():
                job.append_log(f"status query failed: {exc}")
                view = _snapshot(job)
            if not view.status.is_terminal:
                view.fail(FailureKind.STATUS_QUERY, f"Status check failed: {exc}")
            return view

        async with self._lock.write():
            self._apply_observation(job, observation)
            return _snapshot(job)

    async def release(self, job_id: str) -> bool:
        """Drop a job record once its artifact has been retrieved."""

        async with self._lock.write():
            job = self._jobs.pop(job_id, None)
            task = self._tasks.pop(job_id, None)
        if task is not None and not task.done():
            task.cancel()
        if job is not None:
            self._logger.info("compilation_released", job_id=job_id, status=job.status.value)
        return job is not None

    async def prune_expired(self, now: datetime | None = None) -> list[str]:
        """Remove jobs older than the retention window; returns the pruned ids."""

        current = now or self._clock()
        async with self._lock.write():
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if current - (job.finished_at or job.started_at) > self._retention
            ]
            tasks = [self._tasks.pop(job_id, None) for job_id in expired]
            for job_id in expired:
                del self._jobs[job_id]
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
        if expired:
            self._logger.info("compilation_jobs_pruned", count=len(expired))
        return expired

    async def list_jobs(self) -> list[CompilationJob]:
        async with self._lock.read():
            return [_snapshot(job) for job in self._jobs.values()]

    async def wait_local(self, job_id: str) -> None:
        """Wait for a background local build to settle; no-op for other jobs."""

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> CompilationOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _start_local(self, job: CompilationJob) -> None:
        async with self._lock.write():
            job.method = BuildMethod.LOCAL
            job.transition(JobStatus.IN_PROGRESS, progress=50, message="local build started")
        self._publish(job.job_id, ProgressStep.COMPILATION, 50, "Starting local compilation")
        task = asyncio.create_task(self._run_local(job), name=f"local-build-{job.job_id}")
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.job_id, None))

    async def _run_local(self, job: CompilationJob) -> None:
        assert self._local_builder is not None
        with correlation_scope(job_id=job.job_id):
            try:
                artifact = await self._local_builder.build(job.spec, job.job_id)
            except LocalBuildUnavailableError as exc:
                # The host changed under us between the check and the build.
                self._logger.info(
                    "local_build_unavailable", job_id=job.job_id, reason=exc.reason
                )
                await self._dispatch_remote(job)
                return
            except BuildError as exc:
                await self._fail(job, FailureKind.BUILD, str(exc), output=exc.output)
                return
            except Exception as exc:  # noqa: BLE001
                await self._fail(job, FailureKind.BUILD, f"local build crashed: {exc}")
                self._logger.exception("local_build_crashed", job_id=job.job_id)
                return

            async with self._lock.write():
                if job.status.is_terminal:
                    return
                for name in artifact.files:
                    job.append_log(f"artifact file: {name}")
                job.complete(artifact.artifact_path.as_uri())
            self._publish(
                job.job_id,
                ProgressStep.COMPLETION,
                100,
                "Local compilation completed",
                status=ProgressStatus.COMPLETED,
            )

    async def _dispatch_remote(self, job: CompilationJob) -> None:
        self._publish(job.job_id, ProgressStep.COMPILATION, 60, "Preparing remote compilation")
        async with self._lock.write():
            job.method = BuildMethod.REMOTE
        if self._ci_client is None:
            await self._fail(
                job,
                FailureKind.DISPATCH,
                "Compilation cannot start: no local toolchain and remote CI is not configured",
            )
            return

        self._publish(job.job_id, ProgressStep.DISPATCH, 70, "Triggering CI compilation")
        spec = job.spec
        inputs = {
            "job_id": job.job_id,
            "agent_name": sanitize_agent_name(spec.name),
            "config": json.dumps(spec.to_dict(), sort_keys=True, separators=(",", ":")),
            "build_target": spec.build_target.value,
            "platform": spec.platform.value,
        }
        try:
            await self._ci_client.dispatch_workflow(inputs)
        except CIProviderError as exc:
            await self._fail(
                job, FailureKind.DISPATCH, f"CI dispatch failed: {exc}", output=exc.raw_body
            )
            return

        async with self._lock.write():
            if job.status.is_terminal:
                return
            # A local build that already started stays in_progress.
            target = JobStatus.PENDING if job.can_transition_to(JobStatus.PENDING) else job.status
            job.transition(
                target,
                progress=REMOTE_IN_PROGRESS,
                message=f"workflow dispatched on {self._ci_client.repository}",
            )
        self._logger.info("ci_workflow_dispatched", job_id=job.job_id)
        self._publish(
            job.job_id,
            ProgressStep.DISPATCH,
            REMOTE_IN_PROGRESS,
            f"Remote compilation started; follow it at {self._ci_client.actions_url}",
        )

    async def _observe_remote(self, job_id: str) -> _RemoteObservation:
        client = self._ci_client
        if client is None:
            raise CIProviderError("list_runs", "remote CI is not configured")
        runs = await client.list_workflow_runs()
        match = find_run(runs, job_id)
        if match is None:
            self._logger.info(
                "ci_run_not_found",
                job_id=job_id,
                recent_runs=[run.summary() for run in runs[:5]],
            )
            return _RemoteObservation(run=None)
        run = match.item
        if match.is_fallback:
            self._logger.warning(
                "ci_run_matched_by_fallback", job_id=job_id, run_id=run.id, tier=match.tier.value
            )

        if run.status == "completed" and run.conclusion == "success":
            artifacts = await client.list_run_artifacts(run.id)
            artifact_match = find_artifact(artifacts, job_id)
            if artifact_match is None:
                self._logger.warning(
                    "ci_artifact_unmatched",
                    job_id=job_id,
                    run_id=run.id,
                    run_page=f"{client.actions_url}/runs/{run.id}",
                    artifacts=[artifact.name for artifact in artifacts],
                )
                return _RemoteObservation(run=run, succeeded=True)
            artifact = artifact_match.item
            log = self._logger.warning if artifact_match.is_fallback else self._logger.info
            log(
                "ci_artifact_matched",
                job_id=job_id,
                run_id=run.id,
                artifact=artifact.name,
                tier=artifact_match.tier.value,
            )
            return _RemoteObservation(
                run=run,
                succeeded=True,
                artifact_url=client.artifact_browser_url(run.id, artifact.id),
                raw_artifact_url=artifact.archive_download_url or None,
            )

        if run.status == "completed":
            return _RemoteObservation(run=run, error=await self._describe_failure(run))
        return _RemoteObservation(run=run)

    async def _describe_failure(self, run: WorkflowRun) -> str:
        assert self._ci_client is not None
        summary = f"Compilation failed (CI conclusion: {run.conclusion or 'unknown'})"
        try:
            jobs = await self._ci_client.list_run_jobs(run.id)
        except CIProviderError as exc:
            self._logger.warning("ci_job_listing_failed", run_id=run.id, error=str(exc))
            return summary
        failed = next((item for item in jobs if item.conclusion == "failure"), None)
        if failed is None:
            return summary
        step = failed.failed_step()
        where = failed.name if step is None else f"{failed.name} / {step.name}"
        return f"Compilation failed in step: {where}"

    def _apply_observation(self, job: CompilationJob, observation: _RemoteObservation) -> None:
        if job.status.is_terminal:
            return
        run = observation.run
        if run is None:
            if job.status is not JobStatus.IN_PROGRESS and (
                not job.logs or job.logs[-1] != RUN_NOT_FOUND_MESSAGE
            ):
                job.transition(JobStatus.PENDING, message=RUN_NOT_FOUND_MESSAGE)
            return

        if job.run_id is None:
            job.run_id = run.id
            job.append_log(f"located CI run {run.id}")
        if observation.succeeded:
            job.complete(observation.artifact_url, raw_artifact_url=observation.raw_artifact_url)
            self._publish(
                job.job_id,
                ProgressStep.COMPLETION,
                100,
                "Remote compilation completed",
                status=ProgressStatus.COMPLETED,
            )
        elif observation.error is not None:
            job.fail(FailureKind.BUILD, observation.error)
            self._publish(
                job.job_id,
                ProgressStep.COMPLETION,
                job.progress,
                observation.error,
                status=ProgressStatus.ERROR,
            )
        elif run.status in ACTIVE_RUN_STATES:
            job.transition(JobStatus.IN_PROGRESS, progress=REMOTE_IN_PROGRESS)

    async def _fail(
        self, job: CompilationJob, kind: FailureKind, message: str, *, output: str = ""
    ) -> None:
        async with self._lock.write():
            if job.status.is_terminal:
                return
            if output:
                job.append_log(output[-2000:])
            job.fail(kind, message)
        self._logger.warning(
            "compilation_failed", job_id=job.job_id, failure_kind=kind.value, error=message
        )
        self._publish(
            job.job_id,
            ProgressStep.COMPILATION,
            job.progress,
            message,
            status=ProgressStatus.ERROR,
        )

    def _publish(
        self,
        job_id: str,
        step: ProgressStep,
        progress: int,
        message: str,
        *,
        status: ProgressStatus = ProgressStatus.IN_PROGRESS,
    ) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher.publish(
                ProgressEvent(
                    job_id=job_id, step=step, progress=progress, message=message, status=status
                )
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "progress_publish_failed", job_id=job_id, step=step.value, error=str(exc)
            )


@dataclass(frozen=True, slots=True)
class _RemoteObservation:
    run: WorkflowRun | None
    succeeded: bool = False
    artifact_url: str | None = None
    raw_artifact_url: str | None = None
    error: str | None = None


def _snapshot(job: CompilationJob) -> CompilationJob:
    return replace(job, logs=list(job.logs), history=list(job.history))


__all__ = ["ACTIVE_RUN_STATES", "CompilationOrchestrator"]
