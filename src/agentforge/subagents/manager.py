"""
agentforge — subagent process manager

File: src/agentforge/subagents/manager.py

Purpose
- Lifecycle of child agent processes, each running a JSON-lines tool worker
  inside its own TEE.

Functional requirements
- ``create`` checks capacity, required fields and duplicates atomically under the
  table's write lock and merges unset resource limits from the parent policy.
- ``start`` on an uninitialized subagent runs ``initialize`` first; ``stop`` is
  idempotent.
- ``run_tool`` requires a running worker. A worker that exits while a call is in
  flight fails that call with ``SubagentKilledError``. Tool failures are kept as
  ``last_error`` and raised as ``ToolExecutionError``; they never affect other
  subagents.
- ``delete`` removes the subagent from the live set first, then raises one
  ``SubagentCleanupError`` for every failure hit while tearing it down.
- ``${credential:NAME}`` references in descriptor env are expanded at start only.

Non-functional requirements
- The table uses an async reader/writer lock; each subagent has its own lock for
  running and activity state. Stopping never waits for in-flight tool calls.
"""

from __future__ import annotations

import asyncio
import functools
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog

from agentforge.constants import DEFAULT_MAX_SUBAGENTS
from agentforge.credentials import CREDENTIAL_REFERENCE_RE, CredentialError, CredentialStore
from agentforge.domain.ids import generate_subagent_id
from agentforge.domain.models import TEEPolicy, utc_now
from agentforge.errors import ConfigurationError
from agentforge.sandbox import (
    TEE,
    ProcessMetrics,
    TEEError,
    create_tee,
    merge_resources,
    policy_from_config,
    validate_policy,
)
from agentforge.subagents.descriptor import SubagentDescriptor
from agentforge.subagents.errors import (
    DuplicateSubagentError,
    SubagentCapacityError,
    SubagentCleanupError,
    SubagentKilledError,
    SubagentNotFoundError,
    SubagentNotRunningError,
    SubagentStartError,
    ToolExecutionError,
    ToolTimeoutError,
    UnknownToolError,
)
from agentforge.subagents.protocol import MessageKind, ToolRequest, WorkerMessage, decode_message
from agentforge.subagents.runtime import (
    TOOLS_MANIFEST_FILE,
    RuntimeLaunch,
    render_tool_manifest,
    runtime_launch,
)
from agentforge.utils.concurrency import ReadWriteLock

TEEFactory = Callable[..., TEE]

_STDERR_TAIL_LINES = 20


class SubagentState(StrEnum):
    """Lifecycle view derived from the record on every read; never stored."""

    CREATED = "created"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SubagentStatus:
    """Point-in-time view of one subagent."""

    subagent_id: str
    name: str
    runtime: str
    state: SubagentState
    is_running: bool
    last_error: str | None
    pid: int | None
    tools: tuple[str, ...]
    isolation: str
    created_at: datetime
    last_activity: datetime | None
    metrics: ProcessMetrics | None = None

    @property
    def health(self) -> str:
        if self.is_running:
            return "running"
        return "error" if self.last_error else "idle"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.subagent_id,
            "name": self.name,
            "runtime": self.runtime,
            "state": self.state.value,
            "health": self.health,
            "is_running": self.is_running,
            "last_error": self.last_error,
            "pid": self.pid,
            "tools": list(self.tools),
            "isolation": self.isolation,
            "created_at": self.created_at.isoformat(),
            "last_activity": None if self.last_activity is None else self.last_activity.isoformat(),
            "metrics": None if self.metrics is None else self.metrics.to_dict(),
        }


@dataclass(slots=True)
class _Record:
    subagent_id: str
    descriptor: SubagentDescriptor
    policy: TEEPolicy
    tee: TEE
    launch: RuntimeLaunch
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    initialized: bool = False
    created_at: datetime = field(default_factory=utc_now)
    last_activity: datetime | None = None
    last_error: str | None = None
    process: asyncio.subprocess.Process | None = None
    ready: asyncio.Future[WorkerMessage] | None = None
    pending: dict[int, asyncio.Future[WorkerMessage]] = field(default_factory=dict)
    next_request_id: int = 0
    stdout_task: asyncio.Task[None] | None = None
    stderr_task: asyncio.Task[None] | None = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=_STDERR_TAIL_LINES))

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def state(self) -> SubagentState:
        if not self.initialized:
            return SubagentState.CREATED
        if self.is_running:
            return SubagentState.RUNNING
        if self.last_error is not None:
            return SubagentState.FAILED
        # last_activity is first set when a worker reports ready.
        return SubagentState.INITIALIZED if self.last_activity is None else SubagentState.STOPPED


class SubagentManager:
    """Owns every live subagent of one parent agent."""

    def __init__(
        self,
        parent_policy: TEEPolicy,
        max_subagents: int = DEFAULT_MAX_SUBAGENTS,
        credential_store: CredentialStore | None = None,
        *,
        python_executable: str = "python3",
        node_executable: str = "node",
        stop_grace_seconds: float = 2.0,
        tee_factory: TEEFactory | None = None,
        logger: Any | None = None,
    ) -> None:
        if isinstance(max_subagents, bool) or max_subagents < 1:
            raise ConfigurationError(f"max_subagents must be >= 1, got {max_subagents}")
        if stop_grace_seconds < 0:
            raise ConfigurationError("stop_grace_seconds must be >= 0")
        self._parent_policy = validate_policy(parent_policy)
        self._max_subagents = max_subagents
        self._credentials = credential_store
        self._python_executable = python_executable
        self._node_executable = node_executable
        self._stop_grace_seconds = stop_grace_seconds
        self._tee_factory = tee_factory if tee_factory is not None else create_tee
        self._table_lock = ReadWriteLock()
        self._records: dict[str, _Record] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        credential_store: CredentialStore | None = None,
        logger: Any | None = None,
    ) -> SubagentManager:
        tee_config = config["tee"]
        subagent_config = config["subagents"]
        return cls(
            policy_from_config(tee_config),
            int(subagent_config["max_subagents"]),
            credential_store,
            python_executable=str(subagent_config["python_executable"]),
            node_executable=str(subagent_config["node_executable"]),
            stop_grace_seconds=float(subagent_config["stop_grace_seconds"]),
            tee_factory=functools.partial(
                create_tee,
                container_runtime=str(tee_config.get("container_runtime", "")),
                vm_runtime=str(tee_config.get("vm_runtime", "")),
            ),
            logger=logger,
        )

    @property
    def max_subagents(self) -> int:
        return self._max_subagents

    @property
    def parent_policy(self) -> TEEPolicy:
        return self._parent_policy

    async def create(self, descriptor: SubagentDescriptor | Mapping[str, Any]) -> str:
        if not isinstance(descriptor, SubagentDescriptor):
            descriptor = SubagentDescriptor.from_dict(descriptor)
        overrides = {} if descriptor.resources is None else descriptor.resources.as_kwargs()

        async with self._table_lock.write():
            if len(self._records) >= self._max_subagents:
                self._logger.warning(
                    "subagent_capacity_reached", limit=self._max_subagents, name=descriptor.name
                )
                raise SubagentCapacityError(self._max_subagents)
            subagent_id = descriptor.id or generate_subagent_id()
            if subagent_id in self._records:
                raise DuplicateSubagentError(subagent_id)
            policy = merge_resources(self._parent_policy, **overrides)
            tee = self._tee_factory(policy, tee_id=subagent_id, logger=self._logger)
            launch = runtime_launch(
                descriptor.runtime,
                python_executable=self._python_executable,
                node_executable=self._node_executable,
            )
            self._records[subagent_id] = _Record(
                subagent_id=subagent_id,
                descriptor=descriptor,
                policy=policy,
                tee=tee,
                launch=launch,
            )

        self._logger.info(
            "subagent_created",
            subagent_id=subagent_id,
            name=descriptor.name,
            runtime=descriptor.runtime.value,
            memory_mb=policy.resources.memory_mb,
            timeout_seconds=policy.resources.timeout_seconds,
        )
        return subagent_id

    async def initialize(self, subagent_id: str) -> SubagentStatus:
        record = await self._get(subagent_id)
        async with record.lock:
            await self._initialize_locked(record)
            return self._snapshot(record)

    async def start(self, subagent_id: str) -> SubagentStatus:
        record = await self._get(subagent_id)
        async with record.lock:
            await self._start_locked(record)
            return self._snapshot(record)

    async def stop(self, subagent_id: str) -> SubagentStatus:
        record = await self._get(subagent_id)
        async with record.lock:
            await self._stop_locked(record)
            return self._snapshot(record)

    async def run_tool(
        self,
        subagent_id: str,
        tool_name: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        record = await self._get(subagent_id)
        loop = asyncio.get_running_loop()

        async with record.lock:
            process = record.process
            if process is None or process.returncode is not None:
                raise SubagentNotRunningError(subagent_id)
            if tool_name not in record.descriptor.tools:
                raise UnknownToolError(subagent_id, tool_name)
            record.next_request_id += 1
            request_id = record.next_request_id
            try:
                line = ToolRequest(request_id, tool_name, dict(params or {})).encode()
            except (TypeError, ValueError) as exc:
                raise ToolExecutionError(
                    subagent_id, tool_name, f"params are not JSON serializable: {exc}"
                ) from exc
            future: asyncio.Future[WorkerMessage] = loop.create_future()
            record.pending[request_id] = future
            record.last_activity = utc_now()
            assert process.stdin is not None
            try:
                process.stdin.write(line)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                record.pending.pop(request_id, None)
                raise SubagentKilledError(subagent_id, process.returncode) from exc

        timeout = record.policy.resources.timeout_seconds
        try:
            message = await asyncio.wait_for(future, timeout)
        except TimeoutError:
            record.pending.pop(request_id, None)
            record.last_error = f"{tool_name}: no response within {timeout:g}s"
            self._logger.warning(
                "subagent_tool_timeout",
                subagent_id=subagent_id,
                tool=tool_name,
                timeout_seconds=timeout,
            )
            raise ToolTimeoutError(subagent_id, tool_name, timeout) from None

        record.last_activity = utc_now()
        if not message.ok:
            record.last_error = f"{tool_name}: {message.error_type}: {message.error_message}"
            self._logger.warning(
                "subagent_tool_failed",
                subagent_id=subagent_id,
                tool=tool_name,
                error_type=message.error_type,
            )
            raise ToolExecutionError(
                subagent_id,
                tool_name,
                message.error_message or "tool failed",
                error_type=message.error_type,
            )
        self._logger.debug("subagent_tool_completed", subagent_id=subagent_id, tool=tool_name)
        return message.result

    async def delete(self, subagent_id: str) -> None:
        async with self._table_lock.write():
            record = self._records.pop(subagent_id, None)
        if record is None:
            raise SubagentNotFoundError(subagent_id)

        errors: list[BaseException] = []
        async with record.lock:
            try:
                await self._stop_locked(record)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
            try:
                await record.tee.stop()
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        self._logger.info("subagent_deleted", subagent_id=subagent_id, cleanup_errors=len(errors))
        if errors:
            raise SubagentCleanupError(subagent_id, errors)

    async def status(self, subagent_id: str) -> SubagentStatus:
        record = await self._get(subagent_id)
        return self._snapshot(record)

    async def list(self) -> tuple[SubagentStatus, ...]:
        async with self._table_lock.read():
            records = list(self._records.values())
        return tuple(self._snapshot(record) for record in records)

    async def shutdown(self) -> None:
        """Delete every subagent; failures are aggregated after all were attempted."""

        async with self._table_lock.read():
            subagent_ids = list(self._records)
        errors: list[BaseException] = []
        for subagent_id in subagent_ids:
            try:
                await self.delete(subagent_id)
            except SubagentNotFoundError:
                continue
            except SubagentCleanupError as exc:
                errors.extend(exc.errors)
        self._logger.info("subagents_shutdown", count=len(subagent_ids), cleanup_errors=len(errors))
        if errors:
            raise SubagentCleanupError("*", errors)

    async def __aenter__(self) -> SubagentManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def _get(self, subagent_id: str) -> _Record:
        async with self._table_lock.read():
            record = self._records.get(subagent_id)
        if record is None:
            raise SubagentNotFoundError(subagent_id)
        return record

    async def _initialize_locked(self, record: _Record) -> None:
        if record.initialized:
            return
        tee = record.tee
        launch = record.launch
        descriptor = record.descriptor
        try:
            await tee.start()
            await tee.write_file(launch.worker_file, launch.worker_source())
            await tee.write_file(TOOLS_MANIFEST_FILE, render_tool_manifest(descriptor.tools))
            if descriptor.init_script.strip():
                await tee.write_file(launch.init_file, descriptor.init_script)
                result = await tee.execute(
                    launch.executable, [launch.init_file], env=self._init_env(record)
                )
                if not result.succeeded:
                    raise SubagentStartError(
                        f"init script exited with code {result.exit_code}: "
                        f"{_last_line(result.stderr)}"
                    )
        except (TEEError, OSError, SubagentStartError) as exc:
            record.last_error = str(exc)
            await tee.stop()
            self._logger.warning(
                "subagent_initialize_failed", subagent_id=record.subagent_id, error=str(exc)
            )
            if isinstance(exc, SubagentStartError):
                raise
            raise SubagentStartError(f"initialization failed: {exc}") from exc

        record.initialized = True
        self._logger.info(
            "subagent_initialized",
            subagent_id=record.subagent_id,
            working_dir=str(tee.working_dir),
            isolation=tee.effective_isolation.value,
        )

    async def _start_locked(self, record: _Record) -> None:
        if record.is_running:
            return
        await self._initialize_locked(record)
        try:
            env = self._worker_env(record)
        except CredentialError as exc:
            record.last_error = str(exc)
            raise

        launch = record.launch
        process = await record.tee.spawn(launch.executable, [launch.worker_file], env=env)
        record.process = process
        record.ready = asyncio.get_running_loop().create_future()
        record.stderr_tail.clear()
        record.stdout_task = asyncio.create_task(
            self._pump_stdout(record, process), name=f"{record.subagent_id}-stdout"
        )
        record.stderr_task = asyncio.create_task(
            self._pump_stderr(record, process), name=f"{record.subagent_id}-stderr"
        )

        timeout = record.policy.resources.timeout_seconds
        try:
            ready = await asyncio.wait_for(asyncio.shield(record.ready), timeout)
        except (TimeoutError, SubagentKilledError) as exc:
            tail = _last_line("\n".join(record.stderr_tail))
            reason = "worker did not report ready" if isinstance(exc, TimeoutError) else str(exc)
            if not record.ready.done():
                record.ready.cancel()
            await self._stop_locked(record)
            record.last_error = f"{reason}: {tail}" if tail else reason
            self._logger.warning(
                "subagent_start_failed", subagent_id=record.subagent_id, error=record.last_error
            )
            raise SubagentStartError(record.last_error) from exc

        record.last_error = None
        record.last_activity = utc_now()
        self._logger.info(
            "subagent_started",
            subagent_id=record.subagent_id,
            pid=process.pid,
            tools=list(ready.tools),
        )

    async def _stop_locked(self, record: _Record) -> None:
        process = record.process
        if process is None:
            return
        record.process = None
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        returncode = await record.tee.terminate(process, grace_seconds=self._stop_grace_seconds)
        for task in (record.stdout_task, record.stderr_task):
            if task is not None:
                await task
        record.stdout_task = None
        record.stderr_task = None
        self._fail_pending(record, returncode)
        self._logger.info("subagent_stopped", subagent_id=record.subagent_id, returncode=returncode)

    async def _pump_stdout(self, record: _Record, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        try:
            while True:
                try:
                    line = await process.stdout.readline()
                except ValueError:
                    self._logger.warning("subagent_line_too_long", subagent_id=record.subagent_id)
                    continue
                if not line:
                    break
                try:
                    message = decode_message(line)
                except ValueError:
                    self._logger.debug("subagent_stdout_noise", subagent_id=record.subagent_id)
                    continue
                if message.kind is MessageKind.READY:
                    if record.ready is not None and not record.ready.done():
                        record.ready.set_result(message)
                    continue
                future = record.pending.pop(message.request_id or 0, None)
                if future is not None and not future.done():
                    future.set_result(message)
        finally:
            returncode = await process.wait()
            if record.process is process:
                record.last_error = f"worker exited unexpectedly with code {returncode}"
                self._logger.warning(
                    "subagent_worker_exited", subagent_id=record.subagent_id, returncode=returncode
                )
            self._fail_pending(record, returncode)

    async def _pump_stderr(self, record: _Record, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            record.stderr_tail.append(text)
            self._logger.debug("subagent_stderr", subagent_id=record.subagent_id, line=text)

    def _fail_pending(self, record: _Record, returncode: int | None) -> None:
        if record.ready is not None and not record.ready.done():
            record.ready.set_exception(SubagentKilledError(record.subagent_id, returncode))
        pending = list(record.pending.values())
        record.pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(SubagentKilledError(record.subagent_id, returncode))

    def _init_env(self, record: _Record) -> dict[str, str]:
        # Credentials are only expanded for the long-running worker.
        env = {
            key: value
            for key, value in record.descriptor.env.items()
            if not CREDENTIAL_REFERENCE_RE.search(value)
        }
        env.update(self._identity_env(record))
        return env

    def _worker_env(self, record: _Record) -> dict[str, str]:
        env: dict[str, str] = {}
        for key, value in record.descriptor.env.items():
            if self._credentials is not None:
                value = self._credentials.expand_references(value)
            elif CREDENTIAL_REFERENCE_RE.search(value):
                raise CredentialError(
                    f"env {key} references a credential but no credential store is configured"
                )
            env[key] = value
        env.update(self._identity_env(record))
        return env

    def _identity_env(self, record: _Record) -> dict[str, str]:
        env = {
            "AGENTFORGE_SUBAGENT_ID": record.subagent_id,
            "AGENTFORGE_TOOLS_MANIFEST": TOOLS_MANIFEST_FILE,
            "PYTHONUNBUFFERED": "1",
        }
        provider = record.descriptor.model_provider
        if provider is not None:
            env["AGENTFORGE_MODEL_PROVIDER"] = provider.provider
            env["AGENTFORGE_MODEL"] = provider.model
        return env

    def _snapshot(self, record: _Record) -> SubagentStatus:
        process = record.process
        running = record.is_running
        metrics = record.tee.sample(process) if running and process is not None else None
        return SubagentStatus(
            subagent_id=record.subagent_id,
            name=record.descriptor.name,
            runtime=record.descriptor.runtime.value,
            state=record.state,
            is_running=running,
            last_error=record.last_error,
            pid=process.pid if running and process is not None else None,
            tools=tuple(sorted(record.descriptor.tools)),
            isolation=record.tee.effective_isolation.value,
            created_at=record.created_at,
            last_activity=record.last_activity,
            metrics=metrics,
        )


def _last_line(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""


__all__ = ["SubagentManager", "SubagentState", "SubagentStatus", "TEEFactory"]
