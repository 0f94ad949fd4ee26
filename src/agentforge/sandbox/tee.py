"""
agentforge — TEE isolation layer

File: src/agentforge/sandbox/tee.py

Purpose
- Run commands inside a resource-constrained isolate with a private working
  directory, and move files across the isolate boundary under policy control.

Functional requirements
- ``start`` creates the private directory; ``stop`` kills every tracked process and
  removes it. Both are idempotent, and the directory is released on every path.
- ``execute`` applies the policy's memory, CPU and wall-clock limits. A timeout
  raises ``TEETimeoutError``; a non-zero exit is returned, not raised. A timed out
  or cancelled command has its process group killed before ``execute`` returns.
- The child environment is ``PATH``, the ``TEE_*`` policy variables, ``HOME`` at
  the isolate root and ``TMPDIR`` at its ``tmp/`` subdirectory, then
  caller-supplied variables.
- Container and VM levels fall back to process isolation with a warning when no
  runtime is configured.

Non-functional requirements
- All blocking filesystem work runs in worker threads; the contract is async.
"""

from __future__ import annotations

import asyncio
import math
import os
import shlex
import shutil
import signal
import time
from collections.abc import AsyncIterator, Callable, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Self

import structlog

from agentforge.domain.ids import generate_ulid
from agentforge.domain.models import IsolationLevel, ResourceCeiling, TEEPolicy
from agentforge.sandbox.capabilities import CapabilityGate, CopyDirection
from agentforge.sandbox.metrics import ProcessMetrics, ProcessMetricsProvider
from agentforge.sandbox.policy import (
    TEEExecutionError,
    TEENotStartedError,
    TEETimeoutError,
    policy_environment,
    validate_policy,
)
from agentforge.utils.fs import (
    PathLike,
    atomic_write,
    copy_file,
    make_private_directory,
    safe_delete,
)

if os.name == "posix":
    import resource

DEFAULT_CONTAINER_IMAGE = "python:3.12-slim"
_CONTAINER_WORKDIR = "/workspace"
_BYTES_PER_MB = 1024 * 1024
_STREAM_LIMIT = 4 * _BYTES_PER_MB
_SCRATCH_DIR = "tmp"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Captured output of one finished command; ``exit_code`` is passed through as-is."""

    command: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "command": list(self.command),
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration_ms": round(self.duration_ms, 3),
        }


class TEE:
    """Process-level isolate and the shared contract for every backend."""

    isolation_level: IsolationLevel = IsolationLevel.PROCESS

    def __init__(
        self,
        policy: TEEPolicy,
        *,
        base_dir: PathLike | None = None,
        env: Mapping[str, str] | None = None,
        allowed_roots: Iterable[PathLike] = (),
        network_allowlist: Iterable[str] = (),
        tee_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._policy = validate_policy(policy)
        self._base_dir = None if base_dir is None else Path(base_dir)
        self._env = dict(env or {})
        self._allowed_roots = tuple(Path(root) for root in allowed_roots)
        self._network_allowlist = tuple(network_allowlist)
        self._tee_id = tee_id or f"tee-{generate_ulid().lower()}"
        self._working_dir: Path | None = None
        self._gate: CapabilityGate | None = None
        self._processes: dict[int, asyncio.subprocess.Process] = {}
        self._metrics = ProcessMetricsProvider()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def tee_id(self) -> str:
        return self._tee_id

    @property
    def policy(self) -> TEEPolicy:
        return self._policy

    @property
    def is_running(self) -> bool:
        return self._working_dir is not None

    @property
    def working_dir(self) -> Path:
        return self._require_started()

    @property
    def effective_isolation(self) -> IsolationLevel:
        """The level actually enforced, after any fallback."""

        return IsolationLevel.PROCESS

    @property
    def gate(self) -> CapabilityGate:
        self._require_started()
        assert self._gate is not None
        return self._gate

    async def start(self) -> Path:
        if self._working_dir is not None:
            return self._working_dir
        working_dir = await asyncio.to_thread(
            make_private_directory, f"agentforge-{self._tee_id}-", base_dir=self._base_dir
        )
        # TMPDIR must not be the directory holding the sources; go ignores a go.mod
        # found in the temp root.
        await asyncio.to_thread((working_dir / _SCRATCH_DIR).mkdir, mode=0o700)
        self._working_dir = working_dir
        self._gate = CapabilityGate(
            self._policy,
            working_dir,
            allowed_roots=self._allowed_roots,
            network_allowlist=self._network_allowlist,
            decision_logger=self._log_network_decision,
        )
        self._logger.info(
            "tee_started",
            tee_id=self._tee_id,
            requested_isolation=self.isolation_level.value,
            effective_isolation=self.effective_isolation.value,
            working_dir=str(working_dir),
            **self._policy.resources.to_dict(),
        )
        return working_dir

    async def stop(self) -> None:
        working_dir = self._working_dir
        if working_dir is None:
            return
        self._working_dir = None
        self._gate = None
        try:
            await self._terminate_all()
        finally:
            await asyncio.to_thread(_release_directory, working_dir)
        self._logger.info("tee_stopped", tee_id=self._tee_id)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Self]:
        """``start`` on entry, ``stop`` on every exit path."""

        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    def environment(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        guest_root = self._guest_root()
        env = {"PATH": os.environ.get("PATH", os.defpath)}
        env.update(policy_environment(self._policy))
        env.update(
            {
                "TEE_ID": self._tee_id,
                "TEE_WORKDIR": guest_root,
                "HOME": guest_root,
                "TMPDIR": os.path.join(guest_root, _SCRATCH_DIR),
            }
        )
        env.update(self._env)
        if extra:
            env.update(extra)
        return env

    async def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout_seconds: float | None = None,
        stdin: str | bytes | None = None,
        env: Mapping[str, str] | None = None,
        cwd: PathLike | None = None,
    ) -> ExecutionResult:
        """Run one command to completion inside the isolate."""

        self._require_started()
        timeout = (
            self._policy.resources.timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        if timeout <= 0:
            raise ValueError("timeout_seconds must be > 0")
        argv = (command, *args)
        started = time.perf_counter()
        process = await self._launch(
            argv,
            env=env,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        )
        payload = stdin.encode("utf-8") if isinstance(stdin, str) else stdin
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout)
        except TimeoutError:
            await self._kill(process)
            self._logger.warning(
                "tee_command_timeout",
                tee_id=self._tee_id,
                command=argv[0],
                timeout_seconds=timeout,
            )
            raise TEETimeoutError(shlex.join(argv), timeout) from None
        finally:
            # Cancellation lands here with the child still alive.
            if process.returncode is None:
                await asyncio.shield(self._kill(process))
            self._processes.pop(process.pid, None)

        duration_ms = (time.perf_counter() - started) * 1000.0
        result = ExecutionResult(
            command=argv,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
            duration_ms=duration_ms,
        )
        self._logger.debug(
            "tee_command_finished",
            tee_id=self._tee_id,
            command=argv[0],
            exit_code=result.exit_code,
            duration_ms=round(duration_ms, 3),
        )
        return result

    async def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        cwd: PathLike | None = None,
    ) -> asyncio.subprocess.Process:
        """Start a long-lived process with piped stdio; ``stop`` reaps it."""

        self._require_started()
        return await self._launch(
            (command, *args), env=env, cwd=cwd, stdin=asyncio.subprocess.PIPE
        )

    async def terminate(
        self, process: asyncio.subprocess.Process, *, grace_seconds: float = 2.0
    ) -> int | None:
        """Signal the process group, escalating to a kill after ``grace_seconds``."""

        try:
            if process.returncode is None:
                _signal_group(process, signal.SIGTERM)
                try:
                    await asyncio.wait_for(process.wait(), grace_seconds)
                except TimeoutError:
                    await self._kill(process)
            return process.returncode
        finally:
            self._processes.pop(process.pid, None)

    async def copy_file_in(self, host_path: PathLike, isolate_path: PathLike) -> Path:
        source = self.gate.check_host_path(host_path, direction=CopyDirection.INTO_TEE)
        destination = self.gate.isolate_path(isolate_path)
        return await asyncio.to_thread(copy_file, source, destination)

    async def copy_file_out(self, isolate_path: PathLike, host_path: PathLike) -> Path:
        source = self.gate.isolate_path(isolate_path)
        destination = self.gate.check_host_path(host_path, direction=CopyDirection.OUT_OF_TEE)
        return await asyncio.to_thread(copy_file, source, destination)

    async def write_file(self, isolate_path: PathLike, data: str | bytes) -> Path:
        destination = self.gate.isolate_path(isolate_path)
        await asyncio.to_thread(atomic_write, destination, data)
        return destination

    def sample(self, process: asyncio.subprocess.Process) -> ProcessMetrics | None:
        return self._metrics.sample(process.pid)

    def wrap_command(
        self, argv: tuple[str, ...], *, env: Mapping[str, str], cwd: Path
    ) -> tuple[str, ...]:
        """Backend hook: the argv actually handed to the host OS."""

        return argv

    def _guest_root(self) -> str:
        return str(self._require_started())

    def _require_started(self) -> Path:
        if self._working_dir is None:
            raise TEENotStartedError(f"TEE {self._tee_id} is not started")
        return self._working_dir

    async def _launch(
        self,
        argv: tuple[str, ...],
        *,
        env: Mapping[str, str] | None,
        cwd: PathLike | None,
        stdin: int,
    ) -> asyncio.subprocess.Process:
        working_dir = self._require_started()
        run_cwd = working_dir if cwd is None else self.gate.isolate_path(cwd)
        run_env = self.environment(env)
        host_argv = self.wrap_command(argv, env=run_env, cwd=run_cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *host_argv,
                cwd=str(run_cwd),
                env=run_env,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
                start_new_session=os.name == "posix",
                preexec_fn=_limits_preexec(self._policy.resources),
            )
        except OSError as exc:
            raise TEEExecutionError(f"unable to launch {host_argv[0]!r}: {exc}") from exc
        self._processes[process.pid] = process
        return process

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            _signal_group(process, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
        await process.wait()

    async def _terminate_all(self) -> None:
        processes = list(self._processes.values())
        self._processes.clear()
        for process in processes:
            if process.returncode is None:
                await self._kill(process)

    def _log_network_decision(self, decision: Any) -> None:
        self._logger.info(
            "tee_network_decision",
            tee_id=self._tee_id,
            host=decision.host,
            allowed=decision.allowed,
            reason=decision.reason,
        )


ProcessTEE = TEE


class ContainerTEE(TEE):
    """Runs each command through a container runtime (``docker``/``podman`` CLI).

    The working directory is bind-mounted at ``/workspace``; memory, CPU and the
    network flag map onto the runtime's own limits.
    """

    isolation_level = IsolationLevel.CONTAINER

    def __init__(
        self,
        policy: TEEPolicy,
        *,
        runtime: str = "",
        image: str = DEFAULT_CONTAINER_IMAGE,
        **kwargs: Any,
    ) -> None:
        super().__init__(policy, **kwargs)
        self._runtime = shutil.which(runtime) if runtime else None
        self._image = image
        if self._runtime is None:
            self._logger.warning(
                "tee_isolation_degraded",
                requested="container",
                effective="process",
                reason="container runtime not configured" if not runtime else "runtime not found",
                runtime=runtime,
            )

    @property
    def effective_isolation(self) -> IsolationLevel:
        return IsolationLevel.CONTAINER if self._runtime is not None else IsolationLevel.PROCESS

    def _guest_root(self) -> str:
        if self._runtime is None:
            return super()._guest_root()
        self._require_started()
        return _CONTAINER_WORKDIR

    def wrap_command(
        self, argv: tuple[str, ...], *, env: Mapping[str, str], cwd: Path
    ) -> tuple[str, ...]:
        if self._runtime is None:
            return argv
        working_dir = self._require_started()
        limits = self._policy.resources
        guest_cwd = Path(_CONTAINER_WORKDIR) / cwd.relative_to(working_dir)
        wrapped = [
            self._runtime,
            "run",
            "--rm",
            "-i",
            "--memory",
            f"{limits.memory_mb}m",
            "--cpus",
            f"{limits.cpu_cores:g}",
            "--network",
            "bridge" if self._policy.network_access else "none",
            "-v",
            f"{working_dir}:{_CONTAINER_WORKDIR}",
            "-w",
            guest_cwd.as_posix(),
        ]
        for key in sorted(env):
            if key != "PATH":
                wrapped.extend(["-e", key])
        wrapped.append(self._image)
        wrapped.extend(argv)
        return tuple(wrapped)


class VMTEE(TEE):
    """Delegates each command to a VM launcher given as a command prefix.

    The launcher receives the guest argv as trailing arguments and the ``TEE_*``
    variables through its environment.
    """

    isolation_level = IsolationLevel.VM

    def __init__(self, policy: TEEPolicy, *, runtime: str = "", **kwargs: Any) -> None:
        super().__init__(policy, **kwargs)
        prefix = shlex.split(runtime) if runtime else []
        resolved = shutil.which(prefix[0]) if prefix else None
        self._prefix = (resolved, *prefix[1:]) if resolved else ()
        if not self._prefix:
            self._logger.warning(
                "tee_isolation_degraded",
                requested="vm",
                effective="process",
                reason="vm runtime not configured" if not runtime else "runtime not found",
                runtime=runtime,
            )

    @property
    def effective_isolation(self) -> IsolationLevel:
        return IsolationLevel.VM if self._prefix else IsolationLevel.PROCESS

    def wrap_command(
        self, argv: tuple[str, ...], *, env: Mapping[str, str], cwd: Path
    ) -> tuple[str, ...]:
        return (*self._prefix, *argv)


def create_tee(
    policy: TEEPolicy,
    *,
    container_runtime: str = "",
    container_image: str = DEFAULT_CONTAINER_IMAGE,
    vm_runtime: str = "",
    **kwargs: Any,
) -> TEE:
    """Pick the backend for ``policy.isolation_level``; invalid policies fail here."""

    level = validate_policy(policy).isolation_level
    if level is IsolationLevel.CONTAINER:
        return ContainerTEE(policy, runtime=container_runtime, image=container_image, **kwargs)
    if level is IsolationLevel.VM:
        return VMTEE(policy, runtime=vm_runtime, **kwargs)
    return TEE(policy, **kwargs)


def _limits_preexec(limits: ResourceCeiling) -> Callable[[], None] | None:
    if os.name != "posix":
        return None
    # RLIMIT_DATA rather than RLIMIT_AS: runtimes like V8 and Go reserve large
    # PROT_NONE regions that would trip an address-space cap at startup.
    memory_bytes = int(limits.memory_mb * _BYTES_PER_MB)
    cpu_seconds = max(1, math.ceil(limits.cpu_cores * limits.timeout_seconds))

    def _apply() -> None:
        _set_limit(resource.RLIMIT_DATA, memory_bytes)
        _set_limit(resource.RLIMIT_CPU, cpu_seconds)

    return _apply


def _set_limit(kind: int, value: int) -> None:
    _, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, hard))


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    with suppress(ProcessLookupError):
        if os.name == "posix":
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)


def _release_directory(path: Path) -> None:
    if path.exists():
        safe_delete(path, path)


__all__ = [
    "DEFAULT_CONTAINER_IMAGE",
    "ContainerTEE",
    "ExecutionResult",
    "ProcessTEE",
    "TEE",
    "VMTEE",
    "create_tee",
]
