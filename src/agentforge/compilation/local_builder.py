"""
agentforge — local builder

File: src/agentforge/compilation/local_builder.py

Purpose
- Compile an agent on this host with the Go toolchain, inside a process TEE.

Functional requirements
- Fail fast with ``LocalBuildUnavailableError`` in serverless environments, when
  the Go binary is missing, or when the output directory is not writable.
- ``wasm`` builds with ``GOOS=js GOARCH=wasm`` and ships ``wasm_exec.js``;
  ``go`` builds a ``-buildmode=plugin`` shared object for the spec's platform.
- Every finished build writes ``deployment_info.json`` listing its files.
- The build directory is removed on every exit path.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from agentforge.compilation.errors import BuildError, LocalBuildUnavailableError
from agentforge.compilation.request import sanitize_agent_name
from agentforge.compilation.sources import (
    CONFIG_FILE,
    DEFAULT_GO_VERSION,
    render_agent_sources,
)
from agentforge.constants import DEPLOYMENT_INFO_SCHEMA_VERSION
from agentforge.domain.models import (
    AgentBuildSpec,
    BuildTarget,
    IsolationLevel,
    Platform,
    ResourceCeiling,
    TEEPolicy,
    utc_now,
)
from agentforge.sandbox import TEE, TEEError
from agentforge.utils.fs import PathLike, atomic_write_json

SERVERLESS_MARKERS: Final[tuple[str, ...]] = ("AWS_LAMBDA_FUNCTION_NAME", "NETLIFY", "VERCEL")
DEPLOYMENT_INFO_FILE: Final[str] = "deployment_info.json"
WASM_SUPPORT_FILE: Final[str] = "wasm_exec.js"
# Go 1.24 moved wasm_exec.js from misc/wasm to lib/wasm.
_WASM_SUPPORT_DIRS: Final[tuple[str, ...]] = ("lib/wasm", "misc/wasm")
_STDERR_TAIL: Final[int] = 4000
_GO_ENV_PASSTHROUGH: Final[tuple[str, ...]] = (
    "GOROOT",
    "GOPATH",
    "GOCACHE",
    "GOMODCACHE",
    "GOPROXY",
    "CC",
)

# go build needs far more headroom than the agents it produces.
DEFAULT_BUILDER_POLICY: Final[TEEPolicy] = TEEPolicy(
    isolation_level=IsolationLevel.PROCESS,
    resources=ResourceCeiling(memory_mb=4096, cpu_cores=2.0, timeout_seconds=300.0),
    network_access=False,
    filesystem_access=False,
)

TEEFactory = Callable[..., TEE]
Which = Callable[[str], str | None]


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    job_id: str
    artifact_path: Path
    output_dir: Path
    files: tuple[str, ...]
    deployment_info_path: Path
    duration_ms: float

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "artifact_path": str(self.artifact_path),
            "output_dir": str(self.output_dir),
            "files": list(self.files),
            "deployment_info_path": str(self.deployment_info_path),
            "duration_ms": round(self.duration_ms, 3),
        }


def artifact_file_name(job_id: str, target: BuildTarget, platform: Platform) -> str:
    if target is BuildTarget.SANDBOXED_BYTECODE:
        return f"agent_{job_id}.wasm"
    return f"agent_{job_id}{platform.plugin_extension}"


def build_environment(target: BuildTarget, platform: Platform) -> dict[str, str]:
    """GOOS/GOARCH and cgo settings for one build target."""

    env = {"GOTOOLCHAIN": "local"}
    if target is BuildTarget.SANDBOXED_BYTECODE:
        env.update({"GOOS": "js", "GOARCH": "wasm", "CGO_ENABLED": "0"})
    else:
        # -buildmode=plugin requires cgo.
        env.update({"GOOS": platform.value, "GOARCH": "amd64", "CGO_ENABLED": "1"})
    return env


class LocalBuilder:
    """Runs ``go build`` for one spec at a time inside a fresh isolate."""

    def __init__(
        self,
        output_dir: PathLike,
        *,
        build_dir: PathLike | None = None,
        go_binary: str = "go",
        go_version: str = DEFAULT_GO_VERSION,
        builder_policy: TEEPolicy = DEFAULT_BUILDER_POLICY,
        enabled: bool = True,
        environ: Mapping[str, str] | None = None,
        which: Which = shutil.which,
        tee_factory: TEEFactory | None = None,
        logger: Any | None = None,
    ) -> None:
        self._output_dir = Path(output_dir)
        self._build_dir = None if build_dir is None else Path(build_dir)
        self._go_binary = go_binary
        self._go_version = go_version
        self._builder_policy = builder_policy
        self._enabled = enabled
        self._environ = environ
        self._which = which
        self._tee_factory = tee_factory or TEE
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def check_available(self) -> str:
        """Return the resolved Go binary, or raise ``LocalBuildUnavailableError``."""

        environ = os.environ if self._environ is None else self._environ
        if not self._enabled:
            raise LocalBuildUnavailableError("local builds are disabled by configuration")
        marker = next((name for name in SERVERLESS_MARKERS if environ.get(name)), None)
        if marker is not None:
            raise LocalBuildUnavailableError(f"serverless environment detected ({marker})")
        go = self._which(self._go_binary)
        if go is None:
            raise LocalBuildUnavailableError(f"Go toolchain {self._go_binary!r} not found")
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalBuildUnavailableError(
                f"output directory {self._output_dir} cannot be created: {exc}"
            ) from exc
        if not os.access(self._output_dir, os.W_OK):
            raise LocalBuildUnavailableError(f"output directory {self._output_dir} is not writable")
        return go

    async def build(self, spec: AgentBuildSpec, job_id: str) -> BuildArtifact:
        go = await asyncio.to_thread(self.check_available)
        started = utc_now()
        job_output = self._output_dir / job_id
        await asyncio.to_thread(job_output.mkdir, parents=True, exist_ok=True)
        log = self._logger.bind(job_id=job_id, agent_name=sanitize_agent_name(spec.name))

        environ = os.environ if self._environ is None else self._environ
        passthrough = {key: environ[key] for key in _GO_ENV_PASSTHROUGH if environ.get(key)}
        tee = self._tee_factory(
            self._builder_policy,
            base_dir=self._build_dir,
            env=passthrough,
            allowed_roots=(self._output_dir,),
            logger=self._logger,
        )
        artifact_name = artifact_file_name(job_id, spec.build_target, spec.platform)
        try:
            async with tee.session():
                sources = render_agent_sources(spec, job_id, go_version=self._go_version)
                for name in sources.names:
                    await tee.write_file(name, sources[name])

                args = ["build"]
                if spec.build_target is BuildTarget.NATIVE_PLUGIN:
                    args.append("-buildmode=plugin")
                args.extend(["-o", artifact_name, "."])
                log.info("local_build_started", target=spec.build_target.value, go=go)
                result = await tee.execute(
                    go, args, env=build_environment(spec.build_target, spec.platform)
                )
                if not result.succeeded:
                    tail = result.stderr[-_STDERR_TAIL:]
                    log.warning("local_build_failed", exit_code=result.exit_code)
                    raise BuildError(
                        f"go build exited with code {result.exit_code}", output=tail
                    )

                artifact_path = await tee.copy_file_out(artifact_name, job_output / artifact_name)
                await tee.copy_file_out(CONFIG_FILE, job_output / CONFIG_FILE)
                if spec.build_target is BuildTarget.SANDBOXED_BYTECODE:
                    await self._copy_wasm_support(tee, go, job_output, log)
        except TEEError as exc:
            raise BuildError(f"build sandbox failed: {exc}") from exc

        info_path = job_output / DEPLOYMENT_INFO_FILE
        files = tuple(sorted({*(p.name for p in job_output.iterdir()), DEPLOYMENT_INFO_FILE}))
        await asyncio.to_thread(
            atomic_write_json,
            info_path,
            deployment_info(spec, job_id, files=files, compiled_at=utc_now().isoformat()),
        )
        duration_ms = (utc_now() - started).total_seconds() * 1000.0
        log.info("local_build_completed", artifact=str(artifact_path), files=list(files))
        return BuildArtifact(
            job_id=job_id,
            artifact_path=artifact_path,
            output_dir=job_output,
            files=files,
            deployment_info_path=info_path,
            duration_ms=duration_ms,
        )

    async def _copy_wasm_support(
        self, tee: TEE, go: str, job_output: Path, log: Any
    ) -> None:
        result = await tee.execute(go, ["env", "GOROOT"])
        goroot = Path(result.stdout.strip()) if result.succeeded else None
        if goroot is not None:
            for subdir in _WASM_SUPPORT_DIRS:
                candidate = goroot / subdir / WASM_SUPPORT_FILE
                if candidate.is_file():
                    await asyncio.to_thread(
                        shutil.copy2, candidate, job_output / WASM_SUPPORT_FILE
                    )
                    return
        log.warning("wasm_support_missing", goroot=None if goroot is None else str(goroot))


def deployment_info(
    spec: AgentBuildSpec, job_id: str, *, files: tuple[str, ...], compiled_at: str
) -> dict[str, object]:
    """The manifest written beside every artifact; it echoes the job id."""

    return {
        "schema_version": DEPLOYMENT_INFO_SCHEMA_VERSION,
        "agent_name": sanitize_agent_name(spec.name),
        "agent_id": spec.agent_id,
        "job_id": job_id,
        "build_target": spec.build_target.value,
        "platform": spec.platform.value,
        "compiled_at": compiled_at,
        "files": list(files),
    }


__all__ = [
    "DEFAULT_BUILDER_POLICY",
    "DEPLOYMENT_INFO_FILE",
    "SERVERLESS_MARKERS",
    "BuildArtifact",
    "LocalBuilder",
    "artifact_file_name",
    "build_environment",
    "deployment_info",
]
