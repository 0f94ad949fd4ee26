"""Compilation error family.

Three failures reach the user: dispatch, build and timeout.
``LocalBuildUnavailableError`` never does; the orchestrator turns it into a
remote dispatch.
"""

from __future__ import annotations

from agentforge.errors import AgentForgeError


class CompilationError(AgentForgeError):
    """Base class for compilation failures."""


class LocalBuildUnavailableError(CompilationError):
    """This host cannot run a local build (serverless, no toolchain, read-only output)."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"local build unavailable: {reason}")


class BuildError(CompilationError):
    """The toolchain ran and the build failed."""

    def __init__(self, message: str, *, output: str = "") -> None:
        self.output = output
        super().__init__(message)


class CIProviderError(CompilationError):
    """A CI provider call failed; ``raw_body`` keeps the response for diagnostics."""

    def __init__(
        self, operation: str, message: str, *, status: int | None = None, raw_body: str = ""
    ) -> None:
        self.operation = operation
        self.status = status
        self.raw_body = raw_body
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"CI {operation} failed{detail}: {message}")


class DispatchError(CompilationError):
    """The remote workflow could not be triggered."""


class PollingTimeoutError(CompilationError, TimeoutError):
    """Polling gave up before the job reached a terminal state."""

    def __init__(self, job_id: str, attempts: int, transient_errors: int = 0) -> None:
        self.job_id = job_id
        self.attempts = attempts
        self.transient_errors = transient_errors
        super().__init__(
            f"job {job_id} did not finish after {attempts} polling attempts"
            f" ({transient_errors} transient errors)"
        )


class JobNotFoundError(CompilationError, KeyError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"unknown compilation job {job_id!r}")

    def __str__(self) -> str:
        return str(self.args[0])


__all__ = [
    "BuildError",
    "CIProviderError",
    "CompilationError",
    "DispatchError",
    "JobNotFoundError",
    "LocalBuildUnavailableError",
    "PollingTimeoutError",
]
