"""Package-wide exception roots shared by every component."""

from __future__ import annotations

from collections.abc import Sequence


class AgentForgeError(Exception):
    """Base class for all agentforge failures."""


class ConfigurationError(AgentForgeError, ValueError):
    """Invalid build spec, policy or config; raised before any work is started."""

    def __init__(self, message: str, *, issues: Sequence[str] = ()) -> None:
        self.issues = tuple(issues)
        if self.issues and message:
            detail = "; ".join(self.issues)
            message = f"{message}: {detail}"
        super().__init__(message)


class JobTransitionError(AgentForgeError):
    """A compilation job was asked to move backwards or out of a terminal state."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"job {job_id}: cannot transition from {current} to {requested}")


__all__ = ["AgentForgeError", "ConfigurationError", "JobTransitionError"]
