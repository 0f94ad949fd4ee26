"""Subagent error family."""

from __future__ import annotations

from collections.abc import Sequence

from agentforge.errors import AgentForgeError


class SubagentError(AgentForgeError):
    """Base class for subagent manager failures."""


class SubagentCapacityError(SubagentError):
    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"subagent capacity reached ({limit})")


class SubagentNotFoundError(SubagentError, KeyError):
    def __init__(self, subagent_id: str) -> None:
        self.subagent_id = subagent_id
        super().__init__(f"subagent {subagent_id!r} does not exist")

    def __str__(self) -> str:
        return str(self.args[0])


class DuplicateSubagentError(SubagentError):
    def __init__(self, subagent_id: str) -> None:
        self.subagent_id = subagent_id
        super().__init__(f"subagent {subagent_id!r} already exists")


class SubagentNotRunningError(SubagentError):
    def __init__(self, subagent_id: str) -> None:
        self.subagent_id = subagent_id
        super().__init__(f"subagent {subagent_id!r} is not running")


class SubagentStartError(SubagentError):
    """Initialization or worker start failed; the reason is kept as ``last_error``."""


class SubagentKilledError(SubagentError):
    """The worker exited while a tool call was in flight."""

    def __init__(self, subagent_id: str, returncode: int | None) -> None:
        self.subagent_id = subagent_id
        self.returncode = returncode
        super().__init__(
            f"subagent {subagent_id!r} exited (code {returncode}) with a tool call in flight"
        )


class UnknownToolError(SubagentError):
    def __init__(self, subagent_id: str, tool_name: str) -> None:
        self.subagent_id = subagent_id
        self.tool_name = tool_name
        super().__init__(f"subagent {subagent_id!r} has no tool {tool_name!r}")


class ToolExecutionError(SubagentError):
    def __init__(
        self, subagent_id: str, tool_name: str, message: str, *, error_type: str | None = None
    ) -> None:
        self.subagent_id = subagent_id
        self.tool_name = tool_name
        self.error_type = error_type
        prefix = f"{error_type}: " if error_type else ""
        super().__init__(f"tool {tool_name!r} on {subagent_id!r} failed: {prefix}{message}")


class ToolTimeoutError(ToolExecutionError, TimeoutError):
    def __init__(self, subagent_id: str, tool_name: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            subagent_id, tool_name, f"no response within {timeout_seconds:g}s", error_type=None
        )


class SubagentCleanupError(SubagentError):
    """Aggregate of every failure hit while deleting one or more subagents."""

    def __init__(self, subagent_id: str, errors: Sequence[BaseException]) -> None:
        self.subagent_id = subagent_id
        self.errors = tuple(errors)
        details = "; ".join(f"{type(item).__name__}: {item}" for item in self.errors)
        super().__init__(f"cleanup of {subagent_id!r} failed: {details}")


__all__ = [
    "DuplicateSubagentError",
    "SubagentCapacityError",
    "SubagentCleanupError",
    "SubagentError",
    "SubagentKilledError",
    "SubagentNotFoundError",
    "SubagentNotRunningError",
    "SubagentStartError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "UnknownToolError",
]
