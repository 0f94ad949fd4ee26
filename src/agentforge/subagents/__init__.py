"""
agentforge — subagent process manager

File: src/agentforge/subagents/__init__.py

Purpose
- Public surface for subagent descriptors, the worker protocol and the manager.
"""

from agentforge.subagents.descriptor import ResourceOverride, SubagentDescriptor, SubagentRuntime
from agentforge.subagents.errors import (
    DuplicateSubagentError,
    SubagentCapacityError,
    SubagentCleanupError,
    SubagentError,
    SubagentKilledError,
    SubagentNotFoundError,
    SubagentNotRunningError,
    SubagentStartError,
    ToolExecutionError,
    ToolTimeoutError,
    UnknownToolError,
)
from agentforge.subagents.manager import (
    SubagentManager,
    SubagentState,
    SubagentStatus,
    TEEFactory,
)
from agentforge.subagents.protocol import MessageKind, ToolRequest, WorkerMessage, decode_message
from agentforge.subagents.runtime import (
    TOOLS_MANIFEST_FILE,
    RuntimeLaunch,
    render_tool_manifest,
    runtime_launch,
)

__all__ = [
    "DuplicateSubagentError",
    "MessageKind",
    "ResourceOverride",
    "RuntimeLaunch",
    "SubagentCapacityError",
    "SubagentCleanupError",
    "SubagentDescriptor",
    "SubagentError",
    "SubagentKilledError",
    "SubagentManager",
    "SubagentNotFoundError",
    "SubagentNotRunningError",
    "SubagentRuntime",
    "SubagentStartError",
    "SubagentState",
    "SubagentStatus",
    "TEEFactory",
    "TOOLS_MANIFEST_FILE",
    "ToolExecutionError",
    "ToolRequest",
    "ToolTimeoutError",
    "UnknownToolError",
    "WorkerMessage",
    "decode_message",
    "render_tool_manifest",
    "runtime_launch",
]
