"""Scenario: a tool call on a stopped subagent fails fast with a not-running error."""

from __future__ import annotations

import asyncio
import functools
import os
import sys
from typing import TYPE_CHECKING

import pytest

from agentforge.domain.models import IsolationLevel, ResourceCeiling, TEEPolicy
from agentforge.sandbox.tee import create_tee
from agentforge.subagents import (
    SubagentDescriptor,
    SubagentManager,
    SubagentNotRunningError,
    SubagentState,
)

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(os.name != "posix", reason="POSIX process groups"),
]

INIT_SCRIPT = (
    "from pathlib import Path\n"
    "Path('echo_tools.py').write_text('def echo(text):\\n    return text\\n', encoding='utf-8')\n"
)


async def test_run_tool_after_stop_raises_not_running(tmp_path: Path) -> None:
    policy = TEEPolicy(
        isolation_level=IsolationLevel.PROCESS,
        resources=ResourceCeiling(memory_mb=512, cpu_cores=1.0, timeout_seconds=20.0),
    )
    manager = SubagentManager(
        policy,
        2,
        python_executable=sys.executable,
        stop_grace_seconds=1.0,
        tee_factory=functools.partial(create_tee, base_dir=tmp_path),
    )
    async with manager:
        subagent_id = await manager.create(
            SubagentDescriptor(
                name="echoer",
                runtime="python",
                init_script=INIT_SCRIPT,
                tools={"echo": "echo_tools:echo"},
            )
        )
        await manager.start(subagent_id)
        assert await manager.run_tool(subagent_id, "echo", {"text": "alive"}) == "alive"

        stopped = await manager.stop(subagent_id)
        assert stopped.state is SubagentState.STOPPED

        with pytest.raises(SubagentNotRunningError):
            await asyncio.wait_for(
                manager.run_tool(subagent_id, "echo", {"text": "late"}), timeout=5.0
            )
        status = await manager.status(subagent_id)
        assert status.state is SubagentState.STOPPED
        assert status.pid is None
