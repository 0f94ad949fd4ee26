"""
agentforge — unit tests for the subagent process manager

File: tests/unit/subagents/test_manager.py

Purpose
- Drive real python workers through create, start, run_tool, stop and delete.

Functional requirements
- Offline; workers run under the current interpreter inside process-level TEEs
  rooted in the pytest tmp directory.
"""

from __future__ import annotations

import functools
import os
import sys
import textwrap
from typing import TYPE_CHECKING

import pytest

from agentforge.credentials import CredentialError, CredentialStore
from agentforge.domain.models import (
    Credential,
    IsolationLevel,
    ModelProviderSelection,
    ResourceCeiling,
    TEEPolicy,
)
from agentforge.errors import ConfigurationError
from agentforge.sandbox.tee import create_tee
from agentforge.security.redaction import SecretRegistry
from agentforge.subagents import (
    DuplicateSubagentError,
    ResourceOverride,
    SubagentCapacityError,
    SubagentDescriptor,
    SubagentKilledError,
    SubagentManager,
    SubagentNotFoundError,
    SubagentNotRunningError,
    SubagentStartError,
    SubagentState,
    ToolExecutionError,
    ToolTimeoutError,
    UnknownToolError,
)

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.skipif(os.name != "posix", reason="POSIX process groups")

TOOLS_MODULE = textwrap.dedent(
    """
    import os
    import time


    def shout(text):
        return text.upper()


    def read_env(name):
        return os.environ.get(name)


    def boom():
        raise KeyError("nope")


    def crash():
        os._exit(3)


    def nap(seconds):
        time.sleep(seconds)
        return "rested"
    """
)

INIT_SCRIPT = (
    "from pathlib import Path\n"
    f"Path('demo_tools.py').write_text({TOOLS_MODULE!r}, encoding='utf-8')\n"
)

TOOLS = {
    name: f"demo_tools:{name}" for name in ("shout", "read_env", "boom", "crash", "nap")
}


def _policy(timeout_seconds: float = 20.0) -> TEEPolicy:
    return TEEPolicy(
        isolation_level=IsolationLevel.PROCESS,
        resources=ResourceCeiling(memory_mb=512, cpu_cores=1.0, timeout_seconds=timeout_seconds),
    )


def _manager(
    tmp_path: Path,
    *,
    max_subagents: int = 5,
    credential_store: CredentialStore | None = None,
) -> SubagentManager:
    return SubagentManager(
        _policy(),
        max_subagents,
        credential_store,
        python_executable=sys.executable,
        stop_grace_seconds=1.0,
        tee_factory=functools.partial(create_tee, base_dir=tmp_path),
    )


def _descriptor(**overrides: object) -> SubagentDescriptor:
    fields: dict[str, object] = {
        "name": "helper",
        "runtime": "python",
        "init_script": INIT_SCRIPT,
        "tools": TOOLS,
    }
    fields.update(overrides)
    return SubagentDescriptor(**fields)  # type: ignore[arg-type]


async def test_lifecycle_start_run_stop(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(_descriptor())
        created = await manager.status(subagent_id)
        assert created.state is SubagentState.CREATED
        assert created.health == "idle"

        started = await manager.start(subagent_id)
        assert started.is_running
        assert started.pid is not None
        assert started.tools == tuple(sorted(TOOLS))

        assert await manager.run_tool(subagent_id, "shout", {"text": "hello"}) == "HELLO"

        stopped = await manager.stop(subagent_id)
        assert stopped.state is SubagentState.STOPPED
        assert not stopped.is_running
        again = await manager.stop(subagent_id)
        assert again.state is SubagentState.STOPPED

        with pytest.raises(SubagentNotRunningError):
            await manager.run_tool(subagent_id, "shout", {"text": "x"})


async def test_state_is_derived_through_the_lifecycle(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(_descriptor())

        initialized = await manager.initialize(subagent_id)
        assert initialized.state is SubagentState.INITIALIZED
        assert not initialized.is_running

        running = await manager.start(subagent_id)
        assert running.state is SubagentState.RUNNING
        assert running.to_dict()["state"] == "running"


async def test_restart_after_stop_reuses_initialized_isolate(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(_descriptor())
        await manager.start(subagent_id)
        await manager.stop(subagent_id)

        status = await manager.start(subagent_id)

        assert status.state is SubagentState.RUNNING
        assert await manager.run_tool(subagent_id, "shout", {"text": "again"}) == "AGAIN"


async def test_capacity_is_enforced(tmp_path: Path) -> None:
    async with _manager(tmp_path, max_subagents=1) as manager:
        await manager.create(_descriptor())

        with pytest.raises(SubagentCapacityError, match=r"capacity reached \(1\)"):
            await manager.create(_descriptor(name="second"))
        assert len(await manager.list()) == 1


async def test_duplicate_ids_are_rejected(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        await manager.create(_descriptor(id="helper-1"))

        with pytest.raises(DuplicateSubagentError):
            await manager.create(_descriptor(id="helper-1"))


async def test_tool_failure_is_recorded_and_isolated(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        failing = await manager.create(_descriptor(name="a"))
        healthy = await manager.create(_descriptor(name="b"))
        await manager.start(failing)
        await manager.start(healthy)

        with pytest.raises(ToolExecutionError) as excinfo:
            await manager.run_tool(failing, "boom")

        assert excinfo.value.error_type == "KeyError"
        status = await manager.status(failing)
        assert status.is_running
        assert status.last_error is not None and status.last_error.startswith("boom: KeyError")
        assert await manager.run_tool(healthy, "shout", {"text": "ok"}) == "OK"
        assert (await manager.status(healthy)).last_error is None


async def test_unknown_tool(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(_descriptor())
        await manager.start(subagent_id)

        with pytest.raises(UnknownToolError):
            await manager.run_tool(subagent_id, "missing")


async def test_worker_exit_fails_in_flight_call(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(_descriptor())
        await manager.start(subagent_id)

        with pytest.raises(SubagentKilledError) as excinfo:
            await manager.run_tool(subagent_id, "crash")

        assert excinfo.value.returncode == 3
        status = await manager.status(subagent_id)
        assert not status.is_running
        assert status.health == "error"
        assert "exited unexpectedly with code 3" in (status.last_error or "")
        assert status.state is SubagentState.FAILED
        assert status.to_dict()["state"] == "failed"


async def test_tool_timeout_uses_resource_override(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(
            _descriptor(resources=ResourceOverride(timeout_seconds=3.0))
        )
        await manager.start(subagent_id)
        timeout = await manager.run_tool(subagent_id, "read_env", {"name": "TEE_TIMEOUT_SECONDS"})
        memory = await manager.run_tool(subagent_id, "read_env", {"name": "TEE_MEMORY_LIMIT_MB"})
        assert (timeout, memory) == ("3", "512")

        with pytest.raises(ToolTimeoutError):
            await manager.run_tool(subagent_id, "nap", {"seconds": 30})


async def test_credential_references_expand_at_start(tmp_path: Path) -> None:
    store = CredentialStore(environ={"RAW": "tok-12345"}, registry=SecretRegistry())
    store.add(Credential(name="TOKEN", reference="RAW"), persist=False)
    async with _manager(tmp_path, credential_store=store) as manager:
        subagent_id = await manager.create(
            _descriptor(
                env={"API_TOKEN": "Bearer ${credential:TOKEN}", "PLAIN": "x"},
                model_provider=ModelProviderSelection(provider="openai", model="gpt-4o-mini"),
            )
        )
        await manager.start(subagent_id)

        assert await manager.run_tool(subagent_id, "read_env", {"name": "API_TOKEN"}) == (
            "Bearer tok-12345"
        )
        assert await manager.run_tool(subagent_id, "read_env", {"name": "PLAIN"}) == "x"
        assert await manager.run_tool(subagent_id, "read_env", {"name": "AGENTFORGE_MODEL"}) == (
            "gpt-4o-mini"
        )


async def test_credential_reference_without_store_fails_start(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(_descriptor(env={"API_TOKEN": "${credential:TOKEN}"}))

        with pytest.raises(CredentialError, match="no credential store"):
            await manager.start(subagent_id)
        assert (await manager.status(subagent_id)).last_error is not None


async def test_failing_init_script_keeps_last_error(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(
            _descriptor(init_script="import sys\nsys.stderr.write('bad init\\n')\nsys.exit(4)\n")
        )

        with pytest.raises(SubagentStartError, match="code 4: bad init"):
            await manager.start(subagent_id)

        status = await manager.status(subagent_id)
        assert status.state is SubagentState.CREATED
        assert status.health == "error"


async def test_delete_removes_subagent(tmp_path: Path) -> None:
    async with _manager(tmp_path) as manager:
        subagent_id = await manager.create(_descriptor())
        await manager.start(subagent_id)

        await manager.delete(subagent_id)

        with pytest.raises(SubagentNotFoundError):
            await manager.status(subagent_id)
        with pytest.raises(SubagentNotFoundError):
            await manager.delete(subagent_id)
        assert await manager.list() == ()


def test_manager_rejects_bad_capacity() -> None:
    with pytest.raises(ConfigurationError, match="max_subagents"):
        SubagentManager(_policy(), 0)
