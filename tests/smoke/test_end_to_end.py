"""
agentforge — end-to-end smoke tests

File: tests/smoke/test_end_to_end.py

Purpose
- Drive ``python -m agentforge`` as a subprocess and check exit codes, JSON
  payloads and on-disk side effects.
- When a Go toolchain is installed, compile a real sandboxed-bytecode agent.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from pathlib import Path
from urllib.parse import unquote, urlparse

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"

SPEC = {
    "name": "smoke-agent",
    "version": "0.1.0",
    "description": "Smoke test agent",
    "build_target": "sandboxed-bytecode",
    "model_provider": {"provider": "openai", "model": "gpt-4o-mini"},
    "tools": [
        {
            "name": "analyze",
            "parameters": [{"name": "data", "type": "string", "required": True}],
            "implementation": "agentforge.runtime.builtin_tools:analyze",
        }
    ],
}


def _run_cli(workdir: Path, *args: str) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    existing_pythonpath = env.get("PYTHONPATH")
    env["PYTHONPATH"] = (
        str(SRC_PATH) if not existing_pythonpath else f"{SRC_PATH}{os.pathsep}{existing_pythonpath}"
    )
    for name in ("AWS_LAMBDA_FUNCTION_NAME", "NETLIFY", "VERCEL"):
        env.pop(name, None)
    return subprocess.run(
        [sys.executable, "-m", "agentforge", *args],
        cwd=workdir,
        text=True,
        capture_output=True,
        check=False,
        env=env,
        timeout=600,
    )


def _workspace(tmp_path: Path) -> Path:
    (tmp_path / "agentforge.toml").write_text(
        '[orchestrator]\noutput_dir = "out"\nbuild_dir = "work"\n\n'
        '[credentials]\nstore_path = "state/credentials.json"\n\n'
        '[observability]\nlog_dir = "logs"\n',
        encoding="utf-8",
    )
    (tmp_path / "agent.json").write_text(json.dumps(SPEC), encoding="utf-8")
    return tmp_path


def _last_json(stdout: str) -> dict[str, object]:
    lines = [line for line in stdout.splitlines() if line.strip()]
    assert lines, "expected JSON output"
    payload = json.loads(lines[-1])
    assert isinstance(payload, dict)
    return payload


@pytest.mark.smoke
def test_cli_config_and_doctor_smoke(tmp_path: Path) -> None:
    workdir = _workspace(tmp_path)

    config = _run_cli(workdir, "config", "--json")
    assert config.returncode == 0, config.stderr
    payload = _last_json(config.stdout)
    assert payload["command"] == "config"

    doctor = _run_cli(workdir, "doctor", "--json")
    assert doctor.returncode == 0, doctor.stderr
    checks = _last_json(doctor.stdout)["checks"]
    names = [item["name"] for item in checks]  # type: ignore[union-attr]
    assert names[:3] == ["config", "local_build", "ci"]


@pytest.mark.smoke
def test_cli_credentials_check_exit_code(tmp_path: Path) -> None:
    workdir = _workspace(tmp_path)
    spec = dict(SPEC)
    spec["credentials"] = [
        {
            "name": "SMOKE_TOKEN",
            "type": "token",
            "source": "env",
            "reference": "AGENTFORGE_SMOKE_UNSET_TOKEN",
        }
    ]
    (workdir / "agent.json").write_text(json.dumps(spec), encoding="utf-8")

    completed = _run_cli(workdir, "credentials", "check", "--spec", "agent.json", "--json")

    assert completed.returncode == 2, completed.stderr
    assert _last_json(completed.stdout)["missing"] == ["SMOKE_TOKEN"]
    # Spec-scoped credentials are checked, never persisted.
    assert not (workdir / "state" / "credentials.json").exists()


@pytest.mark.smoke
@pytest.mark.skipif(shutil.which("go") is None, reason="Go toolchain not installed")
def test_local_sandboxed_bytecode_build(tmp_path: Path) -> None:
    workdir = _workspace(tmp_path)

    completed = _run_cli(workdir, "build", "agent.json", "--json")

    assert completed.returncode == 0, completed.stderr
    payload = _last_json(completed.stdout)
    assert payload["status"] == "completed"
    assert payload["method"] == "local"
    artifact = Path(unquote(urlparse(str(payload["artifact_url"])).path))
    assert artifact.is_file()
    assert artifact.suffix == ".wasm"
    output_dir = artifact.parent
    info = json.loads((output_dir / "deployment_info.json").read_text(encoding="utf-8"))
    assert info["agent_name"] == "smoke-agent"
    assert (output_dir / "config.json").is_file()
    assert (output_dir / "wasm_exec.js").is_file()
