"""Unit tests for Go source rendering."""

from __future__ import annotations

import json

import pytest
from jinja2 import DictLoader, Environment, StrictUndefined

from agentforge.compilation import BuildError, render_agent_sources
from agentforge.compilation.sources import CONFIG_FILE, go_string
from agentforge.domain.models import AgentBuildSpec

JOB_ID = "compile-1700000000000-abc123xyz"


def _spec(name: str = 'Quote "Bot"') -> AgentBuildSpec:
    return AgentBuildSpec.from_dict(
        {
            "agent_id": "agent-1",
            "name": name,
            "version": "1.0.0",
            "model_provider": {"provider": "openai", "model": "gpt-4o-mini"},
            "tools": [{"name": "chat"}, {"name": "analyze"}],
        }
    )


def test_rendering_is_deterministic() -> None:
    first = render_agent_sources(_spec(), JOB_ID)
    second = render_agent_sources(_spec(), JOB_ID)

    assert first == second
    assert first.names == ("config.json", "go.mod", "main.go")


def test_main_go_quotes_every_string() -> None:
    sources = render_agent_sources(_spec(), JOB_ID)
    main_go = sources["main.go"]

    assert f"JobID       = {go_string(JOB_ID)}" in main_go
    assert 'AgentName   = "Quote__Bot_"' in main_go
    assert '\t"chat",' in main_go
    assert '\t"analyze",' in main_go


def test_go_mod_uses_sanitized_module_name() -> None:
    sources = render_agent_sources(_spec("Support Bot"), JOB_ID, go_version="1.22")

    assert sources["go.mod"].splitlines()[0] == "module agentforge.local/support_bot"
    assert "go 1.22" in sources["go.mod"]


def test_config_document_embeds_build_identity() -> None:
    document = json.loads(render_agent_sources(_spec(), JOB_ID)[CONFIG_FILE])

    assert document["build"] == {
        "job_id": JOB_ID,
        "agent_name": "Quote__Bot_",
        "build_target": "wasm",
        "platform": "linux",
    }
    assert document["agent_id"] == "agent-1"


def test_go_string_escapes_non_ascii_and_quotes() -> None:
    assert go_string('a"b\\c') == '"a\\"b\\\\c"'
    assert go_string("é") == '"\\u00e9"'


def test_undefined_template_variables_fail_the_build() -> None:
    env = Environment(
        loader=DictLoader({"main.go.tmpl": "{{ missing }}", "go.mod.tmpl": ""}),
        undefined=StrictUndefined,
    )

    with pytest.raises(BuildError, match="failed to render main.go.tmpl"):
        render_agent_sources(_spec(), JOB_ID, environment=env)
