"""Scenario: a build spec declares a required credential whose env var is unset."""

from __future__ import annotations

import pytest

from agentforge.credentials import CredentialStore, MissingCredentialsError
from agentforge.domain.models import AgentBuildSpec
from agentforge.security.redaction import SecretRegistry

pytestmark = pytest.mark.integration


def test_validate_all_names_exactly_the_unset_required_credential() -> None:
    spec = AgentBuildSpec.from_dict(
        {
            "name": "research-agent",
            "version": "2.1.0",
            "model_provider": {
                "provider": "anthropic",
                "model": "claude-3-haiku",
                "credential_name": "ANTHROPIC_KEY",
            },
            "credentials": [
                {
                    "name": "ANTHROPIC_KEY",
                    "type": "api-key",
                    "source": "env",
                    "reference": "SCENARIO_ANTHROPIC_KEY",
                },
                {
                    "name": "SEARCH_TOKEN",
                    "type": "token",
                    "source": "env",
                    "reference": "SCENARIO_SEARCH_TOKEN",
                },
                {
                    "name": "TELEMETRY_KEY",
                    "type": "api-key",
                    "source": "env",
                    "reference": "SCENARIO_TELEMETRY_KEY",
                    "optional": True,
                },
            ],
        }
    )
    store = CredentialStore(
        environ={"SCENARIO_ANTHROPIC_KEY": "sk-ant-present"}, registry=SecretRegistry()
    )
    store.add_all(spec.credentials, persist=False)

    with pytest.raises(MissingCredentialsError) as excinfo:
        store.validate_all()

    assert excinfo.value.names == ("SEARCH_TOKEN",)
    assert str(excinfo.value) == "missing required credentials: SEARCH_TOKEN"
    assert "sk-ant-present" not in str(store.list())
