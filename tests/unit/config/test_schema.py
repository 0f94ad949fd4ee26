"""Unit tests for config schema validation, merging and redaction."""

from __future__ import annotations

import pytest

from agentforge.config.schema import (
    ConfigValidationError,
    apply_profile_overlay,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _issue_paths(config: dict[str, object]) -> list[str]:
    return [issue.path for issue in validate_config(config).issues]


def test_default_config_is_valid_and_independent() -> None:
    first = default_config()
    first["ci"]["owner"] = "changed"

    result = validate_config(default_config())

    assert result.is_valid
    assert default_config()["ci"]["owner"] == ""


def test_merge_is_deep_and_does_not_mutate_inputs() -> None:
    base = {"ci": {"owner": "a", "repo": "b"}}
    overlay = {"ci": {"repo": "c"}}

    merged = merge_config(base, overlay)

    assert merged == {"ci": {"owner": "a", "repo": "c"}}
    assert base["ci"]["repo"] == "b"


@pytest.mark.parametrize(
    ("section", "key", "value", "path"),
    [
        ("orchestrator", "poll_max_attempts", 0, "orchestrator.poll_max_attempts"),
        ("orchestrator", "poll_interval_seconds", 0.0, "orchestrator.poll_interval_seconds"),
        ("ci", "runs_page_size", 101, "ci.runs_page_size"),
        ("ci", "api_url", "ftp://example", "ci.api_url"),
        ("ci", "token_env", "lower-case", "ci.token_env"),
        ("tee", "isolation_level", "hypervisor", "tee.isolation_level"),
        ("inference", "default_provider", "acme", "inference.default_provider"),
    ],
)
def test_field_rules_report_paths(section: str, key: str, value: object, path: str) -> None:
    config = merge_config(default_config(), {section: {key: value}})

    assert path in _issue_paths(config)


def test_unknown_fields_and_provider_maps() -> None:
    config = merge_config(
        default_config(),
        {
            "ci": {"colour": "blue"},
            "inference": {"endpoints": {"acme": "https://acme.test"}},
        },
    )

    result = validate_config(config)
    messages = {issue.path: issue.message for issue in result.issues}

    assert messages["ci.colour"] == "unknown field"
    assert "inference.endpoints.acme" in messages


def test_profile_overlay_applies_and_revalidates() -> None:
    strict = apply_profile_overlay(default_config(), "strict")

    assert strict["tee"]["memory_mb"] == 256
    assert strict["tee"]["network_access"] is False

    with pytest.raises(ConfigValidationError, match="profile 'nope' is not defined"):
        apply_profile_overlay(default_config(), "nope")


def test_migration_guidance_mentions_direction() -> None:
    assert "older" in migration_guidance(0)
    assert "newer" in migration_guidance(99)
    assert migration_guidance(1) == "schema version is current"


def test_redact_config_masks_env_names() -> None:
    redacted = redact_config(default_config())

    assert redacted["ci"]["token_env"] == "<redacted>"
    assert redacted["inference"]["api_key_envs"]["openai"] == "OPENAI_API_KEY"
    assert redacted["inference"]["default_model"] == "gpt-4o-mini"


def test_secret_looking_keys_point_at_env_fields() -> None:
    config = merge_config(default_config(), {"inference": {"apiKey": "sk-inline"}})

    messages = {issue.path: issue.message for issue in validate_config(config).issues}

    assert messages["inference.apiKey"].startswith("embedded secret values are forbidden")


def test_validation_error_renders_every_issue() -> None:
    config = merge_config(default_config(), {"tee": {"memory_mb": 0, "cpu_cores": -1}})
    issues = validate_config(config).issues

    error = ConfigValidationError(issues)

    assert str(error).startswith("invalid config: ")
    assert "tee.memory_mb: must be >= 1" in str(error)
    assert "tee.cpu_cores: must be > 0.0" in str(error)
    assert error.validation_issues == issues
