"""Unit tests for TEE policy validation, config mapping and resource sampling."""

from __future__ import annotations

import os

import pytest

from agentforge.domain.models import IsolationLevel, ResourceCeiling, TEEPolicy
from agentforge.errors import ConfigurationError
from agentforge.sandbox.metrics import ProcessMetrics, ProcessMetricsProvider
from agentforge.sandbox.policy import (
    TEEPolicyError,
    merge_resources,
    policy_environment,
    policy_from_config,
    validate_policy,
)


def test_validate_policy_lists_every_issue() -> None:
    policy = TEEPolicy(
        isolation_level="hypervisor",
        resources=ResourceCeiling(memory_mb=0, cpu_cores=1.0, timeout_seconds=-5),
    )

    with pytest.raises(TEEPolicyError) as excinfo:
        validate_policy(policy)

    assert isinstance(excinfo.value, ConfigurationError)
    assert len(excinfo.value.issues) == 3
    assert "timeout_seconds" in str(excinfo.value)


def test_policy_from_config_maps_tee_section() -> None:
    policy = policy_from_config(
        {
            "isolation_level": "container",
            "memory_mb": 256,
            "cpu_cores": 0.5,
            "timeout_seconds": 30.0,
            "network_access": False,
            "filesystem_access": True,
        }
    )

    assert policy.isolation_level is IsolationLevel.CONTAINER
    assert policy.resources == ResourceCeiling(memory_mb=256, cpu_cores=0.5, timeout_seconds=30.0)
    assert policy.network_access is False
    assert policy.filesystem_access is True


def test_merge_resources_inherits_unset_limits() -> None:
    parent = TEEPolicy(resources=ResourceCeiling(memory_mb=1024, cpu_cores=2.0))

    child = merge_resources(parent, memory_mb=128)

    assert child.resources.memory_mb == 128
    assert child.resources.cpu_cores == 2.0
    assert child.resources.timeout_seconds == parent.resources.timeout_seconds
    with pytest.raises(TEEPolicyError):
        merge_resources(parent, cpu_cores=0)


def test_policy_environment_exports_limits() -> None:
    env = policy_environment(
        TEEPolicy(
            resources=ResourceCeiling(memory_mb=256, cpu_cores=0.5, timeout_seconds=30),
            network_access=False,
        )
    )

    assert env == {
        "TEE_ISOLATION_LEVEL": "process",
        "TEE_MEMORY_LIMIT_MB": "256",
        "TEE_CPU_LIMIT": "0.5",
        "TEE_TIMEOUT_SECONDS": "30",
        "TEE_NETWORK_ACCESS": "false",
        "TEE_FILESYSTEM_ACCESS": "false",
    }


def test_metrics_exceeds_reports_ceilings() -> None:
    policy = TEEPolicy(resources=ResourceCeiling(memory_mb=10, cpu_cores=1.0, timeout_seconds=2))
    sample = ProcessMetrics(
        pid=1,
        process_count=1,
        rss_bytes=20 * 1024 * 1024,
        cpu_user_seconds=2.0,
        cpu_system_seconds=0.5,
    )

    assert sample.exceeds(policy) == ("memory_mb", "cpu_cores")
    assert sample.to_dict()["rss_mb"] == 20.0


def test_metrics_provider_samples_live_process() -> None:
    sample = ProcessMetricsProvider().sample(os.getpid())

    assert sample is not None
    assert sample.rss_bytes > 0
    assert sample.process_count >= 1


def test_metrics_provider_returns_none_for_missing_process() -> None:
    assert ProcessMetricsProvider().sample(2**22 + 12345) is None
