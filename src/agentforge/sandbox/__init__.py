"""
agentforge — TEE isolation layer

File: src/agentforge/sandbox/__init__.py

Purpose
- Public surface for policy validation, capability checks and isolate backends.
"""

from agentforge.sandbox.capabilities import (
    CapabilityGate,
    CopyDirection,
    NetworkDecision,
    NetworkMode,
)
from agentforge.sandbox.metrics import ProcessMetrics, ProcessMetricsProvider
from agentforge.sandbox.policy import (
    TEECapabilityError,
    TEEError,
    TEEExecutionError,
    TEENotStartedError,
    TEEPolicyError,
    TEETimeoutError,
    merge_resources,
    policy_environment,
    policy_from_config,
    validate_policy,
)
from agentforge.sandbox.tee import (
    DEFAULT_CONTAINER_IMAGE,
    TEE,
    VMTEE,
    ContainerTEE,
    ExecutionResult,
    ProcessTEE,
    create_tee,
)

__all__ = [
    "CapabilityGate",
    "ContainerTEE",
    "CopyDirection",
    "DEFAULT_CONTAINER_IMAGE",
    "ExecutionResult",
    "NetworkDecision",
    "NetworkMode",
    "ProcessMetrics",
    "ProcessMetricsProvider",
    "ProcessTEE",
    "TEE",
    "TEECapabilityError",
    "TEEError",
    "TEEExecutionError",
    "TEENotStartedError",
    "TEEPolicyError",
    "TEETimeoutError",
    "VMTEE",
    "create_tee",
    "merge_resources",
    "policy_environment",
    "policy_from_config",
    "validate_policy",
]
