"""TEE policy validation, config mapping and the sandbox error family."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace

from agentforge.domain.models import IsolationLevel, ResourceCeiling, TEEPolicy
from agentforge.errors import AgentForgeError, ConfigurationError


class TEEError(AgentForgeError):
    """Base error for isolate failures."""


class TEEPolicyError(ConfigurationError, TEEError):
    """Raised before any isolate exists when a policy is unusable."""

    def __init__(self, issues: tuple[str, ...]) -> None:
        super().__init__("invalid TEE policy", issues=issues)


class TEENotStartedError(TEEError):
    """Raised when an isolate is used before ``start`` or after ``stop``."""


class TEETimeoutError(TEEError, TimeoutError):
    """Wall-clock timeout; distinct from a command exiting non-zero."""

    def __init__(self, command: str, timeout_seconds: float) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{command!r} exceeded the {timeout_seconds:g}s TEE timeout")


class TEEExecutionError(TEEError):
    """The command could not be launched at all (missing binary, bad cwd)."""


class TEECapabilityError(TEEError, PermissionError):
    """A network or filesystem operation is outside the policy's capability flags."""


def validate_policy(policy: TEEPolicy) -> TEEPolicy:
    """Return ``policy`` unchanged when usable; raise ``TEEPolicyError`` otherwise."""

    if not isinstance(policy, TEEPolicy):
        raise TEEPolicyError((f"expected TEEPolicy, got {type(policy).__name__}",))
    issues = policy.issues()
    if issues:
        raise TEEPolicyError(issues)
    return policy


def policy_from_config(tee_config: Mapping[str, object]) -> TEEPolicy:
    """Build the default policy from a validated ``[tee]`` config section."""

    return validate_policy(
        TEEPolicy(
            isolation_level=str(  # type: ignore[arg-type]
                tee_config.get("isolation_level", IsolationLevel.PROCESS.value)
            ),
            resources=ResourceCeiling(
                memory_mb=int(tee_config.get("memory_mb", 512)),  # type: ignore[call-overload]
                cpu_cores=float(tee_config.get("cpu_cores", 1.0)),  # type: ignore[arg-type]
                timeout_seconds=float(
                    tee_config.get("timeout_seconds", 60.0)  # type: ignore[arg-type]
                ),
            ),
            network_access=bool(tee_config.get("network_access", True)),
            filesystem_access=bool(tee_config.get("filesystem_access", False)),
        )
    )


def merge_resources(
    parent: TEEPolicy,
    *,
    memory_mb: int | None = None,
    cpu_cores: float | None = None,
    timeout_seconds: float | None = None,
) -> TEEPolicy:
    """Child policy: explicit limits win, unset limits inherit from ``parent``."""

    limits = parent.resources
    merged = replace(
        parent,
        resources=ResourceCeiling(
            memory_mb=limits.memory_mb if memory_mb is None else memory_mb,
            cpu_cores=limits.cpu_cores if cpu_cores is None else cpu_cores,
            timeout_seconds=limits.timeout_seconds if timeout_seconds is None else timeout_seconds,
        ),
    )
    return validate_policy(merged)


def policy_environment(policy: TEEPolicy) -> dict[str, str]:
    """Variables exported into every isolate so guest code can see its limits."""

    limits = policy.resources
    level = policy.isolation_level
    return {
        "TEE_ISOLATION_LEVEL": level.value if isinstance(level, IsolationLevel) else str(level),
        "TEE_MEMORY_LIMIT_MB": f"{limits.memory_mb:g}",
        "TEE_CPU_LIMIT": f"{limits.cpu_cores:g}",
        "TEE_TIMEOUT_SECONDS": f"{limits.timeout_seconds:g}",
        "TEE_NETWORK_ACCESS": "true" if policy.network_access else "false",
        "TEE_FILESYSTEM_ACCESS": "true" if policy.filesystem_access else "false",
    }


__all__ = [
    "TEECapabilityError",
    "TEEError",
    "TEEExecutionError",
    "TEENotStartedError",
    "TEEPolicyError",
    "TEETimeoutError",
    "merge_resources",
    "policy_environment",
    "policy_from_config",
    "validate_policy",
]
