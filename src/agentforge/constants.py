"""Stable constants shared across agentforge components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
CREDENTIAL_FILE_SCHEMA_VERSION: Final[int] = 1
DEPLOYMENT_INFO_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file unless overridden).
DEFAULT_OUTPUT_DIR: Final[PurePosixPath] = PurePosixPath("build/output")
DEFAULT_BUILD_DIR: Final[PurePosixPath] = PurePosixPath("build/work")
DEFAULT_CREDENTIALS_FILE: Final[PurePosixPath] = PurePosixPath(".agentforge/credentials.json")
DEFAULT_LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Compilation polling contract.
DEFAULT_POLL_INTERVAL_SECONDS: Final[float] = 5.0
DEFAULT_POLL_MAX_ATTEMPTS: Final[int] = 60
DEFAULT_JOB_RETENTION_SECONDS: Final[int] = 3600
DEFAULT_WAIT_TIMEOUT_SECONDS: Final[float] = 300.0

# CI provider defaults.
DEFAULT_CI_API_URL: Final[str] = "https://api.github.com"
DEFAULT_CI_WEB_URL: Final[str] = "https://github.com"
DEFAULT_CI_WORKFLOW: Final[str] = "compile-agent.yml"
DEFAULT_CI_REF: Final[str] = "main"
DEFAULT_CI_RUNS_PAGE_SIZE: Final[int] = 50

# Inference sampling defaults.
DEFAULT_TEMPERATURE: Final[float] = 0.7
DEFAULT_MAX_TOKENS: Final[int] = 1000
DEFAULT_TOP_P: Final[float] = 1.0

# TEE defaults for newly configured agents.
DEFAULT_TEE_MEMORY_MB: Final[int] = 512
DEFAULT_TEE_CPU_CORES: Final[float] = 1.0
DEFAULT_TEE_TIMEOUT_SECONDS: Final[float] = 60.0

DEFAULT_MAX_SUBAGENTS: Final[int] = 5
AGENT_NAME_MAX_LENGTH: Final[int] = 30
AGENT_URN_PREFIX: Final[str] = "urn:agent:"
AGENT_URN_NAMESPACE: Final[str] = "agentforge"

# Inference providers accepted in a build spec; "gemini" is an alias of "google".
KNOWN_PROVIDERS: Final[frozenset[str]] = frozenset(
    {"openai", "anthropic", "google", "gemini", "deepseek", "cerebras", "groq", "custom"}
)

__all__ = [
    "AGENT_NAME_MAX_LENGTH",
    "AGENT_URN_NAMESPACE",
    "AGENT_URN_PREFIX",
    "CONFIG_SCHEMA_VERSION",
    "CREDENTIAL_FILE_SCHEMA_VERSION",
    "DEFAULT_BUILD_DIR",
    "DEFAULT_CI_API_URL",
    "DEFAULT_CI_REF",
    "DEFAULT_CI_RUNS_PAGE_SIZE",
    "DEFAULT_CI_WEB_URL",
    "DEFAULT_CI_WORKFLOW",
    "DEFAULT_CREDENTIALS_FILE",
    "DEFAULT_JOB_RETENTION_SECONDS",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MAX_SUBAGENTS",
    "DEFAULT_MAX_TOKENS",
    "DEFAULT_OUTPUT_DIR",
    "DEFAULT_POLL_INTERVAL_SECONDS",
    "DEFAULT_POLL_MAX_ATTEMPTS",
    "DEFAULT_TEE_CPU_CORES",
    "DEFAULT_TEE_MEMORY_MB",
    "DEFAULT_TEE_TIMEOUT_SECONDS",
    "DEFAULT_TEMPERATURE",
    "DEFAULT_TOP_P",
    "DEFAULT_WAIT_TIMEOUT_SECONDS",
    "DEPLOYMENT_INFO_SCHEMA_VERSION",
    "KNOWN_PROVIDERS",
]
