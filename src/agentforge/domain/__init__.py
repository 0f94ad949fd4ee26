"""
agentforge — domain layer

File: src/agentforge/domain/__init__.py

Purpose
- Data model shared by every component: build specs, TEE policies, credentials,
  compilation jobs and progress events.

Functional requirements
- Domain objects validate on construction and serialize to JSON-shaped dicts.
- No IO side effects.
"""

from agentforge.domain.events import ProgressEvent, ProgressStatus, ProgressStep
from agentforge.domain.ids import (
    generate_agent_id,
    generate_job_id,
    generate_run_id,
    generate_subagent_id,
    validate_job_id,
    validate_subagent_id,
)
from agentforge.domain.models import (
    AgentBuildSpec,
    AgentType,
    BuildMethod,
    BuildTarget,
    CompilationJob,
    Credential,
    CredentialSource,
    CredentialType,
    FailureKind,
    IsolationLevel,
    JobStatus,
    ModelProviderSelection,
    Platform,
    PromptDefinition,
    ResourceCeiling,
    ResourceDefinition,
    ResourceType,
    TEEPolicy,
    ToolDefinition,
    ToolParameter,
)

__all__ = [
    "AgentBuildSpec",
    "AgentType",
    "BuildMethod",
    "BuildTarget",
    "CompilationJob",
    "Credential",
    "CredentialSource",
    "CredentialType",
    "FailureKind",
    "IsolationLevel",
    "JobStatus",
    "ModelProviderSelection",
    "Platform",
    "ProgressEvent",
    "ProgressStatus",
    "ProgressStep",
    "PromptDefinition",
    "ResourceCeiling",
    "ResourceDefinition",
    "ResourceType",
    "TEEPolicy",
    "ToolDefinition",
    "ToolParameter",
    "generate_agent_id",
    "generate_job_id",
    "generate_run_id",
    "generate_subagent_id",
    "validate_job_id",
    "validate_subagent_id",
]
