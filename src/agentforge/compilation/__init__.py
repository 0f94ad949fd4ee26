"""
agentforge — compilation orchestrator

File: src/agentforge/compilation/__init__.py

Purpose
- Turn an agent description into a build job, run it locally or through CI,
  and track it until an artifact URL or a failure reason is known.
"""

from agentforge.compilation.artifacts import (
    ArtifactMatchTier,
    Match,
    RunMatchTier,
    expected_artifact_name,
    expected_run_name,
    find_artifact,
    find_run,
)
from agentforge.compilation.ci_client import (
    GitHubActionsClient,
    RunArtifact,
    RunJob,
    RunStep,
    WorkflowRun,
)
from agentforge.compilation.errors import (
    BuildError,
    CIProviderError,
    CompilationError,
    DispatchError,
    JobNotFoundError,
    LocalBuildUnavailableError,
    PollingTimeoutError,
)
from agentforge.compilation.local_builder import (
    DEPLOYMENT_INFO_FILE,
    BuildArtifact,
    LocalBuilder,
    deployment_info,
)
from agentforge.compilation.orchestrator import ACTIVE_RUN_STATES, CompilationOrchestrator
from agentforge.compilation.poller import PollResult, StatusPoller
from agentforge.compilation.request import (
    build_spec_from_ui_config,
    sanitize_agent_name,
    tee_policy_from_advanced_settings,
)
from agentforge.compilation.sources import RenderedSources, render_agent_sources

__all__ = [
    "ACTIVE_RUN_STATES",
    "ArtifactMatchTier",
    "BuildArtifact",
    "BuildError",
    "CIProviderError",
    "CompilationError",
    "CompilationOrchestrator",
    "DEPLOYMENT_INFO_FILE",
    "DispatchError",
    "GitHubActionsClient",
    "JobNotFoundError",
    "LocalBuildUnavailableError",
    "LocalBuilder",
    "Match",
    "PollResult",
    "PollingTimeoutError",
    "RenderedSources",
    "RunArtifact",
    "RunJob",
    "RunMatchTier",
    "RunStep",
    "StatusPoller",
    "WorkflowRun",
    "build_spec_from_ui_config",
    "deployment_info",
    "expected_artifact_name",
    "expected_run_name",
    "find_artifact",
    "find_run",
    "render_agent_sources",
    "sanitize_agent_name",
    "tee_policy_from_advanced_settings",
]
