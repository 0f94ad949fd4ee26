"""Correlate a job id with its CI run and artifact.

The CI provider offers no native correlation key, so the job id travels inside
the run title and the artifact name. Both matchers fall back through weaker
heuristics and report which tier fired so fallbacks can be monitored.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

from agentforge.compilation.ci_client import RunArtifact, WorkflowRun

ARTIFACT_MARKERS: tuple[str, ...] = ("plugin", "agent")

T = TypeVar("T")


class RunMatchTier(StrEnum):
    NAME = "name"
    DISPLAY_TITLE = "display_title"
    HEAD_COMMIT = "head_commit"


class ArtifactMatchTier(StrEnum):
    JOB_ID = "job_id"
    MARKER = "marker"
    SOLE_ARTIFACT = "sole_artifact"


@dataclass(frozen=True, slots=True)
class Match(Generic[T]):
    item: T
    tier: StrEnum

    @property
    def is_fallback(self) -> bool:
        return self.tier not in (RunMatchTier.NAME, ArtifactMatchTier.JOB_ID)


def find_run(runs: Sequence[WorkflowRun], job_id: str) -> Match[WorkflowRun] | None:
    """First run whose name, then display title, then head commit mentions ``job_id``.

    Each tier scans every run before the next tier is tried.
    """

    tiers = (
        (RunMatchTier.NAME, lambda run: run.name),
        (RunMatchTier.DISPLAY_TITLE, lambda run: run.display_title),
        (RunMatchTier.HEAD_COMMIT, lambda run: run.head_commit_message),
    )
    for tier, text_of in tiers:
        for run in runs:
            if job_id in text_of(run):
                return Match(run, tier)
    return None


def find_artifact(artifacts: Sequence[RunArtifact], job_id: str) -> Match[RunArtifact] | None:
    """Artifact named after ``job_id``, else one carrying a marker, else the only one."""

    live = [artifact for artifact in artifacts if not artifact.expired]
    for artifact in live:
        if job_id in artifact.name:
            return Match(artifact, ArtifactMatchTier.JOB_ID)
    for artifact in live:
        if any(marker in artifact.name for marker in ARTIFACT_MARKERS):
            return Match(artifact, ArtifactMatchTier.MARKER)
    if len(live) == 1:
        return Match(live[0], ArtifactMatchTier.SOLE_ARTIFACT)
    return None


def expected_artifact_name(agent_name: str, job_id: str) -> str:
    """Name the compile workflow uploads under."""

    return f"{agent_name}-plugin-{job_id}"


def expected_run_name(agent_name: str, job_id: str) -> str:
    return f"Compile {agent_name} - Job {job_id}"


__all__ = [
    "ARTIFACT_MARKERS",
    "ArtifactMatchTier",
    "Match",
    "RunMatchTier",
    "expected_artifact_name",
    "expected_run_name",
    "find_artifact",
    "find_run",
]
