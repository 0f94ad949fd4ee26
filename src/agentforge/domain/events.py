"""Progress event envelope pushed to UI subscribers while a job runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from agentforge.domain import ids


class ProgressStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class ProgressStep(StrEnum):
    """Canonical build steps, in the order a UI renders them."""

    INITIALIZATION = "initialization"
    CONFIGURATION = "configuration"
    COMPILATION = "compilation"
    DISPATCH = "dispatch"
    COMPLETION = "completion"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One ``{step, progress, message, status}`` update for a compilation job.

    Delivery is at-most-once; the job status query stays authoritative.
    """

    job_id: str
    step: ProgressStep
    progress: int
    message: str
    status: ProgressStatus = ProgressStatus.IN_PROGRESS
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    event_id: str = field(default_factory=ids.generate_ulid)

    def __post_init__(self) -> None:
        ids.validate_job_id(self.job_id)
        object.__setattr__(self, "step", ProgressStep(self.step))
        object.__setattr__(self, "status", ProgressStatus(self.status))
        if isinstance(self.progress, bool) or not isinstance(self.progress, int):
            raise ValueError(f"progress must be an integer, got {type(self.progress).__name__}")
        if not 0 <= self.progress <= 100:
            raise ValueError(f"progress must be within 0..100, got {self.progress}")
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")

    def to_dict(self) -> dict[str, object]:
        return {
            "event_id": self.event_id,
            "job_id": self.job_id,
            "step": self.step.value,
            "progress": self.progress,
            "message": self.message,
            "status": self.status.value,
            "timestamp": self.timestamp.astimezone(UTC).isoformat().replace("+00:00", "Z"),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


__all__ = ["ProgressEvent", "ProgressStatus", "ProgressStep"]
