"""Per-isolate resource sampling backed by ``psutil``."""

from __future__ import annotations

from dataclasses import dataclass

import psutil

from agentforge.domain.models import TEEPolicy

_BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True, slots=True)
class ProcessMetrics:
    """Aggregate usage of one process and all of its descendants."""

    pid: int
    process_count: int
    rss_bytes: int
    cpu_user_seconds: float
    cpu_system_seconds: float

    @property
    def rss_mb(self) -> float:
        return self.rss_bytes / _BYTES_PER_MB

    @property
    def cpu_seconds(self) -> float:
        return self.cpu_user_seconds + self.cpu_system_seconds

    def exceeds(self, policy: TEEPolicy) -> tuple[str, ...]:
        """Names of the policy ceilings this sample is over."""

        over: list[str] = []
        if self.rss_mb > policy.resources.memory_mb:
            over.append("memory_mb")
        cpu_budget = policy.resources.cpu_cores * policy.resources.timeout_seconds
        if self.cpu_seconds > cpu_budget:
            over.append("cpu_cores")
        return tuple(over)

    def to_dict(self) -> dict[str, object]:
        return {
            "pid": self.pid,
            "process_count": self.process_count,
            "rss_mb": round(self.rss_mb, 3),
            "cpu_seconds": round(self.cpu_seconds, 3),
        }


class ProcessMetricsProvider:
    """Samples RSS and CPU time for a process tree."""

    def sample(self, pid: int) -> ProcessMetrics | None:
        """Return usage for ``pid`` and its children, or ``None`` once it has exited."""

        try:
            root = psutil.Process(pid)
            processes = [root, *root.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None

        rss = 0
        user = 0.0
        system = 0.0
        counted = 0
        for process in processes:
            try:
                with process.oneshot():
                    rss += process.memory_info().rss
                    times = process.cpu_times()
            except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
                continue
            user += times.user + times.children_user
            system += times.system + times.children_system
            counted += 1
        if counted == 0:
            return None
        return ProcessMetrics(
            pid=pid,
            process_count=counted,
            rss_bytes=rss,
            cpu_user_seconds=user,
            cpu_system_seconds=system,
        )


__all__ = ["ProcessMetrics", "ProcessMetricsProvider"]
