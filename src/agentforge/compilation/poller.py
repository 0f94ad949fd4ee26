"""
agentforge — job status poller

File: src/agentforge/compilation/poller.py

Purpose
- Client-side polling loop: ask for a job's status at a fixed interval until it
  is terminal or the attempt budget runs out.

Functional requirements
- Transient fetch errors are retried, and each one still counts as an attempt.
- Running out of attempts raises ``PollingTimeoutError``, which is distinct from a
  failed build.
- The sleep between attempts is cancellable through a ``CancellationToken``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from agentforge.compilation.errors import CIProviderError, PollingTimeoutError
from agentforge.constants import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_MAX_ATTEMPTS
from agentforge.domain.models import CompilationJob, FailureKind
from agentforge.utils.concurrency import CancellationToken, cancellable_sleep

StatusFetcher = Callable[[str], Awaitable[CompilationJob]]
UpdateCallback = Callable[[CompilationJob], object]
SleepFn = Callable[[float, CancellationToken | None], Awaitable[None]]

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    CIProviderError,
    httpx.HTTPError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True, slots=True)
class PollResult:
    job: CompilationJob
    attempts: int
    transient_errors: int


class StatusPoller:
    """Polls ``fetch(job_id)`` until the job completes or fails."""

    def __init__(
        self,
        fetch: StatusFetcher,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
        on_update: UpdateCallback | None = None,
        sleep: SleepFn = cancellable_sleep,
        logger: Any | None = None,
    ) -> None:
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._fetch = fetch
        self._interval_seconds = interval_seconds
        self._max_attempts = max_attempts
        self._on_update = on_update
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def wait(
        self, job_id: str, *, cancel_token: CancellationToken | None = None
    ) -> PollResult:
        """Return the terminal job, or raise ``PollingTimeoutError``.

        ``asyncio.CancelledError`` propagates when ``cancel_token`` fires.
        """

        transient = 0
        for attempt in range(1, self._max_attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                job = await self._fetch(job_id)
            except TRANSIENT_ERRORS as exc:
                transient += 1
                self._logger.warning(
                    "status_poll_transient_error",
                    job_id=job_id,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                if job.failure_kind is FailureKind.STATUS_QUERY:
                    transient += 1
                    self._logger.warning(
                        "status_poll_transient_error",
                        job_id=job_id,
                        attempt=attempt,
                        error=job.error,
                    )
                else:
                    self._notify(job)
                    if job.status.is_terminal:
                        self._logger.info(
                            "status_poll_finished",
                            job_id=job_id,
                            status=job.status.value,
                            attempts=attempt,
                            transient_errors=transient,
                        )
                        return PollResult(job=job, attempts=attempt, transient_errors=transient)
            if attempt < self._max_attempts:
                await self._sleep(self._interval_seconds, cancel_token)

        self._logger.warning(
            "status_poll_exhausted",
            job_id=job_id,
            attempts=self._max_attempts,
            transient_errors=transient,
        )
        raise PollingTimeoutError(job_id, self._max_attempts, transient)

    def _notify(self, job: CompilationJob) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(job)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("status_poll_callback_failed", job_id=job.job_id, error=str(exc))


__all__ = ["TRANSIENT_ERRORS", "PollResult", "StatusPoller"]
