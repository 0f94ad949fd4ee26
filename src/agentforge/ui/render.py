"""Output rendering for the agentforge CLI.

File: src/agentforge/ui/render.py

Purpose
- Thin rendering layer over ``rich`` for CLI output.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Output stays readable when stdout is not a terminal (no color codes, no
  wrapping surprises).
- Every string passes through the secret registry before it is printed.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agentforge.domain.events import ProgressEvent, ProgressStatus
from agentforge.domain.models import CompilationJob, JobStatus
from agentforge.security.redaction import SecretRegistry, global_secret_registry, redact_text

if TYPE_CHECKING:
    from collections.abc import Sequence

_STATUS_STYLES = {
    JobStatus.QUEUED: "dim",
    JobStatus.PENDING: "yellow",
    JobStatus.IN_PROGRESS: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "bold red",
}


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Console renderer; plain text when color is off."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
        registry: SecretRegistry | None = None,
    ) -> None:
        out = stream if stream is not None else sys.stdout
        self.verbose = verbose
        self._registry = registry if registry is not None else global_secret_registry()
        color = _color_allowed(no_color, out)
        self._console = Console(
            file=out,
            no_color=not color,
            color_system="auto" if color else None,
            highlight=False,
            soft_wrap=True,
        )

    @property
    def console(self) -> Console:
        return self._console

    def heading(self, text: str) -> None:
        self._console.print(f"[bold]{self._clean(text)}[/bold]")

    def kv(self, key: str, value: object) -> None:
        self._console.print(f"{self._clean(key)}: {self._clean(value)}")

    def text(self, line: str) -> None:
        self._console.print(self._clean(line))

    def blank(self) -> None:
        self._console.print()

    def section(self, title: str) -> None:
        self._console.print()
        self._console.print(f"[bold]{self._clean(title)}[/bold]")

    def warning(self, text: str) -> None:
        self._console.print(f"  [yellow]Warning:[/yellow] {self._clean(text)}")

    def error(self, text: str) -> None:
        self._console.print(f"[bold red]error:[/bold red] {self._clean(text)}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._console.print(f"  {escape(prefix)}{self._clean(entry)}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        if not rows:
            return
        table = Table(title=title, show_edge=False, header_style="bold", pad_edge=False)
        for header in headers:
            table.add_column(escape(header))
        for row in rows:
            table.add_row(*(self._clean(cell) for cell in row))
        self._console.print(table)

    def next_steps(self, steps: Sequence[str]) -> None:
        if not steps:
            return
        self.section("Next steps:")
        for step in steps:
            self._console.print(f"  $ {self._clean(step)}")

    def ok(self, label: str) -> None:
        self._console.print(f"  [green]OK[/green]  {self._clean(label)}")

    def fail(self, label: str) -> None:
        self._console.print(f"  [red]FAIL[/red]  {self._clean(label)}")

    def progress(self, event: ProgressEvent) -> None:
        """One line per orchestrator progress event."""

        style = "red" if event.status is ProgressStatus.ERROR else "cyan"
        self._console.print(
            f"[{style}]{event.progress:>3}%[/{style}] "
            f"{escape(event.step.value)}: {self._clean(event.message)}"
        )

    def job(self, job: CompilationJob) -> None:
        style = _STATUS_STYLES.get(job.status, "")
        self.kv("Job", job.job_id)
        self.kv("Method", job.method.value)
        self._console.print(f"Status: [{style}]{escape(job.status.value)}[/{style}]")
        self.kv("Progress", f"{job.progress}%")
        if job.artifact_url:
            self.kv("Artifact", job.artifact_url)
        if job.raw_artifact_url and self.verbose:
            self.kv("Archive", job.raw_artifact_url)
        if job.error:
            self.kv("Error", job.error)
        if self.verbose and job.logs:
            self.section("Logs:")
            self.items(job.logs, prefix="")

    def _clean(self, value: object) -> str:
        return escape(redact_text(str(value), registry=self._registry))


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
