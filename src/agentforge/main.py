"""Executable CLI entrypoint for ``agentforge``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

from agentforge.compilation.errors import (
    BuildError,
    CIProviderError,
    DispatchError,
    PollingTimeoutError,
)
from agentforge.credentials import CredentialError
from agentforge.errors import ConfigurationError
from agentforge.inference import ProviderError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Process exit codes shared by every command."""

    SUCCESS = 0
    BUILD_FAILED = 1
    CONFIG_ERROR = 2
    PROVIDER_ERROR = 3
    INTERNAL_ERROR = 4
    TIMEOUT = 5


# First match along the cause chain wins; order matters for multi-inheritance.
_EXIT_ROUTES: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
    ((ConfigurationError, CredentialError), ExitCode.CONFIG_ERROR),
    ((FileNotFoundError, NotADirectoryError, PermissionError), ExitCode.CONFIG_ERROR),
    ((ProviderError, CIProviderError, DispatchError), ExitCode.PROVIDER_ERROR),
    ((BuildError,), ExitCode.BUILD_FAILED),
    ((PollingTimeoutError, TimeoutError), ExitCode.TIMEOUT),
)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and turn anything that escapes a command into an exit code."""

    # Deferred: ui.cli imports ExitCode from here.
    from agentforge.ui.cli import run_cli

    try:
        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)
    except BaseException as exc:  # noqa: BLE001 - process boundary
        code = _route_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return int(code)


def main(argv: Sequence[str] | None = None) -> int:
    return cli_entrypoint(argv)


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in {int(code) for code in ExitCode}:
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


def _route_exception(exc: BaseException) -> ExitCode:
    for link in _cause_chain(exc):
        for types, code in _EXIT_ROUTES:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    """``exc``, then its explicit cause or unsuppressed context, and so on."""

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


__all__ = ["ExitCode", "cli_entrypoint", "main"]
