"""Module entrypoint for ``python -m agentforge``."""

from __future__ import annotations

from agentforge.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
