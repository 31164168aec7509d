"""Module entrypoint for ``python -m gitchorus``."""

from __future__ import annotations

from gitchorus.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
