"""Output rendering abstraction for the gitchorus CLI.

File: src/gitchorus/ui/render.py
Last updated: 2026-10-18

Purpose
- Provide a thin plain-text rendering layer for CLI output.

Functional requirements
- Output is deterministic and never depends on terminal capabilities.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Mapping, Sequence
from typing import TextIO


class CLIRenderer:
    """Thin CLI output renderer writing plain text to ``stream`` (stdout by default)."""

    def __init__(self, *, stream: TextIO | None = None) -> None:
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def text(self, line: str) -> None:
        self.stream.write(f"{line}\n")

    def kv(self, key: str, value: object) -> None:
        self.text(f"{key}: {value}")

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self.text(f"\n{title}")

    def json(self, payload: Mapping[str, object] | Sequence[object]) -> None:
        """Print ``payload`` as deterministic, indented JSON."""

        self.text(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
        empty: str = "(none)",
    ) -> None:
        """Print a left-aligned ASCII table; ``empty`` is printed when there are no rows."""

        if title:
            self.section(title)
        if not rows:
            self.text(f"  {empty}")
            return

        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(str(cell)))

        def _pad(cells: Sequence[object]) -> str:
            padded = [
                str(cells[index] if index < len(cells) else "").ljust(width)
                for index, width in enumerate(widths)
            ]
            return "  ".join(padded).rstrip()

        self.text(f"  {_pad(headers)}")
        self.text(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self.text(f"  {_pad(row)}")


def create_renderer(*, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
