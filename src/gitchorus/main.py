"""Executable CLI entrypoint for ``gitchorus``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Process exit-code contract."""

    SUCCESS = 0
    CONFIG_ERROR = 2
    COLLABORATOR_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m gitchorus`` and the console script."""

    try:
        from gitchorus.ui.cli import run_cli

        return _coerce_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _coerce_exit_code(exc.code)
    except Exception as exc:  # noqa: BLE001
        code = _classify(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _stderr(str(exc).strip() or type(exc).__name__)
        return int(code)


def _coerce_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in ExitCode._value2member_map_:
        return raw
    if isinstance(raw, str) and raw.strip():
        _stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _classify(exc: BaseException) -> ExitCode:
    """Map the first recognised exception in the cause chain to an exit code."""

    from gitchorus.config import ConfigLoadError, ConfigValidationError
    from gitchorus.engine.errors import CollaboratorError
    from gitchorus.persistence import StateDBError

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((CollaboratorError, StateDBError), ExitCode.COLLABORATOR_ERROR),
        ((OSError, ValueError), ExitCode.CONFIG_ERROR),
    )
    for link in _cause_chain(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
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


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
