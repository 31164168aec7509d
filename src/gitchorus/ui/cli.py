"""Command-line interface router for gitchorus.

Subcommands inspect the effective config and manage the durable analysis
history kept in the state DB. Running analyses and publishing comments needs
live collaborators and happens through :class:`gitchorus.engine.AnalysisEngine`.
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from gitchorus import __version__
from gitchorus.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from gitchorus.domain.models import HistoryEntry, TargetKind
from gitchorus.engine.comment_body import CommentRenderer
from gitchorus.persistence import HistoryRepo, StateDB, StateDBError
from gitchorus.ui.render import CLIRenderer, create_renderer

_KIND_CHOICES = tuple(kind.value for kind in TargetKind)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="gitchorus",
        description=(
            "gitchorus: issue validation and PR review job engine.\n\n"
            "Common workflows:\n"
            "  gitchorus config show                      Print the effective config\n"
            "  gitchorus history list --kind issue        List stored validations\n"
            "  gitchorus history show --kind issue ID     Render a stored comment body\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"gitchorus {__version__}")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to gitchorus TOML config (default: ./gitchorus.toml if present).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser("config", help="Inspect configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    show_config = config_sub.add_parser(
        "show", parents=[common], help="Print the redacted effective config as JSON"
    )
    show_config.set_defaults(handler=_cmd_config_show)

    # history -------------------------------------------------------------
    history_parser = subparsers.add_parser("history", help="Manage stored analysis history")
    history_sub = history_parser.add_subparsers(dest="history_command", required=True)

    kind_args = argparse.ArgumentParser(add_help=False)
    kind_args.add_argument("--kind", choices=_KIND_CHOICES, required=True)

    list_parser = history_sub.add_parser(
        "list", parents=[common, kind_args], help="List history entries, newest first"
    )
    list_parser.add_argument("--repo", dest="repository", default=None)
    list_parser.add_argument("--key", type=int, default=None, help="Issue or PR number")
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    list_parser.set_defaults(handler=_cmd_history_list)

    show_parser = history_sub.add_parser(
        "show", parents=[common, kind_args], help="Render the comment body of one entry"
    )
    show_parser.add_argument("entry_id")
    show_parser.add_argument("--json", action="store_true", help="Emit the stored entry as JSON")
    show_parser.set_defaults(handler=_cmd_history_show)

    delete_parser = history_sub.add_parser(
        "delete", parents=[common, kind_args], help="Delete one history entry"
    )
    delete_parser.add_argument("entry_id")
    delete_parser.set_defaults(handler=_cmd_history_delete)

    clear_parser = history_sub.add_parser(
        "clear", parents=[common, kind_args], help="Delete every entry of a kind"
    )
    clear_parser.add_argument("--repo", dest="repository", default=None)
    clear_parser.add_argument("--yes", action="store_true", help="Confirm the deletion")
    clear_parser.set_defaults(handler=_cmd_history_clear)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None, *, renderer: CLIRenderer | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    output = renderer if renderer is not None else create_renderer()
    try:
        return int(handler(namespace, output))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_config_show(args: argparse.Namespace, out: CLIRenderer) -> int:
    out.text(dump_effective_config(_load_effective_config(args)))
    return 0


def _cmd_history_list(args: argparse.Namespace, out: CLIRenderer) -> int:
    if args.limit <= 0:
        raise CLIError("--limit must be > 0")
    with _history_repo(args) as repo:
        entries = repo.list(repository_full_name=args.repository, key=args.key, limit=args.limit)

    if args.json:
        out.json([entry.to_dict() for entry in entries])
        return 0
    out.table(
        ("ID", "REPOSITORY", "KEY", "VERDICT", "CONFIDENCE", "CREATED"),
        [_entry_row(entry) for entry in entries],
        title=f"{args.kind} history",
    )
    return 0


def _cmd_history_show(args: argparse.Namespace, out: CLIRenderer) -> int:
    config = _load_effective_config(args)
    with _history_repo(args, config=config) as repo:
        entry = repo.get(args.entry_id)
    if entry is None:
        raise CLIError(f"history entry not found: {args.entry_id}")

    if args.json:
        out.json(entry.to_dict())
        return 0
    publish = config["publish"]
    renderer = CommentRenderer(
        include_marker=publish["include_marker"], footer=publish["footer"] or None
    )
    out.text(renderer.render(entry.result))
    return 0


def _cmd_history_delete(args: argparse.Namespace, out: CLIRenderer) -> int:
    with _history_repo(args) as repo:
        removed = repo.remove(args.entry_id)
    if not removed:
        raise CLIError(f"history entry not found: {args.entry_id}")
    out.kv("Deleted", args.entry_id)
    return 0


def _cmd_history_clear(args: argparse.Namespace, out: CLIRenderer) -> int:
    if not args.yes:
        raise CLIError("refusing to clear history without --yes")
    with _history_repo(args) as repo:
        removed = repo.clear(args.repository)
    out.kv("Deleted entries", removed)
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    try:
        return load_config(getattr(args, "config_path", None))
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


@contextmanager
def _history_repo(
    args: argparse.Namespace, *, config: Mapping[str, Any] | None = None
) -> Iterator[HistoryRepo]:
    effective = config if config is not None else _load_effective_config(args)
    try:
        db = StateDB(effective["paths"]["state_db"])
        yield HistoryRepo(db, args.kind, max_entries=effective["history"]["max_entries"])
    except StateDBError as exc:
        raise CLIError(f"state db error: {exc}", exit_code=3) from exc


def _entry_row(entry: HistoryEntry) -> tuple[str, ...]:
    payload = entry.to_dict()
    return (
        entry.entry_id,
        entry.repository_full_name,
        f"#{entry.key}",
        entry.result.verdict,
        f"{entry.result.confidence}%",
        str(payload["created_at"]),
    )


__all__ = ["CLIError", "build_parser", "run_cli"]
