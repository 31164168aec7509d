"""In-process CLI tests for config inspection and history management."""

from __future__ import annotations

import io
import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from gitchorus.constants import VALIDATION_COMMENT_MARKER
from gitchorus.domain import ids
from gitchorus.domain.models import AnalysisResult, HistoryEntry, TargetKind
from gitchorus.main import ExitCode, cli_entrypoint
from gitchorus.persistence import HistoryRepo, StateDB
from gitchorus.ui.cli import run_cli
from gitchorus.ui.render import create_renderer

if TYPE_CHECKING:
    from pathlib import Path

_TS = datetime(2026, 3, 2, 8, 0, 0, tzinfo=UTC)


def _write_config(tmp_path: Path) -> Path:
    config_path = tmp_path / "gitchorus.toml"
    config_path.write_text(
        '[paths]\nstate_db = "state/cli.sqlite3"\n\n[publish]\nfooter = "posted by cli tests"\n',
        encoding="utf-8",
    )
    return config_path


def _entry(number: int, seed: int, *, repository: str = "octo-org/widgets") -> HistoryEntry:
    result = AnalysisResult(
        kind=TargetKind.ISSUE,
        number=number,
        repository_full_name=repository,
        verdict="confirmed",
        confidence=80,
        title=f"Crash #{number}",
        reasoning="Reproduced with the attached steps.",
        completed_at=_TS,
    )
    return HistoryEntry(
        entry_id=ids.generate_history_id(
            ids.VALIDATION_HISTORY_ID_PREFIX, timestamp_ms=1_700_000_000_000 + seed
        ),
        kind=TargetKind.ISSUE,
        key=number,
        repository_full_name=repository,
        result=result,
        created_at=_TS,
    )


def _seed(tmp_path: Path, *entries: HistoryEntry) -> None:
    repo = HistoryRepo(StateDB(tmp_path / "state" / "cli.sqlite3"), TargetKind.ISSUE)
    for entry in entries:
        repo.append(entry)


def _run(*argv: str) -> tuple[int, str]:
    stream = io.StringIO()
    code = run_cli(list(argv), renderer=create_renderer(stream=stream))
    return code, stream.getvalue()


def test_config_show_prints_redacted_effective_config(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)

    code, output = _run("config", "show", "--config", str(config_path))

    assert code == 0
    payload = json.loads(output)
    assert payload["publish"]["footer"] == "posted by cli tests"
    assert payload["paths"]["state_db"].endswith("state/cli.sqlite3")


def test_missing_config_file_is_a_config_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    code, output = _run("config", "show", "--config", str(tmp_path / "absent.toml"))

    assert code == 2
    assert output == ""
    assert capsys.readouterr().err.startswith("error: config file not found")


def test_history_list_table_and_json(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    older, newer = _entry(42, 1), _entry(7, 2)
    _seed(tmp_path, older, newer)

    code, table = _run("history", "list", "--kind", "issue", "--config", str(config_path))
    assert code == 0
    lines = table.strip().splitlines()
    assert lines[0] == "issue history"
    assert newer.entry_id in lines[3] and "#7" in lines[3]
    assert older.entry_id in lines[4] and "80%" in lines[4]

    code, raw = _run(
        "history", "list", "--kind", "issue", "--key", "42", "--json", "--config", str(config_path)
    )
    assert code == 0
    assert [item["entry_id"] for item in json.loads(raw)] == [older.entry_id]


def test_history_list_empty_and_bad_limit(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    code, output = _run("history", "list", "--kind", "pull_request", "--config", str(config_path))
    assert code == 0
    assert "(none)" in output

    code, _ = _run("history", "list", "--kind", "issue", "--limit", "0", "--config", str(config_path))
    assert code == 2
    assert "--limit must be > 0" in capsys.readouterr().err


def test_history_show_renders_comment_body(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    entry = _entry(42, 1)
    _seed(tmp_path, entry)

    code, body = _run("history", "show", "--kind", "issue", entry.entry_id, "--config", str(config_path))

    assert code == 0
    assert body.startswith(VALIDATION_COMMENT_MARKER)
    assert "Reproduced with the attached steps." in body
    assert body.rstrip().endswith("posted by cli tests")

    code, raw = _run(
        "history", "show", "--kind", "issue", entry.entry_id, "--json", "--config", str(config_path)
    )
    assert code == 0
    assert json.loads(raw)["result"]["verdict"] == "confirmed"


def test_history_delete_and_missing_entry(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    entry = _entry(42, 1)
    _seed(tmp_path, entry)

    code, output = _run(
        "history", "delete", "--kind", "issue", entry.entry_id, "--config", str(config_path)
    )
    assert code == 0
    assert output.strip() == f"Deleted: {entry.entry_id}"

    code, _ = _run(
        "history", "delete", "--kind", "issue", entry.entry_id, "--config", str(config_path)
    )
    assert code == 2
    assert "history entry not found" in capsys.readouterr().err


def test_history_clear_requires_confirmation(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    _seed(tmp_path, _entry(1, 1), _entry(2, 2), _entry(3, 3, repository="octo-org/gadgets"))

    code, _ = _run("history", "clear", "--kind", "issue", "--config", str(config_path))
    assert code == 2
    assert "without --yes" in capsys.readouterr().err

    code, output = _run(
        "history",
        "clear",
        "--kind",
        "issue",
        "--repo",
        "octo-org/gadgets",
        "--yes",
        "--config",
        str(config_path),
    )
    assert code == 0
    assert output.strip() == "Deleted entries: 1"

    code, output = _run("history", "clear", "--kind", "issue", "--yes", "--config", str(config_path))
    assert output.strip() == "Deleted entries: 2"


def test_unreadable_state_db_exits_with_collaborator_code(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)
    db_path = tmp_path / "state" / "cli.sqlite3"
    db_path.parent.mkdir(parents=True)
    db_path.write_bytes(b"not a database\n" * 128)

    code, _ = _run("history", "list", "--kind", "issue", "--config", str(config_path))

    assert code == 3
    assert "state db error" in capsys.readouterr().err


def test_entrypoint_normalizes_exit_codes(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config_path = _write_config(tmp_path)

    assert cli_entrypoint(["config", "show", "--config", str(config_path)]) == ExitCode.SUCCESS
    assert cli_entrypoint(["history", "list", "--kind", "discussion"]) == ExitCode.CONFIG_ERROR
    assert cli_entrypoint(["--version"]) == ExitCode.SUCCESS
    captured = capsys.readouterr()
    assert "gitchorus" in captured.out
