"""
gitchorus — repositories

File: src/gitchorus/persistence/repositories.py
Last updated: 2026-10-18

Purpose
- Durable stores behind the engine's history and comment-ledger interfaces.

What should be included in this file
- HistoryRepo: append-only analysis history per target kind, newest first,
  bounded to a maximum number of entries per kind.
- PublishedCommentRepo: which remote comment belongs to which (repository, key).

Functional requirements
- History entries are never updated in place; only deleted by id or wholesale.
- Review chains are returned oldest first so re-reviews read in order.
"""

from __future__ import annotations

from typing import Final, cast

from gitchorus.constants import DEFAULT_REVIEW_CHAIN_LIMIT, MAX_HISTORY_ENTRIES
from gitchorus.domain import ids
from gitchorus.domain.models import (
    AnalysisResult,
    HistoryEntry,
    JobKey,
    TargetKind,
    validate_job_key,
)
from gitchorus.engine.collaborators import RecordedComment
from gitchorus.persistence.state_db import (
    RowValue,
    SQLParams,
    StateDB,
    canonical_json,
    utc_now_iso,
)

_MAX_PAGE_SIZE: Final[int] = 1_000


class _BaseRepo:
    def __init__(self, db: StateDB, kind: TargetKind | str) -> None:
        self._db = db
        self._kind = TargetKind(kind)
        self._db.migrate()

    @property
    def kind(self) -> TargetKind:
        return self._kind

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class HistoryRepo(_BaseRepo):
    """SQLite-backed analysis history for one target kind."""

    def __init__(
        self,
        db: StateDB,
        kind: TargetKind | str,
        *,
        max_entries: int = MAX_HISTORY_ENTRIES,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        super().__init__(db, kind)
        self._max_entries = max_entries

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        """Insert ``entry`` and prune the oldest entries beyond ``max_entries``."""

        if entry.kind is not self._kind:
            raise ValueError(f"entry kind {entry.kind.value} does not match repo kind {self._kind.value}")
        ids.validate_history_id(entry.entry_id)
        with self._db.transaction() as tx:
            row = self._db.query_one(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM history_entries WHERE kind = ?",
                (self._kind.value,),
                conn=tx,
            )
            seq = 1 + (cast("int", row["seq"]) if row is not None else 0)
            self._db.execute(
                """
                INSERT INTO history_entries (
                    id, kind, repository, target_number, verdict, confidence,
                    seq, created_at, payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    self._kind.value,
                    entry.repository_full_name,
                    entry.key,
                    entry.result.verdict,
                    entry.result.confidence,
                    seq,
                    _iso(entry),
                    canonical_json(entry.result.to_dict()),
                ),
                conn=tx,
            )
            self._db.execute(
                """
                DELETE FROM history_entries
                WHERE kind = ? AND id NOT IN (
                    SELECT id FROM history_entries WHERE kind = ? ORDER BY seq DESC LIMIT ?
                )
                """,
                (self._kind.value, self._kind.value, self._max_entries),
                conn=tx,
            )
        return entry

    def list(
        self,
        *,
        repository_full_name: str | None = None,
        key: JobKey | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[HistoryEntry]:
        """Entries newest first, optionally narrowed to a repository and key."""

        page = _MAX_PAGE_SIZE if limit is None else limit
        self._validate_page(page, offset)
        sql = "SELECT * FROM history_entries WHERE kind = ?"
        params: list[object] = [self._kind.value]
        if repository_full_name is not None:
            sql += " AND repository = ?"
            params.append(repository_full_name)
        if key is not None:
            sql += " AND target_number = ?"
            params.append(validate_job_key(key))
        sql += " ORDER BY seq DESC LIMIT ? OFFSET ?"
        params.extend((page, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [self._row_to_entry(row) for row in rows]

    def get(self, entry_id: str) -> HistoryEntry | None:
        row = self._db.query_one(
            "SELECT * FROM history_entries WHERE kind = ? AND id = ?",
            (self._kind.value, entry_id),
        )
        return None if row is None else self._row_to_entry(row)

    def latest_for(self, repository_full_name: str, key: JobKey) -> HistoryEntry | None:
        entries = self.list(repository_full_name=repository_full_name, key=key, limit=1)
        return entries[0] if entries else None

    def chain(
        self,
        repository_full_name: str,
        key: JobKey,
        *,
        limit: int = DEFAULT_REVIEW_CHAIN_LIMIT,
    ) -> list[HistoryEntry]:
        """The most recent ``limit`` entries for ``key``, oldest first."""

        newest_first = self.list(repository_full_name=repository_full_name, key=key, limit=limit)
        return list(reversed(newest_first))

    def remove(self, entry_id: str) -> bool:
        deleted = self._db.execute(
            "DELETE FROM history_entries WHERE kind = ? AND id = ?",
            (self._kind.value, entry_id),
        )
        return deleted > 0

    def clear(self, repository_full_name: str | None = None) -> int:
        if repository_full_name is None:
            return self._db.execute(
                "DELETE FROM history_entries WHERE kind = ?", (self._kind.value,)
            )
        return self._db.execute(
            "DELETE FROM history_entries WHERE kind = ? AND repository = ?",
            (self._kind.value, repository_full_name),
        )

    def count(self) -> int:
        row = self._db.query_one(
            "SELECT COUNT(*) AS total FROM history_entries WHERE kind = ?", (self._kind.value,)
        )
        return 0 if row is None else cast("int", row["total"])

    def _row_to_entry(self, row: dict[str, RowValue]) -> HistoryEntry:
        return HistoryEntry(
            entry_id=_row_text(row, "id"),
            kind=self._kind,
            key=cast("int", row["target_number"]),
            repository_full_name=_row_text(row, "repository"),
            result=AnalysisResult.from_json(_row_text(row, "payload_json")),
            created_at=_row_text(row, "created_at"),  # type: ignore[arg-type]
        )


class PublishedCommentRepo(_BaseRepo):
    """Durable (repository, key) -> remote comment id ledger for one target kind."""

    def get(self, repository_full_name: str, key: JobKey) -> RecordedComment | None:
        row = self._db.query_one(
            """
            SELECT comment_id, url FROM published_comments
            WHERE kind = ? AND repository = ? AND target_number = ?
            """,
            (self._kind.value, repository_full_name, validate_job_key(key)),
        )
        if row is None:
            return None
        url = row["url"]
        return RecordedComment(
            comment_id=cast("int", row["comment_id"]),
            url=url if isinstance(url, str) else None,
        )

    def record(
        self,
        repository_full_name: str,
        key: JobKey,
        comment_id: int,
        url: str | None,
    ) -> None:
        if isinstance(comment_id, bool) or not isinstance(comment_id, int):
            raise ValueError("comment_id must be an integer")
        self._db.execute(
            """
            INSERT INTO published_comments (
                kind, repository, target_number, comment_id, url, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(kind, repository, target_number) DO UPDATE SET
                comment_id=excluded.comment_id,
                url=excluded.url,
                updated_at=excluded.updated_at
            """,
            (
                self._kind.value,
                repository_full_name,
                validate_job_key(key),
                comment_id,
                url,
                utc_now_iso(),
            ),
        )

    def forget(self, repository_full_name: str, key: JobKey) -> bool:
        deleted = self._db.execute(
            """
            DELETE FROM published_comments
            WHERE kind = ? AND repository = ? AND target_number = ?
            """,
            (self._kind.value, repository_full_name, validate_job_key(key)),
        )
        return deleted > 0


def _iso(entry: HistoryEntry) -> str:
    return cast("str", entry.to_dict()["created_at"])


def _row_text(row: dict[str, RowValue], column: str) -> str:
    value = row.get(column)
    if not isinstance(value, str):
        raise ValueError(f"history_entries.{column} must be text")
    return value


__all__ = ["HistoryRepo", "PublishedCommentRepo"]
