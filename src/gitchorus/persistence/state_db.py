"""
gitchorus — state database

File: src/gitchorus/persistence/state_db.py
Last updated: 2026-10-18

Purpose
- Own the SQLite file behind analysis history and the published-comment ledger:
  schema migrations, connection settings, transactions and error translation.

What should be included in this file
- Forward-only migrations, each recorded in ``schema_versions`` with a SHA-256
  of its SQL so an edited migration is detected instead of silently skipped.
- Short-lived WAL connections; lock contention is retried with exponential
  backoff a bounded number of times.
- ``transaction()`` that becomes a SAVEPOINT when nested on a busy connection.

Functional requirements
- ``migrate()`` is idempotent and refuses a database written by a newer build.
- Raw ``sqlite3`` errors never escape except ``IntegrityError`` (constraint and
  immutability violations); everything else becomes a ``StateDBError`` subtype.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from itertools import count
from pathlib import Path
from typing import Final, TypeVar

from gitchorus.constants import STATE_DB_SCHEMA_VERSION
from gitchorus.domain.models import TargetKind

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = SQLValue
Row = dict[str, RowValue]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_T = TypeVar("_T")

_KINDS_SQL: Final[str] = ", ".join(f"'{kind.value}'" for kind in TargetKind)

_SCHEMA_VERSIONS_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_HISTORY_DDL: Final[tuple[str, ...]] = (
    f"""
    CREATE TABLE IF NOT EXISTS history_entries (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK (kind IN ({_KINDS_SQL})),
        repository TEXT NOT NULL,
        target_number INTEGER NOT NULL CHECK (target_number > 0),
        verdict TEXT NOT NULL,
        confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 100),
        seq INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS history_entries_immutable
    BEFORE UPDATE ON history_entries
    BEGIN
        SELECT RAISE(ABORT, 'history entries are immutable');
    END
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_history_kind_repo_target
    ON history_entries(kind, repository, target_number, seq DESC)
    """,
    "CREATE INDEX IF NOT EXISTS idx_history_kind_seq ON history_entries(kind, seq DESC)",
)

_LEDGER_DDL: Final[tuple[str, ...]] = (
    f"""
    CREATE TABLE IF NOT EXISTS published_comments (
        kind TEXT NOT NULL CHECK (kind IN ({_KINDS_SQL})),
        repository TEXT NOT NULL,
        target_number INTEGER NOT NULL CHECK (target_number > 0),
        comment_id INTEGER NOT NULL,
        url TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (kind, repository, target_number)
    )
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """One row of ``schema_versions``."""

    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration(version: int, name: str, statements: tuple[str, ...]) -> _Migration:
    # Whitespace-insensitive at line ends so reformatting a literal does not trip the check.
    digest = hashlib.sha256(f"{version}:{name}\n".encode())
    for statement in statements:
        lines = (line.rstrip() for line in statement.strip().splitlines())
        digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
    return _Migration(version, name, statements, digest.hexdigest())


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _migration(1, "analysis_history", (_SCHEMA_VERSIONS_DDL, *_HISTORY_DDL)),
    _migration(2, "published_comment_ledger", _LEDGER_DDL),
)


class StateDBError(RuntimeError):
    """Base class for state DB failures."""


class StateDBBusyError(StateDBError):
    """The database stayed locked through every retry."""


class StateDBMigrationError(StateDBError):
    """The schema cannot be brought to the version this build expects."""


class StateDBCorruptionError(StateDBError):
    """SQLite reported a malformed file or something that is not a database."""


_BUSY_CODES: Final[frozenset[int]] = frozenset(
    {sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED, getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", 517)}
)
_CORRUPT_CODES: Final[frozenset[int]] = frozenset({sqlite3.SQLITE_CORRUPT, sqlite3.SQLITE_NOTADB})
_BUSY_TEXT: Final[tuple[str, ...]] = ("database is locked", "database table is locked")
_CORRUPT_TEXT: Final[tuple[str, ...]] = ("malformed", "file is not a database")


def _looks_busy(exc: sqlite3.Error) -> bool:
    if getattr(exc, "sqlite_errorcode", None) in _BUSY_CODES:
        return True
    return any(text in str(exc).lower() for text in _BUSY_TEXT)


def _looks_corrupt(exc: sqlite3.Error) -> bool:
    if getattr(exc, "sqlite_errorcode", None) in _CORRUPT_CODES:
        return True
    return any(text in str(exc).lower() for text in _CORRUPT_TEXT)


class StateDB:
    """The gitchorus SQLite file. Cheap to construct; connections are opened per call."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for name, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._retry_limit = busy_retry_limit
        self._backoff_seconds = busy_retry_backoff_ms / 1000.0
        self._savepoints = count(1)

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    # ----------------------------------------------------------- connections

    def connect(self) -> sqlite3.Connection:
        """Open an autocommit WAL connection; the caller must close it."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise self._translate(exc, "open database", attempts=1) from exc
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            mode = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        except sqlite3.Error as exc:
            conn.close()
            raise self._translate(exc, "configure connection", attempts=1) from exc
        if mode is None or str(mode[0]).lower() != "wal":
            conn.close()
            raise StateDBError(f"could not enable WAL journal mode for {self._path}")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self, *, conn: sqlite3.Connection | None = None, immediate: bool = True
    ) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on error.

        Without ``conn`` a fresh connection is used. On a connection that is
        already inside a transaction this nests as a SAVEPOINT, so a failing
        inner block undoes only its own writes.
        """

        if conn is None:
            with self.connection() as fresh, self.transaction(conn=fresh, immediate=immediate) as tx:
                yield tx
            return

        if conn.in_transaction:
            name = f"sp_{next(self._savepoints)}"
            begin, commit = f"SAVEPOINT {name}", f"RELEASE SAVEPOINT {name}"
            rollback: tuple[str, ...] = (f"ROLLBACK TO SAVEPOINT {name}", commit)
        else:
            begin = "BEGIN IMMEDIATE" if immediate else "BEGIN"
            commit, rollback = "COMMIT", ("ROLLBACK",)

        self._run(conn, begin)
        try:
            yield conn
        except BaseException:
            for statement in rollback:
                self._run(conn, statement)
            raise
        self._run(conn, commit)

    # ------------------------------------------------------------- migrations

    def migrate(self) -> int:
        """Apply pending migrations; return the resulting schema version."""

        expected = tuple(range(1, STATE_DB_SCHEMA_VERSION + 1))
        if tuple(m.version for m in _MIGRATIONS[:STATE_DB_SCHEMA_VERSION]) != expected:
            raise StateDBMigrationError("migration chain does not match the declared schema version")

        with self.connection() as conn:
            self._run(conn, _SCHEMA_VERSIONS_DDL, operation="create schema_versions")
            applied = self._applied(conn)
            newest = max(applied, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema is newer than supported by this build "
                    f"(db={newest}, code={STATE_DB_SCHEMA_VERSION})"
                )
            for migration in _MIGRATIONS[:STATE_DB_SCHEMA_VERSION]:
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            f"migration checksum mismatch for version {migration.version}: "
                            f"db={record.checksum} code={migration.checksum}"
                        )
                    continue
                operation = f"apply migration {migration.version} ({migration.name})"
                with self.transaction(conn=conn) as tx:
                    for statement in migration.statements:
                        self._run(tx, statement, operation=operation)
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, utc_now_iso()),
                        operation=operation,
                    )
            return self.schema_version(conn=conn)

    async def migrate_async(self) -> int:
        return await asyncio.to_thread(self.migrate)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one("SELECT MAX(version) AS version FROM schema_versions", conn=conn)
        version = None if row is None else row["version"]
        return version if isinstance(version, int) else 0

    def schema_history(self) -> list[MigrationRecord]:
        with self.connection() as conn:
            applied = self._applied(conn)
        return [applied[version] for version in sorted(applied)]

    # -------------------------------------------------------------- statements

    def execute(self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None) -> int:
        """Run one write statement; returns the affected row count."""

        if conn is not None:
            return self._run(conn, sql, params).rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params).rowcount

    def executemany(
        self,
        sql: str,
        rows: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        batch = [tuple(row) for row in rows]
        with self.transaction(conn=conn) as tx:
            return self._retrying("execute many", lambda: tx.executemany(sql, batch)).rowcount

    def query_all(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> list[Row]:
        with self._reader(conn) as reader:
            return [dict(row) for row in self._run(reader, sql, params, operation="query")]

    def query_one(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> Row | None:
        with self._reader(conn) as reader:
            row = self._run(reader, sql, params, operation="query").fetchone()
        return None if row is None else dict(row)

    async def execute_async(self, sql: str, params: SQLParams = ()) -> int:
        return await asyncio.to_thread(self.execute, sql, tuple(params))

    async def query_all_async(self, sql: str, params: SQLParams = ()) -> list[Row]:
        return await asyncio.to_thread(self.query_all, sql, tuple(params))

    async def query_one_async(self, sql: str, params: SQLParams = ()) -> Row | None:
        return await asyncio.to_thread(self.query_one, sql, tuple(params))

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """SQLite ``integrity_check`` findings; an empty tuple means the file is healthy."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        findings = tuple(
            str(next(iter(row.values())))
            for row in self.query_all(f"PRAGMA integrity_check({max_errors})")
        )
        return () if findings == ("ok",) else findings

    # --------------------------------------------------------------- internals

    @contextmanager
    def _reader(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.connection() as fresh:
            yield fresh

    def _applied(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        rows = self._run(
            conn, "SELECT version, name, checksum, applied_at FROM schema_versions"
        ).fetchall()
        records: dict[int, MigrationRecord] = {}
        for row in rows:
            record = MigrationRecord(*(row[column] for column in row.keys()))
            if not isinstance(record.version, int) or not isinstance(record.checksum, str):
                raise StateDBMigrationError(f"malformed schema_versions row: {tuple(row)!r}")
            records[record.version] = record
        return records

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams = (),
        *,
        operation: str = "execute statement",
    ) -> sqlite3.Cursor:
        return self._retrying(operation, lambda: conn.execute(sql, tuple(params)))

    def _retrying(self, operation: str, call: Callable[[], _T]) -> _T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return call()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if _looks_busy(exc) and attempt <= self._retry_limit:
                    time.sleep(self._backoff_seconds * 2 ** (attempt - 1))
                    continue
                raise self._translate(exc, operation, attempts=attempt) from exc

    def _translate(self, exc: sqlite3.Error, operation: str, *, attempts: int) -> StateDBError:
        if _looks_corrupt(exc):
            return StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `StateDB.integrity_check()` and restore from a backup if needed."
            )
        if _looks_busy(exc):
            return StateDBBusyError(
                f"{operation} hit a locked database at {self._path} after "
                f"{attempts} attempt(s): {exc}"
            )
        return StateDBError(f"{operation} failed for {self._path}: {exc}")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Key-sorted compact JSON used for stored payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "Row",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
    "utc_now_iso",
]
