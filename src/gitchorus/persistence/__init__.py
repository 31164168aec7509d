"""
gitchorus — persistence layer

File: src/gitchorus/persistence/__init__.py
Last updated: 2026-10-18

Purpose
- SQLite state DB, migrations and the repositories behind analysis history
  and the published-comment ledger.

Functional requirements
- Must support concurrent readers and safe reopen after a crash.
"""

from gitchorus.persistence.repositories import HistoryRepo, PublishedCommentRepo
from gitchorus.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "HistoryRepo",
    "PublishedCommentRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
