"""Stable constants shared across the engine, persistence and CLI layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")
DEFAULT_STATE_DB: Final[PurePosixPath] = STATE_DIR / "gitchorus.sqlite3"

# Daily log files older than this are removed when a logging session starts.
LOG_RETENTION_DAYS: Final[int] = 7

# Job admission and history retention.
DEFAULT_MAX_CONCURRENT_JOBS: Final[int] = 2
MAX_HISTORY_ENTRIES: Final[int] = 500
DEFAULT_REVIEW_CHAIN_LIMIT: Final[int] = 10

# Hidden markers used to recognise comments posted by this tool.
VALIDATION_COMMENT_MARKER: Final[str] = "<!-- gitchorus-validation -->"
REVIEW_COMMENT_MARKER: Final[str] = "<!-- gitchorus-review -->"
DEFAULT_COMMENT_FOOTER: Final[str] = "*via [GitChorus](https://github.com/Shironex/gitchorus)*"

CANCELLED_MESSAGE: Final[str] = "cancelled"
NO_RESULT_MESSAGE: Final[str] = "analysis finished without producing a result"

__all__ = [
    "CANCELLED_MESSAGE",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_COMMENT_FOOTER",
    "DEFAULT_MAX_CONCURRENT_JOBS",
    "DEFAULT_REVIEW_CHAIN_LIMIT",
    "DEFAULT_STATE_DB",
    "LOG_DIR",
    "LOG_RETENTION_DAYS",
    "MAX_HISTORY_ENTRIES",
    "NO_RESULT_MESSAGE",
    "REVIEW_COMMENT_MARKER",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "VALIDATION_COMMENT_MARKER",
]
