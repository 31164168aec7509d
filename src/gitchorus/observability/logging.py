"""Structured logging for engine hosts.

Engine components log through ``structlog.get_logger(__name__)`` and stay
silent until a host calls :func:`setup_structured_logging` (or the
config-driven :func:`setup_logging`). From then on structlog events are
rendered into the stdlib ``gitchorus`` logger, pushed through a bounded queue
and written by a background listener as one JSON object per line under
``<log_dir>/<session_id>/``. The file rolls over at UTC midnight; rolled files
and whole sessions older than ``retention_days`` are removed when a session
starts. :func:`recent_entries` reads the tail of the current file back.

Correlation fields (``repository``, ``correlation_id``...) are kept in
structlog's contextvars, so ``correlation_scope`` applies to structlog events
and plain stdlib records alike.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Literal

import structlog

from gitchorus.constants import LOG_RETENTION_DAYS

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"

# Promoted to top-level keys of each JSON line instead of living under "fields".
CORRELATION_KEYS: Final[frozenset[str]] = frozenset(
    {"session_id", "correlation_id", "repository", "delivery_id"}
)

_SECRET_KEY_FRAGMENTS: Final[tuple[str, ...]] = (
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "private_key",
    "credential",
)

_SECRET_TEXT_RULES: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(r"(?i)\b(api[_-]?key|token|password|secret|authorization)(\s*[:=]\s*)[^\s,;]+"),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{20,}|github_pat_[A-Za-z0-9_]{20,})\b"), REDACTED),
    (re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b"), REDACTED),
)

_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName", "correlation"}

_session_lock = threading.Lock()
_active_session: LoggingSession | None = None
_atexit_hooked = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """How one logging session writes its records."""

    session_id: str
    log_dir: Path | str = Path("logs")
    logger_name: str = "gitchorus"
    level: int | str = "INFO"
    log_format: Literal["json", "text"] = "json"
    console: bool = True
    filename: str = "gitchorus.jsonl"
    queue_size: int = 4096
    redact: bool = True
    route_structlog: bool = True
    retention_days: int = LOG_RETENTION_DAYS


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    session_id: str,
    log_dir: Path | str | None = None,
    console: bool = True,
) -> logging.Logger:
    """Start a session from an ``[observability]`` config section and return its logger."""

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    configured_dir = section.get("log_dir", "logs")
    retention = section.get("retention_days", LOG_RETENTION_DAYS)
    session = setup_structured_logging(
        LoggingConfig(
            session_id=session_id,
            log_dir=log_dir if log_dir is not None else str(configured_dir),
            level=level if isinstance(level, (int, str)) else "INFO",
            log_format="text" if section.get("log_format") == "text" else "json",
            console=console,
            redact=bool(section.get("redact_secrets", True)),
            retention_days=retention if isinstance(retention, int) else LOG_RETENTION_DAYS,
        )
    )
    return session.logger


def configure_structlog() -> None:
    """Send structlog events to stdlib logging as ``msg`` plus ``extra`` fields."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class _BoundedQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller; a full queue drops the record and counts it."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Capture correlation on the emitting thread; the listener thread has its own context.
        record.correlation = get_correlation_context()
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, redactor: LogRedactor, session_id: str) -> None:
        super().__init__()
        self._redactor = redactor
        self._session_id = session_id

    def format(self, record: logging.LogRecord) -> str:
        correlation, fields = _split_record(record)
        line: dict[str, JSONValue] = {
            "timestamp": _utc_stamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redactor(record.getMessage())),
            "session_id": self._session_id,
        }
        line.update(correlation)
        if fields:
            line["fields"] = self._redactor(fields)
        if record.exc_info is not None:
            line["exception"] = _as_text(self._redactor(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    def __init__(self, redactor: LogRedactor) -> None:
        super().__init__()
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        _, fields = _split_record(record)
        redacted = self._redactor(fields)
        pairs = sorted(redacted.items()) if isinstance(redacted, dict) else []
        message = _as_text(self._redactor(record.getMessage()))
        head = f"{_utc_stamp(record.created)} {record.levelname:<7} {message}"
        return " ".join([head, *(f"{key}={value}" for key, value in pairs)])


class LoggingSession:
    """A running queue listener and the sinks it feeds."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        session_id: str,
        log_path: Path,
        queue_handler: _BoundedQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
        owns_structlog: bool,
    ) -> None:
        self.logger = logger
        self.session_id = session_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._owns_structlog = owns_structlog
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait (bounded) for the listener to drain the queue, then flush sinks."""

        pending: queue.Queue[logging.LogRecord] = self._queue_handler.queue  # type: ignore[assignment]
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.005)
        for sink in self._sinks:
            sink.flush()

    def recent_entries(self, limit: int = 100) -> list[dict[str, JSONValue]]:
        """The last ``limit`` records of this session's current file, oldest first."""

        if not self._closed:
            self.flush()
        return read_log_entries(self.log_path, limit=limit)

    def close(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            if self._owns_structlog:
                structlog.reset_defaults()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> LoggingSession:
    """Start a logging session, closing any session that is already active."""

    session_id = _required_text(config.session_id, "session_id")
    logger_name = _required_text(config.logger_name, "logger_name")
    filename = _required_text(config.filename, "filename")
    if Path(filename).name != filename:
        raise ValueError("filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    if config.retention_days <= 0:
        raise ValueError("retention_days must be > 0")
    level = _level_number(config.level)

    _close_active_session()

    swept = sweep_expired_logs(
        config.log_dir,
        filename=filename,
        retention_days=config.retention_days,
        keep=(session_id,),
    )
    log_path = Path(config.log_dir) / session_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    redactor: LogRedactor = default_log_redactor if config.redact else _no_redaction

    file_sink = logging.handlers.TimedRotatingFileHandler(
        log_path,
        when="midnight",
        backupCount=config.retention_days,
        encoding="utf-8",
        utc=True,
    )
    file_sink.setFormatter(_JsonLinesFormatter(redactor, session_id))
    sinks: list[logging.Handler] = [file_sink]
    if config.console:
        console_sink = logging.StreamHandler()
        console_sink.setFormatter(
            _ConsoleFormatter(redactor)
            if config.log_format == "text"
            else _JsonLinesFormatter(redactor, session_id)
        )
        sinks.append(console_sink)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    record_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _BoundedQueueHandler(record_queue)
    listener = logging.handlers.QueueListener(record_queue, *sinks)
    listener.start()
    logger.addHandler(queue_handler)

    if config.route_structlog:
        configure_structlog()

    session = LoggingSession(
        logger=logger,
        session_id=session_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
        owns_structlog=config.route_structlog,
    )
    global _active_session, _atexit_hooked
    with _session_lock:
        _active_session = session
        if not _atexit_hooked:
            atexit.register(shutdown_logging)
            _atexit_hooked = True
    if swept:
        logger.info("expired log files removed", extra={"removed": len(swept)})
    return session


def active_session() -> LoggingSession | None:
    with _session_lock:
        return _active_session


def flush_logging(session: LoggingSession | None = None, *, timeout_seconds: float = 2.0) -> None:
    target = session if session is not None else active_session()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    session: LoggingSession | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain and close ``session`` (default: the active one). Safe to call repeatedly."""

    global _active_session
    target = session if session is not None else active_session()
    if target is None:
        return
    target.close(timeout_seconds=timeout_seconds)
    with _session_lock:
        if _active_session is target:
            _active_session = None


def recent_entries(
    limit: int = 100, *, session: LoggingSession | None = None
) -> list[dict[str, JSONValue]]:
    """Tail of the active (or given) session's log; empty when no session is running."""

    target = session if session is not None else active_session()
    if target is None:
        return []
    return target.recent_entries(limit)


def read_log_entries(path: Path | str, *, limit: int = 100) -> list[dict[str, JSONValue]]:
    """Parse the last ``limit`` JSON lines of ``path``; malformed lines are skipped."""

    if limit <= 0:
        raise ValueError("limit must be > 0")
    try:
        with Path(path).open(encoding="utf-8") as handle:
            tail = deque(handle, maxlen=limit)
    except FileNotFoundError:
        return []
    entries: list[dict[str, JSONValue]] = []
    for line in tail:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def sweep_expired_logs(
    log_dir: Path | str,
    *,
    filename: str = "gitchorus.jsonl",
    retention_days: int = LOG_RETENTION_DAYS,
    keep: tuple[str, ...] = (),
    now: float | None = None,
) -> tuple[Path, ...]:
    """Delete session log files not written to for ``retention_days``.

    Only ``<session>/<filename>*`` files are touched (the live file and its
    dated rollovers); a session directory left empty is removed as well.
    Sessions named in ``keep`` are skipped. Returns the deleted files.
    """

    if retention_days <= 0:
        raise ValueError("retention_days must be > 0")
    root = Path(log_dir)
    if not root.is_dir():
        return ()
    cutoff = (time.time() if now is None else now) - retention_days * 86_400
    removed: list[Path] = []
    for session_dir in sorted(root.iterdir()):
        if not session_dir.is_dir() or session_dir.name in keep:
            continue
        expired = [
            path
            for path in sorted(session_dir.glob(f"{filename}*"))
            if path.is_file() and path.stat().st_mtime < cutoff
        ]
        for path in expired:
            path.unlink(missing_ok=True)
            removed.append(path)
        if expired and not any(session_dir.iterdir()):
            session_dir.rmdir()
    return tuple(removed)


def get_correlation_context() -> dict[str, str]:
    return {
        key: value
        for key, value in structlog.contextvars.get_contextvars().items()
        if isinstance(value, str)
    }


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for everything logged in this context.

    ``None`` unbinds a field inherited from an enclosing scope.
    """

    bound = {
        _required_text(key, "correlation key"): _required_text(value, "correlation value")
        for key, value in fields.items()
        if value is not None
    }
    unbound = [key for key, value in fields.items() if value is None]
    previous = structlog.contextvars.get_contextvars()
    structlog.contextvars.unbind_contextvars(*unbound)
    structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**previous)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and token-shaped substrings."""

    if isinstance(value, str):
        for pattern, replacement in _SECRET_TEXT_RULES:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _no_redaction(value: JSONValue) -> JSONValue:
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def _close_active_session() -> None:
    global _active_session
    with _session_lock:
        previous, _active_session = _active_session, None
    if previous is not None:
        previous.close()


def _split_record(record: logging.LogRecord) -> tuple[dict[str, str], dict[str, JSONValue]]:
    """Separate promoted correlation keys from the remaining ``extra`` fields."""

    correlation: dict[str, str] = dict(getattr(record, "correlation", None) or {})
    fields: dict[str, JSONValue] = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRIBUTES or key.startswith("_"):
            continue
        if key in CORRELATION_KEYS and isinstance(value, str):
            correlation[key] = value
            continue
        fields[key] = _jsonable(value)
    return {k: v for k, v in correlation.items() if k in CORRELATION_KEYS}, fields


def _jsonable(value: object) -> JSONValue:
    match value:
        case None | bool() | int() | str():
            return value
        case float():
            return value if math.isfinite(value) else str(value)
        case datetime():
            aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
            return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
        case bytes():
            return value.decode("utf-8", errors="replace")
        case Mapping():
            return {str(key): _jsonable(item) for key, item in value.items()}
        case list() | tuple():
            return [_jsonable(item) for item in value]
        case set() | frozenset():
            return sorted((_jsonable(item) for item in value), key=repr)
        case _:
            return str(value)


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return "" if value is None else json.dumps(value, sort_keys=True)


def _utc_stamp(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _required_text(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return resolved


__all__ = [
    "CORRELATION_KEYS",
    "REDACTED",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "LoggingSession",
    "active_session",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_correlation_context",
    "read_log_entries",
    "recent_entries",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
    "sweep_expired_logs",
]
