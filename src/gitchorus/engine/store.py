"""Authoritative job-key -> lifecycle record map.

Each record is a frozen :class:`~gitchorus.domain.models.JobSnapshot`; writers
replace it wholesale (copy on write) under the broadcaster's lock, so readers
never observe a half-updated multi-field record.

Every write that belongs to a run carries that run's id. A write whose run id
is not the key's active run is dropped without error: this is what keeps late
events from a cancelled or superseded run out of the new run's record.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import structlog

from gitchorus.constants import CANCELLED_MESSAGE
from gitchorus.domain.events import JobEvent, JobEventKind
from gitchorus.domain.models import (
    AnalysisResult,
    JobKey,
    JobSnapshot,
    JobStatus,
    QueueItem,
    Step,
    TargetKind,
    validate_job_key,
)
from gitchorus.engine.broadcaster import ProgressBroadcaster, snapshot_events
from gitchorus.engine.errors import ConsistencyViolation

ClearHook = Callable[[JobKey], None]


class JobRecordStore:
    """Record store for one target kind; the job runner is its only writer."""

    def __init__(self, broadcaster: ProgressBroadcaster, *, logger: Any | None = None) -> None:
        self._broadcaster = broadcaster
        self._kind = broadcaster.kind
        self._records: dict[JobKey, JobSnapshot] = {}
        self._run_ids = itertools.count(1)
        self._clear_hooks: list[ClearHook] = []
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        broadcaster.add_replay_source(self._replay)

    @property
    def kind(self) -> TargetKind:
        return self._kind

    @property
    def broadcaster(self) -> ProgressBroadcaster:
        return self._broadcaster

    def next_run_id(self) -> int:
        """Allocate a run id greater than every id handed out before."""

        with self._broadcaster.lock:
            return next(self._run_ids)

    def add_clear_hook(self, hook: ClearHook) -> None:
        """Call ``hook(key)`` after every committed ``clear``/``begin_run``."""

        with self._broadcaster.lock:
            self._clear_hooks.append(hook)

    # ------------------------------------------------------------------ reads

    def get_snapshot(self, key: JobKey) -> JobSnapshot | None:
        with self._broadcaster.lock:
            return self._records.get(key)

    def snapshots(self) -> tuple[JobSnapshot, ...]:
        with self._broadcaster.lock:
            return tuple(self._records[key] for key in sorted(self._records))

    def keys(self) -> tuple[JobKey, ...]:
        with self._broadcaster.lock:
            return tuple(sorted(self._records))

    def has_result(self, key: JobKey) -> bool:
        snapshot = self.get_snapshot(key)
        return snapshot is not None and snapshot.result is not None

    def has_error(self, key: JobKey) -> bool:
        snapshot = self.get_snapshot(key)
        return snapshot is not None and snapshot.error is not None

    def active_run_id(self, key: JobKey) -> int | None:
        snapshot = self.get_snapshot(key)
        return None if snapshot is None else snapshot.active_run_id

    def is_active_run(self, key: JobKey, run_id: int) -> bool:
        return self.active_run_id(key) == run_id

    # ----------------------------------------------------------------- writes

    def upsert_queue(self, items: Iterable[QueueItem]) -> None:
        """Supersede the admission view of each item's key."""

        for item in items:
            key = validate_job_key(item.key)
            with self._broadcaster.lock:
                current = self._records.get(key) or JobSnapshot(key=key)
                updated = replace(
                    current,
                    queue_item=item,
                    active_run_id=item.run_id if item.is_active else None,
                )
                self._commit(key, updated, [self._queue_event(updated)])

    def begin_run(self, key: JobKey, run_id: int) -> bool:
        """Reset ``key`` for a fresh run and mark it queued under ``run_id``."""

        key = validate_job_key(key)
        with self._broadcaster.lock:
            current = self._records.get(key)
            if current is not None and current.queue_item is not None:
                if run_id <= current.queue_item.run_id:
                    self._violation(
                        key,
                        run_id,
                        f"run id {run_id} is not newer than {current.queue_item.run_id}",
                    )
                    return False
            item = QueueItem(key=key, status=JobStatus.QUEUED, run_id=run_id, queued_at=_utc_now())
            updated = JobSnapshot(key=key, queue_item=item, active_run_id=run_id)
            cleared = JobEvent(
                kind=JobEventKind.CLEARED, target=self._kind, key=key, run_id=run_id
            )
            if not self._commit(key, updated, [cleared, self._queue_event(updated)]):
                return False
            self._run_clear_hooks(key)
            return True

    def mark_running(self, key: JobKey, run_id: int) -> bool:
        with self._broadcaster.lock:
            current = self._current_run(key, run_id, operation="mark_running")
            if current is None or current.queue_item is None:
                return False
            item = replace(current.queue_item, status=JobStatus.RUNNING, started_at=_utc_now())
            updated = replace(current, queue_item=item)
            return self._commit(key, updated, [self._queue_event(updated)])

    def append_step(self, key: JobKey, step: Step, *, run_id: int) -> bool:
        """Append ``step`` to the active run; silently dropped for any other run."""

        with self._broadcaster.lock:
            current = self._current_run(key, run_id, operation="append_step")
            if current is None:
                return False
            if current.status is not JobStatus.RUNNING:
                self._logger.debug(
                    "job_step_dropped_not_running",
                    kind=self._kind.value,
                    key=key,
                    run_id=run_id,
                )
                return False
            updated = replace(current, steps=(*current.steps, step))
            event = JobEvent(
                kind=JobEventKind.STEP_APPENDED,
                target=self._kind,
                key=key,
                run_id=run_id,
                step=step,
            )
            return self._commit(key, updated, [event])

    def set_result(self, key: JobKey, result: AnalysisResult, *, run_id: int) -> bool:
        """Record terminal success; clears any error and completes the run."""

        with self._broadcaster.lock:
            current = self._current_run(key, run_id, operation="set_result")
            if current is None or current.queue_item is None:
                return False
            item = replace(
                current.queue_item, status=JobStatus.COMPLETED, completed_at=_utc_now()
            )
            updated = replace(
                current, queue_item=item, result=result, error=None, active_run_id=None
            )
            event = JobEvent(
                kind=JobEventKind.RESULT_SET,
                target=self._kind,
                key=key,
                run_id=run_id,
                queue_item=item,
                result=result,
            )
            return self._commit(key, updated, [event])

    def set_error(self, key: JobKey, message: str, *, run_id: int) -> bool:
        """Record terminal failure; clears any result and fails the run."""

        with self._broadcaster.lock:
            current = self._current_run(key, run_id, operation="set_error")
            if current is None:
                return False
            return self._fail(current, message, run_id=run_id)

    def cancel_run(self, key: JobKey, run_id: int, *, requeue: bool) -> bool:
        """Supersede ``run_id``; park the key as queued or fail it as cancelled."""

        with self._broadcaster.lock:
            current = self._current_run(key, run_id, operation="cancel_run")
            if current is None or current.queue_item is None:
                return False
            if not requeue:
                return self._fail(current, CANCELLED_MESSAGE, run_id=run_id)
            item = replace(current.queue_item, status=JobStatus.QUEUED, started_at=None)
            updated = replace(current, queue_item=item, active_run_id=None)
            return self._commit(key, updated, [self._queue_event(updated)])

    def clear(self, key: JobKey) -> bool:
        """Drop steps, result and error for ``key`` and supersede any active run.

        An active queue item is parked as ``queued``; a terminal one is kept as
        the last admission view. Registered clear hooks (the publish
        coordinator) reset their own per-key state afterwards.
        """

        key = validate_job_key(key)
        with self._broadcaster.lock:
            current = self._records.get(key)
            if current is None:
                return False
            item = current.queue_item
            if item is not None and item.is_active:
                item = replace(item, status=JobStatus.QUEUED, started_at=None)
            updated = JobSnapshot(key=key, queue_item=item)
            cleared = JobEvent(
                kind=JobEventKind.CLEARED,
                target=self._kind,
                key=key,
                run_id=None if item is None else item.run_id,
                queue_item=item,
            )
            if not self._commit(key, updated, [cleared]):
                return False
            self._run_clear_hooks(key)
            return True

    # -------------------------------------------------------------- internals

    def _fail(self, current: JobSnapshot, message: str, *, run_id: int) -> bool:
        if not isinstance(message, str) or not message.strip():
            message = "analysis failed"
        base = current.queue_item or QueueItem(
            key=current.key, status=JobStatus.FAILED, run_id=run_id, queued_at=_utc_now()
        )
        item = replace(base, status=JobStatus.FAILED, completed_at=_utc_now())
        updated = replace(
            current, queue_item=item, result=None, error=message, active_run_id=None
        )
        event = JobEvent(
            kind=JobEventKind.ERROR_SET,
            target=self._kind,
            key=current.key,
            run_id=run_id,
            queue_item=item,
            error=message,
        )
        return self._commit(current.key, updated, [event])

    def _current_run(self, key: JobKey, run_id: int, *, operation: str) -> JobSnapshot | None:
        current = self._records.get(key)
        if current is None or current.active_run_id != run_id:
            self._logger.debug(
                "job_stale_write_dropped",
                kind=self._kind.value,
                key=key,
                run_id=run_id,
                active_run_id=None if current is None else current.active_run_id,
                operation=operation,
            )
            return None
        return current

    def _commit(self, key: JobKey, updated: JobSnapshot, events: list[JobEvent]) -> bool:
        try:
            _check_record(self._kind, key, updated)
        except ConsistencyViolation as exc:
            self._violation(key, updated.active_run_id, str(exc))
            return False
        self._records[key] = updated
        for event in events:
            self._broadcaster.publish(event)
        return True

    def _violation(self, key: JobKey, run_id: int | None, message: str) -> None:
        self._logger.error(
            "job_consistency_violation",
            kind=self._kind.value,
            key=key,
            run_id=run_id,
            error=message,
        )

    def _run_clear_hooks(self, key: JobKey) -> None:
        for hook in tuple(self._clear_hooks):
            hook(key)

    def _queue_event(self, snapshot: JobSnapshot) -> JobEvent:
        return JobEvent(
            kind=JobEventKind.QUEUE_UPDATED,
            target=self._kind,
            key=snapshot.key,
            run_id=None if snapshot.queue_item is None else snapshot.queue_item.run_id,
            queue_item=snapshot.queue_item,
        )

    def _replay(self, key: JobKey | None) -> list[JobEvent]:
        if key is not None:
            snapshot = self._records.get(key)
            return [] if snapshot is None else snapshot_events(self._kind, snapshot)
        events: list[JobEvent] = []
        for record_key in sorted(self._records):
            events.extend(snapshot_events(self._kind, self._records[record_key]))
        return events


def _check_record(kind: TargetKind, key: JobKey, record: JobSnapshot) -> None:
    if record.key != key:
        raise ConsistencyViolation(f"record for key {record.key} stored under {key}")
    if record.result is not None and record.error is not None:
        raise ConsistencyViolation("result and error are both set")
    if record.result is not None:
        if record.result.kind is not kind or record.result.number != key:
            raise ConsistencyViolation(
                f"result for {record.result.kind.value} #{record.result.number} "
                f"does not belong to {kind.value} #{key}"
            )
        if record.status is not JobStatus.COMPLETED:
            raise ConsistencyViolation("result present on a run that is not completed")
    item = record.queue_item
    if item is not None:
        if item.key != key:
            raise ConsistencyViolation(f"queue item for key {item.key} stored under {key}")
        if record.active_run_id is not None and record.active_run_id != item.run_id:
            raise ConsistencyViolation("active run id does not match the queue item")
        if record.active_run_id is not None and not item.is_active:
            raise ConsistencyViolation("terminal queue item still has an active run")
    elif record.steps:
        raise ConsistencyViolation("steps recorded for a key that was never queued")


def _utc_now() -> datetime:
    return datetime.now(UTC)


__all__ = ["ClearHook", "JobRecordStore"]
