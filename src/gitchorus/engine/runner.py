"""Job runner: admission, run-id tagging and the per-run analysis loop.

Each admitted key gets a fresh run id and an ``asyncio`` task. The task waits
for a concurrency permit, flips the record to ``running`` and forwards every
event from the analysis collaborator into the record store, tagged with its
run id. The store drops anything from a run that is no longer current, so a
cancelled or superseded run can keep yielding without corrupting the key.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Final, Literal

import structlog

from gitchorus.constants import CANCELLED_MESSAGE, DEFAULT_MAX_CONCURRENT_JOBS, NO_RESULT_MESSAGE
from gitchorus.domain import ids
from gitchorus.domain.models import (
    AnalysisResult,
    HistoryEntry,
    JobKey,
    JobSnapshot,
    TargetKind,
    validate_job_key,
)
from gitchorus.engine.collaborators import (
    AnalysisCollaborator,
    AnalysisContext,
    HistoryCollaborator,
    StepEvent,
    TerminalFailure,
    TerminalSuccess,
)
from gitchorus.engine.errors import AdmissionError, AnalysisFailedError, CollaboratorError
from gitchorus.engine.store import JobRecordStore
from gitchorus.utils.concurrency import CancellationToken, JobSlots, cancel_and_wait

CancelPolicy = Literal["fail", "requeue"]

_CANCEL_POLICIES: Final[frozenset[str]] = frozenset({"fail", "requeue"})
_HISTORY_PREFIX: Final[dict[TargetKind, str]] = {
    TargetKind.ISSUE: ids.VALIDATION_HISTORY_ID_PREFIX,
    TargetKind.PULL_REQUEST: ids.REVIEW_HISTORY_ID_PREFIX,
}


@dataclass(frozen=True, slots=True)
class RunHandle:
    """Caller-facing handle for one admitted run."""

    key: JobKey
    run_id: int
    task: asyncio.Task[JobSnapshot | None]
    cancel_token: CancellationToken
    _store: JobRecordStore = field(repr=False, compare=False)

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> JobSnapshot | None:
        """Wait for the run's task to settle and return the key's snapshot."""

        await asyncio.gather(self.task, return_exceptions=True)
        return self._store.get_snapshot(self.key)


class JobRunner:
    """Starts, supersedes and cancels analysis runs for one target kind."""

    def __init__(
        self,
        store: JobRecordStore,
        collaborator: AnalysisCollaborator,
        *,
        repository_full_name: str,
        history: HistoryCollaborator | None = None,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        cancel_policy: CancelPolicy = "fail",
        default_options: Mapping[str, object] | None = None,
        logger: Any | None = None,
    ) -> None:
        if cancel_policy not in _CANCEL_POLICIES:
            raise ValueError(f"cancel_policy must be one of {sorted(_CANCEL_POLICIES)}")
        if not isinstance(repository_full_name, str) or "/" not in repository_full_name:
            raise ValueError("repository_full_name must look like 'owner/name'")
        self._store = store
        self._kind = store.kind
        self._collaborator = collaborator
        self._history = history
        self._repository = repository_full_name
        self._cancel_policy = cancel_policy
        self._default_options = dict(default_options or {})
        self._slots = JobSlots(max_concurrent_jobs)
        self._handles: dict[JobKey, RunHandle] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def kind(self) -> TargetKind:
        return self._kind

    @property
    def repository_full_name(self) -> str:
        return self._repository

    @property
    def slots(self) -> JobSlots:
        return self._slots

    def active_handle(self, key: JobKey) -> RunHandle | None:
        handle = self._handles.get(key)
        if handle is None or handle.done() or not self._store.is_active_run(key, handle.run_id):
            return None
        return handle

    def active_keys(self) -> tuple[JobKey, ...]:
        return tuple(key for key in sorted(self._handles) if self.active_handle(key) is not None)

    def submit(self, key: JobKey, *, options: Mapping[str, object] | None = None) -> RunHandle:
        """Admit ``key``; returns the existing handle while a run is active."""

        key = self._admit(key)
        existing = self.active_handle(key)
        if existing is not None:
            self._logger.debug(
                "job_submit_joined", kind=self._kind.value, key=key, run_id=existing.run_id
            )
            return existing
        return self._start(key, options)

    def rerun(self, key: JobKey, *, options: Mapping[str, object] | None = None) -> RunHandle:
        """Supersede any active run for ``key`` and start over with a new run id."""

        key = self._admit(key)
        previous = self._handles.get(key)
        if previous is not None and not previous.done():
            self._abort(previous, reason="superseded")
        return self._start(key, options)

    def cancel(self, key: JobKey, *, requeue: bool | None = None) -> bool:
        """Cancel the active run for ``key``. Returns ``False`` when none is active."""

        key = self._admit(key)
        run_id = self._store.active_run_id(key)
        if run_id is None:
            return False
        if requeue is None:
            requeue = self._cancel_policy == "requeue"
        cancelled = self._store.cancel_run(key, run_id, requeue=requeue)
        handle = self._handles.get(key)
        if handle is not None and handle.run_id == run_id:
            self._abort(handle, reason=CANCELLED_MESSAGE)
        self._logger.info(
            "job_cancelled",
            kind=self._kind.value,
            key=key,
            run_id=run_id,
            requeue=requeue,
        )
        return cancelled

    async def shutdown(self) -> None:
        """Cancel every active run and wait for all run tasks to settle."""

        for key in self.active_keys():
            self.cancel(key, requeue=False)
        tasks = [handle.task for handle in self._handles.values()]
        await cancel_and_wait(tasks)

    # -------------------------------------------------------------- internals

    def _admit(self, key: object) -> JobKey:
        try:
            return validate_job_key(key)
        except ValueError as exc:
            raise AdmissionError(str(exc), key=key) from exc

    def _start(self, key: JobKey, options: Mapping[str, object] | None) -> RunHandle:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise AdmissionError("job runner requires a running event loop", key=key) from None

        run_id = self._store.next_run_id()
        if not self._store.begin_run(key, run_id):
            raise AdmissionError(f"could not begin run {run_id} for key {key}", key=key)

        token = CancellationToken()
        merged = dict(self._default_options)
        merged.update(options or {})
        context = AnalysisContext(
            kind=self._kind,
            repository_full_name=self._repository,
            run_id=run_id,
            cancel_token=token,
            options=merged,
        )
        task = loop.create_task(
            self._execute(key, context),
            name=f"gitchorus-{self._kind.value}-{key}-run{run_id}",
        )
        handle = RunHandle(key=key, run_id=run_id, task=task, cancel_token=token, _store=self._store)
        self._handles[key] = handle
        task.add_done_callback(lambda _task: self._forget(handle))
        self._logger.info("job_submitted", kind=self._kind.value, key=key, run_id=run_id)
        return handle

    def _abort(self, handle: RunHandle, *, reason: str) -> None:
        handle.cancel_token.cancel(reason)
        if not handle.task.done():
            handle.task.cancel(reason)

    def _forget(self, handle: RunHandle) -> None:
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]

    async def _execute(self, key: JobKey, context: AnalysisContext) -> JobSnapshot | None:
        run_id = context.run_id
        if not self._slots.free:
            self._logger.debug(
                "job_waiting_for_slot",
                kind=self._kind.value,
                key=key,
                run_id=run_id,
                waiting=self._slots.waiting + 1,
            )
        async with self._slots.slot():
            if not self._store.mark_running(key, run_id):
                return self._store.get_snapshot(key)
            self._logger.info("job_started", kind=self._kind.value, key=key, run_id=run_id)
            await self._consume(key, context)
        return self._store.get_snapshot(key)

    async def _consume(self, key: JobKey, context: AnalysisContext) -> None:
        run_id = context.run_id
        stream: AsyncIterator[object] | None = None
        try:
            stream = aiter(self._collaborator.run(key, context))
            async for event in stream:
                if not self._store.is_active_run(key, run_id):
                    self._logger.debug(
                        "job_stream_abandoned", kind=self._kind.value, key=key, run_id=run_id
                    )
                    return
                if isinstance(event, StepEvent):
                    self._store.append_step(key, event.step, run_id=run_id)
                elif isinstance(event, TerminalSuccess):
                    await self._complete(key, event.result, run_id=run_id)
                    return
                elif isinstance(event, TerminalFailure):
                    self._store.set_error(key, event.message, run_id=run_id)
                    self._logger.info(
                        "job_failed",
                        kind=self._kind.value,
                        key=key,
                        run_id=run_id,
                        error=event.message,
                    )
                    return
                else:
                    raise AnalysisFailedError(
                        f"unexpected analysis event {type(event).__name__}", key=key
                    )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            error = (
                exc
                if isinstance(exc, CollaboratorError)
                else AnalysisFailedError(str(exc) or type(exc).__name__, key=key)
            )
            self._logger.warning(
                "job_collaborator_failed",
                kind=self._kind.value,
                key=key,
                run_id=run_id,
                error_type=type(exc).__name__,
                error=str(error),
            )
            self._store.set_error(key, str(error), run_id=run_id)
            return
        finally:
            await self._close_stream(stream, key=key, run_id=run_id)

        self._store.set_error(key, NO_RESULT_MESSAGE, run_id=run_id)
        self._logger.warning("job_stream_ended_early", kind=self._kind.value, key=key, run_id=run_id)

    async def _complete(self, key: JobKey, result: AnalysisResult, *, run_id: int) -> None:
        if not self._store.set_result(key, result, run_id=run_id):
            if self._store.is_active_run(key, run_id):
                self._store.set_error(
                    key,
                    f"analysis returned a result for {result.kind.value} #{result.number}",
                    run_id=run_id,
                )
            return
        self._logger.info(
            "job_completed",
            kind=self._kind.value,
            key=key,
            run_id=run_id,
            verdict=result.verdict,
            confidence=result.confidence,
        )
        if self._history is None:
            return
        entry = HistoryEntry(
            entry_id=ids.generate_history_id(_HISTORY_PREFIX[self._kind]),
            kind=self._kind,
            key=key,
            repository_full_name=result.repository_full_name,
            result=result,
            created_at=datetime.now(UTC),
        )
        try:
            await asyncio.to_thread(self._history.append, entry)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "history_append_failed",
                kind=self._kind.value,
                key=key,
                run_id=run_id,
                entry_id=entry.entry_id,
                error=str(exc),
            )

    async def _close_stream(self, stream: object, *, key: JobKey, run_id: int) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:  # noqa: BLE001
            self._logger.debug(
                "job_stream_close_failed",
                kind=self._kind.value,
                key=key,
                run_id=run_id,
                error=str(exc),
            )


__all__ = ["CancelPolicy", "JobRunner", "RunHandle"]
