"""
gitchorus — analysis engine facade

File: src/gitchorus/engine/engine.py
Last updated: 2026-10-18

Purpose
- One object per target kind that owns the broadcaster, record store, job
  runner and publish coordinator, and reconciles live results with history.

What should be included in this file
- ``AnalysisEngine``: submit/rerun/cancel/clear, snapshots and observers,
  the publish workflow, ``select_latest`` and history passthroughs.
- ``build_engines``: wiring of the issue and pull-request engines from a
  validated config against one state DB.

Functional requirements
- No global instance; callers construct engines explicitly and close them with
  ``shutdown()`` or ``async with``.
- History read failures surface as ``CollaboratorError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from gitchorus.constants import DEFAULT_MAX_CONCURRENT_JOBS, DEFAULT_REVIEW_CHAIN_LIMIT
from gitchorus.domain.models import (
    AnalysisResult,
    HistoryEntry,
    JobKey,
    JobSnapshot,
    PublishState,
    TargetKind,
)
from gitchorus.engine.broadcaster import (
    DEFAULT_CHANNEL_SIZE,
    DispatchError,
    Observer,
    ProgressBroadcaster,
    ProgressChannel,
)
from gitchorus.engine.collaborators import (
    AnalysisCollaborator,
    CommentLedger,
    HistoryCollaborator,
    PublishCollaborator,
)
from gitchorus.engine.comment_body import CommentRenderer, SectionEdits, SectionToggles
from gitchorus.engine.errors import AdmissionError, CollaboratorError
from gitchorus.engine.publish import PublishCoordinator, PublishOutcome
from gitchorus.engine.runner import CancelPolicy, JobRunner, RunHandle
from gitchorus.engine.store import JobRecordStore


class AnalysisEngine:
    """Lifecycle engine for one target kind within one repository session."""

    def __init__(
        self,
        kind: TargetKind | str,
        *,
        repository_full_name: str,
        analysis: AnalysisCollaborator,
        publisher: PublishCollaborator,
        history: HistoryCollaborator | None = None,
        ledger: CommentLedger | None = None,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        cancel_policy: CancelPolicy = "fail",
        renderer: CommentRenderer | None = None,
        chain_limit: int = DEFAULT_REVIEW_CHAIN_LIMIT,
        default_options: Mapping[str, object] | None = None,
        logger: Any | None = None,
    ) -> None:
        if chain_limit <= 0:
            raise ValueError("chain_limit must be > 0")
        self._kind = TargetKind(kind)
        self._repository = repository_full_name
        self._history = history
        self._chain_limit = chain_limit
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._closed = False

        self._broadcaster = ProgressBroadcaster(self._kind, logger=self._logger)
        self._store = JobRecordStore(self._broadcaster, logger=self._logger)
        self._runner = JobRunner(
            self._store,
            analysis,
            repository_full_name=repository_full_name,
            history=history,
            max_concurrent_jobs=max_concurrent_jobs,
            cancel_policy=cancel_policy,
            default_options=default_options,
            logger=self._logger,
        )
        self._publisher = PublishCoordinator(
            self._store,
            publisher,
            repository_full_name=repository_full_name,
            ledger=ledger,
            renderer=renderer,
            logger=self._logger,
        )

    @classmethod
    def from_config(
        cls,
        kind: TargetKind | str,
        config: Mapping[str, Any],
        *,
        repository_full_name: str,
        analysis: AnalysisCollaborator,
        publisher: PublishCollaborator,
        history: HistoryCollaborator | None = None,
        ledger: CommentLedger | None = None,
        logger: Any | None = None,
    ) -> AnalysisEngine:
        """Construct an engine using the ``engine``, ``history`` and ``publish`` sections."""

        engine_section = config["engine"]
        publish_section = config["publish"]
        return cls(
            kind,
            repository_full_name=repository_full_name,
            analysis=analysis,
            publisher=publisher,
            history=history,
            ledger=ledger,
            max_concurrent_jobs=engine_section["max_concurrent_jobs"],
            cancel_policy=engine_section["cancel_policy"],
            renderer=CommentRenderer(
                include_marker=publish_section["include_marker"],
                footer=publish_section["footer"] or None,
            ),
            chain_limit=config["history"]["chain_limit"],
            logger=logger,
        )

    @property
    def kind(self) -> TargetKind:
        return self._kind

    @property
    def repository_full_name(self) -> str:
        return self._repository

    @property
    def store(self) -> JobRecordStore:
        return self._store

    @property
    def runner(self) -> JobRunner:
        return self._runner

    @property
    def broadcaster(self) -> ProgressBroadcaster:
        return self._broadcaster

    @property
    def publisher(self) -> PublishCoordinator:
        return self._publisher

    # ------------------------------------------------------------------ jobs

    def submit(self, key: JobKey, *, options: Mapping[str, object] | None = None) -> RunHandle:
        self._ensure_open(key)
        return self._runner.submit(key, options=options)

    def rerun(self, key: JobKey, *, options: Mapping[str, object] | None = None) -> RunHandle:
        self._ensure_open(key)
        return self._runner.rerun(key, options=options)

    def cancel(self, key: JobKey, *, requeue: bool | None = None) -> bool:
        return self._runner.cancel(key, requeue=requeue)

    def clear(self, key: JobKey) -> bool:
        """Supersede any active run and drop the key's steps, result and error."""

        self._runner.cancel(key, requeue=True)
        return self._store.clear(key)

    def snapshot(self, key: JobKey) -> JobSnapshot | None:
        return self._store.get_snapshot(key)

    def snapshots(self) -> tuple[JobSnapshot, ...]:
        return self._store.snapshots()

    def subscribe(self, key: JobKey | None, callback: Observer, *, replay: bool = True) -> int:
        return self._broadcaster.subscribe(key, callback, replay=replay)

    def unsubscribe(self, token: int) -> bool:
        return self._broadcaster.unsubscribe(token)

    def channel(
        self,
        key: JobKey | None = None,
        *,
        replay: bool = True,
        maxsize: int = DEFAULT_CHANNEL_SIZE,
    ) -> ProgressChannel:
        return self._broadcaster.channel(key, replay=replay, maxsize=maxsize)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        return self._broadcaster.dispatch_errors(limit=limit)

    # --------------------------------------------------------------- publish

    def begin_edit(self, key: JobKey, *, draft: str | None = None) -> PublishState:
        return self._publisher.begin_edit(key, draft=draft)

    def publish(
        self,
        key: JobKey,
        body: str | None = None,
        section_edits: SectionEdits | Mapping[str, object] | None = None,
        *,
        toggles: SectionToggles | None = None,
    ) -> asyncio.Task[PublishOutcome]:
        self._ensure_open(key)
        return self._publisher.publish(key, body, section_edits, toggles=toggles)

    def publish_state(self, key: JobKey) -> PublishState:
        return self._publisher.state(key)

    def reset_publish(self, key: JobKey) -> PublishState:
        return self._publisher.reset(key)

    def clear_remote(self, key: JobKey) -> PublishState:
        return self._publisher.clear_remote(key)

    # --------------------------------------------------------------- history

    def select_latest(self, key: JobKey) -> AnalysisResult | None:
        """The live result for ``key`` if cached, else the newest history entry's."""

        snapshot = self._store.get_snapshot(key)
        if snapshot is not None and snapshot.result is not None:
            return snapshot.result
        entries = self.history(key=key, limit=1)
        return entries[0].result if entries else None

    def history(
        self, *, key: JobKey | None = None, limit: int | None = None
    ) -> Sequence[HistoryEntry]:
        """History entries for this repository, newest first."""

        if self._history is None:
            return ()
        try:
            return self._history.list(
                repository_full_name=self._repository, key=key, limit=limit
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "history_read_failed", kind=self._kind.value, key=key, error=str(exc)
            )
            raise CollaboratorError(f"history read failed: {exc}", key=key) from exc

    def review_chain(self, key: JobKey, *, limit: int | None = None) -> list[HistoryEntry]:
        """The most recent entries for ``key``, oldest first."""

        newest_first = self.history(key=key, limit=limit or self._chain_limit)
        return list(reversed(newest_first))

    def delete_history(self, entry_id: str) -> bool:
        if self._history is None:
            return False
        try:
            removed = self._history.remove(entry_id)
        except Exception as exc:  # noqa: BLE001
            raise CollaboratorError(f"history delete failed: {exc}") from exc
        if removed:
            self._logger.info("history_entry_deleted", kind=self._kind.value, entry_id=entry_id)
        return removed

    def clear_history(self) -> int:
        """Delete every history entry of this repository; returns the count removed."""

        clear = getattr(self._history, "clear", None)
        if clear is not None:
            try:
                return int(clear(self._repository))
            except Exception as exc:  # noqa: BLE001
                raise CollaboratorError(f"history clear failed: {exc}") from exc
        removed = 0
        for entry in self.history():
            if self.delete_history(entry.entry_id):
                removed += 1
        return removed

    # ------------------------------------------------------- async history
    # Same operations with the history and ledger calls run via asyncio.to_thread.

    async def select_latest_async(self, key: JobKey) -> AnalysisResult | None:
        snapshot = self._store.get_snapshot(key)
        if snapshot is not None and snapshot.result is not None:
            return snapshot.result
        entries = await self.history_async(key=key, limit=1)
        return entries[0].result if entries else None

    async def history_async(
        self, *, key: JobKey | None = None, limit: int | None = None
    ) -> Sequence[HistoryEntry]:
        if self._history is None:
            return ()
        return await asyncio.to_thread(self.history, key=key, limit=limit)

    async def review_chain_async(
        self, key: JobKey, *, limit: int | None = None
    ) -> list[HistoryEntry]:
        return await asyncio.to_thread(self.review_chain, key, limit=limit)

    async def delete_history_async(self, entry_id: str) -> bool:
        return await asyncio.to_thread(self.delete_history, entry_id)

    async def clear_history_async(self) -> int:
        return await asyncio.to_thread(self.clear_history)

    async def clear_remote_async(self, key: JobKey) -> PublishState:
        return await self._publisher.clear_remote_async(key)

    # ------------------------------------------------------------- lifecycle

    async def shutdown(self) -> None:
        """Cancel active runs, then wait for run tasks, publishes and async observers."""

        if self._closed:
            return
        self._closed = True
        await self._runner.shutdown()
        await self._publisher.wait_idle()
        await self._broadcaster.drain()
        self._logger.info("engine_shutdown", kind=self._kind.value)

    async def __aenter__(self) -> AnalysisEngine:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.shutdown()

    def _ensure_open(self, key: object) -> None:
        if self._closed:
            raise AdmissionError("engine is shut down", key=key)


@dataclass(frozen=True, slots=True)
class EngineSet:
    """The issue-validation and pull-request-review engines of one session."""

    issues: AnalysisEngine
    pull_requests: AnalysisEngine

    def for_kind(self, kind: TargetKind | str) -> AnalysisEngine:
        return self.issues if TargetKind(kind) is TargetKind.ISSUE else self.pull_requests

    async def shutdown(self) -> None:
        await asyncio.gather(self.issues.shutdown(), self.pull_requests.shutdown())

    async def __aenter__(self) -> EngineSet:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.shutdown()


def build_engines(
    config: Mapping[str, Any],
    *,
    repository_full_name: str,
    issue_analysis: AnalysisCollaborator,
    review_analysis: AnalysisCollaborator,
    issue_publisher: PublishCollaborator,
    review_publisher: PublishCollaborator,
    state_db_path: str | Path | None = None,
    logger: Any | None = None,
) -> EngineSet:
    """Wire both engines against one durable state DB."""

    from gitchorus.persistence import HistoryRepo, PublishedCommentRepo, StateDB

    db = StateDB(state_db_path if state_db_path is not None else config["paths"]["state_db"])
    max_entries = config["history"]["max_entries"]

    def _engine(
        kind: TargetKind, analysis: AnalysisCollaborator, publisher: PublishCollaborator
    ) -> AnalysisEngine:
        return AnalysisEngine.from_config(
            kind,
            config,
            repository_full_name=repository_full_name,
            analysis=analysis,
            publisher=publisher,
            history=HistoryRepo(db, kind, max_entries=max_entries),
            ledger=PublishedCommentRepo(db, kind),
            logger=logger,
        )

    return EngineSet(
        issues=_engine(TargetKind.ISSUE, issue_analysis, issue_publisher),
        pull_requests=_engine(TargetKind.PULL_REQUEST, review_analysis, review_publisher),
    )


__all__ = ["AnalysisEngine", "EngineSet", "build_engines"]
