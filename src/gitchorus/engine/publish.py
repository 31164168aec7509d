"""Publish coordinator: the per-key comment workflow.

    idle --begin_edit--> editing --publish--> publishing --ack--> posted
    posted --begin_edit/publish--> editing     publishing --fail--> editing

A key that already has a remote comment id is always published with
``update_comment``; only a key without one ever reaches ``create_comment``.
The id comes from memory first and from the durable comment ledger second,
so a restart followed by a re-publish is still an update.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

import structlog

from gitchorus.domain.events import JobEvent, JobEventKind
from gitchorus.domain.models import (
    AnalysisResult,
    JobKey,
    PublishState,
    PublishStatus,
    TargetKind,
    validate_job_key,
)
from gitchorus.engine.collaborators import CommentLedger, PublishCollaborator
from gitchorus.engine.comment_body import CommentRenderer, SectionEdits, SectionToggles
from gitchorus.engine.errors import AdmissionError, CollaboratorError, PublishTransportError
from gitchorus.engine.store import JobRecordStore


@dataclass(frozen=True, slots=True)
class PublishOutcome:
    """What one publish attempt did; ``error`` is set when it failed."""

    key: JobKey
    state: PublishState
    created: bool = False
    error: CollaboratorError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def remote_comment_id(self) -> int | None:
        return self.state.remote_comment_id

    @property
    def remote_comment_url(self) -> str | None:
        return self.state.remote_comment_url


class PublishCoordinator:
    """Owns every key's :class:`PublishState` for one target kind."""

    def __init__(
        self,
        store: JobRecordStore,
        collaborator: PublishCollaborator,
        *,
        repository_full_name: str,
        ledger: CommentLedger | None = None,
        renderer: CommentRenderer | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._broadcaster = store.broadcaster
        self._kind = store.kind
        self._collaborator = collaborator
        self._repository = repository_full_name
        self._ledger = ledger
        self._renderer = renderer if renderer is not None else CommentRenderer()
        self._states: dict[JobKey, PublishState] = {}
        self._inflight: dict[JobKey, asyncio.Task[PublishOutcome]] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._broadcaster.add_replay_source(self._replay)
        store.add_clear_hook(self._on_clear)

    @property
    def kind(self) -> TargetKind:
        return self._kind

    @property
    def renderer(self) -> CommentRenderer:
        return self._renderer

    def state(self, key: JobKey) -> PublishState:
        key = _admit(key)
        with self._broadcaster.lock:
            return self._states.get(key) or PublishState(key=key)

    def states(self) -> tuple[PublishState, ...]:
        with self._broadcaster.lock:
            return tuple(self._states[key] for key in sorted(self._states))

    def in_flight(self, key: JobKey) -> asyncio.Task[PublishOutcome] | None:
        with self._broadcaster.lock:
            task = self._inflight.get(key)
            return task if task is not None and not task.done() else None

    def begin_edit(self, key: JobKey, *, draft: str | None = None) -> PublishState:
        """Open (or re-open) the editor for ``key``; allowed from idle, editing or posted."""

        key = _admit(key)
        with self._broadcaster.lock:
            current = self._states.get(key) or PublishState(key=key)
            if current.status is PublishStatus.PUBLISHING:
                raise AdmissionError(f"publish already in flight for key {key}", key=key)
            self._require_result(key)
            updated = replace(
                current,
                status=PublishStatus.EDITING,
                draft=current.draft if draft is None else draft,
            )
            self._set(updated)
            return updated

    def publish(
        self,
        key: JobKey,
        body: str | None = None,
        section_edits: SectionEdits | Mapping[str, object] | None = None,
        *,
        toggles: SectionToggles | None = None,
    ) -> asyncio.Task[PublishOutcome]:
        """Start publishing ``key`` and return the task that settles the outcome.

        ``body`` is posted verbatim when given; otherwise the body is rendered
        from the stored result with ``section_edits`` applied. A call made while
        a publish for ``key`` is in flight returns that in-flight task.
        """

        key = _admit(key)
        with self._broadcaster.lock:
            running = self._inflight.get(key)
            if running is not None and not running.done():
                self._logger.debug("publish_joined", kind=self._kind.value, key=key)
                return running

            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                raise AdmissionError("publish requires a running event loop", key=key) from None

            result = self._require_result(key)
            if body is None:
                edits = (
                    section_edits
                    if isinstance(section_edits, SectionEdits)
                    else SectionEdits.from_mapping(section_edits)
                )
                text = self._renderer.render(result, toggles=toggles, edits=edits)
            else:
                text = body
            if not isinstance(text, str) or not text.strip():
                raise AdmissionError(f"comment body for key {key} is empty", key=key)

            current = self._states.get(key) or PublishState(key=key)
            if current.status is not PublishStatus.EDITING:
                current = replace(current, status=PublishStatus.EDITING)
                self._set(current)
            publishing = replace(
                current, status=PublishStatus.PUBLISHING, draft=text, last_error=None
            )
            self._set(publishing)

            task = loop.create_task(
                self._deliver(key, result, text, publishing),
                name=f"gitchorus-publish-{self._kind.value}-{key}",
            )
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
            return task

    def reset(self, key: JobKey) -> PublishState:
        """Return ``key`` to ``idle``, dropping draft and error but keeping the remote id."""

        key = _admit(key)
        with self._broadcaster.lock:
            current = self._states.get(key)
            if current is not None and current.status is PublishStatus.PUBLISHING:
                raise AdmissionError(f"publish already in flight for key {key}", key=key)
            updated = _idle(current or PublishState(key=key))
            self._set(updated)
            return updated

    def clear_remote(self, key: JobKey) -> PublishState:
        """Forget the remote comment so the next publish creates a new one."""

        updated = self._drop_remote(key)
        if self._ledger is not None:
            self._ledger.forget(self._repository, updated.key)
        self._logger.info("publish_remote_cleared", kind=self._kind.value, key=updated.key)
        return updated

    async def clear_remote_async(self, key: JobKey) -> PublishState:
        """``clear_remote`` with the ledger write on a worker thread."""

        updated = self._drop_remote(key)
        if self._ledger is not None:
            await asyncio.to_thread(self._ledger.forget, self._repository, updated.key)
        self._logger.info("publish_remote_cleared", kind=self._kind.value, key=updated.key)
        return updated

    def _drop_remote(self, key: JobKey) -> PublishState:
        key = _admit(key)
        with self._broadcaster.lock:
            current = self._states.get(key) or PublishState(key=key)
            if current.status is PublishStatus.PUBLISHING:
                raise AdmissionError(f"publish already in flight for key {key}", key=key)
            updated = replace(
                current,
                status=PublishStatus.IDLE,
                remote_comment_id=None,
                remote_comment_url=None,
            )
            self._set(updated)
        return updated

    async def wait_idle(self) -> None:
        """Wait for every in-flight publish to settle."""

        with self._broadcaster.lock:
            pending = tuple(task for task in self._inflight.values() if not task.done())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------- internals

    async def _deliver(
        self, key: JobKey, result: AnalysisResult, body: str, state: PublishState
    ) -> PublishOutcome:
        comment_id = state.remote_comment_id
        known_url = state.remote_comment_url
        try:
            if comment_id is None and self._ledger is not None:
                recorded = await asyncio.to_thread(self._ledger.get, self._repository, key)
                if recorded is not None:
                    comment_id, known_url = recorded.comment_id, recorded.url

            if comment_id is None:
                created = await self._collaborator.create_comment(key, body)
                self._logger.info(
                    "publish_comment_created",
                    kind=self._kind.value,
                    key=key,
                    comment_id=created.comment_id,
                    verdict=result.verdict,
                )
                await self._remember(key, created.comment_id, created.url)
                return PublishOutcome(
                    key=key,
                    state=self._settle(key, comment_id=created.comment_id, url=created.url),
                    created=True,
                )

            updated = await self._collaborator.update_comment(comment_id, body)
            self._logger.info(
                "publish_comment_updated", kind=self._kind.value, key=key, comment_id=comment_id
            )
            url = known_url if known_url is not None else updated.url
            return PublishOutcome(key=key, state=self._settle(key, comment_id=comment_id, url=url))
        except asyncio.CancelledError:
            self._fail(key, "publish cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            error = (
                exc
                if isinstance(exc, CollaboratorError)
                else PublishTransportError(str(exc) or type(exc).__name__, key=key)
            )
            self._logger.warning(
                "publish_failed",
                kind=self._kind.value,
                key=key,
                comment_id=comment_id,
                error_type=type(exc).__name__,
                error=str(error),
            )
            return PublishOutcome(key=key, state=self._fail(key, str(error)), error=error)

    async def _remember(self, key: JobKey, comment_id: int, url: str | None) -> None:
        if self._ledger is None:
            return
        try:
            await asyncio.to_thread(self._ledger.record, self._repository, key, comment_id, url)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "publish_ledger_record_failed",
                kind=self._kind.value,
                key=key,
                comment_id=comment_id,
                error=str(exc),
            )

    def _settle(self, key: JobKey, *, comment_id: int, url: str | None) -> PublishState:
        with self._broadcaster.lock:
            current = self._states.get(key) or PublishState(key=key)
            status = (
                PublishStatus.POSTED
                if current.status is PublishStatus.PUBLISHING
                else current.status
            )
            updated = replace(
                current,
                status=status,
                remote_comment_id=comment_id,
                remote_comment_url=url,
                last_error=None,
            )
            self._set(updated)
            return updated

    def _fail(self, key: JobKey, message: str) -> PublishState:
        with self._broadcaster.lock:
            current = self._states.get(key) or PublishState(key=key)
            if current.status is not PublishStatus.PUBLISHING:
                return current
            updated = replace(current, status=PublishStatus.EDITING, last_error=message)
            self._set(updated)
            return updated

    def _require_result(self, key: JobKey) -> AnalysisResult:
        snapshot = self._store.get_snapshot(key)
        if snapshot is None or snapshot.result is None:
            raise AdmissionError(f"no result to publish for key {key}", key=key)
        return snapshot.result

    def _set(self, state: PublishState) -> None:
        self._states[state.key] = state
        self._broadcaster.publish(
            JobEvent(
                kind=JobEventKind.PUBLISH_UPDATED,
                target=self._kind,
                key=state.key,
                publish_state=state,
            )
        )

    def _forget(self, key: JobKey, task: asyncio.Task[PublishOutcome]) -> None:
        with self._broadcaster.lock:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def _on_clear(self, key: JobKey) -> None:
        current = self._states.get(key)
        if current is None or current.status is PublishStatus.PUBLISHING:
            return
        if current.status is not PublishStatus.IDLE or current.draft or current.last_error:
            self._set(_idle(current))

    def _replay(self, key: JobKey | None) -> list[JobEvent]:
        keys = sorted(self._states) if key is None else [key]
        events: list[JobEvent] = []
        for state_key in keys:
            state = self._states.get(state_key)
            if state is None:
                continue
            events.append(
                JobEvent(
                    kind=JobEventKind.PUBLISH_UPDATED,
                    target=self._kind,
                    key=state_key,
                    publish_state=state,
                    replayed=True,
                )
            )
        return events


def _idle(state: PublishState) -> PublishState:
    return replace(state, status=PublishStatus.IDLE, draft=None, last_error=None)


def _admit(key: object) -> JobKey:
    try:
        return validate_job_key(key)
    except ValueError as exc:
        raise AdmissionError(str(exc), key=key) from exc


__all__ = ["PublishCoordinator", "PublishOutcome"]
