"""In-process progress fan-out with replay-on-attach.

Observers register per job key or globally. Every committed change to a key's
record (or publish state) is delivered synchronously, in registration order,
as a :class:`~gitchorus.domain.events.JobEvent` carrying only the mutated
slice. A late observer first receives events synthesised from the current
snapshot (queue item, steps, then result or error) and only then live events.

Writers mutate and publish while holding :attr:`ProgressBroadcaster.lock`, and
``subscribe`` replays under the same lock, so a replay can never interleave
with a live event.

Delivery goes through one outbox. An observer that writes to the store from
inside its callback (cancelling the run it is watching, say) only enqueues the
resulting events; they reach every observer after the event being delivered,
so each observer sees a key's events in commit order.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from collections.abc import AsyncIterator, Callable, Coroutine, Sequence
from dataclasses import dataclass
from typing import Any, Final, cast

import structlog

from gitchorus.domain.events import JobEvent, JobEventKind
from gitchorus.domain.models import JobKey, JobSnapshot, TargetKind, validate_job_key

Observer = Callable[[JobEvent], object]
ReplaySource = Callable[[JobKey | None], Sequence[JobEvent]]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024
DEFAULT_CHANNEL_SIZE: Final[int] = 4096


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Observer failure captured without interrupting the writer."""

    stage: str
    event_id: str
    key: JobKey
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    key: JobKey | None
    callback: Observer


@dataclass(frozen=True, slots=True)
class _Delivery:
    event: JobEvent
    # Fixed at enqueue time; an observer that subscribes later gets this change via replay.
    targets: tuple[_Subscription, ...]
    stage: str


class ProgressBroadcaster:
    """Memory-resident, ordered fan-out of job events for one target kind."""

    def __init__(
        self,
        kind: TargetKind,
        *,
        error_buffer: int = _DEFAULT_ERROR_BUFFER,
        logger: Any | None = None,
    ) -> None:
        if error_buffer <= 0:
            raise ValueError("error_buffer must be > 0")
        self._kind = TargetKind(kind)
        self._lock = threading.RLock()
        self._subscriptions: dict[int, _Subscription] = {}
        self._replay_sources: list[ReplaySource] = []
        self._pending_async_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=error_buffer)
        self._outbox = deque[_Delivery]()
        self._dispatching = False
        self._next_token = 1
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def kind(self) -> TargetKind:
        return self._kind

    @property
    def lock(self) -> threading.RLock:
        """Mutex shared with every writer whose changes this broadcaster relays."""

        return self._lock

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def add_replay_source(self, source: ReplaySource) -> None:
        """Register a producer of snapshot events for late observers.

        Sources are consulted in registration order, so the record store is
        registered before the publish coordinator.
        """

        if not callable(source):
            raise ValueError("replay source must be callable")
        with self._lock:
            self._replay_sources.append(source)

    def subscribe(self, key: JobKey | None, callback: Observer, *, replay: bool = True) -> int:
        """Register ``callback`` for ``key`` (or every key when ``None``)."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        normalized_key = None if key is None else validate_job_key(key)

        with self._lock:
            token = self._next_token
            self._next_token += 1
            subscription = _Subscription(token=token, key=normalized_key, callback=callback)
            if replay:
                for source in self._replay_sources:
                    self._outbox.extend(
                        _Delivery(event, (subscription,), "replay")
                        for event in source(normalized_key)
                    )
            self._subscriptions[token] = subscription
            self._flush()
        return token

    def unsubscribe(self, token: int) -> bool:
        """Unsubscribe callback token. Returns ``True`` when token existed."""

        if not isinstance(token, int):
            raise ValueError(f"token must be an integer, got {type(token).__name__}")
        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def channel(
        self,
        key: JobKey | None = None,
        *,
        replay: bool = True,
        maxsize: int = DEFAULT_CHANNEL_SIZE,
    ) -> ProgressChannel:
        """Open an async-iterable channel fed by a subscription.

        At most ``maxsize`` events are buffered; further events are dropped and
        counted in :attr:`ProgressChannel.dropped` until the reader catches up.
        """

        channel = ProgressChannel(self, maxsize=maxsize, logger=self._logger)
        channel._token = self.subscribe(key, channel._push, replay=replay)
        return channel

    def publish(self, event: JobEvent) -> tuple[DispatchError, ...]:
        """Deliver ``event`` to matching observers in registration order.

        Called from inside an observer, the event is queued behind the one
        being delivered and ``()`` is returned; the outer call reports the
        failures of everything it flushed.
        """

        if not isinstance(event, JobEvent):
            raise ValueError(f"event must be JobEvent, got {type(event).__name__}")

        with self._lock:
            targets = tuple(
                subscription
                for subscription in self._subscriptions.values()
                if subscription.key is None or subscription.key == event.key
            )
            self._outbox.append(_Delivery(event, targets, "subscriber"))
            return self._flush()

    def _flush(self) -> tuple[DispatchError, ...]:
        if self._dispatching:
            return ()
        self._dispatching = True
        errors: list[DispatchError] = []
        try:
            while self._outbox:
                delivery = self._outbox.popleft()
                for subscription in delivery.targets:
                    if subscription.token not in self._subscriptions:
                        continue
                    error = self._deliver(subscription, delivery.event, stage=delivery.stage)
                    if error is not None:
                        errors.append(error)
        finally:
            self._dispatching = False
            if errors:
                self._dispatch_errors.extend(errors)
        return tuple(errors)

    async def drain(self) -> None:
        """Await coroutine observers scheduled by ``publish``."""

        with self._lock:
            pending = tuple(self._pending_async_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def dispatch_errors(self, *, limit: int | None = None) -> tuple[DispatchError, ...]:
        """Return recorded observer failures."""

        with self._lock:
            errors = tuple(self._dispatch_errors)
        if limit is None:
            return errors
        if limit <= 0:
            return ()
        return errors[-limit:]

    def _deliver(
        self,
        subscription: _Subscription,
        event: JobEvent,
        *,
        stage: str,
    ) -> DispatchError | None:
        try:
            outcome = subscription.callback(event)
            if inspect.isawaitable(outcome):
                self._schedule(outcome, subscription=subscription, event=event)
            return None
        except Exception as exc:  # noqa: BLE001
            return self._record_failure(subscription, event, exc, stage=stage)

    def _schedule(self, awaitable: object, *, subscription: _Subscription, event: JobEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RuntimeError("coroutine observers require a running event loop") from None

        task = loop.create_task(_await(awaitable))
        self._pending_async_tasks.add(task)

        def _done(done: asyncio.Task[None]) -> None:
            with self._lock:
                self._pending_async_tasks.discard(done)
                if done.cancelled():
                    return
                exc = done.exception()
                if isinstance(exc, Exception):
                    self._dispatch_errors.append(
                        self._record_failure(subscription, event, exc, stage="subscriber")
                    )

        task.add_done_callback(_done)

    def _record_failure(
        self,
        subscription: _Subscription,
        event: JobEvent,
        exc: Exception,
        *,
        stage: str,
    ) -> DispatchError:
        target = _callback_name(subscription.callback)
        self._logger.warning(
            "progress_observer_failed",
            kind=self._kind.value,
            key=event.key,
            event_kind=event.kind.value,
            observer=target,
            error=str(exc),
        )
        return DispatchError(
            stage=stage,
            event_id=event.event_id,
            key=event.key,
            target=target,
            error_type=exc.__class__.__name__,
            message=str(exc),
        )


class ProgressChannel:
    """Async iterator over the events of one subscription.

    Use as ``async with broadcaster.channel(42) as events: async for e in events``.
    Closing the channel unsubscribes it and ends iteration. A reader that
    falls more than ``maxsize`` events behind loses the overflow; the loss is
    counted in :attr:`dropped` and logged once per overflow episode.
    """

    _CLOSED: Final[object] = object()

    def __init__(
        self,
        broadcaster: ProgressBroadcaster,
        *,
        maxsize: int = DEFAULT_CHANNEL_SIZE,
        logger: Any | None = None,
    ) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._broadcaster = broadcaster
        # Unbounded underneath so the close marker always fits; _push enforces maxsize.
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._maxsize = maxsize
        self._dropped = 0
        self._overflowing = False
        self._token: int | None = None
        self._closed = False
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def maxsize(self) -> int:
        return self._maxsize

    @property
    def dropped(self) -> int:
        return self._dropped

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> JobEvent | None:
        """Return the next buffered event, or ``None`` when the buffer is empty."""

        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is self._CLOSED:
            self._queue.put_nowait(item)
            return None
        return cast("JobEvent", item)

    async def get(self) -> JobEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            self._queue.put_nowait(item)
            raise StopAsyncIteration
        return cast("JobEvent", item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._token is not None:
            self._broadcaster.unsubscribe(self._token)
        self._queue.put_nowait(self._CLOSED)

    def _push(self, event: JobEvent) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._maxsize:
            self._dropped += 1
            if not self._overflowing:
                self._overflowing = True
                self._logger.warning(
                    "progress_channel_overflow",
                    kind=event.target.value,
                    key=event.key,
                    maxsize=self._maxsize,
                    dropped=self._dropped,
                )
            return
        self._overflowing = False
        self._queue.put_nowait(event)

    def __aiter__(self) -> AsyncIterator[JobEvent]:
        return self

    async def __anext__(self) -> JobEvent:
        return await self.get()

    async def __aenter__(self) -> ProgressChannel:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb
        self.close()


def snapshot_events(
    kind: TargetKind, snapshot: JobSnapshot, *, replayed: bool = True
) -> list[JobEvent]:
    """Expand a record snapshot into the event sequence a late observer needs."""

    events: list[JobEvent] = []
    run_id = snapshot.queue_item.run_id if snapshot.queue_item is not None else None
    if snapshot.queue_item is not None:
        events.append(
            JobEvent(
                kind=JobEventKind.QUEUE_UPDATED,
                target=kind,
                key=snapshot.key,
                run_id=run_id,
                queue_item=snapshot.queue_item,
                replayed=replayed,
            )
        )
    for step in snapshot.steps:
        events.append(
            JobEvent(
                kind=JobEventKind.STEP_APPENDED,
                target=kind,
                key=snapshot.key,
                run_id=run_id,
                step=step,
                replayed=replayed,
            )
        )
    if snapshot.result is not None:
        events.append(
            JobEvent(
                kind=JobEventKind.RESULT_SET,
                target=kind,
                key=snapshot.key,
                run_id=run_id,
                result=snapshot.result,
                replayed=replayed,
            )
        )
    elif snapshot.error is not None:
        events.append(
            JobEvent(
                kind=JobEventKind.ERROR_SET,
                target=kind,
                key=snapshot.key,
                run_id=run_id,
                error=snapshot.error,
                replayed=replayed,
            )
        )
    return events


async def _await(awaitable: object) -> None:
    await cast("Coroutine[Any, Any, None]", awaitable)


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__qualname__", None) or getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


__all__ = [
    "DEFAULT_CHANNEL_SIZE",
    "DispatchError",
    "Observer",
    "ProgressBroadcaster",
    "ProgressChannel",
    "ReplaySource",
    "snapshot_events",
]
