"""Unit tests for the publish coordinator state machine and comment idempotence."""

from __future__ import annotations

import asyncio

import pytest

from gitchorus.domain.events import JobEvent, JobEventKind
from gitchorus.domain.models import PublishStatus
from gitchorus.engine.engine import AnalysisEngine
from gitchorus.engine.errors import AdmissionError, CollaboratorError, PublishTransportError

from . import (
    REPO,
    FakePublisher,
    InMemoryLedger,
    ScriptedAnalysis,
    comment_url,
    make_engine,
    make_result,
    settle,
    success_script,
)


async def _engine_with_result(
    key: int = 42,
    *,
    publisher: FakePublisher | None = None,
    ledger: InMemoryLedger | None = None,
) -> AnalysisEngine:
    engine = make_engine(
        analysis=ScriptedAnalysis({key: success_script(make_result(number=key))}),
        publisher=publisher,
        ledger=ledger,
    )
    await engine.submit(key).wait()
    return engine


async def test_first_publish_creates_then_later_publishes_update() -> None:
    publisher = FakePublisher()
    engine = await _engine_with_result(publisher=publisher)

    first = await engine.publish(42, "first body")
    second = await engine.publish(42, "edited body")

    assert first.ok and first.created
    assert second.ok and not second.created
    assert publisher.created == [(42, "first body")]
    assert publisher.updated == [(first.remote_comment_id, "edited body")]
    state = engine.publish_state(42)
    assert state.status is PublishStatus.POSTED
    assert state.remote_comment_id == 9001
    assert state.remote_comment_url == comment_url(42, 9001)
    await engine.shutdown()


async def test_body_is_rendered_from_result_with_section_edits() -> None:
    publisher = FakePublisher()
    engine = await _engine_with_result(publisher=publisher)

    outcome = await engine.publish(42, section_edits={"approach": "Ship the guard clause."})

    assert outcome.ok
    body = publisher.created[0][1]
    assert "Ship the guard clause." in body
    assert engine.publish_state(42).draft == body
    await engine.shutdown()


async def test_failed_publish_returns_to_editing_and_keeps_draft() -> None:
    publisher = FakePublisher()
    publisher.fail_next = ConnectionError("502 bad gateway")
    engine = await _engine_with_result(publisher=publisher)
    engine.begin_edit(42, draft="my careful edits")

    failed = await engine.publish(42, "my careful edits")

    assert not failed.ok
    assert isinstance(failed.error, PublishTransportError)
    assert isinstance(failed.error, CollaboratorError)
    state = engine.publish_state(42)
    assert state.status is PublishStatus.EDITING
    assert state.draft == "my careful edits"
    assert state.last_error == "502 bad gateway"
    assert state.remote_comment_id is None

    retried = await engine.publish(42, "my careful edits")
    assert retried.ok and retried.created
    assert len(publisher.created) == 1
    assert engine.publish_state(42).last_error is None
    await engine.shutdown()


async def test_second_publish_while_in_flight_joins_the_first() -> None:
    publisher = FakePublisher()
    publisher.gate = asyncio.Event()
    engine = await _engine_with_result(publisher=publisher)

    first = engine.publish(42, "body")
    await settle()
    assert engine.publish_state(42).status is PublishStatus.PUBLISHING
    second = engine.publish(42, "another body")
    assert second is first
    with pytest.raises(AdmissionError, match="in flight"):
        engine.begin_edit(42)

    publisher.gate.set()
    outcome = await first
    assert outcome.ok
    assert publisher.created == [(42, "body")]
    await engine.shutdown()


async def test_publish_without_result_is_refused() -> None:
    engine = make_engine()

    with pytest.raises(AdmissionError, match="no result"):
        engine.publish(42, "body")
    with pytest.raises(AdmissionError, match="no result"):
        engine.begin_edit(42)
    assert engine.publish_state(42).status is PublishStatus.IDLE
    await engine.shutdown()


async def test_empty_body_is_refused() -> None:
    engine = await _engine_with_result()
    with pytest.raises(AdmissionError, match="empty"):
        engine.publish(42, "   ")
    await engine.shutdown()


async def test_state_machine_transitions_are_broadcast() -> None:
    engine = await _engine_with_result()
    statuses: list[PublishStatus] = []

    def observe(event: JobEvent) -> None:
        if event.kind is JobEventKind.PUBLISH_UPDATED and event.publish_state is not None:
            statuses.append(event.publish_state.status)

    engine.subscribe(42, observe)
    engine.begin_edit(42)
    await engine.publish(42, "body")
    engine.begin_edit(42)

    assert statuses == [
        PublishStatus.EDITING,
        PublishStatus.PUBLISHING,
        PublishStatus.POSTED,
        PublishStatus.EDITING,
    ]
    await engine.shutdown()


async def test_ledger_keeps_publish_idempotent_across_engine_restart() -> None:
    ledger = InMemoryLedger()
    publisher = FakePublisher()
    first_engine = await _engine_with_result(publisher=publisher, ledger=ledger)
    created = await first_engine.publish(42, "original")
    await first_engine.shutdown()

    restarted = await _engine_with_result(publisher=publisher, ledger=ledger)
    outcome = await restarted.publish(42, "after restart")

    assert outcome.ok and not outcome.created
    assert outcome.remote_comment_id == created.remote_comment_id
    assert outcome.remote_comment_url == created.remote_comment_url
    assert len(publisher.created) == 1
    assert publisher.updated == [(created.remote_comment_id, "after restart")]
    await restarted.shutdown()


async def test_clear_remote_allows_a_fresh_comment() -> None:
    ledger = InMemoryLedger()
    publisher = FakePublisher()
    engine = await _engine_with_result(publisher=publisher, ledger=ledger)
    await engine.publish(42, "one")

    state = engine.clear_remote(42)

    assert state.status is PublishStatus.IDLE and state.remote_comment_id is None
    assert ledger.get(REPO, 42) is None
    second = await engine.publish(42, "two")
    assert second.created and second.remote_comment_id == 9002
    await engine.shutdown()


async def test_rerun_resets_workflow_but_keeps_remote_comment() -> None:
    publisher = FakePublisher()
    engine = await _engine_with_result(publisher=publisher)
    await engine.publish(42, "v1")

    await engine.rerun(42).wait()

    state = engine.publish_state(42)
    assert state.status is PublishStatus.IDLE
    assert state.remote_comment_id == 9001
    outcome = await engine.publish(42, "v2")
    assert not outcome.created
    assert publisher.updated == [(9001, "v2")]
    await engine.shutdown()


async def test_reset_returns_to_idle_keeping_remote_id() -> None:
    engine = await _engine_with_result()
    await engine.publish(42, "body")
    engine.begin_edit(42, draft="unsent")

    state = engine.reset_publish(42)

    assert state.status is PublishStatus.IDLE
    assert state.draft is None
    assert state.remote_comment_id == 9001
    await engine.shutdown()


async def test_late_observer_gets_publish_state_replay() -> None:
    engine = await _engine_with_result()
    await engine.publish(42, "body")
    seen: list[JobEvent] = []

    engine.subscribe(42, seen.append)

    assert seen[-1].kind is JobEventKind.PUBLISH_UPDATED
    assert seen[-1].publish_state is not None
    assert seen[-1].publish_state.status is PublishStatus.POSTED
    assert seen[-2].kind is JobEventKind.RESULT_SET
    await engine.shutdown()
