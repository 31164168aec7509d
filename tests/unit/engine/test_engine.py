"""Unit tests for the engine facade: history fallback, clear, shutdown and wiring."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Any

import pytest

from gitchorus.config import default_config, merge_config
from gitchorus.domain import ids
from gitchorus.domain.models import HistoryEntry, JobKey, JobStatus, PublishStatus, TargetKind
from gitchorus.engine.collaborators import StepEvent, TerminalSuccess
from gitchorus.engine.engine import AnalysisEngine, build_engines
from gitchorus.engine.errors import AdmissionError, CollaboratorError
from gitchorus.persistence.repositories import HistoryRepo
from gitchorus.persistence.state_db import StateDB

from . import (
    REPO,
    FakePublisher,
    Hold,
    InMemoryHistory,
    InMemoryLedger,
    ScriptedAnalysis,
    make_engine,
    make_history_entry,
    make_result,
    make_step,
    settle,
    success_script,
)

if TYPE_CHECKING:
    from pathlib import Path


def _history() -> InMemoryHistory:
    return InMemoryHistory(
        [
            make_history_entry("vh-01HZZZZZZZZZZZZZZZZZZZZZZ1", number=42, seed=1, confidence=60),
            make_history_entry("vh-01HZZZZZZZZZZZZZZZZZZZZZZ2", number=42, seed=2, confidence=70),
            make_history_entry("vh-01HZZZZZZZZZZZZZZZZZZZZZZ3", number=5, seed=3),
        ]
    )


async def test_select_latest_prefers_live_result_over_history() -> None:
    live = make_result(number=42, confidence=99)
    engine = make_engine(
        analysis=ScriptedAnalysis({42: success_script(live)}), history=_history()
    )
    await engine.submit(42).wait()

    assert engine.select_latest(42) == live
    await engine.shutdown()


async def test_select_latest_falls_back_to_newest_history_entry() -> None:
    engine = make_engine(history=_history())

    latest = engine.select_latest(42)

    assert latest is not None and latest.confidence == 70
    assert engine.select_latest(77) is None
    await engine.shutdown()


async def test_select_latest_without_history_or_result_is_none() -> None:
    engine = make_engine()
    assert engine.select_latest(42) is None
    assert engine.history() == ()
    await engine.shutdown()


async def test_history_read_failure_surfaces_as_collaborator_error() -> None:
    history = _history()
    history.fail_reads = True
    engine = make_engine(history=history)

    with pytest.raises(CollaboratorError, match="history read failed"):
        engine.select_latest(42)
    await engine.shutdown()


async def test_review_chain_is_oldest_first_and_bounded() -> None:
    engine = make_engine(history=_history(), chain_limit=1)

    assert [entry.result.confidence for entry in engine.review_chain(42)] == [70]
    assert [entry.result.confidence for entry in engine.review_chain(42, limit=5)] == [60, 70]
    await engine.shutdown()


async def test_delete_and_clear_history() -> None:
    history = _history()
    engine = make_engine(history=history)

    assert engine.delete_history("vh-01HZZZZZZZZZZZZZZZZZZZZZZ1")
    assert not engine.delete_history("vh-01HZZZZZZZZZZZZZZZZZZZZZZ1")
    assert engine.clear_history() == 2
    assert history.entries == []
    await engine.shutdown()


async def test_clear_supersedes_active_run_and_resets_publish_workflow() -> None:
    gate = asyncio.Event()
    analysis = ScriptedAnalysis({42: success_script(make_result(number=42))})
    engine = make_engine(analysis=analysis)
    await engine.submit(42).wait()
    engine.begin_edit(42, draft="draft")

    analysis.scripts[42] = [Hold(gate), *success_script(make_result(number=42))]
    handle = engine.rerun(42)
    await settle()
    assert engine.clear(42)
    gate.set()
    await handle.wait()

    snapshot = engine.snapshot(42)
    assert snapshot is not None
    assert snapshot.status is JobStatus.QUEUED
    assert snapshot.result is None and snapshot.steps == ()
    assert engine.publish_state(42).status is PublishStatus.IDLE
    assert engine.publish_state(42).draft is None
    await engine.shutdown()


async def test_shutdown_is_idempotent_and_refuses_new_work() -> None:
    gate = asyncio.Event()
    engine = make_engine(analysis=ScriptedAnalysis(default=[Hold(gate)]))
    handle = engine.submit(1)
    await settle()

    async with engine:
        pass
    await engine.shutdown()

    assert handle.done()
    with pytest.raises(AdmissionError, match="shut down"):
        engine.submit(2)
    assert engine.snapshot(1).error == "cancelled"  # type: ignore[union-attr]


async def test_snapshots_are_sorted_by_key() -> None:
    engine = make_engine(analysis=ScriptedAnalysis(default=[]))
    await asyncio.gather(engine.submit(9).wait(), engine.submit(3).wait())

    assert [snapshot.key for snapshot in engine.snapshots()] == [3, 9]
    await engine.shutdown()


async def test_from_config_applies_engine_and_publish_sections() -> None:
    config = merge_config(
        default_config(),
        {
            "engine": {"max_concurrent_jobs": 4, "cancel_policy": "requeue"},
            "publish": {"include_marker": False, "footer": ""},
        },
    )
    publisher = FakePublisher()
    engine = AnalysisEngine.from_config(
        TargetKind.ISSUE,
        config,
        repository_full_name=REPO,
        analysis=ScriptedAnalysis({42: success_script(make_result(number=42))}),
        publisher=publisher,
    )
    await engine.submit(42).wait()
    await engine.publish(42)

    body = publisher.created[0][1]
    assert not body.startswith("<!--")
    assert "GitChorus" not in body.splitlines()[-1]
    assert engine.runner.slots.limit == 4
    await engine.shutdown()


async def test_build_engines_shares_one_state_db(tmp_path: Path) -> None:
    config = default_config()
    issue_publisher = FakePublisher()
    review_publisher = FakePublisher(first_comment_id=500)
    engines = build_engines(
        config,
        repository_full_name=REPO,
        issue_analysis=ScriptedAnalysis({42: success_script(make_result(number=42))}),
        review_analysis=ScriptedAnalysis(
            {17: success_script(make_result(TargetKind.PULL_REQUEST, 17))}
        ),
        issue_publisher=issue_publisher,
        review_publisher=review_publisher,
        state_db_path=tmp_path / "state.sqlite3",
    )

    async with engines:
        await engines.for_kind("issue").submit(42).wait()
        await engines.for_kind(TargetKind.PULL_REQUEST).submit(17).wait()
        await engines.pull_requests.publish(17)

        assert [entry.key for entry in engines.issues.history()] == [42]
        assert [entry.key for entry in engines.pull_requests.history()] == [17]
        assert engines.pull_requests.select_latest(17) is not None
        assert review_publisher.created[0][0] == 17

    assert (tmp_path / "state.sqlite3").exists()


class _ThreadRecordingHistory:
    """SQLite history that notes which thread each call ran on."""

    def __init__(self, repo: HistoryRepo) -> None:
        self.repo = repo
        self.threads: list[int] = []

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        self.threads.append(threading.get_ident())
        return self.repo.append(entry)

    def list(self, **filters: Any) -> list[HistoryEntry]:
        self.threads.append(threading.get_ident())
        return self.repo.list(**filters)

    def remove(self, entry_id: str) -> bool:
        self.threads.append(threading.get_ident())
        return self.repo.remove(entry_id)

    def clear(self, repository_full_name: str | None = None) -> int:
        self.threads.append(threading.get_ident())
        return self.repo.clear(repository_full_name)


class _ThreadRecordingLedger(InMemoryLedger):
    def __init__(self) -> None:
        super().__init__()
        self.forget_threads: list[int] = []

    def forget(self, repository_full_name: str, key: JobKey) -> bool:
        self.forget_threads.append(threading.get_ident())
        return super().forget(repository_full_name, key)


async def test_async_history_reads_run_off_the_loop_while_a_job_streams(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite3")
    db.migrate()
    history = _ThreadRecordingHistory(HistoryRepo(db, TargetKind.ISSUE))
    stored = history.repo.append(
        make_history_entry(
            ids.generate_history_id(ids.VALIDATION_HISTORY_ID_PREFIX),
            number=42,
            seed=1,
            confidence=61,
        )
    )
    gate = asyncio.Event()
    script = [
        StepEvent(make_step("fetching")),
        Hold(gate),
        TerminalSuccess(make_result(number=42, confidence=93)),
    ]
    ledger = _ThreadRecordingLedger()
    engine = make_engine(analysis=ScriptedAnalysis({42: script}), history=history, ledger=ledger)
    loop_thread = threading.get_ident()

    handle = engine.submit(42)
    await settle()
    snapshot = engine.snapshot(42)
    assert snapshot is not None and snapshot.queue_item is not None
    assert snapshot.queue_item.status is JobStatus.RUNNING

    assert await engine.select_latest_async(42) == stored.result
    assert [entry.entry_id for entry in await engine.review_chain_async(42)] == [stored.entry_id]
    assert [entry.entry_id for entry in await engine.history_async()] == [stored.entry_id]

    gate.set()
    await handle.wait()
    latest = await engine.select_latest_async(42)
    assert latest is not None and latest.confidence == 93
    assert await engine.delete_history_async(stored.entry_id)
    assert await engine.clear_history_async() == 1
    assert history.repo.count() == 0

    await engine.publish(42, "posted")
    state = await engine.clear_remote_async(42)
    assert state.remote_comment_id is None
    assert ledger.get(REPO, 42) is None

    assert history.threads and loop_thread not in history.threads
    assert ledger.forget_threads and loop_thread not in ledger.forget_threads
    await engine.shutdown()


async def test_async_history_without_a_collaborator_is_empty() -> None:
    engine = make_engine()

    assert await engine.history_async() == ()
    assert await engine.select_latest_async(42) is None
    assert await engine.delete_history_async("vh-missing") is False
    await engine.shutdown()
