"""
gitchorus — end-to-end smoke test

File: tests/smoke/test_end_to_end.py
Last updated: 2026-10-18

Purpose
- Drive the full stack (config file, state DB, both engines, publish) with
  scripted collaborators and check store, history and comment side effects.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from gitchorus.config import load_config
from gitchorus.domain.events import JobEvent, JobEventKind
from gitchorus.domain.models import (
    AnalysisResult,
    JobKey,
    JobStatus,
    PublishStatus,
    Step,
    TargetKind,
)
from gitchorus.engine import EngineSet, build_engines
from gitchorus.engine.collaborators import (
    AnalysisContext,
    AnalysisEvent,
    CreatedComment,
    StepEvent,
    TerminalFailure,
    TerminalSuccess,
    UpdatedComment,
)
from gitchorus.persistence import HistoryRepo, PublishedCommentRepo, StateDB

_REPO = "octo-org/widgets"
_TS = datetime(2026, 3, 5, 10, 0, 0, tzinfo=UTC)


class _IssueAnalysis:
    """Key 42 succeeds after two steps; key 7 is rate limited."""

    async def run(self, key: JobKey, context: AnalysisContext) -> AsyncIterator[AnalysisEvent]:
        if key == 7:
            yield TerminalFailure("rate limited")
            return
        for label in ("fetching diff", "analyzing"):
            yield StepEvent(Step(label=label, timestamp=_TS))
        yield TerminalSuccess(
            AnalysisResult(
                kind=TargetKind.ISSUE,
                number=key,
                repository_full_name=context.repository_full_name,
                verdict="confirmed",
                confidence=92,
                title="Export drops the last row",
                reasoning="Off-by-one in the export loop.",
                suggested_approach="Iterate with `range(len(rows))`.",
                completed_at=_TS,
            )
        )


class _ReviewAnalysis:
    async def run(self, key: JobKey, context: AnalysisContext) -> AsyncIterator[AnalysisEvent]:
        yield StepEvent(Step(label="reviewing", timestamp=_TS))
        yield TerminalSuccess(
            AnalysisResult(
                kind=TargetKind.PULL_REQUEST,
                number=key,
                repository_full_name=context.repository_full_name,
                verdict="Approve",
                confidence=70,
                quality_score=9,
                reasoning="Clean change.",
                completed_at=_TS,
            )
        )


class _Publisher:
    def __init__(self) -> None:
        self.created: list[tuple[JobKey, str]] = []
        self.updated: list[tuple[int, str]] = []

    async def create_comment(self, key: JobKey, body: str) -> CreatedComment:
        self.created.append((key, body))
        comment_id = 1000 + len(self.created)
        return CreatedComment(
            comment_id=comment_id,
            url=f"https://github.com/{_REPO}/issues/{key}#issuecomment-{comment_id}",
        )

    async def update_comment(self, comment_id: int, body: str) -> UpdatedComment:
        self.updated.append((comment_id, body))
        return UpdatedComment(url=f"https://github.com/{_REPO}/issues/0#issuecomment-{comment_id}")


def _config(tmp_path: Path) -> dict[str, Any]:
    config_path = tmp_path / "gitchorus.toml"
    config_path.write_text(
        '[paths]\nstate_db = "state/smoke.sqlite3"\n\n[engine]\nmax_concurrent_jobs = 2\n',
        encoding="utf-8",
    )
    return load_config(config_path, environ={})


def _engines(config: dict[str, Any], publisher: _Publisher) -> EngineSet:
    return build_engines(
        config,
        repository_full_name=_REPO,
        issue_analysis=_IssueAnalysis(),
        review_analysis=_ReviewAnalysis(),
        issue_publisher=publisher,
        review_publisher=_Publisher(),
    )


@pytest.mark.smoke
async def test_end_to_end_submit_fail_and_publish(tmp_path: Path) -> None:
    config = _config(tmp_path)
    publisher = _Publisher()
    events: list[JobEvent] = []

    async with _engines(config, publisher) as engines:
        issues = engines.issues
        issues.subscribe(None, events.append)

        # Successful validation with two progress steps.
        snapshot = await issues.submit(42).wait()
        assert snapshot.status is JobStatus.COMPLETED
        assert [step.label for step in snapshot.steps] == ["fetching diff", "analyzing"]
        assert snapshot.result is not None and snapshot.result.verdict == "confirmed"
        assert snapshot.result.confidence == 92

        # Terminal failure leaves no result behind.
        failed = await issues.submit(7).wait()
        assert failed.status is JobStatus.FAILED
        assert failed.error == "rate limited"
        assert failed.result is None

        # Publishing creates once, then updates the same comment.
        first = await issues.publish(42, "Validation summary")
        assert first.ok and first.created
        assert issues.publish_state(42).status is PublishStatus.POSTED
        second = await issues.publish(42, "Validation summary (edited)")
        assert second.ok and not second.created
        assert second.remote_comment_id == first.remote_comment_id
        assert issues.publish_state(42).status is PublishStatus.POSTED
        assert publisher.created == [(42, "Validation summary")]
        assert publisher.updated == [(first.remote_comment_id, "Validation summary (edited)")]

        review = await engines.pull_requests.submit(17).wait()
        assert review.result is not None and review.result.quality_score == 9

    kinds = [event.kind for event in events if event.key == 42]
    assert JobEventKind.RESULT_SET in kinds
    assert kinds.count(JobEventKind.STEP_APPENDED) == 2

    db = StateDB(config["paths"]["state_db"])
    history = HistoryRepo(db, TargetKind.ISSUE)
    assert [entry.key for entry in history.list()] == [42]
    assert HistoryRepo(db, TargetKind.PULL_REQUEST).latest_for(_REPO, 17) is not None
    recorded = PublishedCommentRepo(db, TargetKind.ISSUE).get(_REPO, 42)
    assert recorded is not None and recorded.comment_id == first.remote_comment_id


@pytest.mark.smoke
async def test_restart_reuses_history_and_published_comment(tmp_path: Path) -> None:
    config = _config(tmp_path)
    publisher = _Publisher()

    async with _engines(config, publisher) as engines:
        await engines.issues.submit(42).wait()
        created = await engines.issues.publish(42)
        assert created.created

    async with _engines(config, publisher) as restarted:
        latest = restarted.issues.select_latest(42)
        assert latest is not None and latest.verdict == "confirmed"
        assert restarted.issues.snapshot(42) is None

        await restarted.issues.rerun(42).wait()
        outcome = await restarted.issues.publish(42)

    assert not outcome.created
    assert outcome.remote_comment_id == created.remote_comment_id
    assert len(publisher.created) == 1
    assert len(publisher.updated) == 1
    assert "Iterate with `range(len(rows))`." in publisher.updated[0][1]
