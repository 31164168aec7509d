"""Shared deterministic builders and fake collaborators for engine tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Final

from gitchorus.domain.models import (
    AffectedFile,
    AnalysisResult,
    Complexity,
    FindingCategory,
    FindingSeverity,
    HistoryEntry,
    IssueType,
    JobKey,
    ReviewFinding,
    Step,
    TargetKind,
)
from gitchorus.engine.collaborators import (
    AnalysisContext,
    AnalysisEvent,
    CreatedComment,
    RecordedComment,
    StepEvent,
    TerminalFailure,
    TerminalSuccess,
    UpdatedComment,
)
from gitchorus.engine.engine import AnalysisEngine

REPO: Final[str] = "octo-org/widgets"
_BASE_TS: Final[datetime] = datetime(2026, 3, 1, 9, 30, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def make_step(label: str, seed: int = 0, *, detail: str | None = None) -> Step:
    return Step(label=label, timestamp=fixed_now(seed), detail=detail)


def make_result(
    kind: TargetKind = TargetKind.ISSUE,
    number: JobKey = 42,
    *,
    verdict: str | None = None,
    confidence: int = 80,
    seed: int = 0,
    **overrides: Any,
) -> AnalysisResult:
    if kind is TargetKind.ISSUE:
        fields: dict[str, Any] = {
            "verdict": verdict or "confirmed",
            "title": f"Crash when saving widget #{number}",
            "complexity": Complexity.MEDIUM,
            "issue_type": IssueType.BUG,
            "reasoning": "The save handler dereferences a missing config entry.",
            "suggested_approach": "Guard the lookup in `save_widget` and add a regression test.",
            "affected_files": (
                AffectedFile(
                    path="src/widgets/save.py",
                    reason="null dereference on save",
                    snippet="cfg = settings['widget']",
                ),
            ),
        }
    else:
        fields = {
            "verdict": verdict or "Approve with minor comments",
            "title": f"Add widget export (#{number})",
            "quality_score": 8,
            "reasoning": "Solid change; one edge case is unhandled.",
            "findings": (
                ReviewFinding(
                    severity=FindingSeverity.MINOR,
                    category=FindingCategory.LOGIC,
                    file="src/widgets/export.py",
                    line=27,
                    title="Empty export is not handled",
                    explanation="An empty widget list writes a header-only file.",
                    suggested_fix="return early when there is nothing to export",
                ),
            ),
            "head_commit_sha": "a1b2c3d",
        }
    fields.update(overrides)
    return AnalysisResult(
        kind=kind,
        number=number,
        repository_full_name=fields.pop("repository_full_name", REPO),
        confidence=confidence,
        completed_at=fixed_now(seed),
        **fields,
    )


def make_history_entry(
    entry_id: str,
    kind: TargetKind = TargetKind.ISSUE,
    number: JobKey = 42,
    *,
    seed: int = 0,
    **result_overrides: Any,
) -> HistoryEntry:
    result = make_result(kind, number, seed=seed, **result_overrides)
    return HistoryEntry(
        entry_id=entry_id,
        kind=kind,
        key=number,
        repository_full_name=result.repository_full_name,
        result=result,
        created_at=fixed_now(seed),
    )


def success_script(
    result: AnalysisResult, labels: Iterable[str] = ("fetching", "analyzing")
) -> list[object]:
    steps: list[object] = [StepEvent(make_step(label, index)) for index, label in enumerate(labels)]
    return [*steps, TerminalSuccess(result)]


@dataclass(frozen=True, slots=True)
class Hold:
    """Script item: block the analysis stream until ``gate`` is set."""

    gate: asyncio.Event


class ScriptedAnalysis:
    """Analysis collaborator replaying a per-key script of events.

    Script items are analysis events, :class:`Hold` gates, or exceptions to
    raise at that point of the stream. A key without a script gets
    ``default``. Every invocation is recorded in ``calls``.
    """

    def __init__(
        self,
        scripts: Mapping[JobKey, Sequence[object]] | None = None,
        *,
        default: Sequence[object] | None = None,
    ) -> None:
        self.scripts: dict[JobKey, list[object]] = {
            key: list(items) for key, items in (scripts or {}).items()
        }
        self.default = list(default or ())
        self.calls: list[tuple[JobKey, int]] = []
        self.contexts: list[AnalysisContext] = []
        self.closed: list[int] = []

    async def run(self, key: JobKey, context: AnalysisContext) -> AsyncIterator[AnalysisEvent]:
        self.calls.append((key, context.run_id))
        self.contexts.append(context)
        try:
            for item in list(self.scripts.get(key, self.default)):
                if isinstance(item, Hold):
                    await item.gate.wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item  # type: ignore[misc]
        finally:
            self.closed.append(context.run_id)


class FakePublisher:
    """Publish collaborator counting creates and updates."""

    def __init__(self, *, first_comment_id: int = 9001) -> None:
        self.created: list[tuple[JobKey, str]] = []
        self.updated: list[tuple[int, str]] = []
        self.fail_next: Exception | None = None
        self.gate: asyncio.Event | None = None
        self._next_id = first_comment_id

    async def create_comment(self, key: JobKey, body: str) -> CreatedComment:
        await self._checkpoint()
        comment_id = self._next_id
        self._next_id += 1
        self.created.append((key, body))
        return CreatedComment(comment_id=comment_id, url=comment_url(key, comment_id))

    async def update_comment(self, comment_id: int, body: str) -> UpdatedComment:
        await self._checkpoint()
        self.updated.append((comment_id, body))
        return UpdatedComment(url=f"https://github.com/{REPO}/issues/0#issuecomment-{comment_id}")

    async def _checkpoint(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc


def comment_url(key: JobKey, comment_id: int) -> str:
    return f"https://github.com/{REPO}/issues/{key}#issuecomment-{comment_id}"


class InMemoryHistory:
    """History collaborator keeping entries in append order."""

    def __init__(self, entries: Iterable[HistoryEntry] = ()) -> None:
        self.entries: list[HistoryEntry] = list(entries)
        self.fail_reads = False
        self.fail_appends = False

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        if self.fail_appends:
            raise OSError("disk full")
        self.entries.append(entry)
        return entry

    def list(
        self,
        *,
        repository_full_name: str | None = None,
        key: JobKey | None = None,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        if self.fail_reads:
            raise OSError("history unavailable")
        selected = [
            entry
            for entry in reversed(self.entries)
            if (repository_full_name is None or entry.repository_full_name == repository_full_name)
            and (key is None or entry.key == key)
        ]
        return selected if limit is None else selected[:limit]

    def remove(self, entry_id: str) -> bool:
        before = len(self.entries)
        self.entries = [entry for entry in self.entries if entry.entry_id != entry_id]
        return len(self.entries) < before


class InMemoryLedger:
    """Comment ledger backed by a dict; survives engine instances sharing it."""

    def __init__(self) -> None:
        self.comments: dict[tuple[str, JobKey], RecordedComment] = {}

    def get(self, repository_full_name: str, key: JobKey) -> RecordedComment | None:
        return self.comments.get((repository_full_name, key))

    def record(
        self, repository_full_name: str, key: JobKey, comment_id: int, url: str | None
    ) -> None:
        self.comments[(repository_full_name, key)] = RecordedComment(comment_id=comment_id, url=url)

    def forget(self, repository_full_name: str, key: JobKey) -> bool:
        return self.comments.pop((repository_full_name, key), None) is not None


def make_engine(
    kind: TargetKind = TargetKind.ISSUE,
    *,
    analysis: ScriptedAnalysis | None = None,
    publisher: FakePublisher | None = None,
    history: InMemoryHistory | None = None,
    ledger: InMemoryLedger | None = None,
    **kwargs: Any,
) -> AnalysisEngine:
    return AnalysisEngine(
        kind,
        repository_full_name=REPO,
        analysis=analysis if analysis is not None else ScriptedAnalysis(),
        publisher=publisher if publisher is not None else FakePublisher(),
        history=history,
        ledger=ledger,
        **kwargs,
    )


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run a few event-loop turns."""

    for _ in range(rounds):
        await asyncio.sleep(0)


__all__ = [
    "REPO",
    "FakePublisher",
    "Hold",
    "InMemoryHistory",
    "InMemoryLedger",
    "ScriptedAnalysis",
    "TerminalFailure",
    "comment_url",
    "fixed_now",
    "make_engine",
    "make_history_entry",
    "make_result",
    "make_step",
    "settle",
    "success_script",
]
