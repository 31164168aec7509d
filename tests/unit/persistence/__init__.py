"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from gitchorus.domain import ids
from gitchorus.domain.models import (
    AnalysisResult,
    FindingCategory,
    FindingSeverity,
    HistoryEntry,
    JobKey,
    ReviewFinding,
    TargetKind,
)

REPO: Final[str] = "octo-org/widgets"
OTHER_REPO: Final[str] = "octo-org/gadgets"

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def _randbytes(seed: int):
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_history_id(kind: TargetKind, seed: int) -> str:
    prefix = (
        ids.VALIDATION_HISTORY_ID_PREFIX
        if kind is TargetKind.ISSUE
        else ids.REVIEW_HISTORY_ID_PREFIX
    )
    return ids.generate_history_id(
        prefix,
        timestamp_ms=1_700_000_000_000 + seed,
        randbytes=_randbytes(seed),
    )


def make_result(
    kind: TargetKind = TargetKind.ISSUE,
    number: JobKey = 42,
    *,
    seed: int = 0,
    repository_full_name: str = REPO,
    confidence: int = 75,
) -> AnalysisResult:
    if kind is TargetKind.ISSUE:
        return AnalysisResult(
            kind=kind,
            number=number,
            repository_full_name=repository_full_name,
            verdict="confirmed",
            confidence=confidence,
            reasoning=f"reproduced on attempt {seed}",
            completed_at=fixed_now(seed),
        )
    return AnalysisResult(
        kind=kind,
        number=number,
        repository_full_name=repository_full_name,
        verdict="Request changes",
        confidence=confidence,
        quality_score=6,
        reasoning=f"review pass {seed}",
        findings=(
            ReviewFinding(
                severity=FindingSeverity.MAJOR,
                category=FindingCategory.SECURITY,
                file="src/widgets/auth.py",
                line=12,
                title="Token is logged",
                explanation="The bearer token ends up in debug logs.",
            ),
        ),
        completed_at=fixed_now(seed),
    )


def make_entry(
    kind: TargetKind = TargetKind.ISSUE,
    number: JobKey = 42,
    *,
    seed: int = 0,
    repository_full_name: str = REPO,
    confidence: int = 75,
) -> HistoryEntry:
    result = make_result(
        kind,
        number,
        seed=seed,
        repository_full_name=repository_full_name,
        confidence=confidence,
    )
    return HistoryEntry(
        entry_id=make_history_id(kind, seed),
        kind=kind,
        key=number,
        repository_full_name=repository_full_name,
        result=result,
        created_at=fixed_now(seed),
    )


__all__ = [
    "OTHER_REPO",
    "REPO",
    "fixed_now",
    "make_entry",
    "make_history_id",
    "make_result",
]
