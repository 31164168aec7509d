"""
gitchorus — domain layer

File: src/gitchorus/domain/__init__.py
Last updated: 2026-10-18

Purpose
- Domain types shared by the engine, persistence and CLI: job keys, results,
  steps, history entries, publish state and broadcast events.
- Free of IO side effects.
"""

from gitchorus.domain.events import JobEvent, JobEventKind
from gitchorus.domain.models import (
    AffectedFile,
    AnalysisResult,
    Complexity,
    FindingCategory,
    FindingSeverity,
    HistoryEntry,
    IssueType,
    JobKey,
    JobSnapshot,
    JobStatus,
    PublishState,
    PublishStatus,
    QueueItem,
    ReviewFinding,
    Step,
    TargetKind,
    ValidationVerdict,
    is_stale,
    validate_job_key,
)

__all__ = [
    "AffectedFile",
    "AnalysisResult",
    "Complexity",
    "FindingCategory",
    "FindingSeverity",
    "HistoryEntry",
    "IssueType",
    "JobEvent",
    "JobEventKind",
    "JobKey",
    "JobSnapshot",
    "JobStatus",
    "PublishState",
    "PublishStatus",
    "QueueItem",
    "ReviewFinding",
    "Step",
    "TargetKind",
    "ValidationVerdict",
    "is_stale",
    "validate_job_key",
]
