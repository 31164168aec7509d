"""
gitchorus — analysis job lifecycle engine

File: src/gitchorus/engine/__init__.py
Last updated: 2026-10-18

Purpose
- Run issue-validation and PR-review jobs, stream their progress, cache their
  outcome and drive the idempotent publish workflow.
"""

from gitchorus.engine.broadcaster import DispatchError, ProgressBroadcaster, ProgressChannel
from gitchorus.engine.collaborators import (
    AnalysisCollaborator,
    AnalysisContext,
    CommentLedger,
    CreatedComment,
    HistoryCollaborator,
    PublishCollaborator,
    RecordedComment,
    StepEvent,
    TerminalFailure,
    TerminalSuccess,
    UpdatedComment,
)
from gitchorus.engine.comment_body import (
    CommentRenderer,
    SectionEdits,
    SectionToggles,
    render_comment_body,
)
from gitchorus.engine.engine import AnalysisEngine, EngineSet, build_engines
from gitchorus.engine.errors import (
    AdmissionError,
    AnalysisFailedError,
    CollaboratorError,
    ConsistencyViolation,
    EngineError,
    PublishTransportError,
)
from gitchorus.engine.publish import PublishCoordinator, PublishOutcome
from gitchorus.engine.runner import JobRunner, RunHandle
from gitchorus.engine.store import JobRecordStore

__all__ = [
    "AdmissionError",
    "AnalysisCollaborator",
    "AnalysisContext",
    "AnalysisEngine",
    "AnalysisFailedError",
    "CollaboratorError",
    "CommentLedger",
    "CommentRenderer",
    "ConsistencyViolation",
    "CreatedComment",
    "DispatchError",
    "EngineError",
    "EngineSet",
    "HistoryCollaborator",
    "JobRecordStore",
    "JobRunner",
    "ProgressBroadcaster",
    "ProgressChannel",
    "PublishCollaborator",
    "PublishCoordinator",
    "PublishOutcome",
    "PublishTransportError",
    "RecordedComment",
    "RunHandle",
    "SectionEdits",
    "SectionToggles",
    "StepEvent",
    "TerminalFailure",
    "TerminalSuccess",
    "UpdatedComment",
    "build_engines",
    "render_comment_body",
]
