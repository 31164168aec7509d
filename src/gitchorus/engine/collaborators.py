"""Interfaces for the external collaborators the engine drives.

The engine never talks to an AI provider, to GitHub or to a database directly;
it consumes these protocols. Concrete implementations live outside the core
(``gitchorus.persistence`` ships the durable history and comment ledger).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from gitchorus.domain.models import AnalysisResult, HistoryEntry, JobKey, Step, TargetKind
from gitchorus.utils.concurrency import CancellationToken


@dataclass(frozen=True, slots=True)
class StepEvent:
    step: Step


@dataclass(frozen=True, slots=True)
class TerminalSuccess:
    result: AnalysisResult


@dataclass(frozen=True, slots=True)
class TerminalFailure:
    message: str

    def __post_init__(self) -> None:
        if not isinstance(self.message, str) or not self.message.strip():
            raise ValueError("TerminalFailure.message must be a non-empty string")


AnalysisEvent = StepEvent | TerminalSuccess | TerminalFailure


@dataclass(frozen=True, slots=True)
class AnalysisContext:
    """Per-invocation context handed to the analysis collaborator.

    ``cancel_token`` is advisory: collaborators should poll it and stop early,
    but the engine stays correct if they do not.
    """

    kind: TargetKind
    repository_full_name: str
    run_id: int
    cancel_token: CancellationToken
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CreatedComment:
    comment_id: int
    url: str


@dataclass(frozen=True, slots=True)
class UpdatedComment:
    url: str


@dataclass(frozen=True, slots=True)
class RecordedComment:
    comment_id: int
    url: str | None


@runtime_checkable
class AnalysisCollaborator(Protocol):
    def run(self, key: JobKey, context: AnalysisContext) -> AsyncIterator[AnalysisEvent]:
        """Yield step events followed by exactly one terminal event."""
        ...


@runtime_checkable
class PublishCollaborator(Protocol):
    async def create_comment(self, key: JobKey, body: str) -> CreatedComment: ...

    async def update_comment(self, comment_id: int, body: str) -> UpdatedComment: ...


@runtime_checkable
class HistoryCollaborator(Protocol):
    def append(self, entry: HistoryEntry) -> HistoryEntry: ...

    def list(
        self,
        *,
        repository_full_name: str | None = None,
        key: JobKey | None = None,
        limit: int | None = None,
    ) -> Sequence[HistoryEntry]:
        """Return entries newest first."""
        ...

    def remove(self, entry_id: str) -> bool: ...


@runtime_checkable
class CommentLedger(Protocol):
    """Durable memory of which remote comment belongs to which key."""

    def get(self, repository_full_name: str, key: JobKey) -> RecordedComment | None: ...

    def record(
        self, repository_full_name: str, key: JobKey, comment_id: int, url: str | None
    ) -> None: ...

    def forget(self, repository_full_name: str, key: JobKey) -> bool: ...


__all__ = [
    "AnalysisCollaborator",
    "AnalysisContext",
    "AnalysisEvent",
    "CommentLedger",
    "CreatedComment",
    "HistoryCollaborator",
    "PublishCollaborator",
    "RecordedComment",
    "StepEvent",
    "TerminalFailure",
    "TerminalSuccess",
    "UpdatedComment",
]
