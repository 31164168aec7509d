"""Typed change notifications fanned out by the progress broadcaster."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from gitchorus.domain import ids
from gitchorus.domain.models import (
    AnalysisResult,
    JobKey,
    JSONValue,
    PublishState,
    QueueItem,
    Step,
    TargetKind,
)


class JobEventKind(StrEnum):
    """Which slice of a key's record changed."""

    QUEUE_UPDATED = "queue_updated"
    CLEARED = "cleared"
    STEP_APPENDED = "step_appended"
    RESULT_SET = "result_set"
    ERROR_SET = "error_set"
    PUBLISH_UPDATED = "publish_updated"


@dataclass(frozen=True, slots=True)
class JobEvent:
    """Envelope carrying only the mutated slice of one key's record.

    ``replayed`` is ``True`` for events synthesised from the current snapshot
    when an observer attaches; live events leave it ``False``.
    """

    kind: JobEventKind
    target: TargetKind
    key: JobKey
    run_id: int | None = None
    queue_item: QueueItem | None = None
    step: Step | None = None
    result: AnalysisResult | None = None
    error: str | None = None
    publish_state: PublishState | None = None
    replayed: bool = False
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "target": self.target.value,
            "key": self.key,
            "run_id": self.run_id,
            "replayed": self.replayed,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z"),
        }
        if self.queue_item is not None:
            payload["queue_item"] = self.queue_item.to_dict()
        if self.step is not None:
            payload["step"] = self.step.to_dict()
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        if self.publish_state is not None:
            payload["publish_state"] = self.publish_state.to_dict()
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = ["JobEvent", "JobEventKind"]
