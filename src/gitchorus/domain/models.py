"""Frozen domain models for analysis jobs, results, history and publish state."""

from __future__ import annotations

import json
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Final, TypeVar

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

JobKey = int

TEnum = TypeVar("TEnum", bound=StrEnum)

_MAX_TEXT: Final[int] = 65_536


class TargetKind(StrEnum):
    """What a job key points at: an issue to validate or a pull request to review."""

    ISSUE = "issue"
    PULL_REQUEST = "pull_request"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ValidationVerdict(StrEnum):
    CONFIRMED = "confirmed"
    LIKELY = "likely"
    UNCERTAIN = "uncertain"
    UNLIKELY = "unlikely"
    INVALID = "invalid"


class Complexity(StrEnum):
    TRIVIAL = "trivial"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very-high"


class IssueType(StrEnum):
    BUG = "bug"
    FEATURE = "feature"


class FindingSeverity(StrEnum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    NIT = "nit"


class FindingCategory(StrEnum):
    SECURITY = "security"
    LOGIC = "logic"
    PERFORMANCE = "performance"
    STYLE = "style"
    CODEBASE_FIT = "codebase-fit"


class PublishStatus(StrEnum):
    IDLE = "idle"
    EDITING = "editing"
    PUBLISHING = "publishing"
    POSTED = "posted"


TERMINAL_STATUSES: Final[frozenset[JobStatus]] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED}
)


def validate_job_key(key: object) -> JobKey:
    """Return ``key`` when it is a positive issue/PR number, else raise ``ValueError``."""

    if isinstance(key, bool) or not isinstance(key, int):
        raise ValueError(f"job key must be an integer, got {type(key).__name__}")
    if key <= 0:
        raise ValueError(f"job key must be > 0, got {key}")
    return key


@dataclass(frozen=True, slots=True)
class Step:
    """One progress step reported by the analysis collaborator."""

    label: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    detail: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "label", _as_non_empty_str(self.label, "Step.label"))
        object.__setattr__(self, "timestamp", _as_utc_datetime(self.timestamp, "Step.timestamp"))
        object.__setattr__(self, "detail", _as_optional_text(self.detail, "Step.detail"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "label": self.label,
            "timestamp": _iso8601z(self.timestamp),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> Step:
        return cls(
            label=_as_non_empty_str(payload.get("label"), "Step.label"),
            timestamp=_as_utc_datetime(payload.get("timestamp"), "Step.timestamp"),
            detail=_as_optional_text(payload.get("detail"), "Step.detail"),
        )


@dataclass(frozen=True, slots=True)
class AffectedFile:
    """Evidence that a file is implicated by the analysed issue."""

    path: str
    reason: str
    snippet: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _as_non_empty_str(self.path, "AffectedFile.path"))
        object.__setattr__(self, "reason", _as_text(self.reason, "AffectedFile.reason"))
        object.__setattr__(self, "snippet", _as_optional_text(self.snippet, "AffectedFile.snippet"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "reason": self.reason, "snippet": self.snippet}

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> AffectedFile:
        return cls(
            path=_as_non_empty_str(payload.get("path"), "AffectedFile.path"),
            reason=_as_text(payload.get("reason", ""), "AffectedFile.reason"),
            snippet=_as_optional_text(payload.get("snippet"), "AffectedFile.snippet"),
        )


@dataclass(frozen=True, slots=True)
class ReviewFinding:
    """A single PR review finding anchored at a file and line."""

    severity: FindingSeverity
    category: FindingCategory
    file: str
    line: int
    title: str
    explanation: str
    code_snippet: str | None = None
    suggested_fix: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "severity", _as_enum(FindingSeverity, self.severity, "ReviewFinding.severity")
        )
        object.__setattr__(
            self, "category", _as_enum(FindingCategory, self.category, "ReviewFinding.category")
        )
        object.__setattr__(self, "file", _as_non_empty_str(self.file, "ReviewFinding.file"))
        object.__setattr__(self, "line", _as_int_range(self.line, "ReviewFinding.line", minimum=0))
        object.__setattr__(self, "title", _as_non_empty_str(self.title, "ReviewFinding.title"))
        object.__setattr__(
            self, "explanation", _as_text(self.explanation, "ReviewFinding.explanation")
        )
        object.__setattr__(
            self,
            "code_snippet",
            _as_optional_text(self.code_snippet, "ReviewFinding.code_snippet"),
        )
        object.__setattr__(
            self,
            "suggested_fix",
            _as_optional_text(self.suggested_fix, "ReviewFinding.suggested_fix"),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "severity": self.severity.value,
            "category": self.category.value,
            "file": self.file,
            "line": self.line,
            "title": self.title,
            "explanation": self.explanation,
            "code_snippet": self.code_snippet,
            "suggested_fix": self.suggested_fix,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> ReviewFinding:
        return cls(
            severity=_as_enum(FindingSeverity, payload.get("severity"), "ReviewFinding.severity"),
            category=_as_enum(FindingCategory, payload.get("category"), "ReviewFinding.category"),
            file=_as_non_empty_str(payload.get("file"), "ReviewFinding.file"),
            line=_as_int_range(payload.get("line"), "ReviewFinding.line", minimum=0),
            title=_as_non_empty_str(payload.get("title"), "ReviewFinding.title"),
            explanation=_as_text(payload.get("explanation", ""), "ReviewFinding.explanation"),
            code_snippet=_as_optional_text(payload.get("code_snippet"), "ReviewFinding.code_snippet"),
            suggested_fix=_as_optional_text(
                payload.get("suggested_fix"), "ReviewFinding.suggested_fix"
            ),
        )


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Terminal success payload for one job.

    Issue validations carry a :class:`ValidationVerdict` and the bug/feature
    fields; PR reviews carry a free-text verdict, a 1-10 quality score and
    findings. Both share confidence, complexity, reasoning and file evidence.
    """

    kind: TargetKind
    number: JobKey
    repository_full_name: str
    verdict: str
    confidence: int
    reasoning: str
    completed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    title: str = ""
    complexity: Complexity | None = None
    affected_files: tuple[AffectedFile, ...] = ()
    suggested_approach: str = ""
    issue_type: IssueType | None = None
    prerequisites: tuple[str, ...] = ()
    potential_conflicts: tuple[str, ...] = ()
    effort_estimate: str | None = None
    quality_score: int | None = None
    findings: tuple[ReviewFinding, ...] = ()
    head_commit_sha: str | None = None
    review_sequence: int | None = None
    previous_review_id: str | None = None
    provider: str | None = None
    model: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None

    def __post_init__(self) -> None:
        kind = _as_enum(TargetKind, self.kind, "AnalysisResult.kind")
        object.__setattr__(self, "kind", kind)
        try:
            validate_job_key(self.number)
        except ValueError as exc:
            raise ValueError(f"AnalysisResult.number: {exc}") from exc
        object.__setattr__(
            self,
            "repository_full_name",
            _as_repository_name(self.repository_full_name, "AnalysisResult.repository_full_name"),
        )
        verdict = _as_non_empty_str(self.verdict, "AnalysisResult.verdict")
        if kind is TargetKind.ISSUE:
            verdict = _as_enum(ValidationVerdict, verdict, "AnalysisResult.verdict").value
        object.__setattr__(self, "verdict", verdict)
        object.__setattr__(
            self,
            "confidence",
            _as_int_range(self.confidence, "AnalysisResult.confidence", minimum=0, maximum=100),
        )
        object.__setattr__(self, "reasoning", _as_text(self.reasoning, "AnalysisResult.reasoning"))
        object.__setattr__(
            self, "completed_at", _as_utc_datetime(self.completed_at, "AnalysisResult.completed_at")
        )
        object.__setattr__(self, "title", _as_text(self.title, "AnalysisResult.title"))
        if self.complexity is not None:
            object.__setattr__(
                self,
                "complexity",
                _as_enum(Complexity, self.complexity, "AnalysisResult.complexity"),
            )
        object.__setattr__(
            self,
            "affected_files",
            _as_tuple_of(self.affected_files, AffectedFile, "AnalysisResult.affected_files"),
        )
        object.__setattr__(
            self,
            "suggested_approach",
            _as_text(self.suggested_approach, "AnalysisResult.suggested_approach"),
        )
        if self.issue_type is not None:
            object.__setattr__(
                self, "issue_type", _as_enum(IssueType, self.issue_type, "AnalysisResult.issue_type")
            )
        object.__setattr__(
            self,
            "prerequisites",
            _as_str_tuple(self.prerequisites, "AnalysisResult.prerequisites"),
        )
        object.__setattr__(
            self,
            "potential_conflicts",
            _as_str_tuple(self.potential_conflicts, "AnalysisResult.potential_conflicts"),
        )
        object.__setattr__(
            self,
            "effort_estimate",
            _as_optional_text(self.effort_estimate, "AnalysisResult.effort_estimate"),
        )
        if self.quality_score is not None:
            object.__setattr__(
                self,
                "quality_score",
                _as_int_range(
                    self.quality_score, "AnalysisResult.quality_score", minimum=1, maximum=10
                ),
            )
        object.__setattr__(
            self,
            "findings",
            _as_tuple_of(self.findings, ReviewFinding, "AnalysisResult.findings"),
        )
        if self.review_sequence is not None:
            object.__setattr__(
                self,
                "review_sequence",
                _as_int_range(self.review_sequence, "AnalysisResult.review_sequence", minimum=1),
            )
        if self.cost_usd is not None:
            object.__setattr__(
                self, "cost_usd", _as_non_negative_float(self.cost_usd, "AnalysisResult.cost_usd")
            )
        if self.duration_ms is not None:
            object.__setattr__(
                self,
                "duration_ms",
                _as_int_range(self.duration_ms, "AnalysisResult.duration_ms", minimum=0),
            )

    @property
    def is_feature(self) -> bool:
        return self.issue_type is IssueType.FEATURE

    @property
    def is_re_review(self) -> bool:
        return self.previous_review_id is not None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "number": self.number,
            "repository_full_name": self.repository_full_name,
            "verdict": self.verdict,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "completed_at": _iso8601z(self.completed_at),
            "title": self.title,
            "complexity": None if self.complexity is None else self.complexity.value,
            "affected_files": [item.to_dict() for item in self.affected_files],
            "suggested_approach": self.suggested_approach,
            "issue_type": None if self.issue_type is None else self.issue_type.value,
            "prerequisites": list(self.prerequisites),
            "potential_conflicts": list(self.potential_conflicts),
            "effort_estimate": self.effort_estimate,
            "quality_score": self.quality_score,
            "findings": [item.to_dict() for item in self.findings],
            "head_commit_sha": self.head_commit_sha,
            "review_sequence": self.review_sequence,
            "previous_review_id": self.previous_review_id,
            "provider": self.provider,
            "model": self.model,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> AnalysisResult:
        data = _as_mapping(payload, "AnalysisResult")
        files = data.get("affected_files") or []
        findings = data.get("findings") or []
        if not isinstance(files, list) or not isinstance(findings, list):
            raise ValueError("AnalysisResult: affected_files and findings must be arrays")
        return cls(
            kind=_as_enum(TargetKind, data.get("kind"), "AnalysisResult.kind"),
            number=data.get("number"),  # type: ignore[arg-type]
            repository_full_name=_as_non_empty_str(
                data.get("repository_full_name"), "AnalysisResult.repository_full_name"
            ),
            verdict=_as_non_empty_str(data.get("verdict"), "AnalysisResult.verdict"),
            confidence=data.get("confidence"),  # type: ignore[arg-type]
            reasoning=_as_text(data.get("reasoning", ""), "AnalysisResult.reasoning"),
            completed_at=_as_utc_datetime(data.get("completed_at"), "AnalysisResult.completed_at"),
            title=_as_text(data.get("title", ""), "AnalysisResult.title"),
            complexity=(
                None
                if data.get("complexity") is None
                else _as_enum(Complexity, data.get("complexity"), "AnalysisResult.complexity")
            ),
            affected_files=tuple(
                AffectedFile.from_dict(_as_mapping(item, "AnalysisResult.affected_files[]"))
                for item in files
            ),
            suggested_approach=_as_text(
                data.get("suggested_approach", ""), "AnalysisResult.suggested_approach"
            ),
            issue_type=(
                None
                if data.get("issue_type") is None
                else _as_enum(IssueType, data.get("issue_type"), "AnalysisResult.issue_type")
            ),
            prerequisites=_as_str_tuple(
                data.get("prerequisites") or (), "AnalysisResult.prerequisites"
            ),
            potential_conflicts=_as_str_tuple(
                data.get("potential_conflicts") or (), "AnalysisResult.potential_conflicts"
            ),
            effort_estimate=_as_optional_text(
                data.get("effort_estimate"), "AnalysisResult.effort_estimate"
            ),
            quality_score=data.get("quality_score"),  # type: ignore[arg-type]
            findings=tuple(
                ReviewFinding.from_dict(_as_mapping(item, "AnalysisResult.findings[]"))
                for item in findings
            ),
            head_commit_sha=_as_optional_text(
                data.get("head_commit_sha"), "AnalysisResult.head_commit_sha"
            ),
            review_sequence=data.get("review_sequence"),  # type: ignore[arg-type]
            previous_review_id=_as_optional_text(
                data.get("previous_review_id"), "AnalysisResult.previous_review_id"
            ),
            provider=_as_optional_text(data.get("provider"), "AnalysisResult.provider"),
            model=_as_optional_text(data.get("model"), "AnalysisResult.model"),
            cost_usd=data.get("cost_usd"),  # type: ignore[arg-type]
            duration_ms=data.get("duration_ms"),  # type: ignore[arg-type]
        )

    @classmethod
    def from_json(cls, payload: str) -> AnalysisResult:
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError(f"AnalysisResult: invalid JSON ({exc.msg})") from exc
        return cls.from_dict(_as_mapping(decoded, "AnalysisResult"))


@dataclass(frozen=True, slots=True)
class QueueItem:
    """Admission view of one key; superseded in place on re-submission."""

    key: JobKey
    status: JobStatus
    run_id: int
    queued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", _as_enum(JobStatus, self.status, "QueueItem.status"))

    @property
    def is_active(self) -> bool:
        return self.status in {JobStatus.QUEUED, JobStatus.RUNNING}

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "key": self.key,
            "status": self.status.value,
            "run_id": self.run_id,
            "queued_at": _iso8601z(self.queued_at),
            "started_at": None if self.started_at is None else _iso8601z(self.started_at),
            "completed_at": None if self.completed_at is None else _iso8601z(self.completed_at),
        }


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    """Copy-on-read view of everything the record store holds for one key."""

    key: JobKey
    queue_item: QueueItem | None = None
    steps: tuple[Step, ...] = ()
    result: AnalysisResult | None = None
    error: str | None = None
    active_run_id: int | None = None

    @property
    def status(self) -> JobStatus | None:
        return None if self.queue_item is None else self.queue_item.status

    @property
    def has_result(self) -> bool:
        return self.result is not None

    @property
    def has_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """Durable, immutable record of one successful analysis."""

    entry_id: str
    kind: TargetKind
    key: JobKey
    repository_full_name: str
    result: AnalysisResult
    created_at: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_enum(TargetKind, self.kind, "HistoryEntry.kind"))
        object.__setattr__(
            self, "created_at", _as_utc_datetime(self.created_at, "HistoryEntry.created_at")
        )
        if self.result.kind is not self.kind or self.result.number != self.key:
            raise ValueError("HistoryEntry.result must match the entry kind and key")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "entry_id": self.entry_id,
            "kind": self.kind.value,
            "key": self.key,
            "repository_full_name": self.repository_full_name,
            "result": self.result.to_dict(),
            "created_at": _iso8601z(self.created_at),
        }


@dataclass(frozen=True, slots=True)
class PublishState:
    """Per-key publish workflow state; owned by the publish coordinator."""

    key: JobKey
    status: PublishStatus = PublishStatus.IDLE
    remote_comment_id: int | None = None
    remote_comment_url: str | None = None
    last_error: str | None = None
    draft: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "status", _as_enum(PublishStatus, self.status, "PublishState.status")
        )

    @property
    def is_posted(self) -> bool:
        return self.remote_comment_id is not None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "key": self.key,
            "status": self.status.value,
            "remote_comment_id": self.remote_comment_id,
            "remote_comment_url": self.remote_comment_url,
            "last_error": self.last_error,
        }


def is_stale(result: AnalysisResult, target_updated_at: datetime) -> bool:
    """Return ``True`` when the issue/PR changed after ``result`` was produced."""

    return _as_utc_datetime(target_updated_at, "target_updated_at") > result.completed_at


# ------------------------
# Internal helper routines
# ------------------------


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected object")
    for key in value:
        if not isinstance(key, str):
            raise ValueError(f"{path}: object keys must be strings")
    return value


def _as_text(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string")
    if len(value) > _MAX_TEXT:
        raise ValueError(f"{path}: must be <= {_MAX_TEXT} characters")
    return value


def _as_non_empty_str(value: object, path: str) -> str:
    parsed = _as_text(value, path).strip()
    if not parsed:
        raise ValueError(f"{path}: must not be empty")
    return parsed


def _as_optional_text(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_text(value, path)


def _as_repository_name(value: object, path: str) -> str:
    parsed = _as_non_empty_str(value, path)
    owner, sep, name = parsed.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ValueError(f"{path}: expected 'owner/name', got {parsed!r}")
    return parsed


def _as_int_range(
    value: object,
    path: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer")
    if minimum is not None and value < minimum:
        raise ValueError(f"{path}: must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{path}: must be <= {maximum}")
    return value


def _as_non_negative_float(value: object, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path}: expected number")
    parsed = float(value)
    if not math.isfinite(parsed) or parsed < 0:
        raise ValueError(f"{path}: must be a finite number >= 0")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string")
    try:
        return enum_type(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_type)
        raise ValueError(f"{path}: invalid value {value!r}; allowed: {allowed}") from exc


def _as_tuple_of(value: object, item_type: type, path: str) -> tuple:
    if not isinstance(value, Iterable) or isinstance(value, (str, bytes, Mapping)):
        raise ValueError(f"{path}: expected a sequence")
    items = tuple(value)
    for index, item in enumerate(items):
        if not isinstance(item, item_type):
            raise ValueError(f"{path}[{index}]: expected {item_type.__name__}")
    return items


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if not isinstance(value, Iterable) or isinstance(value, (str, bytes, Mapping)):
        raise ValueError(f"{path}: expected a sequence of strings")
    return tuple(_as_non_empty_str(item, f"{path}[{index}]") for index, item in enumerate(value))


def _as_utc_datetime(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"{path}: invalid ISO-8601 datetime ({exc})") from exc
    else:
        raise ValueError(f"{path}: expected datetime or ISO-8601 string")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"{path}: datetime must be timezone-aware")
    return parsed.astimezone(UTC)


def _iso8601z(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "AffectedFile",
    "AnalysisResult",
    "Complexity",
    "FindingCategory",
    "FindingSeverity",
    "HistoryEntry",
    "IssueType",
    "JobKey",
    "JobSnapshot",
    "JobStatus",
    "PublishState",
    "PublishStatus",
    "QueueItem",
    "ReviewFinding",
    "Step",
    "TERMINAL_STATUSES",
    "TargetKind",
    "ValidationVerdict",
    "is_stale",
    "validate_job_key",
]
