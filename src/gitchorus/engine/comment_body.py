"""
gitchorus — comment body rendering

File: src/gitchorus/engine/comment_body.py
Last updated: 2026-10-18

Purpose
- Render an AnalysisResult as the markdown body of a GitHub comment: the issue
  validation comment or the PR review summary.

What should be included in this file
- jinja2 templates for both comment kinds, rendered with strict undefined handling.
- Section toggles (which sections appear) and section edits (user overrides for
  the approach, reasoning and feature-details sections).

Functional requirements
- Output is deterministic for the same result, toggles and edits.
- Every body starts with the kind's hidden marker unless disabled, so posted
  comments can be recognised later.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Final

from jinja2 import DictLoader, Environment, StrictUndefined

from gitchorus.constants import (
    DEFAULT_COMMENT_FOOTER,
    REVIEW_COMMENT_MARKER,
    VALIDATION_COMMENT_MARKER,
)
from gitchorus.domain.models import (
    AnalysisResult,
    Complexity,
    FindingSeverity,
    TargetKind,
    ValidationVerdict,
)

_VALIDATION_TEMPLATE: Final[str] = """\
{% if marker %}
{{ marker }}
{% endif %}
{{ alert }}
> {{ emoji }} **{{ type_label }}: {{ verdict_label }}** ({{ confidence_bar }})

{% if toggles.verdict %}
| Property | Value |
|----------|-------|
| **Type** | {{ type_name }} |
{% if complexity %}
| **Complexity** | {{ complexity }} |
{% endif %}
| **Confidence** | {{ result.confidence }}% |
{% if show_feature and result.effort_estimate %}
| **Effort Estimate** | {{ result.effort_estimate }} |
{% endif %}

{% endif %}
{% if toggles.approach %}
### Suggested Approach

{{ approach }}

{% endif %}
{% if show_feature %}
{% if feature_details is not none %}
### Prerequisites & Conflicts

{{ feature_details }}

{% else %}
{% if result.prerequisites %}
### Prerequisites

{% for item in result.prerequisites %}
- {{ item }}
{% endfor %}

{% endif %}
{% if result.potential_conflicts %}
### Potential Conflicts

{% for item in result.potential_conflicts %}
- {{ item }}
{% endfor %}

{% endif %}
{% endif %}
{% endif %}
{% if toggles.affected_files and files %}
### Affected Files ({{ files | length }})

| File | Reason |
|------|--------|
{% for file in files %}
| `{{ file.path }}` | {{ file.reason }} |
{% endfor %}

{% if evidence %}
<details>
<summary><strong>Code Evidence ({{ evidence | length }} files)</strong></summary>

{% for file in evidence %}
**`{{ file.path }}`** - {{ file.reason }}
```{{ file.language }}
{{ file.snippet }}
```

{% endfor %}
</details>

{% endif %}
{% endif %}
{% if toggles.reasoning %}
<details>
<summary><strong>Reasoning</strong></summary>

{{ reasoning }}

</details>

{% endif %}
{% if footer %}
---
{{ footer }}
{% endif %}
"""

_REVIEW_TEMPLATE: Final[str] = """\
{% if marker %}
{{ marker }}
{% endif %}
## GitChorus AI Review

{% if result.is_re_review and result.review_sequence %}
_Re-review #{{ result.review_sequence }}_

{% endif %}
{{ result.verdict }}

{% if result.quality_score is not none %}
**Quality Score:** {{ result.quality_score }}/10 {{ stars }}

{% endif %}
### Findings Summary

{% if findings %}
| # | Severity | Category | Finding | Location |
|---|----------|----------|---------|----------|
{% for finding in findings %}
| {{ loop.index }} | {{ finding.emoji }} {{ finding.severity }} | {{ finding.category }} | {{ finding.title }} | `{{ finding.location }}` |
{% endfor %}
{% else %}
No findings. The code looks good!
{% endif %}

{% if toggles.reasoning and reasoning %}
<details>
<summary><strong>Reasoning</strong></summary>

{{ reasoning }}

</details>

{% endif %}
{% if footer %}
---
{{ footer }}
{% endif %}
"""

_VERDICT_ALERT: Final[dict[ValidationVerdict, str]] = {
    ValidationVerdict.CONFIRMED: "> [!TIP]",
    ValidationVerdict.LIKELY: "> [!TIP]",
    ValidationVerdict.UNCERTAIN: "> [!WARNING]",
    ValidationVerdict.UNLIKELY: "> [!CAUTION]",
    ValidationVerdict.INVALID: "> [!CAUTION]",
}

_VERDICT_EMOJI: Final[dict[ValidationVerdict, str]] = {
    ValidationVerdict.CONFIRMED: "✅",
    ValidationVerdict.LIKELY: "\U0001f7e2",
    ValidationVerdict.UNCERTAIN: "\U0001f7e1",
    ValidationVerdict.UNLIKELY: "\U0001f7e0",
    ValidationVerdict.INVALID: "\U0001f534",
}

_COMPLEXITY_LABEL: Final[dict[Complexity, str]] = {
    Complexity.TRIVIAL: "\U0001f7e2 Trivial",
    Complexity.LOW: "\U0001f7e2 Low",
    Complexity.MEDIUM: "\U0001f7e1 Medium",
    Complexity.HIGH: "\U0001f7e0 High",
    Complexity.VERY_HIGH: "\U0001f534 Very High",
}

_SEVERITY_EMOJI: Final[dict[FindingSeverity, str]] = {
    FindingSeverity.CRITICAL: "\U0001f534",
    FindingSeverity.MAJOR: "\U0001f7e0",
    FindingSeverity.MINOR: "\U0001f7e1",
    FindingSeverity.NIT: "\U0001f535",
}

_SEVERITY_ORDER: Final[dict[FindingSeverity, int]] = {
    FindingSeverity.CRITICAL: 0,
    FindingSeverity.MAJOR: 1,
    FindingSeverity.MINOR: 2,
    FindingSeverity.NIT: 3,
}

_EXTENSION_LANGUAGE: Final[dict[str, str]] = {
    "ts": "typescript",
    "tsx": "tsx",
    "js": "javascript",
    "jsx": "jsx",
    "py": "python",
    "rs": "rust",
    "go": "go",
    "java": "java",
    "rb": "ruby",
    "swift": "swift",
    "kt": "kotlin",
    "c": "c",
    "cpp": "cpp",
    "cs": "csharp",
    "php": "php",
    "css": "css",
    "html": "html",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "md": "markdown",
    "sql": "sql",
    "sh": "bash",
    "bash": "bash",
}


@dataclass(frozen=True, slots=True)
class SectionToggles:
    """Which optional sections appear in a rendered comment."""

    verdict: bool = True
    affected_files: bool = True
    approach: bool = True
    reasoning: bool = True
    feature_details: bool = True


@dataclass(frozen=True, slots=True)
class SectionEdits:
    """User overrides for individual sections; ``None`` keeps the generated text."""

    approach: str | None = None
    reasoning: str | None = None
    feature_details: str | None = None

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if value is not None and not isinstance(value, str):
                raise ValueError(f"SectionEdits.{item.name} must be a string or None")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object] | None) -> SectionEdits:
        if not payload:
            return cls()
        allowed = {item.name for item in fields(cls)}
        unknown = sorted(str(key) for key in payload if key not in allowed)
        if unknown:
            raise ValueError(f"unknown section edit(s): {', '.join(unknown)}")
        return cls(**{str(key): value for key, value in payload.items()})  # type: ignore[arg-type]

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))


class CommentRenderer:
    """Deterministic markdown renderer for validation and review comments."""

    def __init__(
        self,
        *,
        include_marker: bool = True,
        footer: str | None = DEFAULT_COMMENT_FOOTER,
    ) -> None:
        self._include_marker = include_marker
        self._footer = footer.strip() if footer else None
        self._environment = Environment(
            loader=DictLoader(
                {"validation.md.j2": _VALIDATION_TEMPLATE, "review.md.j2": _REVIEW_TEMPLATE}
            ),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )

    def render(
        self,
        result: AnalysisResult,
        *,
        toggles: SectionToggles | None = None,
        edits: SectionEdits | None = None,
    ) -> str:
        toggles = toggles or SectionToggles()
        edits = edits or SectionEdits()
        if result.kind is TargetKind.ISSUE:
            return self._render_validation(result, toggles, edits)
        return self._render_review(result, toggles, edits)

    def default_feature_details(self, result: AnalysisResult) -> str:
        """Plain-text prerequisites/conflicts block offered as the editable default."""

        lines: list[str] = []
        if result.prerequisites:
            lines.append("**Prerequisites:**")
            lines.extend(f"- {item}" for item in result.prerequisites)
        if result.potential_conflicts:
            if lines:
                lines.append("")
            lines.append("**Potential Conflicts:**")
            lines.extend(f"- {item}" for item in result.potential_conflicts)
        return "\n".join(lines)

    def _render_validation(
        self, result: AnalysisResult, toggles: SectionToggles, edits: SectionEdits
    ) -> str:
        verdict = ValidationVerdict(result.verdict)
        files = [
            {
                "path": normalize_path(item.path),
                "reason": item.reason,
                "snippet": item.snippet,
                "language": language_for_file(item.path),
            }
            for item in result.affected_files
        ]
        context = {
            "marker": VALIDATION_COMMENT_MARKER if self._include_marker else None,
            "alert": _VERDICT_ALERT[verdict],
            "emoji": _VERDICT_EMOJI[verdict],
            "type_label": "Feature Feasibility" if result.is_feature else "Bug Validation",
            "type_name": "Feature Request" if result.is_feature else "Bug Report",
            "verdict_label": verdict.value.capitalize(),
            "confidence_bar": confidence_bar(result.confidence),
            "complexity": (
                None if result.complexity is None else _COMPLEXITY_LABEL[result.complexity]
            ),
            "show_feature": result.is_feature and toggles.feature_details,
            "approach": _pick(edits.approach, result.suggested_approach),
            "feature_details": edits.feature_details,
            "reasoning": _pick(edits.reasoning, result.reasoning),
            "files": files,
            "evidence": [item for item in files if item["snippet"]],
            "footer": self._footer,
            "toggles": toggles,
            "result": result,
        }
        return self._render("validation.md.j2", context)

    def _render_review(
        self, result: AnalysisResult, toggles: SectionToggles, edits: SectionEdits
    ) -> str:
        ordered = sorted(result.findings, key=lambda item: _SEVERITY_ORDER[item.severity])
        findings = []
        for item in ordered:
            path = normalize_path(item.file)
            findings.append(
                {
                    "emoji": _SEVERITY_EMOJI[item.severity],
                    "severity": item.severity.value.capitalize(),
                    "category": item.category.value.capitalize(),
                    "title": item.title,
                    "location": f"{path.rsplit('/', 1)[-1]}:{item.line}",
                }
            )
        context = {
            "marker": REVIEW_COMMENT_MARKER if self._include_marker else None,
            "stars": star_rating(result.quality_score or 1),
            "findings": findings,
            "reasoning": _pick(edits.reasoning, result.reasoning),
            "footer": self._footer,
            "toggles": toggles,
            "result": result,
        }
        return self._render("review.md.j2", context)

    def _render(self, template_name: str, context: Mapping[str, object]) -> str:
        template = self._environment.get_template(template_name)
        return template.render(**context).rstrip("\n")


def render_comment_body(
    result: AnalysisResult,
    *,
    toggles: SectionToggles | None = None,
    edits: SectionEdits | None = None,
    include_marker: bool = True,
    footer: str | None = DEFAULT_COMMENT_FOOTER,
) -> str:
    """Convenience one-shot renderer."""

    renderer = CommentRenderer(include_marker=include_marker, footer=footer)
    return renderer.render(result, toggles=toggles, edits=edits)


def confidence_bar(confidence: int) -> str:
    """``85`` -> ``"85% █████████░"`` (ten cells, rounded)."""

    clamped = max(0, min(100, round(confidence)))
    filled = round(clamped / 10)
    return f"{clamped}% {'█' * filled}{'░' * (10 - filled)}"


def star_rating(score: int) -> str:
    clamped = max(1, min(10, round(score)))
    return "⭐" * clamped + "☆" * (10 - clamped)


def normalize_path(path: str) -> str:
    """Forward slashes, no leading ``./`` or ``/``."""

    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def language_for_file(path: str) -> str:
    _, dot, extension = path.rpartition(".")
    if not dot:
        return "text"
    return _EXTENSION_LANGUAGE.get(extension.lower(), "text")


def _pick(override: str | None, generated: str) -> str:
    return generated if override is None else override


__all__ = [
    "CommentRenderer",
    "SectionEdits",
    "SectionToggles",
    "confidence_bar",
    "language_for_file",
    "normalize_path",
    "render_comment_body",
    "star_rating",
]
