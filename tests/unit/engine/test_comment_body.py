"""Unit tests for comment body rendering."""

from __future__ import annotations

import pytest

from gitchorus.constants import (
    DEFAULT_COMMENT_FOOTER,
    REVIEW_COMMENT_MARKER,
    VALIDATION_COMMENT_MARKER,
)
from gitchorus.domain.models import (
    FindingCategory,
    FindingSeverity,
    IssueType,
    ReviewFinding,
    TargetKind,
)
from gitchorus.engine.comment_body import (
    CommentRenderer,
    SectionEdits,
    SectionToggles,
    confidence_bar,
    language_for_file,
    normalize_path,
    render_comment_body,
    star_rating,
)

from . import make_result


def test_validation_body_has_marker_verdict_and_sections() -> None:
    body = render_comment_body(make_result(number=42, confidence=92))

    assert body.startswith(VALIDATION_COMMENT_MARKER)
    assert "**Bug Validation: Confirmed** (92% █████████░)" in body
    assert "| **Complexity** | \U0001f7e1 Medium |" in body
    assert "### Suggested Approach" in body
    assert "### Affected Files (1)" in body
    assert "| `src/widgets/save.py` | null dereference on save |" in body
    assert "```python\ncfg = settings['widget']\n```" in body
    assert body.endswith(DEFAULT_COMMENT_FOOTER)


def test_rendering_is_deterministic() -> None:
    result = make_result(number=42)
    renderer = CommentRenderer()
    assert renderer.render(result) == renderer.render(result)


def test_section_edits_override_generated_text() -> None:
    edits = SectionEdits(approach="Revert the last refactor.", reasoning="Maintainer notes.")

    body = render_comment_body(make_result(number=42), edits=edits)

    assert "Revert the last refactor." in body
    assert "Maintainer notes." in body
    assert "Guard the lookup" not in body


def test_feature_details_edit_replaces_prerequisites_and_conflicts() -> None:
    result = make_result(
        number=8,
        verdict="likely",
        issue_type=IssueType.FEATURE,
        prerequisites=("export API",),
        potential_conflicts=("legacy importer",),
        effort_estimate="2-3 days",
    )
    renderer = CommentRenderer()

    generated = renderer.render(result)
    edited = renderer.render(result, edits=SectionEdits(feature_details="Needs design review."))

    assert "**Feature Feasibility: Likely**" in generated
    assert "| **Effort Estimate** | 2-3 days |" in generated
    assert "### Prerequisites\n\n- export API" in generated
    assert "### Potential Conflicts\n\n- legacy importer" in generated
    assert "### Prerequisites & Conflicts\n\nNeeds design review." in edited
    assert "- legacy importer" not in edited
    assert renderer.default_feature_details(result).startswith("**Prerequisites:**")


def test_toggles_hide_sections() -> None:
    toggles = SectionToggles(approach=False, affected_files=False, reasoning=False)

    body = render_comment_body(make_result(number=42), toggles=toggles)

    assert "Suggested Approach" not in body
    assert "Affected Files" not in body
    assert "Reasoning" not in body
    assert "| **Type** | Bug Report |" in body


def test_review_body_orders_findings_and_shows_score() -> None:
    findings = (
        ReviewFinding(
            severity=FindingSeverity.NIT,
            category=FindingCategory.STYLE,
            file="./src/widgets/export.py",
            line=3,
            title="Trailing whitespace",
            explanation="",
        ),
        ReviewFinding(
            severity=FindingSeverity.CRITICAL,
            category=FindingCategory.SECURITY,
            file="src/widgets/auth.py",
            line=10,
            title="Token logged in plain text",
            explanation="",
        ),
    )
    result = make_result(
        TargetKind.PULL_REQUEST,
        17,
        findings=findings,
        previous_review_id="rh-01HZY",
        review_sequence=2,
    )

    body = render_comment_body(result, footer=None)

    assert body.startswith(REVIEW_COMMENT_MARKER)
    assert "_Re-review #2_" in body
    assert "**Quality Score:** 8/10 ⭐⭐⭐⭐⭐⭐⭐⭐☆☆" in body
    assert body.index("Token logged in plain text") < body.index("Trailing whitespace")
    assert "`export.py:3`" in body
    assert DEFAULT_COMMENT_FOOTER not in body


def test_review_without_findings_and_without_marker() -> None:
    result = make_result(TargetKind.PULL_REQUEST, 17, findings=())

    body = CommentRenderer(include_marker=False).render(result)

    assert not body.startswith("<!--")
    assert "No findings. The code looks good!" in body


def test_section_edits_from_mapping_rejects_unknown_sections() -> None:
    assert SectionEdits.from_mapping(None).is_empty
    assert SectionEdits.from_mapping({"approach": "x"}).approach == "x"
    with pytest.raises(ValueError, match="unknown section edit"):
        SectionEdits.from_mapping({"title": "x"})
    with pytest.raises(ValueError):
        SectionEdits(reasoning=3)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [(0, "0% ░░░░░░░░░░"), (45, "45% ████░░░░░░"), (100, "100% ██████████")],
)
def test_confidence_bar(confidence: int, expected: str) -> None:
    assert confidence_bar(confidence) == expected


def test_small_helpers() -> None:
    assert star_rating(0) == "⭐" + "☆" * 9
    assert normalize_path(".\\src\\app.ts") == "src/app.ts"
    assert normalize_path("/abs/path.py") == "abs/path.py"
    assert language_for_file("Makefile") == "text"
