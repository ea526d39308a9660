"""Markdown rendering for review feedback and escalation summaries."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from agent_fleet.orchestration.models import ReviewFeedback, ReviewHistoryEntry
from agent_fleet.storage.common import to_iso

RECOMMENDED_ACTIONS = (
    "**Manual Code Review:** Review the implementation against acceptance criteria",
    "**Agent Analysis:** Determine if review agent or execution agent has systematic issues",
    "**Criteria Clarity:** Verify acceptance criteria are clear and achievable",
    "**Agent Configuration:** Consider adjusting agent parameters or prompts",
    "**Direct Completion:** If work is acceptable, manually close the issue",
)

NEXT_STEPS_CHECKLIST = (
    "Review the implementation code",
    "Assess acceptance criteria clarity",
    "Determine root cause of review failures",
    "Decide on manual completion or agent re-configuration",
    "Document findings for future improvement",
)


def render_feedback_comment(feedback: ReviewFeedback, cycle_number: int, max_cycles: int) -> str:
    """Render the tracker comment posted after a rejection."""

    lines = [
        f"## Review Feedback - Cycle {cycle_number}/{max_cycles}",
        "",
        "**Status:** REJECTED",
        "",
    ]

    if feedback.unmet_criteria:
        lines.append("**Issues Found:**")
        lines.extend(f"- {entry.criterion}: {entry.reason}" for entry in feedback.unmet_criteria)
        lines.append("")

    if feedback.quality_issues:
        lines.append("**Code Quality Issues:**")
        lines.extend(f"- {entry.category}: {entry.issue}" for entry in feedback.quality_issues)
        lines.append("")

    if feedback.requested_changes:
        lines.append("**Requested Changes:**")
        lines.extend(_numbered(feedback.requested_changes))
        lines.append("")

    if cycle_number < max_cycles:
        lines.append("**Next Steps:**")
        lines.append("Please address the issues above and re-submit for review.")
    else:
        lines.append("**Escalation Notice:**")
        lines.append(
            f"This issue has reached the maximum review cycles ({max_cycles}). "
            "Manual review required.",
        )
        lines.append("A project maintainer will review this issue and provide guidance.")
    return "\n".join(lines)


def render_escalation_summary(
    issue_number: int,
    history: Sequence[ReviewHistoryEntry],
    *,
    max_cycles: int,
    escalated_at: datetime,
) -> str:
    """Render the escalation report covering every review cycle."""

    lines = [
        f"# Escalation Summary - Issue #{issue_number}",
        "",
        "**Status:** Escalated for Manual Review",
        f"**Reason:** Maximum review cycles ({max_cycles}) reached",
        f"**Date:** {to_iso(escalated_at)}",
        "",
        "---",
        "",
        "## Review Cycle History",
        "",
    ]

    if not history:
        lines.append("No review history available.")
    for entry in history:
        lines.append(f"### Cycle {entry.cycle_number} - {entry.status.value.upper()}")
        lines.append(f"**Review ID:** {entry.review_id}")
        lines.append(f"**Reviewed At:** {to_iso(entry.reviewed_at)}")
        lines.append("")
        if entry.feedback is not None:
            lines.extend(_history_feedback(entry.feedback))
        lines.append("---")
        lines.append("")

    lines.append("## Recommended Actions")
    lines.append("")
    lines.extend(_numbered(RECOMMENDED_ACTIONS))
    lines.append("")
    lines.append("## Next Steps")
    lines.append("")
    lines.extend(f"- [ ] {step}" for step in NEXT_STEPS_CHECKLIST)
    lines.append("")
    return "\n".join(lines)


def _history_feedback(feedback: ReviewFeedback) -> list[str]:
    lines: list[str] = []
    if feedback.unmet_criteria:
        lines.append("**Unmet Criteria:**")
        for entry in feedback.unmet_criteria:
            lines.append(f"- {entry.criterion}")
            lines.append(f"  - Reason: {entry.reason}")
        lines.append("")
    if feedback.quality_issues:
        lines.append("**Quality Issues:**")
        lines.extend(f"- [{entry.category}] {entry.issue}" for entry in feedback.quality_issues)
        lines.append("")
    if feedback.requested_changes:
        lines.append("**Requested Changes:**")
        lines.extend(_numbered(feedback.requested_changes))
        lines.append("")
    return lines


def _numbered(items: Sequence[str]) -> list[str]:
    return [f"{index}. {item}" for index, item in enumerate(items, start=1)]
