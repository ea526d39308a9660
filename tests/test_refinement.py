from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_fleet.errors import InvalidTransitionError, NotFoundError
from agent_fleet.orchestration.feedback import render_feedback_comment
from agent_fleet.orchestration.models import (
    AgentStatus,
    QualityIssue,
    ReviewFeedback,
    ReviewItem,
    ReviewStatus,
    UnmetCriterion,
)
from agent_fleet.orchestration.refinement import ESCALATION_LABEL

pytestmark = [
    allure.epic("Work Queues"),
    allure.feature("Iterative Refinement"),
]


def _feedback(issue_number: int = 42, reason: str = "No tests added") -> ReviewFeedback:
    return ReviewFeedback(
        issue_number=issue_number,
        unmet_criteria=[UnmetCriterion(criterion="Unit tests cover parser", reason=reason)],
        quality_issues=[QualityIssue(category="style", issue="Long functions")],
        requested_changes=["Add parser tests", "Split parse()"],
    )


def _submit(services, issue_number: int = 42) -> ReviewItem:
    services.claims.claim(1, issue_number, "agent-1")
    item = services.reviews.enqueue(1, issue_number, f"feature/issue-{issue_number}", "agent-1")
    services.reviews.claim(item.review_id)
    return item


def test_feedback_comment_for_retry_cycle() -> None:
    comment = render_feedback_comment(_feedback(), 1, 3)

    assert comment == "\n".join(
        [
            "## Review Feedback - Cycle 1/3",
            "",
            "**Status:** REJECTED",
            "",
            "**Issues Found:**",
            "- Unit tests cover parser: No tests added",
            "",
            "**Code Quality Issues:**",
            "- style: Long functions",
            "",
            "**Requested Changes:**",
            "1. Add parser tests",
            "2. Split parse()",
            "",
            "**Next Steps:**",
            "Please address the issues above and re-submit for review.",
        ],
    )


def test_feedback_comment_on_last_cycle_announces_escalation() -> None:
    comment = render_feedback_comment(ReviewFeedback(issue_number=42), 3, 3)

    assert "**Escalation Notice:**" in comment
    assert "maximum review cycles (3)" in comment
    assert "**Next Steps:**" not in comment


def test_rejection_below_limit_requeues_issue(services, tracker) -> None:
    item = _submit(services)

    outcome = services.refinement.handle_rejection(item.review_id, _feedback())

    assert outcome.cycle_count == 1
    assert outcome.requeued is True
    assert outcome.escalated is False
    assert services.reviews.get(item.review_id).status == ReviewStatus.REJECTED
    assert services.reviews.get(item.review_id).feedback == outcome.feedback_markdown
    assert not services.claims.is_claimed(1, 42)
    assert tracker.comments == [(1, 42, outcome.feedback_markdown)]
    assert Path(outcome.feedback_path).read_text("utf-8") == outcome.feedback_markdown
    assert services.refinement.should_escalate(42) is False


def test_three_rejections_escalate_with_full_history(
    services,
    tracker,
    notifier,
    settings,
) -> None:
    services.sessions.create("agent-1")
    services.sessions.update("agent-1", status=AgentStatus.WORKING, current_project_number=1)
    assert services.sessions.read("agent-1").status == AgentStatus.WORKING

    outcomes = []
    for cycle in range(1, 4):
        item = _submit(services)
        outcomes.append(
            services.refinement.handle_rejection(
                item.review_id,
                _feedback(reason=f"Attempt {cycle} incomplete"),
            ),
        )

    assert [outcome.cycle_count for outcome in outcomes] == [1, 2, 3]
    assert [outcome.requeued for outcome in outcomes] == [True, True, False]
    assert outcomes[-1].escalated is True
    assert services.refinement.get_cycle_count(42) == 3
    assert services.refinement.should_escalate(42) is True

    history = services.refinement.get_review_history(42)
    assert [entry.cycle_number for entry in history] == [1, 2, 3]
    assert [entry.status for entry in history] == [ReviewStatus.REJECTED] * 3
    assert len({entry.review_id for entry in history}) == 3
    assert services.refinement.get_latest_feedback(42).unmet_criteria[0].reason == (
        "Attempt 3 incomplete"
    )

    escalation = outcomes[-1].escalation
    assert escalation is not None
    summary = (settings.artifacts_dir / "issue-42-escalation.md").read_text("utf-8")
    assert escalation.summary_path == str(settings.artifacts_dir / "issue-42-escalation.md")
    assert "# Escalation Summary - Issue #42" in summary
    for cycle in range(1, 4):
        assert f"### Cycle {cycle} - REJECTED" in summary
        assert f"  - Reason: Attempt {cycle} incomplete" in summary
    assert tracker.labels == [(1, 42, ESCALATION_LABEL)]
    assert tracker.comments[-1] == (1, 42, summary)
    assert len(notifier.warnings) == 1
    assert notifier.warnings[0][0] == "Review escalation"
    assert services.claims.is_claimed(1, 42)
    assert [record.issue_number for record in services.refinement.list_escalations()] == [42]


def test_rejection_after_escalation_adds_no_cycle(services, tracker) -> None:
    for _ in range(3):
        item = _submit(services)
        services.refinement.handle_rejection(item.review_id, _feedback())
    comments_before = len(tracker.comments)

    item = services.reviews.enqueue(1, 42, "feature/issue-42", "agent-1")
    outcome = services.refinement.handle_rejection(item.review_id, _feedback())

    assert outcome.cycle_count == 3
    assert outcome.escalated is True
    assert outcome.requeued is False
    assert outcome.feedback_path is None
    assert services.reviews.get(item.review_id).status == ReviewStatus.REJECTED
    assert len(services.refinement.get_review_history(42)) == 3
    assert len(tracker.comments) == comments_before


def test_rejection_for_wrong_issue_is_refused(services) -> None:
    item = _submit(services)

    with pytest.raises(ValueError, match="Feedback is for issue 7"):
        services.refinement.handle_rejection(item.review_id, _feedback(issue_number=7))
    with pytest.raises(NotFoundError):
        services.refinement.handle_rejection("missing", _feedback())
    assert services.refinement.get_cycle_count(42) == 0


def test_approval_releases_claim_and_records_history(services) -> None:
    item = _submit(services)
    services.refinement.handle_rejection(item.review_id, _feedback())
    item = _submit(services)

    approved = services.refinement.handle_approval(item.review_id)

    assert approved.status == ReviewStatus.APPROVED
    assert approved.completed_at is not None
    assert not services.claims.is_claimed(1, 42)
    history = services.refinement.get_review_history(42)
    assert [(entry.cycle_number, entry.status) for entry in history] == [
        (1, ReviewStatus.REJECTED),
        (1, ReviewStatus.APPROVED),
    ]
    assert services.refinement.get_cycle_count(42) == 1


def test_escalation_requires_cycle_state(services) -> None:
    with pytest.raises(NotFoundError):
        services.refinement.escalate_to_user(99)


def test_acknowledge_escalation_hides_it_from_default_listing(services, clock) -> None:
    for _ in range(3):
        item = _submit(services)
        services.refinement.handle_rejection(item.review_id, _feedback())
    clock.advance(hours=1)

    record = services.refinement.acknowledge_escalation(42)

    assert record.acknowledged_at == clock()
    assert services.refinement.list_escalations() == []
    assert len(services.refinement.list_escalations(include_acknowledged=True)) == 1
    with pytest.raises(NotFoundError):
        services.refinement.acknowledge_escalation(7)


def test_clear_forgets_cycle_tracking(services) -> None:
    item = _submit(services)
    services.refinement.handle_rejection(item.review_id, _feedback())

    assert [state.issue_number for state in services.refinement.active_issues()] == [42]
    assert services.refinement.clear(42) is True
    assert services.refinement.get_cycle_count(42) == 0
    assert services.refinement.clear(42) is False


def test_same_review_cannot_be_rejected_twice(services, tracker) -> None:
    item = _submit(services)
    services.refinement.handle_rejection(item.review_id, _feedback())

    for _ in range(2):
        with pytest.raises(InvalidTransitionError, match="already rejected"):
            services.refinement.handle_rejection(item.review_id, _feedback())

    assert services.refinement.get_cycle_count(42) == 1
    assert services.refinement.should_escalate(42) is False
    assert [entry.review_id for entry in services.refinement.get_review_history(42)] == [
        item.review_id,
    ]
    assert len(tracker.comments) == 1


def test_approved_review_cannot_be_rejected(services) -> None:
    item = _submit(services)
    services.refinement.handle_approval(item.review_id)

    with pytest.raises(InvalidTransitionError, match="already approved"):
        services.refinement.handle_rejection(item.review_id, _feedback())
    with pytest.raises(InvalidTransitionError):
        services.refinement.handle_approval(item.review_id)

    assert services.reviews.get(item.review_id).status == ReviewStatus.APPROVED
    assert services.refinement.get_cycle_count(42) == 0


def test_review_already_in_history_is_not_counted_again(services, monkeypatch) -> None:
    item = _submit(services)
    services.refinement.handle_rejection(item.review_id, _feedback())
    stale_view = services.reviews.get(item.review_id)
    monkeypatch.setattr(
        services.reviews,
        "get",
        lambda review_id: replace(stale_view, status=ReviewStatus.IN_REVIEW),
    )

    with pytest.raises(InvalidTransitionError, match="already counted"):
        services.refinement.handle_rejection(item.review_id, _feedback())

    assert services.refinement.get_cycle_count(42) == 1
