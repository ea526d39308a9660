"""Bounded execute -> review -> reject loop with escalation to a human."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_fleet.errors import InvalidTransitionError, NotFoundError
from agent_fleet.orchestration.codecs import ESCALATIONS, REVIEW_CYCLES
from agent_fleet.orchestration.feedback import render_escalation_summary, render_feedback_comment
from agent_fleet.orchestration.issue_claims import IssueClaimRegistry
from agent_fleet.orchestration.models import (
    TERMINAL_REVIEW_STATUSES,
    EscalationRecord,
    RejectionOutcome,
    ReviewCycleState,
    ReviewFeedback,
    ReviewHistoryEntry,
    ReviewItem,
    ReviewStatus,
)
from agent_fleet.orchestration.notifications import (
    IssueTracker,
    LoggingIssueTracker,
    LoggingNotifier,
    Notifier,
)
from agent_fleet.orchestration.review_queue import ReviewQueue
from agent_fleet.storage.artifacts import write_text_atomic
from agent_fleet.storage.common import utc_now
from agent_fleet.storage.state_store import NO_CHANGE, StateStore

logger = logging.getLogger(__name__)

MAX_CYCLES = 3
ESCALATION_LABEL = "review-escalation"


class RefinementLoop:
    """Tracks review cycles per issue and decides between retry and escalation."""

    def __init__(
        self,
        store: StateStore,
        review_queue: ReviewQueue,
        claims: IssueClaimRegistry,
        *,
        artifacts_dir: Path,
        tracker: IssueTracker | None = None,
        notifier: Notifier | None = None,
        max_cycles: int = MAX_CYCLES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._reviews = review_queue
        self._claims = claims
        self._artifacts_dir = artifacts_dir
        self._tracker = tracker or LoggingIssueTracker()
        self._notifier = notifier or LoggingNotifier()
        self.max_cycles = max_cycles
        self._clock = clock

    def get_cycle_count(self, issue_number: int) -> int:
        state = self._state(issue_number)
        return state.cycle_count if state is not None else 0

    def should_escalate(self, issue_number: int) -> bool:
        return self.get_cycle_count(issue_number) >= self.max_cycles

    def get_review_history(self, issue_number: int) -> list[ReviewHistoryEntry]:
        state = self._state(issue_number)
        return list(state.history) if state is not None else []

    def get_latest_feedback(self, issue_number: int) -> ReviewFeedback | None:
        """Most recent rejection feedback, for the next execution attempt's context."""

        for entry in reversed(self.get_review_history(issue_number)):
            if entry.status == ReviewStatus.REJECTED and entry.feedback is not None:
                return entry.feedback
        return None

    def handle_rejection(self, review_id: str, feedback: ReviewFeedback) -> RejectionOutcome:
        """Record a rejection, then either send the issue back or escalate it.

        Below ``max_cycles`` the review is marked rejected, the issue claim is
        released to the backlog and the feedback is posted to the tracker. The
        rejection that reaches ``max_cycles`` escalates instead. Rejections
        arriving after escalation are stored on the review but add no cycle.
        A review that is already approved or rejected is refused with
        ``InvalidTransitionError``, so one review never counts twice.
        """

        started = time.perf_counter()
        review = self._require_review(review_id)
        if feedback.issue_number != review.issue_number:
            raise ValueError(
                f"Feedback is for issue {feedback.issue_number}, "
                f"review {review_id} is for issue {review.issue_number}",
            )
        if review.status in TERMINAL_REVIEW_STATUSES:
            raise InvalidTransitionError(
                message=f"Review {review_id} is already {review.status.value}",
            )

        now = self._clock()

        def _record(state: ReviewCycleState | None) -> tuple[Any, tuple[ReviewCycleState, bool]]:
            current = state or ReviewCycleState(
                issue_number=review.issue_number,
                project_number=review.project_number,
                cycle_count=0,
                last_updated=now,
            )
            if any(entry.review_id == review_id for entry in current.history):
                raise InvalidTransitionError(
                    message=(
                        f"Review {review_id} was already counted "
                        f"for issue {review.issue_number}"
                    ),
                )
            if current.cycle_count >= self.max_cycles:
                return NO_CHANGE, (current, False)
            cycle_number = current.cycle_count + 1
            updated = replace(
                current,
                cycle_count=cycle_number,
                last_updated=now,
                history=[
                    *current.history,
                    ReviewHistoryEntry(
                        cycle_number=cycle_number,
                        review_id=review_id,
                        reviewed_at=now,
                        status=ReviewStatus.REJECTED,
                        feedback=feedback,
                    ),
                ],
            )
            return updated, (updated, True)

        state, counted = self._store.mutate(REVIEW_CYCLES, str(review.issue_number), _record)
        comment = render_feedback_comment(feedback, state.cycle_count, self.max_cycles)
        logger.info(
            "Formatted feedback for issue %d in %.1fms",
            review.issue_number,
            (time.perf_counter() - started) * 1000,
        )
        self._reviews.update_status(review_id, ReviewStatus.REJECTED, feedback=comment)

        if not counted:
            logger.warning(
                "Issue %d already escalated; rejection of review %s not counted",
                review.issue_number,
                review_id,
            )
            return RejectionOutcome(
                issue_number=review.issue_number,
                cycle_count=state.cycle_count,
                escalated=True,
                requeued=False,
                feedback_markdown=comment,
            )

        feedback_path = write_text_atomic(
            self._artifacts_dir / f"issue-{review.issue_number}-feedback.md",
            comment,
        )
        self._tracker.post_comment(review.project_number, review.issue_number, comment)

        if state.cycle_count >= self.max_cycles:
            escalation = self.escalate_to_user(review.issue_number, state.history)
            outcome = RejectionOutcome(
                issue_number=review.issue_number,
                cycle_count=state.cycle_count,
                escalated=True,
                requeued=False,
                feedback_markdown=comment,
                feedback_path=str(feedback_path),
                escalation=escalation,
            )
        else:
            self._claims.release(review.project_number, review.issue_number)
            logger.info(
                "Issue %d sent back for refinement (cycle %d/%d)",
                review.issue_number,
                state.cycle_count,
                self.max_cycles,
            )
            outcome = RejectionOutcome(
                issue_number=review.issue_number,
                cycle_count=state.cycle_count,
                escalated=False,
                requeued=True,
                feedback_markdown=comment,
                feedback_path=str(feedback_path),
            )

        logger.info(
            "Rejection of review %s handled in %.1fms",
            review_id,
            (time.perf_counter() - started) * 1000,
        )
        return outcome

    def handle_approval(self, review_id: str) -> ReviewItem:
        """Approve a review and close out the issue's claim."""

        review = self._require_review(review_id)
        approved = self._reviews.update_status(review_id, ReviewStatus.APPROVED)
        now = self._clock()

        def _record(state: ReviewCycleState | None) -> tuple[Any, None]:
            if state is None:
                return NO_CHANGE, None
            entry = ReviewHistoryEntry(
                cycle_number=state.cycle_count,
                review_id=review_id,
                reviewed_at=now,
                status=ReviewStatus.APPROVED,
            )
            return replace(state, last_updated=now, history=[*state.history, entry]), None

        self._store.mutate(REVIEW_CYCLES, str(review.issue_number), _record)
        self._claims.release(review.project_number, review.issue_number)
        logger.info("Review %s approved for issue %d", review_id, review.issue_number)
        return approved

    def escalate_to_user(
        self,
        issue_number: int,
        history: list[ReviewHistoryEntry] | None = None,
    ) -> EscalationRecord:
        """Write the escalation summary, persist a record and alert the operator."""

        state = self._state(issue_number)
        if state is None:
            raise NotFoundError(message=f"No review cycles recorded for issue {issue_number}")
        entries = history if history is not None else state.history

        now = self._clock()
        summary = render_escalation_summary(
            issue_number,
            entries,
            max_cycles=self.max_cycles,
            escalated_at=now,
        )
        summary_path = write_text_atomic(
            self._artifacts_dir / f"issue-{issue_number}-escalation.md",
            summary,
        )
        record = EscalationRecord(
            issue_number=issue_number,
            project_number=state.project_number,
            cycle_count=state.cycle_count,
            summary_path=str(summary_path),
            escalated_at=now,
        )
        self._store.put(ESCALATIONS, str(issue_number), record)
        logger.warning(
            "Issue %d escalated after %d review cycles; summary at %s",
            issue_number,
            state.cycle_count,
            summary_path,
        )

        self._notifier.warn(
            "Review escalation",
            f"Issue #{issue_number} requires manual review after "
            f"{self.max_cycles} failed review cycles.",
            artifact=summary_path,
        )
        self._tracker.add_label(state.project_number, issue_number, ESCALATION_LABEL)
        self._tracker.post_comment(state.project_number, issue_number, summary)
        return record

    def clear(self, issue_number: int) -> bool:
        """Forget cycle tracking after an issue was resolved by hand."""

        cleared = self._store.delete(REVIEW_CYCLES, str(issue_number))
        if cleared:
            logger.info("Cleared review cycles for issue %d", issue_number)
        return cleared

    def active_issues(self) -> list[ReviewCycleState]:
        return [state for _, state in self._store.list(REVIEW_CYCLES)]

    def list_escalations(self, *, include_acknowledged: bool = False) -> list[EscalationRecord]:
        records = [record for _, record in self._store.list(ESCALATIONS)]
        if not include_acknowledged:
            records = [record for record in records if record.acknowledged_at is None]
        return sorted(records, key=lambda record: record.escalated_at)

    def acknowledge_escalation(self, issue_number: int) -> EscalationRecord:
        now = self._clock()

        def _ack(record: EscalationRecord | None) -> tuple[Any, EscalationRecord]:
            if record is None:
                raise NotFoundError(message=f"No escalation for issue {issue_number}")
            if record.acknowledged_at is not None:
                return NO_CHANGE, record
            acknowledged = replace(record, acknowledged_at=now)
            return acknowledged, acknowledged

        record = self._store.mutate(ESCALATIONS, str(issue_number), _ack)
        logger.info("Escalation for issue %d acknowledged", issue_number)
        return record

    def _state(self, issue_number: int) -> ReviewCycleState | None:
        record = self._store.get(REVIEW_CYCLES, str(issue_number))
        return record.value if record is not None else None

    def _require_review(self, review_id: str) -> ReviewItem:
        review = self._reviews.get(review_id)
        if review is None:
            raise NotFoundError(message=f"Review not found: {review_id}")
        return review
