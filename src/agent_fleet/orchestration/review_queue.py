"""Claim-based review queue stored as one document."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from agent_fleet.errors import InvalidTransitionError, NotFoundError, StaleClaimError
from agent_fleet.orchestration.codecs import QUEUE_KEY, REVIEW_QUEUE
from agent_fleet.orchestration.models import (
    ACTIVE_REVIEW_STATUSES,
    TERMINAL_REVIEW_STATUSES,
    ReviewItem,
    ReviewQueueStats,
    ReviewStatus,
)
from agent_fleet.storage.common import utc_now
from agent_fleet.storage.state_store import NO_CHANGE, StateStore

logger = logging.getLogger(__name__)

CLAIM_TIMEOUT_SECONDS = 2 * 60 * 60
RETENTION_DAYS = 7

_ClaimOutcome = tuple[ReviewItem | None, bool]


class ReviewQueue:
    """Reviews move ``pending -> in_review -> approved|rejected``.

    Every mutation is a compare-and-swap on the queue document, so among
    concurrent claimers of one review exactly one observes ``pending`` and
    wins.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        claim_timeout_seconds: int = CLAIM_TIMEOUT_SECONDS,
        retention_days: int = RETENTION_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._retention = timedelta(days=retention_days)
        self._clock = clock

    def enqueue(
        self,
        project_number: int,
        issue_number: int,
        branch_name: str,
        completed_by_agent_id: str,
    ) -> ReviewItem:
        """Add completed work; returns the existing active item for the same issue."""

        def _enqueue(items: list[ReviewItem] | None) -> tuple[Any, tuple[ReviewItem, bool]]:
            queue = items or []
            for item in queue:
                if (
                    item.project_number == project_number
                    and item.issue_number == issue_number
                    and item.status in ACTIVE_REVIEW_STATUSES
                ):
                    return NO_CHANGE, (item, False)
            item = ReviewItem(
                review_id=str(uuid4()),
                project_number=project_number,
                issue_number=issue_number,
                branch_name=branch_name,
                completed_by_agent_id=completed_by_agent_id,
                status=ReviewStatus.PENDING,
                enqueued_at=self._clock(),
            )
            return [*queue, item], (item, True)

        item, created = self._store.mutate(REVIEW_QUEUE, QUEUE_KEY, _enqueue)
        if created:
            logger.info(
                "Enqueued review %s for issue %d/%d (agent %s)",
                item.review_id,
                project_number,
                issue_number,
                completed_by_agent_id,
            )
        else:
            logger.info(
                "Issue %d/%d already has active review %s",
                project_number,
                issue_number,
                item.review_id,
            )
        return item

    def list(self) -> list[ReviewItem]:
        """All items, oldest first."""

        return sorted(self._load(), key=lambda item: item.enqueued_at)

    def list_pending(self) -> list[ReviewItem]:
        return [item for item in self.list() if item.status == ReviewStatus.PENDING]

    def get(self, review_id: str) -> ReviewItem | None:
        for item in self._load():
            if item.review_id == review_id:
                return item
        return None

    def claim(self, review_id: str) -> ReviewItem | None:
        """Atomically move a review to ``in_review``.

        Returns ``None`` when the item is missing, already completed, or held by
        a claim that has not timed out yet.
        """

        def _claim(items: list[ReviewItem] | None) -> tuple[Any, _ClaimOutcome]:
            queue = items or []
            now = self._clock()
            for index, item in enumerate(queue):
                if item.review_id != review_id:
                    continue
                reclaim = item.status == ReviewStatus.IN_REVIEW
                if reclaim and not self._is_stale(item, now):
                    return NO_CHANGE, (None, False)
                if item.status not in ACTIVE_REVIEW_STATUSES:
                    return NO_CHANGE, (None, False)
                claimed = replace(item, status=ReviewStatus.IN_REVIEW, claimed_at=now)
                return [*queue[:index], claimed, *queue[index + 1 :]], (claimed, reclaim)
            return NO_CHANGE, (None, False)

        claimed, reclaimed = self._store.mutate(REVIEW_QUEUE, QUEUE_KEY, _claim)
        if claimed is None:
            logger.info("Review %s not claimable", review_id)
        elif reclaimed:
            logger.warning("Review %s reclaimed after claim timeout", review_id)
        else:
            logger.info("Review %s claimed", review_id)
        return claimed

    def release_claim(self, review_id: str) -> bool:
        """Return an ``in_review`` item to ``pending``."""

        def _release(items: list[ReviewItem] | None) -> tuple[Any, bool]:
            queue = items or []
            for index, item in enumerate(queue):
                if item.review_id != review_id:
                    continue
                if item.status != ReviewStatus.IN_REVIEW:
                    return NO_CHANGE, False
                released = replace(item, status=ReviewStatus.PENDING, claimed_at=None)
                return [*queue[:index], released, *queue[index + 1 :]], True
            raise NotFoundError(message=f"Review not found: {review_id}")

        released = self._store.mutate(REVIEW_QUEUE, QUEUE_KEY, _release)
        if released:
            logger.info("Review %s claim released", review_id)
        return released

    def update_status(
        self,
        review_id: str,
        status: ReviewStatus | str,
        feedback: str | None = None,
        *,
        claimed_at: datetime | None = None,
    ) -> ReviewItem:
        """Set the review status; terminal statuses stamp ``completed_at``.

        Approved and rejected reviews are final: changing them raises
        ``InvalidTransitionError``.
        When ``claimed_at`` is given the caller must still hold that exact,
        unexpired claim, otherwise ``StaleClaimError`` is raised.
        """

        target = ReviewStatus(status)

        def _update(items: list[ReviewItem] | None) -> tuple[Any, ReviewItem]:
            queue = items or []
            now = self._clock()
            for index, item in enumerate(queue):
                if item.review_id != review_id:
                    continue
                if item.status in TERMINAL_REVIEW_STATUSES:
                    raise InvalidTransitionError(
                        message=(
                            f"Review {review_id} is already {item.status.value}, "
                            f"cannot set {target.value}"
                        ),
                    )
                if claimed_at is not None and (
                    item.status != ReviewStatus.IN_REVIEW
                    or item.claimed_at != claimed_at
                    or self._is_stale(item, now)
                ):
                    raise StaleClaimError(
                        message=f"Claim on review {review_id} expired or was taken over",
                    )
                updated = replace(
                    item,
                    status=target,
                    feedback=feedback if feedback is not None else item.feedback,
                    completed_at=now if target in TERMINAL_REVIEW_STATUSES else None,
                )
                return [*queue[:index], updated, *queue[index + 1 :]], updated
            raise NotFoundError(message=f"Review not found: {review_id}")

        updated = self._store.mutate(REVIEW_QUEUE, QUEUE_KEY, _update)
        logger.info("Review %s -> %s", review_id, target.value)
        return updated

    def list_timed_out(self) -> list[ReviewItem]:
        now = self._clock()
        return [
            item
            for item in self.list()
            if item.status == ReviewStatus.IN_REVIEW and self._is_stale(item, now)
        ]

    def cleanup_old(self) -> int:
        """Purge completed items older than the retention window."""

        def _cleanup(items: list[ReviewItem] | None) -> tuple[Any, int]:
            queue = items or []
            cutoff = self._clock() - self._retention
            kept = [
                item
                for item in queue
                if not (
                    item.status in TERMINAL_REVIEW_STATUSES
                    and item.completed_at is not None
                    and item.completed_at < cutoff
                )
            ]
            removed = len(queue) - len(kept)
            if removed == 0:
                return NO_CHANGE, 0
            return kept, removed

        removed = self._store.mutate(REVIEW_QUEUE, QUEUE_KEY, _cleanup)
        if removed:
            logger.info("Purged %d completed reviews past retention", removed)
        return removed

    def stats(self) -> ReviewQueueStats:
        now = self._clock()
        stats = ReviewQueueStats()
        for item in self._load():
            stats.total += 1
            if item.status == ReviewStatus.PENDING:
                stats.pending += 1
            elif item.status == ReviewStatus.IN_REVIEW:
                stats.in_review += 1
                if self._is_stale(item, now):
                    stats.timed_out += 1
            elif item.status == ReviewStatus.APPROVED:
                stats.approved += 1
            else:
                stats.rejected += 1
        return stats

    def _is_stale(self, item: ReviewItem, now: datetime) -> bool:
        return item.claimed_at is not None and now - item.claimed_at > self._claim_timeout

    def _load(self) -> list[ReviewItem]:
        record = self._store.get(REVIEW_QUEUE, QUEUE_KEY)
        return list(record.value) if record is not None else []
