from __future__ import annotations

import multiprocessing
import os
import threading
from pathlib import Path

import allure
import pytest

from agent_fleet.errors import InvalidTransitionError, NotFoundError, StaleClaimError
from agent_fleet.orchestration.models import ReviewStatus
from agent_fleet.orchestration.review_queue import ReviewQueue
from agent_fleet.storage.retry import RetryPolicy
from agent_fleet.storage.state_store import StateStore

pytestmark = [
    allure.epic("Work Queues"),
    allure.feature("Review Queue"),
]


@pytest.fixture()
def queue(store, clock) -> ReviewQueue:
    return ReviewQueue(store, clock=clock)


def _claim_in_process(db_path: str, review_id: str, barrier, results) -> None:
    store = StateStore(
        Path(db_path),
        retry_policy=RetryPolicy(attempts=5, base_delay_seconds=0.05),
    )
    try:
        barrier.wait()
        results.put(ReviewQueue(store).claim(review_id) is not None)
    finally:
        store.close()


def test_enqueue_is_idempotent_for_active_issue(queue: ReviewQueue, clock) -> None:
    first = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    clock.advance(minutes=1)
    duplicate = queue.enqueue(1, 42, "feature/issue-42", "agent-2")
    other = queue.enqueue(1, 43, "feature/issue-43", "agent-2")

    assert duplicate.review_id == first.review_id
    assert first.status == ReviewStatus.PENDING
    assert [item.issue_number for item in queue.list()] == [42, 43]
    assert other.enqueued_at > first.enqueued_at


def test_completed_review_allows_new_enqueue(queue: ReviewQueue) -> None:
    first = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    queue.claim(first.review_id)
    queue.update_status(first.review_id, ReviewStatus.REJECTED, feedback="needs tests")

    second = queue.enqueue(1, 42, "feature/issue-42", "agent-1")

    assert second.review_id != first.review_id
    assert [item.review_id for item in queue.list_pending()] == [second.review_id]


def test_claim_moves_pending_to_in_review_once(queue: ReviewQueue, clock) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")

    claimed = queue.claim(item.review_id)

    assert claimed is not None
    assert claimed.status == ReviewStatus.IN_REVIEW
    assert claimed.claimed_at == clock()
    assert queue.claim(item.review_id) is None
    assert queue.claim("missing") is None


def test_stale_claim_can_be_reclaimed(queue: ReviewQueue, clock) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    first = queue.claim(item.review_id)

    clock.advance(hours=1)
    assert queue.list_timed_out() == []
    clock.advance(hours=1, seconds=1)
    assert [timed_out.review_id for timed_out in queue.list_timed_out()] == [item.review_id]
    assert queue.stats().timed_out == 1

    second = queue.claim(item.review_id)
    assert second is not None
    assert second.claimed_at > first.claimed_at


def test_update_status_guards_against_lost_claims(queue: ReviewQueue, clock) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    first = queue.claim(item.review_id)
    clock.advance(hours=3)
    queue.claim(item.review_id)

    with pytest.raises(StaleClaimError):
        queue.update_status(item.review_id, ReviewStatus.APPROVED, claimed_at=first.claimed_at)
    with pytest.raises(NotFoundError):
        queue.update_status("missing", ReviewStatus.APPROVED)


def test_terminal_status_sets_completed_at(queue: ReviewQueue, clock) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    claimed = queue.claim(item.review_id)
    clock.advance(minutes=5)

    approved = queue.update_status(
        item.review_id,
        ReviewStatus.APPROVED,
        claimed_at=claimed.claimed_at,
    )

    assert approved.status == ReviewStatus.APPROVED
    assert approved.completed_at == clock()
    assert queue.claim(item.review_id) is None


def test_completed_review_status_is_final(queue: ReviewQueue) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    queue.claim(item.review_id)
    queue.update_status(item.review_id, ReviewStatus.APPROVED)

    for status in (ReviewStatus.REJECTED, ReviewStatus.APPROVED, ReviewStatus.PENDING):
        with pytest.raises(InvalidTransitionError, match="already approved"):
            queue.update_status(item.review_id, status, feedback="late verdict")

    stored = queue.get(item.review_id)
    assert stored.status == ReviewStatus.APPROVED
    assert stored.feedback is None


def test_release_claim_returns_review_to_pending(queue: ReviewQueue) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    queue.claim(item.review_id)

    assert queue.release_claim(item.review_id) is True
    assert queue.get(item.review_id).status == ReviewStatus.PENDING
    assert queue.release_claim(item.review_id) is False
    with pytest.raises(NotFoundError):
        queue.release_claim("missing")


def test_cleanup_old_purges_only_expired_completed_items(queue: ReviewQueue, clock) -> None:
    old = queue.enqueue(1, 1, "feature/issue-1", "agent-1")
    queue.update_status(old.review_id, ReviewStatus.APPROVED)
    clock.advance(days=8)
    recent = queue.enqueue(1, 2, "feature/issue-2", "agent-1")
    queue.update_status(recent.review_id, ReviewStatus.REJECTED)
    pending = queue.enqueue(1, 3, "feature/issue-3", "agent-1")

    assert queue.cleanup_old() == 1
    assert [item.review_id for item in queue.list()] == [recent.review_id, pending.review_id]
    assert queue.cleanup_old() == 0


def test_stats_counts_every_status(queue: ReviewQueue) -> None:
    pending = queue.enqueue(1, 1, "b1", "agent-1")
    in_review = queue.enqueue(1, 2, "b2", "agent-1")
    approved = queue.enqueue(1, 3, "b3", "agent-1")
    rejected = queue.enqueue(1, 4, "b4", "agent-1")
    queue.claim(in_review.review_id)
    queue.update_status(approved.review_id, ReviewStatus.APPROVED)
    queue.update_status(rejected.review_id, ReviewStatus.REJECTED)

    stats = queue.stats()

    assert pending.status == ReviewStatus.PENDING
    assert (stats.total, stats.pending, stats.in_review) == (4, 1, 1)
    assert (stats.approved, stats.rejected, stats.timed_out) == (1, 1, 0)


def test_concurrent_thread_claims_have_exactly_one_winner(queue: ReviewQueue) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    barrier = threading.Barrier(8)
    results: list[bool] = []
    lock = threading.Lock()

    def _claim() -> None:
        barrier.wait()
        won = queue.claim(item.review_id) is not None
        with lock:
            results.append(won)

    threads = [threading.Thread(target=_claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert results.count(False) == 7


@pytest.mark.skipif(not hasattr(os, "fork"), reason="fork start method required")
def test_concurrent_process_claims_have_exactly_one_winner(store, queue: ReviewQueue) -> None:
    item = queue.enqueue(1, 42, "feature/issue-42", "agent-1")
    context = multiprocessing.get_context("fork")
    barrier = context.Barrier(4)
    results = context.Queue()

    processes = [
        context.Process(
            target=_claim_in_process,
            args=(str(store.db_path), item.review_id, barrier, results),
        )
        for _ in range(4)
    ]
    for process in processes:
        process.start()
    outcomes = [results.get(timeout=30) for _ in processes]
    for process in processes:
        process.join(timeout=30)

    assert outcomes.count(True) == 1
    assert queue.get(item.review_id).status == ReviewStatus.IN_REVIEW
