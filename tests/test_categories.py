from __future__ import annotations

import allure
import pytest

from agent_fleet.errors import NotFoundError
from agent_fleet.orchestration.categories import ALL_CATEGORIES, CategoryScheduler

pytestmark = [
    allure.epic("Ideation"),
    allure.feature("Category Scheduler"),
]


@pytest.fixture()
def scheduler(store, clock) -> CategoryScheduler:
    return CategoryScheduler(store, catalog=("security", "testing", "documentation"), clock=clock)


def test_default_catalog_has_every_category() -> None:
    assert len(ALL_CATEGORIES) == 21
    assert len(set(ALL_CATEGORIES)) == 21


def test_never_used_categories_come_first_in_catalog_order(
    scheduler: CategoryScheduler,
    clock,
) -> None:
    assert scheduler.next() == "security"
    scheduler.mark_used("security")
    clock.advance(minutes=1)
    assert scheduler.next() == "testing"
    scheduler.mark_used("testing")
    clock.advance(minutes=1)
    assert scheduler.next() == "documentation"


def test_least_recently_used_wins_once_all_were_used(scheduler: CategoryScheduler, clock) -> None:
    for category in ("testing", "documentation", "security"):
        scheduler.mark_used(category)
        clock.advance(hours=1)

    assert scheduler.next() == "testing"
    scheduler.mark_used("testing")
    assert scheduler.next() == "documentation"


def test_exhausted_category_is_skipped_until_expiry(scheduler: CategoryScheduler, clock) -> None:
    scheduler.mark_exhausted("security")

    assert scheduler.next() == "testing"
    clock.advance(days=6)
    assert scheduler.cleanup_expired() == 0
    assert scheduler.next() == "testing"

    clock.advance(days=1, seconds=1)
    assert scheduler.next() == "security"
    assert scheduler.cleanup_expired() == 1
    assert scheduler.usage_stats().exhausted == 0


def test_all_exhausted_returns_none(scheduler: CategoryScheduler) -> None:
    for category in scheduler.catalog:
        scheduler.mark_exhausted(category)

    assert scheduler.next() is None
    stats = scheduler.usage_stats()
    assert (stats.total, stats.enabled, stats.available, stats.exhausted) == (3, 3, 0, 3)


def test_mark_used_clears_exhaustion_and_counts_projects(scheduler: CategoryScheduler) -> None:
    scheduler.mark_exhausted("testing")

    usage = scheduler.mark_used("testing")
    usage = scheduler.mark_used("testing")

    assert usage.no_idea_at is None
    assert usage.projects_generated == 2


def test_reset_exhaustion(scheduler: CategoryScheduler) -> None:
    scheduler.mark_exhausted("testing")

    assert scheduler.reset_exhaustion("testing") is True
    assert scheduler.reset_exhaustion("testing") is False
    assert scheduler.reset_exhaustion("security") is False


def test_unknown_categories_are_rejected(store, scheduler: CategoryScheduler) -> None:
    with pytest.raises(NotFoundError):
        scheduler.mark_used("astrology")
    with pytest.raises(NotFoundError):
        scheduler.mark_exhausted("astrology")
    with pytest.raises(ValueError, match="astrology"):
        CategoryScheduler(store, catalog=("testing",), disabled=("astrology",))


def test_disabled_categories_are_never_selected(store, clock) -> None:
    scheduler = CategoryScheduler(
        store,
        catalog=("security", "testing"),
        disabled=("security",),
        clock=clock,
    )

    assert scheduler.enabled_categories == ("testing",)
    assert scheduler.next() == "testing"
    scheduler.mark_exhausted("testing")
    assert scheduler.next() is None
    stats = scheduler.usage_stats()
    assert [(stat.category, stat.enabled) for stat in stats.categories] == [
        ("security", False),
        ("testing", True),
    ]
    assert (stats.enabled, stats.available) == (1, 0)


def test_initialize_usage_does_not_overwrite(scheduler: CategoryScheduler) -> None:
    scheduler.mark_used("testing")

    assert scheduler.initialize_usage() == 2
    assert scheduler.initialize_usage() == 0
    stats = {stat.category: stat for stat in scheduler.usage_stats().categories}
    assert stats["testing"].projects_generated == 1
    assert stats["security"].projects_generated == 0
