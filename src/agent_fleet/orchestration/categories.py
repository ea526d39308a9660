"""Least-recently-used ideation category scheduler."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from agent_fleet.errors import NotFoundError
from agent_fleet.orchestration.codecs import CATEGORY_USAGE
from agent_fleet.orchestration.models import CategoryStat, CategoryUsage, CategoryUsageStats
from agent_fleet.storage.common import utc_now
from agent_fleet.storage.state_store import NO_CHANGE, StateStore

logger = logging.getLogger(__name__)

EXHAUSTION_EXPIRY_DAYS = 7

ALL_CATEGORIES: tuple[str, ...] = (
    "optimization",
    "innovation",
    "architecture",
    "frontend-improvements",
    "backend-improvements",
    "security",
    "testing",
    "documentation",
    "technical-debt",
    "developer-experience",
    "monitoring-observability",
    "devops-infrastructure",
    "accessibility",
    "dependency-management",
    "data-management",
    "internationalization",
    "error-handling-resilience",
    "code-quality",
    "compliance-governance",
    "scalability",
    "api-evolution",
)


class CategoryScheduler:
    """Picks the next ideation category: never-used first, then strict LRU.

    A category marked exhausted is skipped until ``exhaustion_days`` have
    passed since the mark; expiry needs no write.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        catalog: Iterable[str] = ALL_CATEGORIES,
        disabled: Iterable[str] = (),
        exhaustion_days: int = EXHAUSTION_EXPIRY_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._catalog = tuple(catalog)
        disabled_set = set(disabled)
        unknown = disabled_set - set(self._catalog)
        if unknown:
            raise ValueError(f"Unknown categories in disabled list: {', '.join(sorted(unknown))}")
        self._enabled = tuple(name for name in self._catalog if name not in disabled_set)
        self._exhaustion_expiry = timedelta(days=exhaustion_days)
        self._clock = clock

    @property
    def catalog(self) -> tuple[str, ...]:
        return self._catalog

    @property
    def enabled_categories(self) -> tuple[str, ...]:
        return self._enabled

    def next(self) -> str | None:
        """Return the next category to ideate on, or ``None`` if all are exhausted."""

        usage = self._usage_map()
        now = self._clock()
        selected: str | None = None
        oldest: datetime | None = None
        for category in self._enabled:
            record = usage.get(category)
            if record is not None and self._is_exhausted(record, now):
                continue
            if record is None or record.last_used_at is None:
                return category
            if oldest is None or record.last_used_at < oldest:
                oldest = record.last_used_at
                selected = category
        if selected is None:
            logger.info("All %d enabled categories are exhausted", len(self._enabled))
        return selected

    def mark_used(self, category: str) -> CategoryUsage:
        """Record a generated project; clears any exhaustion mark."""

        self._require_known(category)
        now = self._clock()

        def _use(current: CategoryUsage | None) -> tuple[CategoryUsage, CategoryUsage]:
            base = current or CategoryUsage(category=category)
            updated = replace(
                base,
                last_used_at=now,
                projects_generated=base.projects_generated + 1,
                no_idea_at=None,
            )
            return updated, updated

        usage = self._store.mutate(CATEGORY_USAGE, category, _use)
        logger.info("Category %s used (%d projects)", category, usage.projects_generated)
        return usage

    def mark_exhausted(self, category: str) -> CategoryUsage:
        self._require_known(category)
        now = self._clock()

        def _exhaust(current: CategoryUsage | None) -> tuple[CategoryUsage, CategoryUsage]:
            updated = replace(current or CategoryUsage(category=category), no_idea_at=now)
            return updated, updated

        usage = self._store.mutate(CATEGORY_USAGE, category, _exhaust)
        logger.info("Category %s exhausted", category)
        return usage

    def reset_exhaustion(self, category: str) -> bool:
        self._require_known(category)

        def _reset(current: CategoryUsage | None) -> tuple[Any, bool]:
            if current is None or current.no_idea_at is None:
                return NO_CHANGE, False
            return replace(current, no_idea_at=None), True

        reset = self._store.mutate(CATEGORY_USAGE, category, _reset)
        if reset:
            logger.info("Category %s exhaustion reset", category)
        return reset

    def cleanup_expired(self) -> int:
        """Clear exhaustion marks older than the expiry window."""

        now = self._clock()

        def _clear(current: CategoryUsage | None) -> tuple[Any, bool]:
            if current is None or current.no_idea_at is None or self._is_exhausted(current, now):
                return NO_CHANGE, False
            return replace(current, no_idea_at=None), True

        cleared = 0
        for category, usage in self._store.list(CATEGORY_USAGE):
            if usage.no_idea_at is None or self._is_exhausted(usage, now):
                continue
            if self._store.mutate(CATEGORY_USAGE, category, _clear):
                cleared += 1
        if cleared:
            logger.info("Cleared %d expired category exhaustions", cleared)
        return cleared

    def usage_stats(self) -> CategoryUsageStats:
        usage = self._usage_map()
        now = self._clock()
        enabled = set(self._enabled)
        categories: list[CategoryStat] = []
        exhausted_count = 0
        for category in self._catalog:
            record = usage.get(category) or CategoryUsage(category=category)
            exhausted = self._is_exhausted(record, now)
            if exhausted and category in enabled:
                exhausted_count += 1
            categories.append(
                CategoryStat(
                    category=category,
                    enabled=category in enabled,
                    exhausted=exhausted,
                    projects_generated=record.projects_generated,
                    last_used_at=record.last_used_at,
                    no_idea_at=record.no_idea_at,
                ),
            )
        return CategoryUsageStats(
            total=len(self._catalog),
            enabled=len(self._enabled),
            available=len(self._enabled) - exhausted_count,
            exhausted=exhausted_count,
            categories=categories,
        )

    def initialize_usage(self) -> int:
        """Seed empty usage records for catalog entries that have none."""

        created = 0
        for category in self._catalog:
            if self._store.mutate(CATEGORY_USAGE, category, _seed(category)):
                created += 1
        if created:
            logger.info("Seeded usage for %d categories", created)
        return created

    def _is_exhausted(self, usage: CategoryUsage, now: datetime) -> bool:
        return usage.no_idea_at is not None and now - usage.no_idea_at < self._exhaustion_expiry

    def _usage_map(self) -> dict[str, CategoryUsage]:
        return dict(self._store.list(CATEGORY_USAGE))

    def _require_known(self, category: str) -> None:
        if category not in self._catalog:
            raise NotFoundError(message=f"Unknown category: {category}")


def _seed(category: str) -> Callable[[CategoryUsage | None], tuple[Any, bool]]:
    def _apply(current: CategoryUsage | None) -> tuple[Any, bool]:
        if current is not None:
            return NO_CHANGE, False
        return CategoryUsage(category=category), True

    return _apply
