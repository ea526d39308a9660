"""Wire every fleet component over one state store."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from agent_fleet.config import Settings
from agent_fleet.orchestration.categories import ALL_CATEGORIES, CategoryScheduler
from agent_fleet.orchestration.conflicts import ConflictQueue
from agent_fleet.orchestration.health import LoopHealthMonitor
from agent_fleet.orchestration.issue_claims import IssueClaimRegistry
from agent_fleet.orchestration.lifecycle import AgentLifecycleController
from agent_fleet.orchestration.notifications import (
    IssueTracker,
    LoggingIssueTracker,
    LoggingNotifier,
    Notifier,
)
from agent_fleet.orchestration.refinement import RefinementLoop
from agent_fleet.orchestration.review_queue import ReviewQueue
from agent_fleet.orchestration.sessions import SessionRegistry
from agent_fleet.storage.common import utc_now
from agent_fleet.storage.retry import RetryPolicy
from agent_fleet.storage.state_store import StateStore


class FleetServices:
    """Component graph for one database; transitions feed the health monitor."""

    def __init__(
        self,
        settings: Settings,
        *,
        tracker: IssueTracker | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.tracker = tracker or LoggingIssueTracker()
        self.notifier = notifier or LoggingNotifier()
        self.store = StateStore(
            settings.db_path,
            busy_timeout_ms=settings.store.busy_timeout_ms,
            retry_policy=RetryPolicy(
                attempts=settings.store.retry_attempts,
                base_delay_seconds=settings.store.retry_base_delay_seconds,
            ),
            clock=clock,
        )
        self.sessions = SessionRegistry(
            self.store,
            clock=clock,
            healthy_within_seconds=settings.health.heartbeat_healthy_seconds,
            degraded_within_seconds=settings.health.heartbeat_degraded_seconds,
        )
        self.claims = IssueClaimRegistry(self.store, clock=clock)
        self.reviews = ReviewQueue(
            self.store,
            claim_timeout_seconds=settings.review.claim_timeout_seconds,
            retention_days=settings.review.retention_days,
            clock=clock,
        )
        self.refinement = RefinementLoop(
            self.store,
            self.reviews,
            self.claims,
            artifacts_dir=settings.artifacts_dir,
            tracker=self.tracker,
            notifier=self.notifier,
            max_cycles=settings.review.max_cycles,
            clock=clock,
        )
        self.conflicts = ConflictQueue(self.store, self.claims, clock=clock)
        self.categories = CategoryScheduler(
            self.store,
            catalog=ALL_CATEGORIES,
            disabled=settings.categories.disabled,
            exhaustion_days=settings.categories.exhaustion_days,
            clock=clock,
        )
        self.monitor = LoopHealthMonitor(
            self.store,
            self.sessions,
            self.reviews,
            self.claims,
            self.categories,
            artifacts_dir=settings.artifacts_dir,
            notifier=self.notifier,
            stuck_threshold_minutes=settings.health.stuck_threshold_minutes,
            target_cycle_minutes=settings.health.target_cycle_minutes,
            coverage_window_days=settings.health.coverage_window_days,
            min_queue_depth=settings.health.min_queue_depth,
            max_queue_depth=settings.health.max_queue_depth,
            max_transitions_per_agent=settings.health.max_transitions_per_agent,
            clock=clock,
        )
        self.sessions.add_transition_observer(self.monitor.log_transition)
        self.lifecycle = AgentLifecycleController(
            self.sessions,
            db_path=settings.db_path,
            command_template=settings.lifecycle.agent_command,
            pause_mode=settings.lifecycle.pause_mode,
            stop_grace_seconds=settings.lifecycle.stop_grace_seconds,
            stop_all_timeout_seconds=settings.lifecycle.stop_all_timeout_seconds,
            startup_probe_seconds=settings.lifecycle.startup_probe_seconds,
            heartbeat_interval_seconds=settings.lifecycle.heartbeat_interval_seconds,
            clock=clock,
        )

    def init_schema(self) -> None:
        self.store.init_schema()

    def close(self) -> None:
        self.store.close()
