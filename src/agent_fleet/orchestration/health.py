"""Loop health: transitions, cycle times, stuck agents, queue depth, coverage."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agent_fleet.orchestration.categories import CategoryScheduler
from agent_fleet.orchestration.codecs import STUCK_ALERTS
from agent_fleet.orchestration.issue_claims import IssueClaimRegistry
from agent_fleet.orchestration.models import (
    AgentStatus,
    CategoryCoverage,
    CycleTimeMetrics,
    HealthReport,
    QueueDepth,
    StuckAgent,
    StuckAgentAlert,
)
from agent_fleet.orchestration.notifications import LoggingNotifier, Notifier
from agent_fleet.orchestration.review_queue import ReviewQueue
from agent_fleet.orchestration.sessions import SessionRegistry
from agent_fleet.storage.artifacts import write_text_atomic
from agent_fleet.storage.common import to_iso, utc_now
from agent_fleet.storage.state_store import StateStore
from agent_fleet.storage.transition_log import StateTransition, TransitionLog

logger = logging.getLogger(__name__)

STUCK_REPORT_NAME = "stuck-agents.md"
COVERAGE_TARGET_PERCENT = 80
HEALTHY_DEPTH_MIN = 1
HEALTHY_DEPTH_MAX = 15

_ACTIVE_STATUSES = frozenset({AgentStatus.WORKING, AgentStatus.REVIEWING})


def _state_name(state: AgentStatus | str) -> str:
    return AgentStatus(state).value


class LoopHealthMonitor:
    """Health signals polled by operators and ideation triggers."""

    def __init__(
        self,
        store: StateStore,
        sessions: SessionRegistry,
        review_queue: ReviewQueue,
        claims: IssueClaimRegistry,
        categories: CategoryScheduler,
        *,
        artifacts_dir: Path,
        notifier: Notifier | None = None,
        stuck_threshold_minutes: int = 30,
        target_cycle_minutes: int = 240,
        coverage_window_days: int = 30,
        min_queue_depth: int = 3,
        max_queue_depth: int = 10,
        max_transitions_per_agent: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._reviews = review_queue
        self._claims = claims
        self._categories = categories
        self._artifacts_dir = artifacts_dir
        self._notifier = notifier or LoggingNotifier()
        self._stuck_threshold = timedelta(minutes=stuck_threshold_minutes)
        self._stuck_threshold_minutes = stuck_threshold_minutes
        self._target_cycle_minutes = target_cycle_minutes
        self._coverage_window_days = coverage_window_days
        self._min_queue_depth = min_queue_depth
        self._max_queue_depth = max_queue_depth
        self._clock = clock
        self.transitions = TransitionLog(
            store,
            max_per_agent=max_transitions_per_agent,
            clock=clock,
        )

    def log_transition(
        self,
        agent_id: str,
        from_state: AgentStatus | str,
        to_state: AgentStatus | str,
        project_number: int | None = None,
    ) -> StateTransition:
        transition = self.transitions.append(
            agent_id=agent_id,
            from_state=_state_name(from_state),
            to_state=_state_name(to_state),
            project_number=project_number,
        )
        logger.debug(
            "Transition logged for %s: %s -> %s",
            agent_id,
            transition.from_state,
            transition.to_state,
        )
        return transition

    def measure_cycle_time(self, agent_id: str) -> CycleTimeMetrics:
        """Cycle = time between consecutive entries into ``working``.

        Time spent ``paused`` inside a cycle is not counted.
        """

        cycles: list[float] = []
        cycle_start: datetime | None = None
        paused_since: datetime | None = None
        paused_total = timedelta()
        for transition in self.transitions.list(agent_id=agent_id):
            if paused_since is not None and transition.from_state == AgentStatus.PAUSED.value:
                paused_total += transition.timestamp - paused_since
                paused_since = None
            if transition.to_state == AgentStatus.PAUSED.value:
                paused_since = transition.timestamp
            if transition.to_state != AgentStatus.WORKING.value:
                continue
            if cycle_start is not None:
                elapsed = transition.timestamp - cycle_start - paused_total
                cycles.append(max(elapsed.total_seconds(), 0.0) / 60)
            cycle_start = transition.timestamp
            paused_total = timedelta()

        return CycleTimeMetrics(
            agent_id=agent_id,
            cycles_completed=len(cycles),
            last_cycle_minutes=cycles[-1] if cycles else None,
            average_cycle_minutes=sum(cycles) / len(cycles) if cycles else None,
        )

    def detect_stuck_agents(self) -> list[StuckAgent]:
        """Agents without a heartbeat for longer than the stuck threshold.

        Each detection is persisted as a ``StuckAgentAlert`` and summarised in
        the stuck-agents report; newly stuck agents also trigger a notification.
        """

        now = self._clock()
        stuck: list[StuckAgent] = []
        for session in self._sessions.list():
            silence = now - session.last_heartbeat
            if silence <= self._stuck_threshold:
                continue
            stuck_minutes = round(silence.total_seconds() / 60, 1)
            stuck.append(
                StuckAgent(
                    agent_id=session.agent_id,
                    current_status=session.status,
                    stuck_minutes=stuck_minutes,
                    last_heartbeat=session.last_heartbeat,
                ),
            )
            logger.warning(
                "Stuck agent detected: %s in %s for %.0f minutes",
                session.agent_id,
                session.status.value,
                stuck_minutes,
            )

        if not stuck:
            return stuck

        new_alerts = [agent for agent in stuck if self._record_alert(agent, now)]
        report_path = write_text_atomic(
            self._artifacts_dir / STUCK_REPORT_NAME,
            self._render_stuck_report(stuck, now),
        )
        if new_alerts:
            names = ", ".join(agent.agent_id for agent in new_alerts)
            self._notifier.warn(
                "Stuck agents",
                f"{len(new_alerts)} agent(s) without heartbeat for > "
                f"{self._stuck_threshold_minutes} minutes: {names}",
                artifact=report_path,
            )
        return stuck

    def list_stuck_alerts(self) -> list[StuckAgentAlert]:
        alerts = [alert for _, alert in self._store.list(STUCK_ALERTS)]
        return sorted(alerts, key=lambda alert: alert.last_detected_at, reverse=True)

    def queue_depth(self) -> QueueDepth:
        stats = self._reviews.stats()
        return QueueDepth(
            project_queue_depth=len(self._claims.list_active()),
            review_queue_depth=stats.pending + stats.in_review,
        )

    def should_prioritize_ideation(self) -> bool:
        return self.queue_depth().project_queue_depth < self._min_queue_depth

    def should_pause_ideation(self) -> bool:
        return self.queue_depth().project_queue_depth > self._max_queue_depth

    def category_coverage(self) -> CategoryCoverage:
        """Enabled categories used within the rolling coverage window."""

        cutoff = self._clock() - timedelta(days=self._coverage_window_days)
        used: list[str] = []
        unused: list[str] = []
        for stat in self._categories.usage_stats().categories:
            if not stat.enabled:
                continue
            if stat.last_used_at is not None and stat.last_used_at >= cutoff:
                used.append(stat.category)
            else:
                unused.append(stat.category)
        total = len(used) + len(unused)
        return CategoryCoverage(
            window_days=self._coverage_window_days,
            used=used,
            unused=unused,
            coverage_percent=round(len(used) / total * 100) if total else 0,
        )

    def validate_health(self) -> HealthReport:
        """Combine every signal into one snapshot with recommendations."""

        sessions = self._sessions.list()
        stuck = self.detect_stuck_agents()
        depth = self.queue_depth()
        coverage = self.category_coverage()
        timed_out = len(self._reviews.list_timed_out())

        averages = [
            metrics.average_cycle_minutes
            for metrics in (self.measure_cycle_time(session.agent_id) for session in sessions)
            if metrics.average_cycle_minutes is not None
        ]
        average_cycle = sum(averages) / len(averages) if averages else None
        active_agents = sum(1 for session in sessions if session.status in _ACTIVE_STATUSES)
        idle_agents = sum(1 for session in sessions if session.status == AgentStatus.IDLE)

        recommendations: list[str] = []
        if stuck:
            recommendations.append(
                f"{len(stuck)} agent(s) stuck for > {self._stuck_threshold_minutes} minutes. "
                "Consider manual intervention.",
            )
        if depth.project_queue_depth < self._min_queue_depth:
            recommendations.append(
                f"Project queue depth low (< {self._min_queue_depth}). "
                "Prioritize ideation to maintain work pipeline.",
            )
        if depth.project_queue_depth > self._max_queue_depth:
            recommendations.append(
                f"Project queue depth high (> {self._max_queue_depth}). "
                "Pause ideation and focus on execution.",
            )
        if average_cycle is not None and average_cycle > self._target_cycle_minutes:
            recommendations.append(
                f"Average cycle time ({round(average_cycle)} min) exceeds target "
                f"({self._target_cycle_minutes} min). Review agent efficiency.",
            )
        if (
            idle_agents > active_agents
            and depth.project_queue_depth == 0
            and depth.review_queue_depth == 0
        ):
            recommendations.append(
                "Multiple idle agents with empty queues. Trigger ideation to generate new work.",
            )
        if timed_out:
            recommendations.append(
                f"{timed_out} review claim(s) timed out. Reclaim or escalate them.",
            )
        if coverage.coverage_percent < COVERAGE_TARGET_PERCENT:
            recommendations.append(
                f"Category coverage low ({coverage.coverage_percent}%). "
                f"{len(coverage.unused)} categories unused in last "
                f"{coverage.window_days} days.",
            )

        healthy = (
            not stuck
            and HEALTHY_DEPTH_MIN <= depth.project_queue_depth <= HEALTHY_DEPTH_MAX
            and (average_cycle or 0.0) <= self._target_cycle_minutes
        )
        if not healthy:
            logger.warning("Loop health degraded: %s", "; ".join(recommendations) or "no details")
        return HealthReport(
            healthy=healthy,
            checked_at=self._clock(),
            stuck_agents=stuck,
            queue_depth=depth,
            average_cycle_minutes=average_cycle,
            coverage=coverage,
            timed_out_reviews=timed_out,
            idle_agents=idle_agents,
            recommendations=recommendations,
        )

    def _record_alert(self, agent: StuckAgent, now: datetime) -> bool:
        """Upsert the agent's alert; True when this is a new stuck episode."""

        def _upsert(current: StuckAgentAlert | None) -> tuple[Any, bool]:
            if current is not None and current.last_heartbeat == agent.last_heartbeat:
                updated = replace(
                    current,
                    status=agent.current_status,
                    last_detected_at=now,
                    stuck_minutes=agent.stuck_minutes,
                )
                return updated, False
            alert = StuckAgentAlert(
                agent_id=agent.agent_id,
                status=agent.current_status,
                last_heartbeat=agent.last_heartbeat,
                first_detected_at=now,
                last_detected_at=now,
                stuck_minutes=agent.stuck_minutes,
            )
            return alert, True

        return self._store.mutate(STUCK_ALERTS, agent.agent_id, _upsert)

    def _render_stuck_report(self, stuck: list[StuckAgent], now: datetime) -> str:
        lines = [
            "# Stuck Agents Report",
            "",
            f"**Checked At:** {to_iso(now)}",
            f"**Threshold:** {self._stuck_threshold_minutes} minutes without heartbeat",
            "",
            "| Agent | Status | Stuck (min) | Last Heartbeat |",
            "| --- | --- | --- | --- |",
        ]
        lines.extend(
            f"| {agent.agent_id} | {agent.current_status.value} | {agent.stuck_minutes:.0f} "
            f"| {to_iso(agent.last_heartbeat)} |"
            for agent in stuck
        )
        lines.append("")
        return "\n".join(lines)
