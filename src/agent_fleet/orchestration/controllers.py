"""Controllers for fleet CLI commands."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_fleet.config import Settings
from agent_fleet.orchestration.models import (
    AgentSession,
    ConflictItem,
    ConflictStatus,
    HealthReport,
    QualityIssue,
    ReviewFeedback,
    ReviewItem,
    ReviewStatus,
    UnmetCriterion,
)
from agent_fleet.orchestration.services import FleetServices
from agent_fleet.storage.common import to_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FleetDbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class AgentCommand:
    """CLI input for single-agent operations."""

    db_path: Path | None
    agent_id: str


@dataclass(slots=True)
class AgentsRunCommand:
    """CLI input for running a set of agent workers."""

    db_path: Path | None
    agent_ids: tuple[str, ...]
    poll_interval_seconds: float
    max_polls: int | None = None


@dataclass(slots=True)
class ReviewListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class ReviewEnqueueCommand:
    db_path: Path | None
    project_number: int
    issue_number: int
    branch_name: str
    agent_id: str


@dataclass(slots=True)
class ReviewCommand:
    """CLI input for claim/approve of one review."""

    db_path: Path | None
    review_id: str


@dataclass(slots=True)
class ReviewRejectCommand:
    """CLI input for a rejection with structured feedback.

    ``unmet`` entries are ``criterion: reason`` and ``quality`` entries are
    ``category: issue``.
    """

    db_path: Path | None
    review_id: str
    unmet: tuple[str, ...]
    quality: tuple[str, ...]
    changes: tuple[str, ...]


@dataclass(slots=True)
class ConflictListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class ConflictAddCommand:
    db_path: Path | None
    project_number: int
    issue_number: int
    branch_name: str
    files: tuple[str, ...]
    agent_id: str


@dataclass(slots=True)
class ConflictCommand:
    db_path: Path | None
    conflict_id: str


@dataclass(slots=True)
class CategoryCommand:
    db_path: Path | None
    category: str


@dataclass(slots=True)
class ClaimReleaseCommand:
    db_path: Path | None
    project_number: int
    issue_number: int


@dataclass(slots=True)
class EscalationListCommand:
    db_path: Path | None
    include_acknowledged: bool


@dataclass(slots=True)
class EscalationAckCommand:
    db_path: Path | None
    issue_number: int


class FleetCliController:
    """Coordinates fleet inspection and operator CLI operations.

    Domain errors (``FleetError``) propagate to the CLI layer, which turns
    them into a non-zero exit.
    """

    def list_agents(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            sessions = services.sessions.list()
            health = {
                session.agent_id: services.sessions.health_status(session.agent_id)
                for session in sessions
            }

        lines = [f"Agents: {len(sessions)}"]
        for session in sessions:
            lines.append(
                f"  {session.agent_id} status={session.status.value} "
                f"health={health[session.agent_id].value} "
                f"project={_or_dash(session.current_project_number)} "
                f"tasks={session.tasks_completed} errors={session.error_count} "
                f"heartbeat={to_iso(session.last_heartbeat)}",
            )
        return lines

    def show_agent(self, command: AgentCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            session = services.sessions.read(command.agent_id)
            if session is None:
                return [f"Agent not found: {command.agent_id}"]
            health = services.sessions.health_status(command.agent_id)
            metrics = services.monitor.measure_cycle_time(command.agent_id)
            transitions = services.monitor.transitions.list(agent_id=command.agent_id)

        lines = [
            *_session_lines(session),
            f"Health: {health.value}",
            f"Cycles completed: {metrics.cycles_completed}",
            f"Average cycle (min): {_minutes(metrics.average_cycle_minutes)}",
            f"Transitions: {len(transitions)}",
        ]
        for transition in transitions[-10:]:
            lines.append(
                f"  {to_iso(transition.timestamp)} "
                f"{transition.from_state} -> {transition.to_state}",
            )
        return lines

    def reset_agent(self, command: AgentCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            session = services.sessions.reset(command.agent_id)
        return [f"Agent reset: {session.agent_id} status={session.status.value}"]

    def run_agents(self, command: AgentsRunCommand) -> list[str]:
        """Start workers and poll loop health until interrupted or ``max_polls`` is reached."""

        polls = 0
        with _services(_settings(command.db_path)) as services:
            lifecycle = services.lifecycle
            try:
                for agent_id in command.agent_ids:
                    pid = lifecycle.start(agent_id)
                    logger.info("Agent %s started (pid=%d)", agent_id, pid)
                while command.max_polls is None or polls < command.max_polls:
                    time.sleep(command.poll_interval_seconds)
                    polls += 1
                    report = services.monitor.validate_health()
                    logger.info(
                        "Poll %d: healthy=%s running=%d recommendations=%d",
                        polls,
                        report.healthy,
                        len(lifecycle.running_agents()),
                        len(report.recommendations),
                    )
            except KeyboardInterrupt:
                logger.info("Interrupted, stopping agents")
            finally:
                stopped = lifecycle.stop_all()
            sessions = services.sessions.list()

        return [
            f"Agents run finished: started={len(command.agent_ids)} "
            f"stopped={len(stopped)} polls={polls}",
            *(
                f"  {session.agent_id} status={session.status.value} "
                f"errors={session.error_count} last_error={_or_dash(session.last_error)}"
                for session in sessions
                if session.agent_id in command.agent_ids
            ),
        ]

    def list_reviews(self, command: ReviewListCommand) -> list[str]:
        status = ReviewStatus(command.status) if command.status else None
        with _services(_settings(command.db_path)) as services:
            items = services.reviews.list()
            stats = services.reviews.stats()
        if status is not None:
            items = [item for item in items if item.status == status]

        lines = [
            f"Reviews: {len(items)} (pending={stats.pending} in_review={stats.in_review} "
            f"approved={stats.approved} rejected={stats.rejected} "
            f"timed_out={stats.timed_out})",
        ]
        lines.extend(_review_line(item) for item in items)
        return lines

    def enqueue_review(self, command: ReviewEnqueueCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            item = services.reviews.enqueue(
                command.project_number,
                command.issue_number,
                command.branch_name,
                command.agent_id,
            )
        return [f"Review enqueued: {_review_line(item).strip()}"]

    def claim_review(self, command: ReviewCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            item = services.reviews.claim(command.review_id)
        if item is None:
            return [f"Review not claimable: {command.review_id}"]
        return [f"Review claimed: {_review_line(item).strip()}"]

    def approve_review(self, command: ReviewCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            item = services.refinement.handle_approval(command.review_id)
        return [f"Review approved: {_review_line(item).strip()}"]

    def reject_review(self, command: ReviewRejectCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            review = services.reviews.get(command.review_id)
            if review is None:
                return [f"Review not found: {command.review_id}"]
            feedback = ReviewFeedback(
                issue_number=review.issue_number,
                unmet_criteria=[
                    UnmetCriterion(criterion=key, reason=value)
                    for key, value in map(_split_pair, command.unmet)
                ],
                quality_issues=[
                    QualityIssue(category=key, issue=value)
                    for key, value in map(_split_pair, command.quality)
                ],
                requested_changes=list(command.changes),
            )
            outcome = services.refinement.handle_rejection(command.review_id, feedback)

        lines = [
            f"Review rejected: issue={outcome.issue_number} "
            f"cycle={outcome.cycle_count}/{services.refinement.max_cycles} "
            f"requeued={outcome.requeued} escalated={outcome.escalated}",
        ]
        if outcome.feedback_path is not None:
            lines.append(f"Feedback: {outcome.feedback_path}")
        if outcome.escalation is not None:
            lines.append(f"Escalation summary: {outcome.escalation.summary_path}")
        return lines

    def timed_out_reviews(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            items = services.reviews.list_timed_out()
        return [f"Timed-out reviews: {len(items)}", *(_review_line(item) for item in items)]

    def cleanup_reviews(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            removed = services.reviews.cleanup_old()
        return [f"Reviews purged: {removed}"]

    def list_conflicts(self, command: ConflictListCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            if command.status:
                items = services.conflicts.list_by_status(ConflictStatus(command.status))
            else:
                items = services.conflicts.list()
        return [f"Conflicts: {len(items)}", *(_conflict_line(item) for item in items)]

    def add_conflict(self, command: ConflictAddCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            item = services.conflicts.add(
                command.project_number,
                command.issue_number,
                command.branch_name,
                command.files,
                command.agent_id,
            )
        return [f"Conflict added: {_conflict_line(item).strip()}"]

    def resolve_conflict(self, command: ConflictCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            item = services.conflicts.resolve(command.conflict_id)
        return [f"Conflict resolved: {item.conflict_id} issue={item.issue_number}"]

    def abort_conflict(self, command: ConflictCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            item = services.conflicts.abort(command.conflict_id)
        return [
            f"Conflict aborted: {item.conflict_id} "
            f"issue={item.project_number}/{item.issue_number} returned to backlog",
        ]

    def next_category(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            category = services.categories.next()
        if category is None:
            return ["No category available: all enabled categories are exhausted"]
        return [f"Next category: {category}"]

    def mark_category_used(self, command: CategoryCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            usage = services.categories.mark_used(command.category)
        return [f"Category used: {usage.category} projects={usage.projects_generated}"]

    def mark_category_exhausted(self, command: CategoryCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            usage = services.categories.mark_exhausted(command.category)
        return [f"Category exhausted: {usage.category} since={_iso(usage.no_idea_at)}"]

    def category_stats(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            stats = services.categories.usage_stats()

        lines = [
            f"Categories: total={stats.total} enabled={stats.enabled} "
            f"available={stats.available} exhausted={stats.exhausted}",
        ]
        for stat in stats.categories:
            flags = []
            if not stat.enabled:
                flags.append("disabled")
            if stat.exhausted:
                flags.append("exhausted")
            lines.append(
                f"  {stat.category} projects={stat.projects_generated} "
                f"last_used={_iso(stat.last_used_at)}"
                + (f" [{', '.join(flags)}]" if flags else ""),
            )
        return lines

    def cleanup_categories(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            cleared = services.categories.cleanup_expired()
        return [f"Expired exhaustions cleared: {cleared}"]

    def list_claims(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            claims = services.claims.list_active()
        lines = [f"Claims: {len(claims)}"]
        lines.extend(
            f"  {claim.project_number}/{claim.issue_number} agent={claim.agent_id} "
            f"claimed_at={to_iso(claim.claimed_at)}"
            for claim in claims
        )
        return lines

    def release_claim(self, command: ClaimReleaseCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            released = services.claims.release(command.project_number, command.issue_number)
        target = f"{command.project_number}/{command.issue_number}"
        if not released:
            return [f"Claim not found: {target}"]
        return [f"Claim released: {target}"]

    def health(self, command: FleetDbCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            report = services.monitor.validate_health()
        return _health_lines(report)

    def list_escalations(self, command: EscalationListCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            records = services.refinement.list_escalations(
                include_acknowledged=command.include_acknowledged,
            )
        lines = [f"Escalations: {len(records)}"]
        lines.extend(
            f"  issue={record.project_number}/{record.issue_number} "
            f"cycles={record.cycle_count} escalated_at={to_iso(record.escalated_at)} "
            f"acknowledged={'yes' if record.acknowledged_at else 'no'} "
            f"summary={record.summary_path}"
            for record in records
        )
        return lines

    def acknowledge_escalation(self, command: EscalationAckCommand) -> list[str]:
        with _services(_settings(command.db_path)) as services:
            record = services.refinement.acknowledge_escalation(command.issue_number)
        return [
            f"Escalation acknowledged: issue={record.issue_number} "
            f"at={_iso(record.acknowledged_at)}",
        ]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _services(settings: Settings) -> Iterator[FleetServices]:
    services = FleetServices(settings)
    services.init_schema()
    try:
        yield services
    finally:
        services.close()


def _split_pair(raw: str) -> tuple[str, str]:
    key, separator, value = raw.partition(":")
    if not separator or not key.strip() or not value.strip():
        raise ValueError(f"Expected 'name: detail', got {raw!r}")
    return key.strip(), value.strip()


def _session_lines(session: AgentSession) -> list[str]:
    return [
        f"Agent: {session.agent_id}",
        f"Status: {session.status.value}",
        f"Last heartbeat: {to_iso(session.last_heartbeat)}",
        f"Project: {_or_dash(session.current_project_number)}",
        f"Phase: {_or_dash(session.current_phase)}",
        f"Branch: {_or_dash(session.branch_name)}",
        f"Task: {_or_dash(session.current_task_description)}",
        f"Tasks completed: {session.tasks_completed}",
        f"Errors: {session.error_count}",
        f"Last error: {_or_dash(session.last_error)}",
    ]


def _review_line(item: ReviewItem) -> str:
    return (
        f"  {item.review_id} issue={item.project_number}/{item.issue_number} "
        f"branch={item.branch_name} agent={item.completed_by_agent_id} "
        f"status={item.status.value} enqueued_at={to_iso(item.enqueued_at)}"
    )


def _conflict_line(item: ConflictItem) -> str:
    return (
        f"  {item.conflict_id} issue={item.project_number}/{item.issue_number} "
        f"branch={item.branch_name} agent={item.agent_id} status={item.status.value} "
        f"files={','.join(item.conflicting_files)}"
    )


def _health_lines(report: HealthReport) -> list[str]:
    coverage = report.coverage
    lines = [
        f"Health: {'healthy' if report.healthy else 'degraded'} "
        f"(checked_at={to_iso(report.checked_at)})",
        f"Stuck agents: {len(report.stuck_agents)}",
        *(
            f"  {agent.agent_id} status={agent.current_status.value} "
            f"stuck_minutes={agent.stuck_minutes:.1f}"
            for agent in report.stuck_agents
        ),
        f"Project queue depth: {report.queue_depth.project_queue_depth}",
        f"Review queue depth: {report.queue_depth.review_queue_depth}",
        f"Average cycle (min): {_minutes(report.average_cycle_minutes)}",
        f"Category coverage: {coverage.coverage_percent}% "
        f"({len(coverage.used)}/{len(coverage.used) + len(coverage.unused)} "
        f"in {coverage.window_days} days)",
        f"Timed-out reviews: {report.timed_out_reviews}",
        f"Idle agents: {report.idle_agents}",
        f"Recommendations: {len(report.recommendations)}",
    ]
    lines.extend(f"  - {item}" for item in report.recommendations)
    return lines


def _minutes(value: float | None) -> str:
    return f"{value:.1f}" if value is not None else "-"


def _or_dash(value: object | None) -> str:
    return "-" if value is None else str(value)


def _iso(value: datetime | None) -> str:
    return to_iso(value) if value is not None else "-"
