"""CLI entrypoint for agent-fleet."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_fleet import __version__
from agent_fleet.errors import FleetError
from agent_fleet.orchestration.controllers import (
    AgentCommand,
    AgentsRunCommand,
    CategoryCommand,
    ClaimReleaseCommand,
    ConflictAddCommand,
    ConflictCommand,
    ConflictListCommand,
    EscalationAckCommand,
    EscalationListCommand,
    FleetCliController,
    FleetDbCommand,
    ReviewCommand,
    ReviewEnqueueCommand,
    ReviewListCommand,
    ReviewRejectCommand,
)
from agent_fleet.orchestration.models import ConflictStatus, ReviewStatus

click.rich_click.USE_MARKDOWN = True
FLEET_CONTROLLER = FleetCliController()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-fleet")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def agent_fleet(log_level: str) -> None:
    """Agent fleet orchestration CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_fleet.group()
def agents() -> None:
    """Agent session and process commands."""


@agents.command("list")
@db_path_option
def agents_list(db_path: Path | None) -> None:
    """List agent sessions with heartbeat health."""

    _run(lambda: FLEET_CONTROLLER.list_agents(FleetDbCommand(db_path=db_path)))


@agents.command("show")
@db_path_option
@click.argument("agent_id")
def agents_show(db_path: Path | None, agent_id: str) -> None:
    """Show one session, its cycle time and recent transitions."""

    _run(lambda: FLEET_CONTROLLER.show_agent(AgentCommand(db_path=db_path, agent_id=agent_id)))


@agents.command("reset")
@db_path_option
@click.argument("agent_id")
def agents_reset(db_path: Path | None, agent_id: str) -> None:
    """Return an agent to a clean idle session."""

    _run(lambda: FLEET_CONTROLLER.reset_agent(AgentCommand(db_path=db_path, agent_id=agent_id)))


@agents.command("run")
@db_path_option
@click.option(
    "--count",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of agents to start when no --agent-id is given.",
)
@click.option(
    "--agent-id",
    "agent_ids",
    multiple=True,
    help="Agent id to start. Can be repeated.",
)
@click.option(
    "--poll-interval",
    type=click.FloatRange(min=0.0),
    default=60.0,
    show_default=True,
    help="Seconds between health polls.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=0),
    default=None,
    help="Stop after this many polls (default: run until interrupted).",
)
def agents_run(
    db_path: Path | None,
    count: int,
    agent_ids: tuple[str, ...],
    poll_interval: float,
    max_polls: int | None,
) -> None:
    """Start agent workers and poll loop health until interrupted."""

    ids = agent_ids or tuple(f"agent-{index}" for index in range(1, count + 1))
    _run(
        lambda: FLEET_CONTROLLER.run_agents(
            AgentsRunCommand(
                db_path=db_path,
                agent_ids=ids,
                poll_interval_seconds=poll_interval,
                max_polls=max_polls,
            ),
        ),
    )


@agent_fleet.group()
def reviews() -> None:
    """Review queue commands."""


@reviews.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in ReviewStatus]),
    default=None,
    help="Only show reviews in this status.",
)
def reviews_list(db_path: Path | None, status: str | None) -> None:
    """List reviews, oldest first."""

    _run(lambda: FLEET_CONTROLLER.list_reviews(ReviewListCommand(db_path=db_path, status=status)))


@reviews.command("enqueue")
@db_path_option
@click.option("--project", "project_number", type=int, required=True, help="Project number.")
@click.option("--issue", "issue_number", type=int, required=True, help="Issue number.")
@click.option("--branch", "branch_name", required=True, help="Branch with the completed work.")
@click.option("--agent-id", required=True, help="Agent that completed the work.")
def reviews_enqueue(
    db_path: Path | None,
    project_number: int,
    issue_number: int,
    branch_name: str,
    agent_id: str,
) -> None:
    """Queue completed work for review."""

    _run(
        lambda: FLEET_CONTROLLER.enqueue_review(
            ReviewEnqueueCommand(
                db_path=db_path,
                project_number=project_number,
                issue_number=issue_number,
                branch_name=branch_name,
                agent_id=agent_id,
            ),
        ),
    )


@reviews.command("claim")
@db_path_option
@click.argument("review_id")
def reviews_claim(db_path: Path | None, review_id: str) -> None:
    """Claim a pending (or timed-out) review."""

    _run(
        lambda: FLEET_CONTROLLER.claim_review(
            ReviewCommand(db_path=db_path, review_id=review_id),
        ),
    )


@reviews.command("approve")
@db_path_option
@click.argument("review_id")
def reviews_approve(db_path: Path | None, review_id: str) -> None:
    """Approve a review and release the issue claim."""

    _run(
        lambda: FLEET_CONTROLLER.approve_review(
            ReviewCommand(db_path=db_path, review_id=review_id),
        ),
    )


@reviews.command("reject")
@db_path_option
@click.argument("review_id")
@click.option(
    "--unmet",
    multiple=True,
    help="Unmet acceptance criterion as 'criterion: reason'. Can be repeated.",
)
@click.option(
    "--quality",
    multiple=True,
    help="Quality issue as 'category: issue'. Can be repeated.",
)
@click.option("--change", "changes", multiple=True, help="Requested change. Can be repeated.")
def reviews_reject(
    db_path: Path | None,
    review_id: str,
    unmet: tuple[str, ...],
    quality: tuple[str, ...],
    changes: tuple[str, ...],
) -> None:
    """Reject a review; escalates once the cycle limit is reached."""

    _run(
        lambda: FLEET_CONTROLLER.reject_review(
            ReviewRejectCommand(
                db_path=db_path,
                review_id=review_id,
                unmet=unmet,
                quality=quality,
                changes=changes,
            ),
        ),
    )


@reviews.command("timed-out")
@db_path_option
def reviews_timed_out(db_path: Path | None) -> None:
    """List in-review items whose claim has expired."""

    _run(lambda: FLEET_CONTROLLER.timed_out_reviews(FleetDbCommand(db_path=db_path)))


@reviews.command("cleanup")
@db_path_option
def reviews_cleanup(db_path: Path | None) -> None:
    """Purge completed reviews past retention."""

    _run(lambda: FLEET_CONTROLLER.cleanup_reviews(FleetDbCommand(db_path=db_path)))


@agent_fleet.group()
def conflicts() -> None:
    """Merge conflict queue commands."""


@conflicts.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in ConflictStatus]),
    default=None,
    help="Only show conflicts in this status.",
)
def conflicts_list(db_path: Path | None, status: str | None) -> None:
    """List queued merge conflicts."""

    _run(
        lambda: FLEET_CONTROLLER.list_conflicts(
            ConflictListCommand(db_path=db_path, status=status),
        ),
    )


@conflicts.command("add")
@db_path_option
@click.option("--project", "project_number", type=int, required=True, help="Project number.")
@click.option("--issue", "issue_number", type=int, required=True, help="Issue number.")
@click.option("--branch", "branch_name", required=True, help="Conflicting branch.")
@click.option("--file", "files", multiple=True, required=True, help="Conflicting file path.")
@click.option("--agent-id", required=True, help="Agent that hit the conflict.")
def conflicts_add(  # noqa: PLR0913
    db_path: Path | None,
    project_number: int,
    issue_number: int,
    branch_name: str,
    files: tuple[str, ...],
    agent_id: str,
) -> None:
    """Record a merge conflict for operator attention."""

    _run(
        lambda: FLEET_CONTROLLER.add_conflict(
            ConflictAddCommand(
                db_path=db_path,
                project_number=project_number,
                issue_number=issue_number,
                branch_name=branch_name,
                files=files,
                agent_id=agent_id,
            ),
        ),
    )


@conflicts.command("resolve")
@db_path_option
@click.argument("conflict_id")
def conflicts_resolve(db_path: Path | None, conflict_id: str) -> None:
    """Drop a conflict that was fixed by hand."""

    _run(
        lambda: FLEET_CONTROLLER.resolve_conflict(
            ConflictCommand(db_path=db_path, conflict_id=conflict_id),
        ),
    )


@conflicts.command("abort")
@db_path_option
@click.argument("conflict_id")
def conflicts_abort(db_path: Path | None, conflict_id: str) -> None:
    """Drop a conflict and return its issue to the backlog."""

    _run(
        lambda: FLEET_CONTROLLER.abort_conflict(
            ConflictCommand(db_path=db_path, conflict_id=conflict_id),
        ),
    )


@agent_fleet.group()
def categories() -> None:
    """Ideation category commands."""


@categories.command("next")
@db_path_option
def categories_next(db_path: Path | None) -> None:
    """Show the next category to ideate on."""

    _run(lambda: FLEET_CONTROLLER.next_category(FleetDbCommand(db_path=db_path)))


@categories.command("used")
@db_path_option
@click.argument("category")
def categories_used(db_path: Path | None, category: str) -> None:
    """Record that a project was generated in CATEGORY."""

    _run(
        lambda: FLEET_CONTROLLER.mark_category_used(
            CategoryCommand(db_path=db_path, category=category),
        ),
    )


@categories.command("exhausted")
@db_path_option
@click.argument("category")
def categories_exhausted(db_path: Path | None, category: str) -> None:
    """Mark CATEGORY as out of ideas for the exhaustion window."""

    _run(
        lambda: FLEET_CONTROLLER.mark_category_exhausted(
            CategoryCommand(db_path=db_path, category=category),
        ),
    )


@categories.command("stats")
@db_path_option
def categories_stats(db_path: Path | None) -> None:
    """Show usage per category."""

    _run(lambda: FLEET_CONTROLLER.category_stats(FleetDbCommand(db_path=db_path)))


@categories.command("cleanup")
@db_path_option
def categories_cleanup(db_path: Path | None) -> None:
    """Clear expired exhaustion marks."""

    _run(lambda: FLEET_CONTROLLER.cleanup_categories(FleetDbCommand(db_path=db_path)))


@agent_fleet.group()
def claims() -> None:
    """Issue claim commands."""


@claims.command("list")
@db_path_option
def claims_list(db_path: Path | None) -> None:
    """List active issue claims."""

    _run(lambda: FLEET_CONTROLLER.list_claims(FleetDbCommand(db_path=db_path)))


@claims.command("release")
@db_path_option
@click.option("--project", "project_number", type=int, required=True, help="Project number.")
@click.option("--issue", "issue_number", type=int, required=True, help="Issue number.")
def claims_release(db_path: Path | None, project_number: int, issue_number: int) -> None:
    """Release an issue claim back to the backlog."""

    _run(
        lambda: FLEET_CONTROLLER.release_claim(
            ClaimReleaseCommand(
                db_path=db_path,
                project_number=project_number,
                issue_number=issue_number,
            ),
        ),
    )


@agent_fleet.command("health")
@db_path_option
def health(db_path: Path | None) -> None:
    """Loop health snapshot with recommendations."""

    _run(lambda: FLEET_CONTROLLER.health(FleetDbCommand(db_path=db_path)))


@agent_fleet.group()
def escalations() -> None:
    """Review escalation commands."""


@escalations.command("list")
@db_path_option
@click.option("--all", "include_acknowledged", is_flag=True, help="Include acknowledged ones.")
def escalations_list(db_path: Path | None, include_acknowledged: bool) -> None:
    """List escalated issues awaiting a human."""

    _run(
        lambda: FLEET_CONTROLLER.list_escalations(
            EscalationListCommand(db_path=db_path, include_acknowledged=include_acknowledged),
        ),
    )


@escalations.command("ack")
@db_path_option
@click.argument("issue_number", type=int)
def escalations_ack(db_path: Path | None, issue_number: int) -> None:
    """Acknowledge the escalation for ISSUE_NUMBER."""

    _run(
        lambda: FLEET_CONTROLLER.acknowledge_escalation(
            EscalationAckCommand(db_path=db_path, issue_number=issue_number),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except FleetError as error:
        raise click.ClickException(f"{error} [{error.code}]") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_fleet()
