"""JSON mappings and store namespaces for orchestration records.

Decoders are strict: a missing key or an unknown enum value raises, which
lets the store apply the namespace corruption policy.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from agent_fleet.orchestration.models import (
    AgentSession,
    AgentStatus,
    CategoryUsage,
    ConflictItem,
    ConflictStatus,
    EscalationRecord,
    IssueClaim,
    QualityIssue,
    ReviewCycleState,
    ReviewFeedback,
    ReviewHistoryEntry,
    ReviewItem,
    ReviewStatus,
    StuckAgentAlert,
    UnmetCriterion,
)
from agent_fleet.storage.common import from_iso, to_iso, utc_now
from agent_fleet.storage.state_store import CorruptionPolicy, RecordCodec

QUEUE_KEY = "queue"


def _opt_iso(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


def _opt_from_iso(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"expected ISO timestamp string, got {type(value).__name__}")
    return from_iso(value)


def _req_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected integer, got {type(value).__name__}")
    return value


def _opt_int(value: Any) -> int | None:
    return None if value is None else _req_int(value)


def _req_str(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"expected string, got {type(value).__name__}")
    return value


def _opt_str(value: Any) -> str | None:
    return None if value is None else _req_str(value)


def _req_list(value: Any) -> list[Any]:
    if not isinstance(value, list):
        raise TypeError(f"expected list, got {type(value).__name__}")
    return value


# Sessions


def encode_session(session: AgentSession) -> dict[str, Any]:
    return {
        "agent_id": session.agent_id,
        "status": session.status.value,
        "last_heartbeat": to_iso(session.last_heartbeat),
        "current_project_number": session.current_project_number,
        "current_phase": session.current_phase,
        "branch_name": session.branch_name,
        "tasks_completed": session.tasks_completed,
        "current_task_description": session.current_task_description,
        "error_count": session.error_count,
        "last_error": session.last_error,
    }


def decode_session(data: dict[str, Any]) -> AgentSession:
    return AgentSession(
        agent_id=_req_str(data["agent_id"]),
        status=AgentStatus(data["status"]),
        last_heartbeat=from_iso(_req_str(data["last_heartbeat"])),
        current_project_number=_opt_int(data.get("current_project_number")),
        current_phase=_opt_str(data.get("current_phase")),
        branch_name=_opt_str(data.get("branch_name")),
        tasks_completed=_req_int(data.get("tasks_completed", 0)),
        current_task_description=_opt_str(data.get("current_task_description")),
        error_count=_req_int(data.get("error_count", 0)),
        last_error=_opt_str(data.get("last_error")),
    )


def default_session(agent_id: str) -> AgentSession:
    return AgentSession(agent_id=agent_id, status=AgentStatus.IDLE, last_heartbeat=utc_now())


# Review queue


def encode_review_item(item: ReviewItem) -> dict[str, Any]:
    return {
        "review_id": item.review_id,
        "project_number": item.project_number,
        "issue_number": item.issue_number,
        "branch_name": item.branch_name,
        "completed_by_agent_id": item.completed_by_agent_id,
        "status": item.status.value,
        "enqueued_at": to_iso(item.enqueued_at),
        "claimed_at": _opt_iso(item.claimed_at),
        "completed_at": _opt_iso(item.completed_at),
        "feedback": item.feedback,
    }


def decode_review_item(data: dict[str, Any]) -> ReviewItem:
    return ReviewItem(
        review_id=_req_str(data["review_id"]),
        project_number=_req_int(data["project_number"]),
        issue_number=_req_int(data["issue_number"]),
        branch_name=_req_str(data["branch_name"]),
        completed_by_agent_id=_req_str(data["completed_by_agent_id"]),
        status=ReviewStatus(data["status"]),
        enqueued_at=from_iso(_req_str(data["enqueued_at"])),
        claimed_at=_opt_from_iso(data.get("claimed_at")),
        completed_at=_opt_from_iso(data.get("completed_at")),
        feedback=_opt_str(data.get("feedback")),
    )


def _encode_review_queue(items: list[ReviewItem]) -> dict[str, Any]:
    return {"items": [encode_review_item(item) for item in items]}


def _decode_review_queue(data: dict[str, Any]) -> list[ReviewItem]:
    return [decode_review_item(entry) for entry in _req_list(data["items"])]


# Review cycles


def encode_feedback(feedback: ReviewFeedback) -> dict[str, Any]:
    return {
        "issue_number": feedback.issue_number,
        "unmet_criteria": [
            {"criterion": entry.criterion, "reason": entry.reason}
            for entry in feedback.unmet_criteria
        ],
        "quality_issues": [
            {"category": entry.category, "issue": entry.issue} for entry in feedback.quality_issues
        ],
        "requested_changes": list(feedback.requested_changes),
    }


def decode_feedback(data: dict[str, Any]) -> ReviewFeedback:
    return ReviewFeedback(
        issue_number=_req_int(data["issue_number"]),
        unmet_criteria=[
            UnmetCriterion(
                criterion=_req_str(entry["criterion"]),
                reason=_req_str(entry["reason"]),
            )
            for entry in _req_list(data.get("unmet_criteria", []))
        ],
        quality_issues=[
            QualityIssue(category=_req_str(entry["category"]), issue=_req_str(entry["issue"]))
            for entry in _req_list(data.get("quality_issues", []))
        ],
        requested_changes=[
            _req_str(entry) for entry in _req_list(data.get("requested_changes", []))
        ],
    )


def _encode_cycle_state(state: ReviewCycleState) -> dict[str, Any]:
    return {
        "issue_number": state.issue_number,
        "project_number": state.project_number,
        "cycle_count": state.cycle_count,
        "last_updated": to_iso(state.last_updated),
        "history": [
            {
                "cycle_number": entry.cycle_number,
                "review_id": entry.review_id,
                "reviewed_at": to_iso(entry.reviewed_at),
                "status": entry.status.value,
                "feedback": encode_feedback(entry.feedback) if entry.feedback else None,
            }
            for entry in state.history
        ],
    }


def _decode_cycle_state(data: dict[str, Any]) -> ReviewCycleState:
    history: list[ReviewHistoryEntry] = []
    for entry in _req_list(data["history"]):
        status = ReviewStatus(entry["status"])
        if status not in (ReviewStatus.APPROVED, ReviewStatus.REJECTED):
            raise ValueError(f"history entry has non-terminal status {status.value!r}")
        raw_feedback = entry.get("feedback")
        history.append(
            ReviewHistoryEntry(
                cycle_number=_req_int(entry["cycle_number"]),
                review_id=_req_str(entry["review_id"]),
                reviewed_at=from_iso(_req_str(entry["reviewed_at"])),
                status=status,
                feedback=decode_feedback(raw_feedback) if raw_feedback is not None else None,
            ),
        )
    return ReviewCycleState(
        issue_number=_req_int(data["issue_number"]),
        project_number=_req_int(data["project_number"]),
        cycle_count=_req_int(data["cycle_count"]),
        last_updated=from_iso(_req_str(data["last_updated"])),
        history=history,
    )


# Conflicts


def _encode_conflict(item: ConflictItem) -> dict[str, Any]:
    return {
        "conflict_id": item.conflict_id,
        "project_number": item.project_number,
        "issue_number": item.issue_number,
        "branch_name": item.branch_name,
        "conflicting_files": list(item.conflicting_files),
        "status": item.status.value,
        "created_at": to_iso(item.created_at),
        "agent_id": item.agent_id,
    }


def _decode_conflict(data: dict[str, Any]) -> ConflictItem:
    return ConflictItem(
        conflict_id=_req_str(data["conflict_id"]),
        project_number=_req_int(data["project_number"]),
        issue_number=_req_int(data["issue_number"]),
        branch_name=_req_str(data["branch_name"]),
        conflicting_files=[_req_str(path) for path in _req_list(data["conflicting_files"])],
        status=ConflictStatus(data["status"]),
        created_at=from_iso(_req_str(data["created_at"])),
        agent_id=_req_str(data["agent_id"]),
    )


# Categories


def _encode_category_usage(usage: CategoryUsage) -> dict[str, Any]:
    return {
        "category": usage.category,
        "last_used_at": _opt_iso(usage.last_used_at),
        "projects_generated": usage.projects_generated,
        "no_idea_at": _opt_iso(usage.no_idea_at),
    }


def _decode_category_usage(data: dict[str, Any]) -> CategoryUsage:
    return CategoryUsage(
        category=_req_str(data["category"]),
        last_used_at=_opt_from_iso(data.get("last_used_at")),
        projects_generated=_req_int(data.get("projects_generated", 0)),
        no_idea_at=_opt_from_iso(data.get("no_idea_at")),
    )


# Claims, escalations, alerts


def claim_key(project_number: int, issue_number: int) -> str:
    return f"{project_number}:{issue_number}"


def _encode_claim(claim: IssueClaim) -> dict[str, Any]:
    return {
        "project_number": claim.project_number,
        "issue_number": claim.issue_number,
        "agent_id": claim.agent_id,
        "claimed_at": to_iso(claim.claimed_at),
    }


def _decode_claim(data: dict[str, Any]) -> IssueClaim:
    return IssueClaim(
        project_number=_req_int(data["project_number"]),
        issue_number=_req_int(data["issue_number"]),
        agent_id=_req_str(data["agent_id"]),
        claimed_at=from_iso(_req_str(data["claimed_at"])),
    )


def _encode_escalation(record: EscalationRecord) -> dict[str, Any]:
    return {
        "issue_number": record.issue_number,
        "project_number": record.project_number,
        "cycle_count": record.cycle_count,
        "summary_path": record.summary_path,
        "escalated_at": to_iso(record.escalated_at),
        "acknowledged_at": _opt_iso(record.acknowledged_at),
    }


def _decode_escalation(data: dict[str, Any]) -> EscalationRecord:
    return EscalationRecord(
        issue_number=_req_int(data["issue_number"]),
        project_number=_req_int(data["project_number"]),
        cycle_count=_req_int(data["cycle_count"]),
        summary_path=_req_str(data["summary_path"]),
        escalated_at=from_iso(_req_str(data["escalated_at"])),
        acknowledged_at=_opt_from_iso(data.get("acknowledged_at")),
    )


def _encode_stuck_alert(alert: StuckAgentAlert) -> dict[str, Any]:
    return {
        "agent_id": alert.agent_id,
        "status": alert.status.value,
        "last_heartbeat": to_iso(alert.last_heartbeat),
        "first_detected_at": to_iso(alert.first_detected_at),
        "last_detected_at": to_iso(alert.last_detected_at),
        "stuck_minutes": alert.stuck_minutes,
    }


def _decode_stuck_alert(data: dict[str, Any]) -> StuckAgentAlert:
    stuck_minutes = data["stuck_minutes"]
    if isinstance(stuck_minutes, bool) or not isinstance(stuck_minutes, int | float):
        raise TypeError("stuck_minutes must be a number")
    return StuckAgentAlert(
        agent_id=_req_str(data["agent_id"]),
        status=AgentStatus(data["status"]),
        last_heartbeat=from_iso(_req_str(data["last_heartbeat"])),
        first_detected_at=from_iso(_req_str(data["first_detected_at"])),
        last_detected_at=from_iso(_req_str(data["last_detected_at"])),
        stuck_minutes=float(stuck_minutes),
    )


SESSIONS: RecordCodec[AgentSession] = RecordCodec(
    namespace="sessions",
    encode=encode_session,
    decode=decode_session,
    policy=CorruptionPolicy.HEAL,
    default=default_session,
)
REVIEW_QUEUE: RecordCodec[list[ReviewItem]] = RecordCodec(
    namespace="review_queue",
    encode=_encode_review_queue,
    decode=_decode_review_queue,
)
REVIEW_CYCLES: RecordCodec[ReviewCycleState] = RecordCodec(
    namespace="review_cycles",
    encode=_encode_cycle_state,
    decode=_decode_cycle_state,
)
CONFLICT_QUEUE: RecordCodec[list[ConflictItem]] = RecordCodec(
    namespace="conflict_queue",
    encode=lambda items: {"items": [_encode_conflict(item) for item in items]},
    decode=lambda data: [_decode_conflict(entry) for entry in _req_list(data["items"])],
)
CATEGORY_USAGE: RecordCodec[CategoryUsage] = RecordCodec(
    namespace="category_usage",
    encode=_encode_category_usage,
    decode=_decode_category_usage,
    policy=CorruptionPolicy.HEAL,
    default=lambda category: CategoryUsage(category=category),
)
ISSUE_CLAIMS: RecordCodec[IssueClaim] = RecordCodec(
    namespace="issue_claims",
    encode=_encode_claim,
    decode=_decode_claim,
)
ESCALATIONS: RecordCodec[EscalationRecord] = RecordCodec(
    namespace="escalations",
    encode=_encode_escalation,
    decode=_decode_escalation,
)
STUCK_ALERTS: RecordCodec[StuckAgentAlert] = RecordCodec(
    namespace="stuck_alerts",
    encode=_encode_stuck_alert,
    decode=_decode_stuck_alert,
)
