"""Domain models for agent sessions, queues and health signals."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AgentStatus(str, Enum):
    """Agent session states."""

    IDLE = "idle"
    WORKING = "working"
    REVIEWING = "reviewing"
    IDEATING = "ideating"
    PAUSED = "paused"
    FAILED = "failed"


class HealthStatus(str, Enum):
    """Heartbeat-derived liveness band."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNRESPONSIVE = "unresponsive"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"


ACTIVE_REVIEW_STATUSES = frozenset({ReviewStatus.PENDING, ReviewStatus.IN_REVIEW})
TERMINAL_REVIEW_STATUSES = frozenset({ReviewStatus.APPROVED, ReviewStatus.REJECTED})


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


@dataclass(slots=True)
class AgentSession:
    """Persistent per-agent state."""

    agent_id: str
    status: AgentStatus
    last_heartbeat: datetime
    current_project_number: int | None = None
    current_phase: str | None = None
    branch_name: str | None = None
    tasks_completed: int = 0
    current_task_description: str | None = None
    error_count: int = 0
    last_error: str | None = None


@dataclass(slots=True)
class ReviewItem:
    """Completed unit of work waiting for (or past) review."""

    review_id: str
    project_number: int
    issue_number: int
    branch_name: str
    completed_by_agent_id: str
    status: ReviewStatus
    enqueued_at: datetime
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    feedback: str | None = None


@dataclass(slots=True)
class UnmetCriterion:
    criterion: str
    reason: str


@dataclass(slots=True)
class QualityIssue:
    category: str
    issue: str


@dataclass(slots=True)
class ReviewFeedback:
    """Structured reviewer verdict used to render feedback comments."""

    issue_number: int
    unmet_criteria: list[UnmetCriterion] = field(default_factory=list)
    quality_issues: list[QualityIssue] = field(default_factory=list)
    requested_changes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReviewHistoryEntry:
    cycle_number: int
    review_id: str
    reviewed_at: datetime
    status: ReviewStatus
    feedback: ReviewFeedback | None = None


@dataclass(slots=True)
class ReviewCycleState:
    """Refinement progress for one issue."""

    issue_number: int
    project_number: int
    cycle_count: int
    last_updated: datetime
    history: list[ReviewHistoryEntry] = field(default_factory=list)


@dataclass(slots=True)
class RejectionOutcome:
    """What ``handle_rejection`` did with a rejected review."""

    issue_number: int
    cycle_count: int
    escalated: bool
    requeued: bool
    feedback_markdown: str
    feedback_path: str | None = None
    escalation: EscalationRecord | None = None


@dataclass(slots=True)
class EscalationRecord:
    issue_number: int
    project_number: int
    cycle_count: int
    summary_path: str
    escalated_at: datetime
    acknowledged_at: datetime | None = None


@dataclass(slots=True)
class ConflictItem:
    """Merge conflict awaiting operator intervention."""

    conflict_id: str
    project_number: int
    issue_number: int
    branch_name: str
    conflicting_files: list[str]
    status: ConflictStatus
    created_at: datetime
    agent_id: str


@dataclass(slots=True)
class IssueClaim:
    """Exclusive right of one agent to execute one issue."""

    project_number: int
    issue_number: int
    agent_id: str
    claimed_at: datetime


@dataclass(slots=True)
class CategoryUsage:
    category: str
    last_used_at: datetime | None = None
    projects_generated: int = 0
    no_idea_at: datetime | None = None


@dataclass(slots=True)
class CategoryStat:
    category: str
    enabled: bool
    exhausted: bool
    projects_generated: int
    last_used_at: datetime | None
    no_idea_at: datetime | None


@dataclass(slots=True)
class CategoryUsageStats:
    total: int
    enabled: int
    available: int
    exhausted: int
    categories: list[CategoryStat] = field(default_factory=list)


@dataclass(slots=True)
class CycleTimeMetrics:
    """Durations are minutes; ``None`` until a full cycle exists."""

    agent_id: str
    cycles_completed: int
    last_cycle_minutes: float | None
    average_cycle_minutes: float | None


@dataclass(slots=True)
class StuckAgent:
    agent_id: str
    current_status: AgentStatus
    stuck_minutes: float
    last_heartbeat: datetime


@dataclass(slots=True)
class StuckAgentAlert:
    """Durable record of an agent seen without heartbeat past the threshold."""

    agent_id: str
    status: AgentStatus
    last_heartbeat: datetime
    first_detected_at: datetime
    last_detected_at: datetime
    stuck_minutes: float


@dataclass(slots=True)
class QueueDepth:
    project_queue_depth: int
    review_queue_depth: int


@dataclass(slots=True)
class CategoryCoverage:
    window_days: int
    used: list[str]
    unused: list[str]
    coverage_percent: int


@dataclass(slots=True)
class ReviewQueueStats:
    total: int = 0
    pending: int = 0
    in_review: int = 0
    approved: int = 0
    rejected: int = 0
    timed_out: int = 0


@dataclass(slots=True)
class HealthReport:
    """Combined loop health snapshot."""

    healthy: bool
    checked_at: datetime
    stuck_agents: list[StuckAgent]
    queue_depth: QueueDepth
    average_cycle_minutes: float | None
    coverage: CategoryCoverage
    timed_out_reviews: int
    idle_agents: int
    recommendations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RunningAgentInfo:
    agent_id: str
    pid: int
    started_at: datetime
    uptime_seconds: float


@dataclass(slots=True)
class AgentStats:
    running: int
    sessions_by_status: dict[str, int]
    processes: list[RunningAgentInfo] = field(default_factory=list)
