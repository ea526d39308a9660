"""Agent session registry and status state machine."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from agent_fleet.errors import InvalidTransitionError, NotFoundError
from agent_fleet.orchestration.codecs import SESSIONS
from agent_fleet.orchestration.models import AgentSession, AgentStatus, HealthStatus
from agent_fleet.storage.common import utc_now
from agent_fleet.storage.state_store import NO_CHANGE, StateStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.IDLE: frozenset({AgentStatus.WORKING, AgentStatus.PAUSED, AgentStatus.FAILED}),
    AgentStatus.WORKING: frozenset(
        {
            AgentStatus.REVIEWING,
            AgentStatus.IDEATING,
            AgentStatus.IDLE,
            AgentStatus.PAUSED,
            AgentStatus.FAILED,
        },
    ),
    AgentStatus.REVIEWING: frozenset({AgentStatus.IDLE, AgentStatus.PAUSED, AgentStatus.FAILED}),
    AgentStatus.IDEATING: frozenset({AgentStatus.IDLE, AgentStatus.PAUSED, AgentStatus.FAILED}),
    AgentStatus.PAUSED: frozenset({AgentStatus.IDLE, AgentStatus.FAILED}),
    AgentStatus.FAILED: frozenset({AgentStatus.IDLE}),
}

_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "current_project_number",
        "current_phase",
        "branch_name",
        "tasks_completed",
        "current_task_description",
        "error_count",
        "last_error",
    },
)

_ASSIGNMENT_RESET: dict[str, Any] = {
    "current_project_number": None,
    "current_phase": None,
    "branch_name": None,
    "current_task_description": None,
}

TransitionObserver = Callable[[str, AgentStatus, AgentStatus, int | None], None]
_Applied = tuple[AgentSession, tuple[AgentSession, AgentStatus]]


def can_transition(current: AgentStatus, target: AgentStatus) -> bool:
    """Same-status updates are heartbeats and always allowed."""

    return current == target or target in ALLOWED_TRANSITIONS[current]


class SessionRegistry:
    """CRUD over per-agent sessions with enforced status transitions."""

    def __init__(
        self,
        store: StateStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        healthy_within_seconds: int = 60,
        degraded_within_seconds: int = 120,
    ) -> None:
        self._store = store
        self._clock = clock
        self._healthy_within = timedelta(seconds=healthy_within_seconds)
        self._degraded_within = timedelta(seconds=degraded_within_seconds)
        self._observers: list[TransitionObserver] = []

    def add_transition_observer(self, observer: TransitionObserver) -> None:
        self._observers.append(observer)

    def create(self, agent_id: str) -> AgentSession:
        """Create an idle session; an existing session is returned untouched."""

        def _create(current: AgentSession | None) -> tuple[Any, AgentSession]:
            if current is not None:
                return NO_CHANGE, current
            session = AgentSession(
                agent_id=agent_id,
                status=AgentStatus.IDLE,
                last_heartbeat=self._clock(),
            )
            return session, session

        session = self._store.mutate(SESSIONS, agent_id, _create)
        logger.debug("Session ready for agent %s (status=%s)", agent_id, session.status.value)
        return session

    def read(self, agent_id: str) -> AgentSession | None:
        record = self._store.get(SESSIONS, agent_id)
        return record.value if record is not None else None

    def update(self, agent_id: str, /, **changes: Any) -> AgentSession:
        """Merge ``changes`` into the session and refresh its heartbeat.

        Raises ``NotFoundError`` for unknown agents and ``InvalidTransitionError``
        when ``status`` is not reachable from the stored status.
        """

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        if "status" in changes:
            changes["status"] = AgentStatus(changes["status"])

        def _apply(current: AgentSession | None) -> _Applied:
            if current is None:
                raise NotFoundError(message=f"Agent session not found: {agent_id}")
            target = changes.get("status", current.status)
            if not can_transition(current.status, target):
                raise InvalidTransitionError(
                    message=(
                        f"Agent {agent_id} cannot move from {current.status.value} "
                        f"to {target.value}"
                    ),
                )
            updated = replace(
                current,
                **changes,
                last_heartbeat=self._next_heartbeat(current.last_heartbeat),
            )
            return updated, (updated, current.status)

        updated, previous_status = self._store.mutate(SESSIONS, agent_id, _apply)
        if updated.status != previous_status:
            logger.info(
                "Agent %s: %s -> %s",
                agent_id,
                previous_status.value,
                updated.status.value,
            )
            self._notify(agent_id, previous_status, updated.status, updated.current_project_number)
        return updated

    def heartbeat(self, agent_id: str) -> AgentSession:
        return self.update(agent_id)

    def record_error(
        self,
        agent_id: str,
        message: str,
        *,
        status: AgentStatus | None = AgentStatus.FAILED,
    ) -> AgentSession:
        """Increment ``error_count`` and store ``message`` as ``last_error``."""

        def _apply(current: AgentSession | None) -> _Applied:
            if current is None:
                raise NotFoundError(message=f"Agent session not found: {agent_id}")
            target = status if status is not None else current.status
            if not can_transition(current.status, target):
                raise InvalidTransitionError(
                    message=(
                        f"Agent {agent_id} cannot move from {current.status.value} "
                        f"to {target.value}"
                    ),
                )
            updated = replace(
                current,
                status=target,
                error_count=current.error_count + 1,
                last_error=message,
                last_heartbeat=self._next_heartbeat(current.last_heartbeat),
            )
            return updated, (updated, current.status)

        updated, previous_status = self._store.mutate(SESSIONS, agent_id, _apply)
        logger.warning(
            "Agent %s error #%d: %s",
            agent_id,
            updated.error_count,
            message,
        )
        if updated.status != previous_status:
            self._notify(agent_id, previous_status, updated.status, updated.current_project_number)
        return updated

    def reset(self, agent_id: str) -> AgentSession:
        """Bring an agent back to a clean idle session, creating it if needed."""

        self.create(agent_id)
        return self.update(agent_id, status=AgentStatus.IDLE, **_ASSIGNMENT_RESET)

    def delete(self, agent_id: str) -> bool:
        deleted = self._store.delete(SESSIONS, agent_id)
        if deleted:
            logger.info("Deleted session for agent %s", agent_id)
        return deleted

    def list(self) -> list[AgentSession]:
        return [session for _, session in self._store.list(SESSIONS)]

    def health_status(self, agent_id: str) -> HealthStatus:
        session = self.read(agent_id)
        if session is None:
            return HealthStatus.UNRESPONSIVE
        age = self._clock() - session.last_heartbeat
        if age < self._healthy_within:
            return HealthStatus.HEALTHY
        if age < self._degraded_within:
            return HealthStatus.DEGRADED
        return HealthStatus.UNRESPONSIVE

    def _next_heartbeat(self, previous: datetime) -> datetime:
        now = self._clock()
        if now <= previous:
            return previous + timedelta(microseconds=1)
        return now

    def _notify(
        self,
        agent_id: str,
        from_state: AgentStatus,
        to_state: AgentStatus,
        project_number: int | None,
    ) -> None:
        for observer in self._observers:
            try:
                observer(agent_id, from_state, to_state, project_number)
            except Exception as error:  # noqa: BLE001
                logger.error(
                    "Transition observer failed for agent %s (%s -> %s): %s",
                    agent_id,
                    from_state.value,
                    to_state.value,
                    error,
                )
