"""Append-only per-agent state transition log."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from agent_fleet.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from agent_fleet.storage.sqlmodel_models import AgentTransition
from agent_fleet.storage.state_store import StateStore

MAX_TRANSITIONS_PER_AGENT = 1000


@dataclass(slots=True)
class StateTransition:
    agent_id: str
    from_state: str
    to_state: str
    timestamp: datetime
    project_number: int | None = None


class TransitionLog:
    """Rows live in ``agent_transitions``; each agent keeps its newest entries only."""

    def __init__(
        self,
        store: StateStore,
        *,
        max_per_agent: int = MAX_TRANSITIONS_PER_AGENT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._engine = store.engine
        self._max_per_agent = max_per_agent
        self._clock = clock

    def append(
        self,
        *,
        agent_id: str,
        from_state: str,
        to_state: str,
        project_number: int | None = None,
        timestamp: datetime | None = None,
    ) -> StateTransition:
        created_at = timestamp or self._clock()
        with Session(self._engine) as session:
            session.add(
                AgentTransition(
                    agent_id=agent_id,
                    from_state=from_state,
                    to_state=to_state,
                    project_number=project_number,
                    created_at=to_db_datetime(created_at),
                ),
            )
            session.flush()
            overflow = session.exec(
                select(AgentTransition.id)
                .where(AgentTransition.agent_id == agent_id)
                .order_by(col(AgentTransition.created_at).desc(), col(AgentTransition.id).desc())
                .offset(self._max_per_agent),
            ).all()
            if overflow:
                session.exec(
                    sa_delete(AgentTransition).where(col(AgentTransition.id).in_(list(overflow))),
                )
            session.commit()
        return StateTransition(
            agent_id=agent_id,
            from_state=from_state,
            to_state=to_state,
            timestamp=to_utc_aware_datetime(created_at),
            project_number=project_number,
        )

    def list(
        self,
        *,
        agent_id: str | None = None,
        since: datetime | None = None,
    ) -> list[StateTransition]:
        """Transitions oldest-first, optionally for one agent and/or after ``since``."""

        statement = select(AgentTransition)
        if agent_id is not None:
            statement = statement.where(AgentTransition.agent_id == agent_id)
        if since is not None:
            statement = statement.where(
                col(AgentTransition.created_at) >= to_db_datetime(since),
            )
        statement = statement.order_by(
            col(AgentTransition.created_at).asc(),
            col(AgentTransition.id).asc(),
        )
        with Session(self._engine) as session:
            return [
                StateTransition(
                    agent_id=row.agent_id,
                    from_state=row.from_state,
                    to_state=row.to_state,
                    timestamp=to_utc_aware_datetime(row.created_at),
                    project_number=row.project_number,
                )
                for row in session.exec(statement).all()
            ]

    def count(self, agent_id: str) -> int:
        with Session(self._engine) as session:
            return len(
                session.exec(
                    select(AgentTransition.id).where(AgentTransition.agent_id == agent_id),
                ).all(),
            )
