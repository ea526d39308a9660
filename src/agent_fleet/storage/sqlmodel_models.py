"""SQLModel ORM tables for fleet state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class StateRecord(SQLModel, table=True):
    __tablename__ = "state_records"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("namespace", "record_key", name="uq_state_records_namespace_key"),
    )

    id: int | None = Field(default=None, primary_key=True)
    namespace: str = Field(index=True)
    record_key: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    generation: int = Field(sa_column=Column(Integer, nullable=False, server_default="1"))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuarantinedRecord(SQLModel, table=True):
    __tablename__ = "quarantined_records"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    namespace: str = Field(index=True)
    record_key: str
    payload_raw: str = Field(sa_column=Column(Text, nullable=False))
    generation: int
    reason: str = Field(sa_column=Column(Text, nullable=False))
    quarantined_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentTransition(SQLModel, table=True):
    __tablename__ = "agent_transitions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_transitions_agent_time", "agent_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    agent_id: str = Field(index=True)
    from_state: str
    to_state: str = Field(index=True)
    project_number: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
