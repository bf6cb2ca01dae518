"""SQLModel ORM tables for execution graph storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ExecutionGraphRecord(SQLModel, table=True):
    __tablename__ = "execution_graphs"  # type: ignore[bad-override]
    __table_args__ = (Index("uq_execution_graphs_task", "task_id", unique=True),)

    graph_id: str = Field(primary_key=True)
    task_id: str
    graph_version: int = Field(default=1)
    mode: str
    status: str | None = Field(default=None, index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    timed_out_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ExecutionGraphVersionRecord(SQLModel, table=True):
    __tablename__ = "execution_graph_versions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "graph_id",
            "graph_version",
            name="uq_execution_graph_versions_graph_version",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    graph_id: str = Field(
        sa_column=Column(
            ForeignKey("execution_graphs.graph_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    graph_version: int
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GraphEventRecord(SQLModel, table=True):
    __tablename__ = "graph_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_graph_events_graph_time", "graph_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    graph_id: str = Field(
        sa_column=Column(
            ForeignKey("execution_graphs.graph_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    node_id: str | None = Field(default=None, index=True)
    status_from: str | None = None
    status_to: str | None = None
    reason: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
