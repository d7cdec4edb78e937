"""SQLModel ORM tables for the session store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class SyncSessionRow(SQLModel, table=True):
    __tablename__ = "sync_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    mode: str = Field(index=True)
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    total_tasks: int = 0
    resolution_failures: int = 0
    # Process running the session; target of `db-sync stop`.
    pid: int | None = None


class TaskOutcomeRow(SQLModel, table=True):
    __tablename__ = "task_outcomes"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_task_outcomes_session_task",
            "session_id",
            "source",
            "destination",
            "table_name",
            unique=True,
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sync_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    source: str = Field(index=True)
    destination: str
    # Empty string for whole-database tasks keeps the unique index effective.
    table_name: str = ""
    status: str = Field(index=True)
    duration_seconds: float
    attempts: int
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskErrorRow(SQLModel, table=True):
    __tablename__ = "task_errors"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_errors_session_stage", "session_id", "stage"),)

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sync_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    source: str = Field(index=True)
    destination: str
    table_name: str = ""
    stage: str
    attempt: int
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
