"""SQLModel ORM tables for the supervised task queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class QueueTask(SQLModel, table=True):
    __tablename__ = "queue_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_tasks_status_seq", "status", "seq"),
        Index(
            "uq_queue_tasks_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
        {"sqlite_autoincrement": True},
    )

    seq: int | None = Field(default=None, primary_key=True)
    task_id: str | None = Field(default=None, unique=True, index=True)
    status: str = Field(index=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=3)
    timeout_seconds: int = Field(default=3600)
    clear_context: bool | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueTaskEvent(SQLModel, table=True):
    __tablename__ = "queue_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SupervisorLockRow(SQLModel, table=True):
    __tablename__ = "supervisor_locks"  # type: ignore[bad-override]

    lock_name: str = Field(primary_key=True)
    owner_id: str
    pid: int
    hostname: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    heartbeat_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
