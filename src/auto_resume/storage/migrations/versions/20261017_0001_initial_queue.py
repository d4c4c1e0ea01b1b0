"""Initial task queue and task event tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_tasks",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="3600"),
        sa.Column("clear_context", sa.Boolean(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_queue_tasks_task_id", "queue_tasks", ["task_id"], unique=True)
    op.create_index("ix_queue_tasks_status", "queue_tasks", ["status"])
    op.create_index("idx_queue_tasks_status_seq", "queue_tasks", ["status", "seq"])
    # Single active task: at most one row may be running at any time.
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_tasks_single_running
            ON queue_tasks (status)
            WHERE status = 'running'
            """,
        ),
    )

    op.create_table(
        "queue_task_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "task_id",
            sa.String(),
            sa.ForeignKey("queue_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_queue_task_events_event_type", "queue_task_events", ["event_type"])
    op.create_index(
        "idx_queue_task_events_task_time",
        "queue_task_events",
        ["task_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("queue_task_events")
    op.execute(sa.text("DROP INDEX IF EXISTS uq_queue_tasks_single_running"))
    op.drop_table("queue_tasks")
