"""Persistent task queue repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from auto_resume.storage.alembic_runner import upgrade_head
from auto_resume.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from auto_resume.storage.sqlmodel_models import QueueTask, QueueTaskEvent
from auto_resume.supervisor.errors import AttemptsExhausted, Conflict, TaskNotFound
from auto_resume.supervisor.models import (
    TERMINAL_FAILURE_STATUSES,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)

logger = logging.getLogger(__name__)

TASK_ID_PREFIX = "task-"


def format_task_id(seq: int) -> str:
    return f"{TASK_ID_PREFIX}{seq:06d}"


class QueueRepository:
    """Queue persistence facade; every transition is a conditional update."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations; safe to call repeatedly."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def enqueue(self, payload: TaskCreate) -> TaskView:
        if not payload.payload.strip():
            raise ValueError("Task payload must not be empty.")
        if payload.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if payload.timeout_seconds < 1:
            raise ValueError("timeout_seconds must be >= 1")

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = QueueTask(
                status=TaskStatus.PENDING.value,
                payload=payload.payload,
                attempt_count=0,
                max_attempts=payload.max_attempts,
                timeout_seconds=payload.timeout_seconds,
                clear_context=payload.clear_context,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            assert row.seq is not None
            row.task_id = format_task_id(row.seq)
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=row.task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "max_attempts": payload.max_attempts,
                    "timeout_seconds": payload.timeout_seconds,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueTask).where(QueueTask.task_id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def next_pending(self) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueTask)
                .where(QueueTask.status == TaskStatus.PENDING.value)
                .order_by(col(QueueTask.seq).asc())
                .limit(1),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def running_task(self) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueTask).where(QueueTask.status == TaskStatus.RUNNING.value),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def begin(self, task_id: str) -> TaskView:
        """Move a pending task to running; at most one task may run."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            running = session.exec(
                select(QueueTask).where(QueueTask.status == TaskStatus.RUNNING.value),
            ).one_or_none()
            if running is not None and running.task_id != task_id:
                raise Conflict(f"Task {running.task_id} is already running.")

            try:
                result = session.exec(
                    sa_update(QueueTask)
                    .where(
                        col(QueueTask.task_id) == task_id,
                        col(QueueTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        attempt_count=row.attempt_count + 1,
                        started_at=now,
                        last_error=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise Conflict(f"Task {task_id} is not pending (status={row.status}).")
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="begun",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.RUNNING,
                    details={"attempt": row.attempt_count + 1},
                )
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise Conflict(f"Another task is already running; cannot begin {task_id}.") from error
            return self._reload(session=session, task_id=task_id)

    def complete(self, task_id: str) -> TaskView | None:
        """Return the completed task, or None when it was not running."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    completed_at=now,
                    last_error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={},
            )
            session.commit()
            return self._reload(session=session, task_id=task_id)

    def fail(self, task_id: str, error: str, *, requeue: bool) -> TaskView | None:
        """Record a failed attempt; requeue while the attempt budget allows it."""

        return self._finish_attempt(
            task_id=task_id,
            status_to=TaskStatus.FAILED,
            event_type="failed",
            error=error,
            requeue=requeue,
        )

    def timeout(self, task_id: str, error: str, *, requeue: bool = False) -> TaskView | None:
        return self._finish_attempt(
            task_id=task_id,
            status_to=TaskStatus.TIMEOUT,
            event_type="timed_out",
            error=error,
            requeue=requeue,
        )

    def retry(self, task_id: str, *, force: bool = False) -> TaskView:
        """Return a failed or timed-out task to pending."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            status = TaskStatus(row.status)
            if status not in TERMINAL_FAILURE_STATUSES:
                raise Conflict(f"Task {task_id} cannot be retried from status {status.value}.")
            if row.attempt_count >= row.max_attempts and not force:
                raise AttemptsExhausted(
                    f"Task {task_id} used {row.attempt_count}/{row.max_attempts} attempts.",
                )
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == status.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    last_error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise Conflict(f"Task {task_id} changed status concurrently; retry again.")
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retried",
                status_from=status,
                status_to=TaskStatus.PENDING,
                details={"force": force, "previous_error": row.last_error},
            )
            session.commit()
            return self._reload(session=session, task_id=task_id)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int | None = 50,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(QueueTask)
            if status is not None:
                statement = statement.where(QueueTask.status == status.value)
            statement = statement.order_by(col(QueueTask.seq).asc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def details(self, task_id: str) -> TaskDetails | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueTask).where(QueueTask.task_id == task_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(QueueTaskEvent)
                .where(QueueTaskEvent.task_id == task_id)
                .order_by(col(QueueTaskEvent.id).asc()),
            ).all()
            events = [
                TaskEventView(
                    event_id=event.id or 0,
                    task_id=event.task_id,
                    event_type=event.event_type,
                    status_from=TaskStatus(event.status_from) if event.status_from else None,
                    status_to=TaskStatus(event.status_to) if event.status_to else None,
                    created_at=to_utc_aware_datetime(event.created_at),
                    details=json.loads(event.details_json) if event.details_json else {},
                )
                for event in event_rows
            ]
            return TaskDetails(task=_to_task_view(row), events=events)

    def counts(self) -> dict[TaskStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueTask.status, func.count()).group_by(QueueTask.status),
            ).all()
        counts = {status: 0 for status in TaskStatus}
        for status, total in rows:
            counts[TaskStatus(status)] = int(total)
        return counts

    def has_work(self) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueTask.seq)
                .where(
                    col(QueueTask.status).in_(
                        [TaskStatus.PENDING.value, TaskStatus.RUNNING.value],
                    ),
                )
                .limit(1),
            ).first()
            return row is not None

    def remove(self, task_id: str) -> TaskView:
        """Delete a task that is not running, together with its event trail."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            view = _to_task_view(row)
            result = session.exec(
                sa_delete(QueueTask).where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) != TaskStatus.RUNNING.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise Conflict(f"Task {task_id} is running and cannot be removed.")
            session.commit()
        logger.info("Removed task %s (status=%s)", task_id, view.status.value)
        return view

    def prune(self, statuses: Iterable[TaskStatus]) -> int:
        selected = {TaskStatus(status) for status in statuses}
        if TaskStatus.RUNNING in selected or TaskStatus.PENDING in selected:
            raise ValueError("Only completed, failed or timeout tasks can be pruned.")
        if not selected:
            return 0
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueTask).where(
                    col(QueueTask.status).in_([status.value for status in selected]),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _finish_attempt(
        self,
        *,
        task_id: str,
        status_to: TaskStatus,
        event_type: str,
        error: str,
        requeue: bool,
    ) -> TaskView | None:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == TaskStatus.RUNNING.value,
                )
                .values(status=status_to.value, last_error=error, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=TaskStatus.RUNNING,
                status_to=status_to,
                details={"error": error, "attempt": row.attempt_count},
            )

            if requeue and row.attempt_count < row.max_attempts:
                session.exec(
                    sa_update(QueueTask)
                    .where(
                        col(QueueTask.task_id) == task_id,
                        col(QueueTask.status) == status_to.value,
                    )
                    .values(status=TaskStatus.PENDING.value, last_error=None, updated_at=now),
                )
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="requeued",
                    status_from=status_to,
                    status_to=TaskStatus.PENDING,
                    details={
                        "attempt_count": row.attempt_count,
                        "max_attempts": row.max_attempts,
                        "previous_error": error,
                    },
                )
            session.commit()
            return self._reload(session=session, task_id=task_id)

    def _get_task_row(self, *, session: Session, task_id: str) -> QueueTask:
        row = session.exec(select(QueueTask).where(QueueTask.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFound(f"Task not found: {task_id}")
        return row

    def _reload(self, *, session: Session, task_id: str) -> TaskView:
        session.expire_all()
        return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _to_task_view(row: QueueTask) -> TaskView:
    assert row.seq is not None
    return TaskView(
        task_id=row.task_id or format_task_id(row.seq),
        seq=row.seq,
        status=TaskStatus(row.status),
        payload=row.payload,
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        timeout_seconds=row.timeout_seconds,
        clear_context=row.clear_context,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
