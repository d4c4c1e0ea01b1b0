"""Read-only status snapshot: lock, wait, session and queue state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from auto_resume.storage.checkpoints import CheckpointStore
from auto_resume.supervisor.errors import CheckpointIOError
from auto_resume.supervisor.locking import SupervisorLock
from auto_resume.supervisor.models import LockView, TaskStatus, TaskView
from auto_resume.supervisor.monitor import SESSION_SCOPE
from auto_resume.supervisor.repository import QueueRepository
from auto_resume.supervisor.waits import WAIT_SCOPE, WaitState


@dataclass(slots=True)
class StatusSnapshot:
    now: datetime
    lock: LockView | None
    wait: WaitState | None
    wait_error: str | None
    session: dict[str, Any]
    session_alive: bool | None
    counts: dict[TaskStatus, int]
    running: TaskView | None
    last_failure: TaskView | None


def collect_status(
    *,
    repository: QueueRepository,
    lock: SupervisorLock,
    checkpoints: CheckpointStore,
    now: datetime,
    session_alive: bool | None = None,
) -> StatusSnapshot:
    """Gather state without taking the lock or touching any checkpoint."""

    wait: WaitState | None = None
    wait_error: str | None = None
    try:
        record = checkpoints.read_or_none(WAIT_SCOPE)
        if record is not None:
            wait = WaitState.from_state(record.state)
    except CheckpointIOError as error:
        wait_error = str(error)

    try:
        session_record = checkpoints.read_or_none(SESSION_SCOPE)
    except CheckpointIOError:
        session_record = None

    failures = [
        task
        for status in (TaskStatus.FAILED, TaskStatus.TIMEOUT)
        for task in repository.list_tasks(status=status, limit=None)
    ]
    last_failure = max(failures, key=lambda task: task.updated_at, default=None)

    return StatusSnapshot(
        now=now,
        lock=lock.inspect(),
        wait=wait,
        wait_error=wait_error,
        session=session_record.state if session_record is not None else {},
        session_alive=session_alive,
        counts=repository.counts(),
        running=repository.running_task(),
        last_failure=last_failure,
    )


def render_status_lines(snapshot: StatusSnapshot) -> list[str]:
    lines: list[str] = []
    if snapshot.lock is None:
        lines.append("Supervisor: not running")
    else:
        state = "STALE" if snapshot.lock.is_stale else "alive"
        lines.append(
            f"Supervisor: {state} owner={snapshot.lock.owner_id} pid={snapshot.lock.pid} "
            f"heartbeat_at={snapshot.lock.heartbeat_at.isoformat()}",
        )

    if snapshot.wait_error is not None:
        lines.append(f"Wait: checkpoint unreadable ({snapshot.wait_error})")
    elif snapshot.wait is None:
        lines.append("Wait: none")
    else:
        remaining = snapshot.wait.remaining_seconds(snapshot.now)
        state = f"{remaining:.0f}s remaining" if remaining > 0 else "expired"
        lines.append(
            f"Wait: until {snapshot.wait.resume_at.isoformat()} ({state}, "
            f"{snapshot.wait.pattern_kind.value}, limit #{snapshot.wait.consecutive_limits})",
        )
        lines.append(f"  reason: {snapshot.wait.raw_text}")

    session_name = snapshot.session.get("session_name")
    if session_name:
        alive = {True: "alive", False: "not running", None: "unknown"}[snapshot.session_alive]
        lines.append(
            f"Session: {session_name} ({alive}) generation={snapshot.session.get('generation', 0)} "
            f"restarts={snapshot.session.get('consecutive_restarts', 0)}",
        )
    else:
        lines.append("Session: no checkpoint")

    counts = ", ".join(f"{status.value}={snapshot.counts.get(status, 0)}" for status in TaskStatus)
    lines.append(f"Queue: {counts}")
    if snapshot.running is not None:
        lines.append(
            f"Current task: {snapshot.running.task_id} "
            f"(attempt {snapshot.running.attempt_count}/{snapshot.running.max_attempts})",
        )
    else:
        lines.append("Current task: none")
    if snapshot.last_failure is not None:
        lines.append(
            f"Last error: {snapshot.last_failure.task_id} "
            f"[{snapshot.last_failure.status.value}] {snapshot.last_failure.last_error}",
        )
    return lines
