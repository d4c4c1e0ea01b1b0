"""Controllers for supervisor CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo

from auto_resume.config import Settings
from auto_resume.storage.checkpoints import CheckpointStore
from auto_resume.storage.common import utc_now
from auto_resume.supervisor.engine import TaskQueueEngine
from auto_resume.supervisor.errors import Conflict, LockConflict
from auto_resume.supervisor.locking import SupervisorLock, default_owner_id
from auto_resume.supervisor.models import TaskStatus
from auto_resume.supervisor.monitor import MonitorOptions, SupervisorMonitor
from auto_resume.supervisor.repository import QueueRepository
from auto_resume.supervisor.session import MultiplexerError, SessionController, TmuxMultiplexer
from auto_resume.supervisor.status import collect_status, render_status_lines
from auto_resume.supervisor.waits import BackoffPolicy

PAYLOAD_PREVIEW_CHARS = 60


@dataclass(slots=True)
class RunCommand:
    """CLI input for the monitor loop."""

    state_dir: Path | None
    once: bool
    max_iterations: int | None


@dataclass(slots=True)
class StatusCommand:
    state_dir: Path | None
    check_session: bool = True


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for enqueuing one task."""

    state_dir: Path | None
    payload: str
    max_attempts: int | None
    timeout_seconds: int | None
    clear_context: bool | None


@dataclass(slots=True)
class QueueListCommand:
    state_dir: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueTaskCommand:
    """CLI input for inspect/remove operations on one task."""

    state_dir: Path | None
    task_id: str


@dataclass(slots=True)
class QueueRetryCommand:
    state_dir: Path | None
    task_id: str
    force: bool


@dataclass(slots=True)
class QueuePruneCommand:
    state_dir: Path | None
    statuses: tuple[str, ...]


@dataclass(slots=True)
class LockReleaseCommand:
    state_dir: Path | None
    force: bool


@dataclass(slots=True)
class Runtime:
    """Wired core objects for one CLI invocation."""

    settings: Settings
    repository: QueueRepository
    checkpoints: CheckpointStore
    lock: SupervisorLock
    engine: TaskQueueEngine


class SupervisorCliController:
    """Coordinates monitor, queue and inspection CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(command.state_dir)
        owner_id = f"monitor:{default_owner_id()}"
        with _runtime(settings, owner_id=owner_id) as runtime:
            monitor = SupervisorMonitor(
                engine=runtime.engine,
                session=SessionController(
                    TmuxMultiplexer(
                        executable=settings.session.tmux_executable,
                        history_lines=settings.session.history_lines,
                    ),
                    command=settings.session.command,
                    cwd=settings.session.cwd,
                    startup_delay_seconds=settings.session.startup_delay_seconds,
                ),
                checkpoints=runtime.checkpoints,
                lock=runtime.lock,
                options=monitor_options(settings),
            )
            if command.once:
                try:
                    summary = monitor.run_once()
                finally:
                    if runtime.lock.held:
                        runtime.lock.release()
            else:
                summary = monitor.run_loop(max_iterations=command.max_iterations)

        if summary.lock_conflict:
            raise Conflict("Another supervisor instance holds the lock; see `auto-resume status`.")
        return [
            "Monitor summary: "
            f"iterations={summary.iterations} started={summary.tasks_started} "
            f"completed={summary.tasks_completed} failed={summary.tasks_failed} "
            f"timeouts={summary.timeouts} rate_limits={summary.rate_limits} "
            f"restarts={summary.session_restarts} waited={summary.waited_seconds:.0f}s",
            f"Stop reason: {summary.stop_reason or '-'}",
        ]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings(command.state_dir)
        session_alive: bool | None = None
        if command.check_session:
            try:
                session_alive = TmuxMultiplexer(
                    executable=settings.session.tmux_executable,
                ).exists(settings.session.name)
            except MultiplexerError:
                session_alive = None
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            snapshot = collect_status(
                repository=runtime.repository,
                lock=runtime.lock,
                checkpoints=runtime.checkpoints,
                now=utc_now(),
                session_alive=session_alive,
            )
        return render_status_lines(snapshot)

    def add_task(self, command: QueueAddCommand) -> list[str]:
        settings = _settings(command.state_dir)
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            task = runtime.engine.enqueue(
                command.payload,
                max_attempts=command.max_attempts,
                timeout_seconds=command.timeout_seconds,
                clear_context=command.clear_context,
            )
        return [
            f"Task enqueued: task_id={task.task_id} status={task.status.value} "
            f"max_attempts={task.max_attempts} timeout={task.timeout_seconds}s",
        ]

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        settings = _settings(command.state_dir)
        status_filter = _parse_status(command.status)
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            tasks = runtime.engine.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"attempt={task.attempt_count}/{task.max_attempts} "
                f"created_at={task.created_at.isoformat()} "
                f"payload={_preview(task.payload)}",
            )
        return lines

    def inspect_task(self, command: QueueTaskCommand) -> list[str]:
        settings = _settings(command.state_dir)
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            details = runtime.engine.details(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Attempt: {task.attempt_count}/{task.max_attempts}",
            f"Timeout: {task.timeout_seconds}s",
            f"Clear context: {'default' if task.clear_context is None else task.clear_context}",
            f"Created: {task.created_at.isoformat()}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Error: {task.last_error or '-'}",
            f"Payload: {task.payload}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_task(self, command: QueueRetryCommand) -> list[str]:
        settings = _settings(command.state_dir)
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            task = runtime.engine.retry(command.task_id, force=command.force)
        return [f"Task re-queued: {task.task_id} (attempts used {task.attempt_count}/{task.max_attempts})"]

    def remove_task(self, command: QueueTaskCommand) -> list[str]:
        settings = _settings(command.state_dir)
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            task = runtime.engine.remove(command.task_id)
        return [f"Task removed: {task.task_id} (was {task.status.value})"]

    def prune(self, command: QueuePruneCommand) -> list[str]:
        settings = _settings(command.state_dir)
        statuses = tuple(_require_status(value) for value in command.statuses) or (
            TaskStatus.COMPLETED,
        )
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            removed = runtime.engine.prune(statuses)
        names = ",".join(status.value for status in statuses)
        return [f"Pruned tasks: {removed} (statuses={names})"]

    def release_lock(self, command: LockReleaseCommand) -> list[str]:
        settings = _settings(command.state_dir)
        with _runtime(settings, owner_id=f"cli:{default_owner_id()}") as runtime:
            current = runtime.lock.inspect()
            if current is None:
                return ["Supervisor lock is free."]
            if not current.is_stale and not command.force:
                raise LockConflict(
                    owner_id=current.owner_id,
                    pid=current.pid,
                    heartbeat_at=current.heartbeat_at,
                )
            runtime.lock.force_release()
        return [
            f"Supervisor lock released: owner={current.owner_id} pid={current.pid} "
            f"({'stale' if current.is_stale else 'forced'})",
        ]


def monitor_options(settings: Settings) -> MonitorOptions:
    usage = settings.usage_limit
    return MonitorOptions(
        session_name=settings.session.name,
        poll_interval_seconds=settings.monitor.poll_interval_seconds,
        completion_marker=settings.monitor.completion_marker,
        resume_command=usage.resume_command,
        clear_context_between_tasks=settings.monitor.clear_context_between_tasks,
        clear_context_command=settings.monitor.clear_context_command,
        retry_on_timeout=settings.monitor.retry_on_timeout,
        max_consecutive_restarts=settings.session.max_consecutive_restarts,
        restart_delay_seconds=settings.session.restart_delay_seconds,
        max_restart_delay_seconds=settings.session.max_restart_delay_seconds,
        heartbeat_interval_seconds=usage.heartbeat_interval_seconds,
        wait_policy=usage.wait_policy,
        backoff=BackoffPolicy(
            default_seconds=usage.cooldown_seconds,
            factor=usage.backoff_factor,
            max_seconds=usage.max_backoff_seconds,
            reset_after_seconds=usage.max_backoff_seconds,
        ),
        timezone=ZoneInfo(usage.timezone) if usage.timezone else None,
    )


def _settings(state_dir: Path | None) -> Settings:
    settings = Settings.from_env(state_dir=state_dir)
    settings.validate()
    return settings


@contextmanager
def _runtime(settings: Settings, *, owner_id: str) -> Iterator[Runtime]:
    repository = QueueRepository(
        settings.db_path,
        busy_timeout_ms=settings.queue.busy_timeout_ms,
    )
    repository.init_schema()
    checkpoints = CheckpointStore(settings.checkpoint_dir)
    lock = SupervisorLock(
        repository.engine,
        owner_id=owner_id,
        stale_after_seconds=settings.queue.lock_stale_after_seconds,
        wait_seconds=settings.queue.lock_wait_seconds,
        retry_interval_seconds=settings.queue.lock_retry_interval_seconds,
    )
    engine = TaskQueueEngine(
        repository=repository,
        lock=lock,
        checkpoints=checkpoints,
        default_max_attempts=settings.queue.default_max_attempts,
        default_timeout_seconds=settings.queue.default_timeout_seconds,
        requeue_on_failure=settings.queue.requeue_on_failure,
        checkpoint_write_attempts=settings.queue.checkpoint_write_attempts,
    )
    try:
        yield Runtime(
            settings=settings,
            repository=repository,
            checkpoints=checkpoints,
            lock=lock,
            engine=engine,
        )
    finally:
        repository.close()


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return _require_status(value)


def _require_status(value: str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValueError(f"Unsupported status: {value!r} (expected one of: {allowed})") from error


def _preview(payload: str) -> str:
    flat = " ".join(payload.split())
    if len(flat) <= PAYLOAD_PREVIEW_CHARS:
        return flat
    return flat[: PAYLOAD_PREVIEW_CHARS - 3] + "..."
