"""Monitor loop: poll the agent, wait out usage limits, drive the task queue."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, tzinfo
from typing import Any

from auto_resume.storage.checkpoints import CheckpointStore
from auto_resume.storage.common import from_iso, to_utc_aware_datetime, utc_now
from auto_resume.supervisor.classifier import classify_rate_limit
from auto_resume.supervisor.engine import TaskQueueEngine
from auto_resume.supervisor.errors import (
    Conflict,
    LockConflict,
    SessionCrashed,
    TaskBudgetExceeded,
)
from auto_resume.supervisor.locking import SupervisorLock
from auto_resume.supervisor.models import RateLimitEvent, TaskView, WaitPolicy
from auto_resume.supervisor.prompts import (
    DEFAULT_COMPLETION_MARKER,
    find_completion,
    render_marker,
    strip_echo,
    wrap_payload,
)
from auto_resume.supervisor.session import SessionController, SessionHandle
from auto_resume.supervisor.waits import (
    BackoffPolicy,
    RecoveryStatus,
    WaitState,
    apply_policy,
    clear_wait,
    recover_wait,
    save_wait,
)

logger = logging.getLogger(__name__)

SESSION_SCOPE = "session"


@dataclass(slots=True, frozen=True)
class MonitorOptions:
    """Loop behaviour resolved from settings."""

    session_name: str = "claude-auto-resume"
    poll_interval_seconds: float = 5.0
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    resume_command: str = "continue"
    clear_context_between_tasks: bool = True
    clear_context_command: str = "/clear"
    retry_on_timeout: bool = False
    max_consecutive_restarts: int = 3
    restart_delay_seconds: float = 30.0
    max_restart_delay_seconds: float = 300.0
    heartbeat_interval_seconds: float = 30.0
    wait_policy: WaitPolicy = WaitPolicy.OVERWRITE
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    # Zone that clock times in agent output refer to; None means the host zone.
    timezone: tzinfo | None = None


@dataclass(slots=True)
class MonitorRunSummary:
    """Aggregate monitor counters for CLI reporting."""

    iterations: int = 0
    tasks_started: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    timeouts: int = 0
    rate_limits: int = 0
    session_restarts: int = 0
    idle_polls: int = 0
    waited_seconds: float = 0.0
    lock_conflict: bool = False
    stop_reason: str | None = None

    def merge(self, other: MonitorRunSummary) -> None:
        self.iterations += other.iterations
        self.tasks_started += other.tasks_started
        self.tasks_completed += other.tasks_completed
        self.tasks_failed += other.tasks_failed
        self.timeouts += other.timeouts
        self.rate_limits += other.rate_limits
        self.session_restarts += other.session_restarts
        self.idle_polls += other.idle_polls
        self.waited_seconds += other.waited_seconds
        self.lock_conflict = self.lock_conflict or other.lock_conflict
        if other.stop_reason is not None:
            self.stop_reason = other.stop_reason


class SupervisorMonitor:
    """Single cooperative control loop owning the supervisor lock while it runs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: TaskQueueEngine,
        session: SessionController,
        checkpoints: CheckpointStore,
        lock: SupervisorLock,
        options: MonitorOptions | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleeper: Callable[[float], None] | None = None,
    ) -> None:
        self.engine = engine
        self.session = session
        self.checkpoints = checkpoints
        self.lock = lock
        self.options = options or MonitorOptions()
        self._clock = clock
        self._sleeper = sleeper or self._sleep_with_stop
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._started = False

        self._handle: SessionHandle | None = None
        self._wait: WaitState | None = None
        self._last_wait: WaitState | None = None
        self._current_task_id: str | None = None
        self._attempt_started_at: datetime | None = None
        self._attempt_waited_seconds = 0.0
        self._consecutive_restarts = 0
        self._skip_next_clear = False
        self._context_dirty = False
        self._replay_pending = False
        self._last_sent: str | None = None

    @property
    def current_task_id(self) -> str | None:
        return self._current_task_id

    @property
    def pending_wait(self) -> WaitState | None:
        return self._wait

    def request_stop(self, *, signal_name: str = "request") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Stop requested (%s)", signal_name)

    def run_once(self) -> MonitorRunSummary:
        """Run one iteration of the control loop."""

        summary = MonitorRunSummary(iterations=1)
        if self._stop_requested:
            summary.stop_reason = "stopped"
            return summary

        try:
            self._ensure_lock()
            if not self._started:
                self._startup()

            if self._wait is not None:
                self._handle_wait(summary)
                return summary

            try:
                self._poll(summary)
            except SessionCrashed as error:
                logger.warning("Session crashed: %s", error)
                self._recover_session(summary, reason=str(error))
        except LockConflict as error:
            logger.error("%s", error)
            summary.lock_conflict = True
            summary.stop_reason = "lock_conflict"
        return summary

    def run_loop(self, *, max_iterations: int | None = None) -> MonitorRunSummary:
        """Run until the queue drains, a stop is requested or the lock is lost."""

        aggregate = MonitorRunSummary()
        with self._signal_handlers():
            try:
                while True:
                    if self._stop_requested:
                        aggregate.stop_reason = "stopped"
                        return aggregate
                    if max_iterations is not None and aggregate.iterations >= max_iterations:
                        aggregate.stop_reason = "max_iterations"
                        return aggregate

                    summary = self.run_once()
                    aggregate.merge(summary)
                    if summary.lock_conflict or summary.stop_reason is not None:
                        return aggregate
                    if summary.idle_polls and self.options.poll_interval_seconds > 0:
                        self._sleeper(self.options.poll_interval_seconds)
            finally:
                if self.lock.held:
                    self.lock.release()
                logger.info(
                    "Monitor stopped (reason=%s, session %s left running)",
                    aggregate.stop_reason,
                    self.options.session_name,
                )

    def _ensure_lock(self) -> None:
        if not self.lock.held:
            self.lock.acquire(wait=False)
            return
        if not self.lock.heartbeat():
            current = self.lock.inspect()
            raise LockConflict(
                owner_id=current.owner_id if current else "<none>",
                pid=current.pid if current else 0,
                heartbeat_at=current.heartbeat_at if current else self._clock(),
            )

    def _startup(self) -> None:
        self._started = True
        self.checkpoints.sweep_temp_files()
        self.engine.reconcile_checkpoint()

        saved = self._load_session_state()
        recovery = recover_wait(self.checkpoints, self._clock())
        if recovery.status is not RecoveryStatus.FRESH:
            self._wait = recovery.wait
            self._last_wait = recovery.wait

        running = self.engine.running_task()
        if running is not None:
            self._current_task_id = running.task_id
            if saved.get("current_task_id") == running.task_id and saved.get("attempt_started_at"):
                self._attempt_started_at = from_iso(str(saved["attempt_started_at"]))
                self._attempt_waited_seconds = float(saved.get("attempt_waited_seconds") or 0.0)
            else:
                self._attempt_started_at = running.started_at or self._clock()
                self._attempt_waited_seconds = 0.0
            self._consecutive_restarts = int(saved.get("consecutive_restarts") or 0)
            logger.info("Resuming supervision of running task %s", running.task_id)

        self._skip_next_clear = bool(saved.get("skip_next_clear"))
        self._handle = self.session.ensure_session(
            self.options.session_name,
            generation=int(saved.get("generation") or 0),
        )
        self._context_dirty = self._handle.attached
        if running is not None and not self._handle.attached:
            if self._wait is None:
                try:
                    self._send_task(running, replay=True)
                except SessionCrashed as error:
                    logger.warning("Replay of task %s failed: %s", running.task_id, error)
            else:
                self._replay_pending = True
        self._persist_session()

    def _handle_wait(self, summary: MonitorRunSummary) -> None:
        assert self._wait is not None
        wait = self._wait
        if wait.resume_at > self._clock():
            waited = self._sleep_until(wait.resume_at)
            summary.waited_seconds += waited
            if self._current_task_id is not None:
                self._attempt_waited_seconds += waited
            if self._clock() < wait.resume_at:
                # Interrupted; the wait checkpoint stays for the next start.
                self._persist_session()
                return

        self._wait = None
        clear_wait(self.checkpoints)
        self._skip_next_clear = True
        logger.info("Usage limit wait finished (resume_at=%s)", wait.resume_at.isoformat())

        if wait.pending_completion_task_id is not None:
            self._complete_task(wait.pending_completion_task_id, summary)
        elif self._current_task_id is not None and self._handle is not None:
            try:
                if self._replay_pending:
                    self._send_task(self.engine.get(self._current_task_id), replay=True)
                else:
                    self.session.send(self._handle, self.options.resume_command)
                    self._last_sent = self.options.resume_command
                    logger.info("Sent resume command to session %s", self._handle.name)
            except SessionCrashed as error:
                logger.warning("Could not resume agent: %s", error)
        self._replay_pending = False
        self._persist_session()

    def _poll(self, summary: MonitorRunSummary) -> None:
        assert self._handle is not None
        if not self.session.is_alive(self._handle):
            raise SessionCrashed(f"Session {self._handle.name} is not running.")

        now = self._clock()
        local_now = now.astimezone(self.options.timezone)
        marker = self._marker_for(self._current_task_id)
        events: list[RateLimitEvent] = []
        completed = False
        for chunk in self.session.read_output(self._handle):
            if marker is not None and find_completion(chunk, marker):
                completed = True
            event = classify_rate_limit(
                strip_echo(chunk, self._last_sent),
                local_now,
                default_backoff_seconds=self.options.backoff.default_seconds,
            )
            if event is not None:
                events.append(
                    replace(
                        event,
                        resume_at=to_utc_aware_datetime(event.resume_at),
                        detected_at=now,
                    ),
                )

        if events:
            self._enter_wait(events, completed=completed, summary=summary)
            return

        if completed and self._current_task_id is not None:
            self._complete_task(self._current_task_id, summary)
            self._persist_session()
            return

        if self._current_task_id is not None:
            overdue = self._overdue_task(now)
            if overdue is not None:
                self._timeout_current(overdue, now, summary)
                return
            summary.idle_polls = 1
            return

        self._start_next_task(summary)

    def _enter_wait(
        self,
        events: list[RateLimitEvent],
        *,
        completed: bool,
        summary: MonitorRunSummary,
    ) -> None:
        if self.options.wait_policy is WaitPolicy.LATEST:
            event = max(events, key=lambda item: item.resume_at)
        else:
            event = events[-1]
        wait = apply_policy(
            self._last_wait,
            event,
            policy=self.options.wait_policy,
            backoff=self.options.backoff,
        )
        if completed and self._current_task_id is not None:
            wait = wait.with_pending_completion(self._current_task_id)
        save_wait(self.checkpoints, wait)
        self._wait = wait
        self._last_wait = wait
        summary.rate_limits += 1
        logger.warning(
            "Usage limit detected (%s): %r; waiting until %s",
            event.pattern_kind.value,
            event.raw_text,
            wait.resume_at.isoformat(),
        )
        self._persist_session()

    def _complete_task(self, task_id: str, summary: MonitorRunSummary) -> None:
        if self.engine.complete(task_id):
            summary.tasks_completed += 1
        if self._current_task_id == task_id:
            self._clear_current()
            self._consecutive_restarts = 0

    def _active_seconds(self, task: TaskView, now: datetime) -> float:
        started = self._attempt_started_at or task.started_at or now
        return (now - started).total_seconds() - self._attempt_waited_seconds

    def _overdue_task(self, now: datetime) -> TaskView | None:
        task = self.engine.running_task()
        if task is None or task.task_id != self._current_task_id:
            return None
        if self._active_seconds(task, now) < task.timeout_seconds:
            return None
        return task

    def _timeout_current(self, task: TaskView, now: datetime, summary: MonitorRunSummary) -> None:
        error = TaskBudgetExceeded(
            task_id=task.task_id,
            elapsed_seconds=self._active_seconds(task, now),
            budget_seconds=task.timeout_seconds,
        )
        if self._handle is not None:
            try:
                self.session.interrupt(self._handle)
            except SessionCrashed as crash:
                logger.warning("Could not interrupt agent: %s", crash)
        if self.engine.timeout(task.task_id, str(error), requeue=self.options.retry_on_timeout):
            summary.timeouts += 1
        self._clear_current()
        self._skip_next_clear = True
        self._persist_session()

    def _start_next_task(self, summary: MonitorRunSummary) -> None:
        task = self.engine.next_pending()
        if task is None:
            if not self.engine.has_work():
                summary.stop_reason = "queue_empty"
                logger.info("No pending or running tasks left")
            else:
                summary.idle_polls = 1
            return

        try:
            begun = self.engine.begin(task.task_id)
        except LockConflict:
            raise
        except Conflict as error:
            logger.warning("Could not start task %s: %s", task.task_id, error)
            running = self.engine.running_task()
            if running is not None:
                self._current_task_id = running.task_id
                self._attempt_started_at = running.started_at or self._clock()
                self._attempt_waited_seconds = 0.0
                self._persist_session()
            summary.idle_polls = 1
            return

        summary.tasks_started += 1
        self._current_task_id = begun.task_id
        self._attempt_started_at = self._clock()
        self._attempt_waited_seconds = 0.0
        self._consecutive_restarts = 0
        self._persist_session()
        self._send_task(begun, replay=False)
        self._persist_session()

    def _send_task(self, task: TaskView, *, replay: bool) -> None:
        assert self._handle is not None
        clear = (
            task.clear_context
            if task.clear_context is not None
            else self.options.clear_context_between_tasks
        )
        if not replay and clear and self._context_dirty and not self._skip_next_clear:
            self.session.send(self._handle, self.options.clear_context_command)
            logger.info("Cleared agent context before task %s", task.task_id)

        marker = render_marker(self.options.completion_marker, task.task_id)
        text = wrap_payload(task.payload, marker)
        self.session.send(self._handle, text)
        self._last_sent = text
        self._context_dirty = True
        self._skip_next_clear = False
        logger.info("%s task %s to session", "Replayed" if replay else "Sent", task.task_id)

    def _recover_session(self, summary: MonitorRunSummary, *, reason: str) -> None:
        assert self._handle is not None
        self._consecutive_restarts += 1
        summary.session_restarts += 1
        budget = self.options.max_consecutive_restarts

        if self._current_task_id is not None and self._consecutive_restarts > budget:
            task_id = self._current_task_id
            error = SessionCrashed(
                f"Session crashed {self._consecutive_restarts} times in a row: {reason}",
            )
            if self.engine.fail(task_id, str(error), requeue=False):
                summary.tasks_failed += 1
            self._clear_current()
            self._consecutive_restarts = 0
            self._skip_next_clear = True
        elif self._consecutive_restarts > 1 and self.options.restart_delay_seconds > 0:
            delay = self.options.restart_delay_seconds * 2 ** (self._consecutive_restarts - 2)
            self._sleep_with_heartbeat(min(delay, self.options.max_restart_delay_seconds))

        self._handle = self.session.restart(self._handle)
        self._context_dirty = False
        if self._current_task_id is not None:
            task = self.engine.get(self._current_task_id)
            try:
                self._send_task(task, replay=True)
            except SessionCrashed as error:
                logger.warning("Replay of task %s failed: %s", task.task_id, error)
        self._persist_session()

    def _clear_current(self) -> None:
        self._current_task_id = None
        self._attempt_started_at = None
        self._attempt_waited_seconds = 0.0

    def _marker_for(self, task_id: str | None) -> str | None:
        if task_id is None:
            return None
        return render_marker(self.options.completion_marker, task_id)

    def _sleep_until(self, resume_at: datetime) -> float:
        started = self._clock()
        while not self._stop_requested:
            remaining = (resume_at - self._clock()).total_seconds()
            if remaining <= 0:
                break
            self._sleep_with_heartbeat(remaining)
        return max(0.0, (self._clock() - started).total_seconds())

    def _sleep_with_heartbeat(self, seconds: float) -> None:
        deadline = seconds
        while deadline > 0 and not self._stop_requested:
            step = min(self.options.heartbeat_interval_seconds, deadline)
            self._sleeper(step)
            deadline -= step
            self._ensure_lock()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    def _persist_session(self) -> None:
        self.checkpoints.write(SESSION_SCOPE, self._session_state(), written_at=self._clock())

    def _session_state(self) -> dict[str, Any]:
        return {
            "session_name": self.options.session_name,
            "generation": self._handle.generation if self._handle is not None else 0,
            "current_task_id": self._current_task_id,
            "attempt_started_at": (
                self._attempt_started_at.isoformat() if self._attempt_started_at else None
            ),
            "attempt_waited_seconds": round(self._attempt_waited_seconds, 3),
            "consecutive_restarts": self._consecutive_restarts,
            "skip_next_clear": self._skip_next_clear,
        }

    def _load_session_state(self) -> dict[str, Any]:
        record = self.checkpoints.read_or_none(SESSION_SCOPE)
        if record is None:
            return {}
        if record.state.get("session_name") != self.options.session_name:
            return {}
        return record.state

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
