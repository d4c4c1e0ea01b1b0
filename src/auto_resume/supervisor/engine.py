"""Task queue engine: lock discipline and queue checkpoints around the repository."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from auto_resume.storage.checkpoints import CheckpointStore, encode_state
from auto_resume.supervisor.errors import CheckpointIOError, TaskNotFound
from auto_resume.supervisor.locking import SupervisorLock
from auto_resume.supervisor.models import TaskCreate, TaskDetails, TaskStatus, TaskView
from auto_resume.supervisor.repository import QueueRepository

logger = logging.getLogger(__name__)

QUEUE_SCOPE = "queue"

T = TypeVar("T")


class TaskQueueEngine:
    """Sequences work items with at-most-one-running semantics.

    Every mutation runs under the supervisor lock. The database transaction
    commits first, the ``queue`` checkpoint is written next, and a lock taken
    for that mutation alone is released last.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        lock: SupervisorLock,
        checkpoints: CheckpointStore,
        default_max_attempts: int = 3,
        default_timeout_seconds: int = 3600,
        requeue_on_failure: bool = True,
        checkpoint_write_attempts: int = 3,
        checkpoint_retry_seconds: float = 0.2,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.lock = lock
        self.checkpoints = checkpoints
        self.default_max_attempts = default_max_attempts
        self.default_timeout_seconds = default_timeout_seconds
        self.requeue_on_failure = requeue_on_failure
        self.checkpoint_write_attempts = max(1, checkpoint_write_attempts)
        self.checkpoint_retry_seconds = checkpoint_retry_seconds
        self._sleeper = sleeper

    def enqueue(
        self,
        payload: str,
        *,
        max_attempts: int | None = None,
        timeout_seconds: int | None = None,
        clear_context: bool | None = None,
    ) -> TaskView:
        request = TaskCreate(
            payload=payload,
            max_attempts=max_attempts if max_attempts is not None else self.default_max_attempts,
            timeout_seconds=(
                timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds
            ),
            clear_context=clear_context,
        )
        task = self._mutate(lambda: self.repository.enqueue(request))
        logger.info("Enqueued task %s", task.task_id)
        return task

    def next_pending(self) -> TaskView | None:
        return self.repository.next_pending()

    def begin(self, task_id: str) -> TaskView:
        task = self._mutate(lambda: self.repository.begin(task_id))
        logger.info(
            "Task %s started (attempt %d/%d)",
            task.task_id,
            task.attempt_count,
            task.max_attempts,
        )
        return task

    def complete(self, task_id: str) -> bool:
        """Mark a running task completed; a repeated call is a no-op returning False."""

        task = self._mutate(lambda: self.repository.complete(task_id))
        if task is None:
            logger.debug("Ignoring completion for task %s: not running", task_id)
            return False
        logger.info("Task %s completed", task_id)
        return True

    def fail(self, task_id: str, error: str, *, requeue: bool | None = None) -> bool:
        should_requeue = self.requeue_on_failure if requeue is None else requeue
        task = self._mutate(
            lambda: self.repository.fail(task_id, error, requeue=should_requeue),
        )
        if task is None:
            logger.debug("Ignoring failure for task %s: not running", task_id)
            return False
        if task.status is TaskStatus.PENDING:
            logger.warning(
                "Task %s failed and was requeued (attempt %d/%d): %s",
                task_id,
                task.attempt_count,
                task.max_attempts,
                error,
            )
        else:
            logger.error("Task %s failed: %s", task_id, error)
        return True

    def timeout(self, task_id: str, error: str, *, requeue: bool = False) -> bool:
        task = self._mutate(lambda: self.repository.timeout(task_id, error, requeue=requeue))
        if task is None:
            return False
        logger.warning("Task %s timed out: %s", task_id, error)
        return True

    def retry(self, task_id: str, *, force: bool = False) -> TaskView:
        task = self._mutate(lambda: self.repository.retry(task_id, force=force))
        logger.info("Task %s returned to pending", task_id)
        return task

    def remove(self, task_id: str) -> TaskView:
        return self._mutate(lambda: self.repository.remove(task_id))

    def prune(self, statuses: Iterable[TaskStatus]) -> int:
        selected = tuple(statuses)
        removed = self._mutate(lambda: self.repository.prune(selected))
        if removed:
            logger.info("Pruned %d task(s)", removed)
        return removed

    def get(self, task_id: str) -> TaskView:
        task = self.repository.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task not found: {task_id}")
        return task

    def details(self, task_id: str) -> TaskDetails:
        details = self.repository.details(task_id)
        if details is None:
            raise TaskNotFound(f"Task not found: {task_id}")
        return details

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int | None = 50) -> list[TaskView]:
        return self.repository.list_tasks(status=status, limit=limit)

    def running_task(self) -> TaskView | None:
        return self.repository.running_task()

    def counts(self) -> dict[TaskStatus, int]:
        return self.repository.counts()

    def has_work(self) -> bool:
        return self.repository.has_work()

    def queue_state(self) -> dict[str, Any]:
        """State document persisted to the ``queue`` checkpoint."""

        tasks = self.repository.list_tasks(limit=None)
        running = next((task.task_id for task in tasks if task.status is TaskStatus.RUNNING), None)
        counts = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1
        return {
            "running_task_id": running,
            "counts": counts,
            "tasks": [
                {
                    "task_id": task.task_id,
                    "status": task.status.value,
                    "attempt_count": task.attempt_count,
                    "max_attempts": task.max_attempts,
                    "last_error": task.last_error,
                }
                for task in tasks
            ],
        }

    def reconcile_checkpoint(self) -> bool:
        """Rewrite the queue checkpoint from the database when they disagree."""

        with self.lock.hold():
            state = self.queue_state()
            try:
                record = self.checkpoints.read_or_none(QUEUE_SCOPE)
            except CheckpointIOError as error:
                logger.warning("Queue checkpoint unreadable, rebuilding from database: %s", error)
                record = None
            if record is not None and encode_state(record.state) == encode_state(state):
                return False
            if record is not None:
                logger.warning("Queue checkpoint diverged from database; rewriting it.")
            self._write_queue_checkpoint(state)
        return True

    def _mutate(self, operation: Callable[[], T]) -> T:
        with self.lock.hold():
            result = operation()
            self._write_queue_checkpoint(self.queue_state())
        return result

    def _write_queue_checkpoint(self, state: dict[str, Any]) -> None:
        for attempt in range(1, self.checkpoint_write_attempts + 1):
            try:
                self.checkpoints.write(QUEUE_SCOPE, state)
                return
            except CheckpointIOError as error:
                if attempt >= self.checkpoint_write_attempts:
                    raise
                logger.warning(
                    "Queue checkpoint write failed (attempt %d/%d): %s",
                    attempt,
                    self.checkpoint_write_attempts,
                    error,
                )
                self._sleeper(self.checkpoint_retry_seconds * attempt)
