from __future__ import annotations

import allure
import pytest

from auto_resume.storage.checkpoints import CheckpointStore
from auto_resume.supervisor.engine import QUEUE_SCOPE, TaskQueueEngine
from auto_resume.supervisor.errors import (
    AttemptsExhausted,
    CheckpointIOError,
    Conflict,
    LockConflict,
    TaskNotFound,
)
from auto_resume.supervisor.models import TaskStatus

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Task Queue Reliability"),
]


def _running_count(engine: TaskQueueEngine) -> int:
    return engine.counts()[TaskStatus.RUNNING]


def test_enqueue_assigns_ordered_ids_and_writes_checkpoint(harness) -> None:
    engine = harness.engine

    first = engine.enqueue("write the parser")
    second = engine.enqueue("write the tests", max_attempts=5, timeout_seconds=60)

    assert (first.task_id, second.task_id) == ("task-000001", "task-000002")
    assert first.status is TaskStatus.PENDING
    assert (second.max_attempts, second.timeout_seconds) == (5, 60)
    assert engine.next_pending().task_id == first.task_id
    state = harness.checkpoints.read(QUEUE_SCOPE).state
    assert state["counts"]["pending"] == 2
    assert [task["task_id"] for task in state["tasks"]] == [first.task_id, second.task_id]
    assert not harness.lock.held


def test_enqueue_rejects_blank_payload(harness) -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        harness.engine.enqueue("   ")


def test_only_one_task_runs_at_a_time(harness) -> None:
    engine = harness.engine
    first = engine.enqueue("one")
    second = engine.enqueue("two")

    begun = engine.begin(first.task_id)
    with pytest.raises(Conflict, match="already running"):
        engine.begin(second.task_id)

    assert begun.status is TaskStatus.RUNNING
    assert begun.attempt_count == 1
    assert engine.running_task().task_id == first.task_id
    assert _running_count(engine) == 1
    assert harness.checkpoints.read(QUEUE_SCOPE).state["running_task_id"] == first.task_id


def test_begin_requires_pending_status(harness) -> None:
    engine = harness.engine
    task = engine.enqueue("one")
    engine.begin(task.task_id)
    engine.complete(task.task_id)

    with pytest.raises(Conflict, match="not pending"):
        engine.begin(task.task_id)
    with pytest.raises(TaskNotFound):
        engine.begin("task-999999")


def test_second_instance_cannot_begin_while_first_holds_lock(harness) -> None:
    engine_a = harness.engine
    t1 = engine_a.enqueue("one")
    t2 = engine_a.enqueue("two")
    harness.lock.acquire()

    lock_b = harness.second_lock()
    engine_b = TaskQueueEngine(
        repository=harness.repository,
        lock=lock_b,
        checkpoints=harness.checkpoints,
    )

    engine_a.begin(t1.task_id)
    with pytest.raises(LockConflict):
        engine_b.begin(t2.task_id)

    assert _running_count(engine_a) == 1
    assert engine_a.get(t2.task_id).status is TaskStatus.PENDING


def test_second_instance_sees_conflict_after_lock_is_free(harness) -> None:
    engine_a = harness.engine
    t1 = engine_a.enqueue("one")
    t2 = engine_a.enqueue("two")
    engine_b = TaskQueueEngine(
        repository=harness.repository,
        lock=harness.second_lock(),
        checkpoints=harness.checkpoints,
    )

    engine_a.begin(t1.task_id)
    with pytest.raises(Conflict):
        engine_b.begin(t2.task_id)

    assert [task.task_id for task in engine_a.list_tasks(status=TaskStatus.RUNNING)] == [t1.task_id]


def test_complete_twice_is_a_noop(harness) -> None:
    engine = harness.engine
    task = engine.enqueue("one")
    engine.begin(task.task_id)

    assert engine.complete(task.task_id) is True
    assert engine.complete(task.task_id) is False

    details = engine.details(task.task_id)
    assert details.task.status is TaskStatus.COMPLETED
    assert details.task.completed_at is not None
    assert [event.event_type for event in details.events].count("completed") == 1


def test_failure_requeues_until_attempts_are_used(harness) -> None:
    engine = harness.engine
    task = engine.enqueue("flaky", max_attempts=2)

    engine.begin(task.task_id)
    assert engine.fail(task.task_id, "agent crashed") is True
    requeued = engine.get(task.task_id)
    assert requeued.status is TaskStatus.PENDING
    assert requeued.last_error is None
    assert requeued.attempts_left == 1

    engine.begin(task.task_id)
    engine.fail(task.task_id, "agent crashed again")
    failed = engine.get(task.task_id)
    assert failed.status is TaskStatus.FAILED
    assert failed.last_error == "agent crashed again"
    assert failed.attempt_count == 2

    events = [event.event_type for event in engine.details(task.task_id).events]
    assert events == ["enqueued", "begun", "failed", "requeued", "begun", "failed"]


def test_retry_respects_attempt_budget_unless_forced(harness) -> None:
    engine = harness.engine
    task = engine.enqueue("once", max_attempts=1)
    engine.begin(task.task_id)
    engine.fail(task.task_id, "boom")

    with pytest.raises(AttemptsExhausted):
        engine.retry(task.task_id)

    retried = engine.retry(task.task_id, force=True)
    assert retried.status is TaskStatus.PENDING
    assert retried.attempt_count == 1


def test_retry_only_from_failed_or_timeout(harness) -> None:
    engine = harness.engine
    task = engine.enqueue("one")

    with pytest.raises(Conflict, match="cannot be retried"):
        engine.retry(task.task_id)


def test_timeout_is_terminal_by_default(harness) -> None:
    engine = harness.engine
    task = engine.enqueue("slow")
    engine.begin(task.task_id)

    assert engine.timeout(task.task_id, "budget exceeded") is True
    assert engine.timeout(task.task_id, "budget exceeded") is False
    timed_out = engine.get(task.task_id)
    assert timed_out.status is TaskStatus.TIMEOUT
    assert timed_out.last_error == "budget exceeded"

    assert engine.retry(task.task_id).status is TaskStatus.PENDING


def test_fail_without_requeue_is_terminal(harness) -> None:
    engine = harness.engine
    task = engine.enqueue("one", max_attempts=3)
    engine.begin(task.task_id)

    engine.fail(task.task_id, "session crashed 4 times", requeue=False)

    assert engine.get(task.task_id).status is TaskStatus.FAILED


def test_remove_and_prune(harness) -> None:
    engine = harness.engine
    running = engine.enqueue("running")
    done = engine.enqueue("done")
    pending = engine.enqueue("pending")
    engine.begin(done.task_id)
    engine.complete(done.task_id)
    engine.begin(running.task_id)

    with pytest.raises(Conflict, match="running"):
        engine.remove(running.task_id)
    assert engine.remove(pending.task_id).task_id == pending.task_id
    with pytest.raises(TaskNotFound):
        engine.get(pending.task_id)

    assert engine.prune([TaskStatus.COMPLETED]) == 1
    with pytest.raises(ValueError):
        engine.prune([TaskStatus.RUNNING])
    assert [task.task_id for task in engine.list_tasks()] == [running.task_id]
    assert harness.checkpoints.read(QUEUE_SCOPE).state["counts"]["completed"] == 0


def test_has_work_tracks_pending_and_running(harness) -> None:
    engine = harness.engine
    assert engine.has_work() is False
    task = engine.enqueue("one")
    assert engine.has_work() is True
    engine.begin(task.task_id)
    assert engine.has_work() is True
    engine.complete(task.task_id)
    assert engine.has_work() is False


def test_reconcile_rewrites_diverged_checkpoint(harness) -> None:
    engine = harness.engine
    engine.enqueue("one")
    harness.checkpoints.write(QUEUE_SCOPE, {"running_task_id": "task-000042", "tasks": []})

    assert engine.reconcile_checkpoint() is True
    assert engine.reconcile_checkpoint() is False
    assert harness.checkpoints.read(QUEUE_SCOPE).state == engine.queue_state()


def test_reconcile_rebuilds_corrupted_checkpoint(harness) -> None:
    engine = harness.engine
    engine.enqueue("one")
    harness.checkpoints.path_for(QUEUE_SCOPE).write_text("{", encoding="utf-8")

    assert engine.reconcile_checkpoint() is True
    assert harness.checkpoints.read(QUEUE_SCOPE).state["counts"]["pending"] == 1


def test_checkpoint_write_is_retried(harness, monkeypatch: pytest.MonkeyPatch) -> None:
    store = harness.checkpoints
    original_write = CheckpointStore.write
    calls: list[str] = []

    def _flaky_write(self, scope, state, *, written_at=None):
        calls.append(scope)
        if len(calls) == 1:
            raise CheckpointIOError("disk full")
        return original_write(self, scope, state, written_at=written_at)

    monkeypatch.setattr(CheckpointStore, "write", _flaky_write)

    harness.engine.enqueue("one")

    assert calls == [QUEUE_SCOPE, QUEUE_SCOPE]
    assert harness.clock.sleeps == [0.2]
    assert store.read(QUEUE_SCOPE).state["counts"]["pending"] == 1


def test_persistent_checkpoint_failure_is_fatal_and_releases_lock(
    harness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _broken_write(self, scope, state, *, written_at=None):
        raise CheckpointIOError("read-only filesystem")

    monkeypatch.setattr(CheckpointStore, "write", _broken_write)

    with pytest.raises(CheckpointIOError):
        harness.engine.enqueue("one")

    assert not harness.lock.held
    assert harness.lock.inspect() is None
