from __future__ import annotations

from datetime import timedelta

import allure

from auto_resume.supervisor.models import PatternKind, TaskStatus
from auto_resume.supervisor.status import collect_status, render_status_lines
from auto_resume.supervisor.waits import WAIT_SCOPE, WaitState, save_wait

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Status Surface"),
]


def test_status_of_idle_queue(harness) -> None:
    snapshot = collect_status(
        repository=harness.repository,
        lock=harness.lock,
        checkpoints=harness.checkpoints,
        now=harness.clock(),
    )

    assert render_status_lines(snapshot) == [
        "Supervisor: not running",
        "Wait: none",
        "Session: no checkpoint",
        "Queue: pending=0, running=0, completed=0, failed=0, timeout=0",
        "Current task: none",
    ]


def test_status_reports_wait_current_task_and_last_error(harness) -> None:
    clock = harness.clock
    engine = harness.engine
    failed = engine.enqueue("broken", max_attempts=1)
    engine.begin(failed.task_id)
    engine.fail(failed.task_id, "agent exited")
    running = engine.enqueue("running")
    engine.begin(running.task_id)
    monitor = harness.monitor()
    monitor.run_once()
    save_wait(
        harness.checkpoints,
        WaitState(
            resume_at=clock() + timedelta(minutes=5),
            detected_at=clock(),
            pattern_kind=PatternKind.GENERIC_EXCEEDED,
            raw_text="usage limit exceeded",
        ),
    )

    snapshot = collect_status(
        repository=harness.repository,
        lock=harness.lock,
        checkpoints=harness.checkpoints,
        now=clock(),
        session_alive=True,
    )
    lines = render_status_lines(snapshot)

    assert snapshot.counts[TaskStatus.FAILED] == 1
    assert lines[0].startswith("Supervisor: alive owner=instance-a")
    assert lines[1].startswith("Wait: until 2026-03-14T10:05:00+00:00 (300s remaining, generic_exceeded")
    assert lines[2] == "  reason: usage limit exceeded"
    assert lines[3] == "Session: agent (alive) generation=0 restarts=0"
    assert f"Current task: {running.task_id} (attempt 1/3)" in lines
    assert f"Last error: {failed.task_id} [failed] agent exited" in lines


def test_status_reads_without_taking_the_lock(harness) -> None:
    other = harness.second_lock()
    other.acquire()
    harness.checkpoints.write(WAIT_SCOPE, {"resume_at": "garbage"})

    snapshot = collect_status(
        repository=harness.repository,
        lock=harness.lock,
        checkpoints=harness.checkpoints,
        now=harness.clock(),
    )

    assert snapshot.lock is not None
    assert snapshot.lock.owner_id == "instance-b"
    assert snapshot.wait is None
    assert snapshot.wait_error is not None
    assert other.inspect().owner_id == "instance-b"
