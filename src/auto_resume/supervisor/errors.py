"""Error taxonomy for the supervision engine."""

from __future__ import annotations

from datetime import datetime


class SupervisorError(RuntimeError):
    """Base class for supervisor failures surfaced to callers."""


class ClassificationAmbiguous(SupervisorError):
    """A time expression could not be interpreted; never fatal."""


class Conflict(SupervisorError):
    """Requested transition conflicts with current queue state."""


class LockConflict(Conflict):
    """Another live instance owns the supervisor lock."""

    def __init__(self, *, owner_id: str, pid: int, heartbeat_at: datetime) -> None:
        super().__init__(
            "Supervisor lock is held by another live instance "
            f"(owner_id={owner_id}, pid={pid}, heartbeat_at={heartbeat_at.isoformat()}).",
        )
        self.owner_id = owner_id
        self.pid = pid
        self.heartbeat_at = heartbeat_at


class LockStale(SupervisorError):
    """The current lock holder stopped heartbeating and can be reclaimed."""

    def __init__(self, *, owner_id: str, heartbeat_at: datetime) -> None:
        super().__init__(
            f"Supervisor lock owner {owner_id} is stale "
            f"(last heartbeat {heartbeat_at.isoformat()}).",
        )
        self.owner_id = owner_id
        self.heartbeat_at = heartbeat_at


class AttemptsExhausted(Conflict):
    """Task used its whole attempt budget."""


class TaskNotFound(SupervisorError):
    """No task with the given id."""


class SessionCrashed(SupervisorError):
    """Multiplexer session vanished while it was expected to be alive."""


class CheckpointIOError(SupervisorError):
    """Checkpoint could not be persisted or read back."""


class CheckpointNotFound(SupervisorError):
    """No checkpoint exists for the requested scope."""


class TaskBudgetExceeded(SupervisorError):
    """Running task exceeded its wall-clock budget."""

    def __init__(self, *, task_id: str, elapsed_seconds: float, budget_seconds: int) -> None:
        super().__init__(
            f"Task {task_id} exceeded its wall-clock budget "
            f"({elapsed_seconds:.0f}s >= {budget_seconds}s).",
        )
        self.task_id = task_id
        self.elapsed_seconds = elapsed_seconds
        self.budget_seconds = budget_seconds
