"""Domain models for the supervised task queue and rate-limit handling."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


TERMINAL_FAILURE_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.TIMEOUT})


class PatternKind(str, Enum):
    """Recognized rate-limit phrasings, most specific first."""

    EXPLICIT_CLOCK_TIME = "explicit_clock_time"
    RELATIVE_DURATION = "relative_duration"
    GENERIC_EXCEEDED = "generic_exceeded"


class WaitPolicy(str, Enum):
    """How a new rate-limit event combines with an already pending wait."""

    OVERWRITE = "overwrite"
    LATEST = "latest"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    payload: str
    max_attempts: int = 3
    timeout_seconds: int = 3600
    clear_context: bool | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, engine and monitor logic."""

    task_id: str
    seq: int
    status: TaskStatus
    payload: str
    attempt_count: int
    max_attempts: int
    timeout_seconds: int
    clear_context: bool | None
    last_error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True, frozen=True)
class RateLimitEvent:
    """Detected throttling signal with the instant work may resume."""

    raw_text: str
    pattern_kind: PatternKind
    resume_at: datetime
    detected_at: datetime

    @property
    def wait_seconds(self) -> float:
        return max(0.0, (self.resume_at - self.detected_at).total_seconds())


@dataclass(slots=True)
class CheckpointRecord:
    """One persisted checkpoint document."""

    scope: str
    state: dict[str, Any]
    written_at: datetime


@dataclass(slots=True)
class LockView:
    """Current supervisor lock row, as seen by readers."""

    lock_name: str
    owner_id: str
    pid: int
    hostname: str
    acquired_at: datetime
    heartbeat_at: datetime
    is_stale: bool


@dataclass(slots=True)
class LockAcquisition:
    """Outcome of a successful lock acquisition."""

    owner_id: str
    acquired_at: datetime
    refreshed: bool = False
    reclaimed_from: str | None = None
