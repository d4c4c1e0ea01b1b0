"""Pending usage-limit wait: policy, repeated-limit backoff and checkpoint recovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from auto_resume.storage.checkpoints import CheckpointStore
from auto_resume.storage.common import from_iso
from auto_resume.supervisor.errors import CheckpointIOError
from auto_resume.supervisor.models import PatternKind, RateLimitEvent, WaitPolicy

logger = logging.getLogger(__name__)

WAIT_SCOPE = "wait"


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Escalation for generic limit messages that keep coming back."""

    default_seconds: int = 300
    factor: float = 1.5
    max_seconds: int = 1800
    reset_after_seconds: int = 1800

    def delay_for(self, consecutive: int) -> float:
        if consecutive <= 1:
            return float(self.default_seconds)
        return min(
            float(self.max_seconds),
            self.default_seconds * self.factor ** (consecutive - 1),
        )


@dataclass(slots=True, frozen=True)
class WaitState:
    resume_at: datetime
    detected_at: datetime
    pattern_kind: PatternKind
    raw_text: str
    consecutive_limits: int = 1
    pending_completion_task_id: str | None = None

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.resume_at - now).total_seconds())

    def with_pending_completion(self, task_id: str | None) -> WaitState:
        return replace(self, pending_completion_task_id=task_id)

    def to_state(self) -> dict[str, Any]:
        return {
            "resume_at": self.resume_at.isoformat(),
            "detected_at": self.detected_at.isoformat(),
            "pattern_kind": self.pattern_kind.value,
            "raw_text": self.raw_text,
            "consecutive_limits": self.consecutive_limits,
            "pending_completion_task_id": self.pending_completion_task_id,
        }

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> WaitState:
        try:
            return cls(
                resume_at=from_iso(str(state["resume_at"])),
                detected_at=from_iso(str(state["detected_at"])),
                pattern_kind=PatternKind(state["pattern_kind"]),
                raw_text=str(state.get("raw_text") or ""),
                consecutive_limits=int(state.get("consecutive_limits") or 1),
                pending_completion_task_id=state.get("pending_completion_task_id"),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise CheckpointIOError(f"Wait checkpoint is malformed: {error}") from error


class RecoveryStatus(str, Enum):
    FRESH = "fresh"
    RESUMED = "resumed"
    WAITING = "waiting"


@dataclass(slots=True, frozen=True)
class WaitRecovery:
    status: RecoveryStatus
    wait: WaitState | None = None
    remaining_seconds: float = 0.0


def recover_wait(store: CheckpointStore, now: datetime) -> WaitRecovery:
    """Decide on startup whether a previous instance left an unfinished wait."""

    record = store.read_or_none(WAIT_SCOPE)
    if record is None:
        return WaitRecovery(status=RecoveryStatus.FRESH)

    wait = WaitState.from_state(record.state)
    if wait.resume_at <= now:
        store.clear(WAIT_SCOPE)
        logger.info("Recovered wait already expired at %s; resuming", wait.resume_at.isoformat())
        return WaitRecovery(status=RecoveryStatus.RESUMED, wait=wait)

    remaining = wait.remaining_seconds(now)
    logger.info(
        "Recovered pending wait until %s (%.0fs remaining)",
        wait.resume_at.isoformat(),
        remaining,
    )
    return WaitRecovery(status=RecoveryStatus.WAITING, wait=wait, remaining_seconds=remaining)


def apply_policy(
    previous: WaitState | None,
    event: RateLimitEvent,
    *,
    policy: WaitPolicy,
    backoff: BackoffPolicy,
) -> WaitState:
    """Combine a new event with the last known wait.

    ``previous`` may already have expired; it still drives escalation when the
    new generic event follows it within ``reset_after_seconds``.
    """

    consecutive = 1
    if previous is not None:
        since_previous = event.detected_at - previous.resume_at
        if since_previous <= timedelta(seconds=backoff.reset_after_seconds):
            consecutive = previous.consecutive_limits + 1

    resume_at = event.resume_at
    if event.pattern_kind is PatternKind.GENERIC_EXCEEDED and consecutive > 1:
        resume_at = event.detected_at + timedelta(seconds=backoff.delay_for(consecutive))
        logger.warning(
            "Repeated usage limit (#%d); backing off until %s",
            consecutive,
            resume_at.isoformat(),
        )

    pending_completion = None
    if previous is not None and previous.resume_at > event.detected_at:
        pending_completion = previous.pending_completion_task_id
        if policy is WaitPolicy.LATEST and previous.resume_at > resume_at:
            resume_at = previous.resume_at

    return WaitState(
        resume_at=resume_at,
        detected_at=event.detected_at,
        pattern_kind=event.pattern_kind,
        raw_text=event.raw_text,
        consecutive_limits=consecutive,
        pending_completion_task_id=pending_completion,
    )


def save_wait(store: CheckpointStore, wait: WaitState) -> None:
    store.write(WAIT_SCOPE, wait.to_state(), written_at=wait.detected_at)


def clear_wait(store: CheckpointStore) -> bool:
    return store.clear(WAIT_SCOPE)
