from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from auto_resume.storage.checkpoints import CheckpointStore
from auto_resume.supervisor.errors import CheckpointIOError
from auto_resume.supervisor.models import PatternKind, RateLimitEvent, WaitPolicy
from auto_resume.supervisor.waits import (
    WAIT_SCOPE,
    BackoffPolicy,
    RecoveryStatus,
    WaitState,
    apply_policy,
    recover_wait,
    save_wait,
)

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Usage-Limit Waits"),
]

T0 = datetime(2026, 3, 14, 10, 0, tzinfo=UTC)
BACKOFF = BackoffPolicy(default_seconds=300, factor=1.5, max_seconds=1800, reset_after_seconds=1800)


def _event(kind: PatternKind, detected_at: datetime, resume_at: datetime) -> RateLimitEvent:
    return RateLimitEvent(
        raw_text="usage limit exceeded",
        pattern_kind=kind,
        resume_at=resume_at,
        detected_at=detected_at,
    )


def _generic(detected_at: datetime) -> RateLimitEvent:
    return _event(PatternKind.GENERIC_EXCEEDED, detected_at, detected_at + timedelta(seconds=300))


def test_backoff_grows_and_is_capped() -> None:
    delays = [BACKOFF.delay_for(n) for n in range(1, 7)]
    assert delays == [300.0, 450.0, 675.0, 1012.5, 1518.75, 1800.0]


def test_first_event_uses_its_own_resume_time() -> None:
    wait = apply_policy(None, _generic(T0), policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)

    assert wait.resume_at == T0 + timedelta(minutes=5)
    assert wait.consecutive_limits == 1


def test_repeated_generic_limit_backs_off() -> None:
    first = apply_policy(None, _generic(T0), policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)
    detected = first.resume_at + timedelta(seconds=30)

    second = apply_policy(first, _generic(detected), policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)

    assert second.consecutive_limits == 2
    assert second.resume_at == detected + timedelta(seconds=450)


def test_escalation_resets_after_a_quiet_period() -> None:
    first = apply_policy(None, _generic(T0), policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)
    detected = first.resume_at + timedelta(hours=1)

    second = apply_policy(first, _generic(detected), policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)

    assert second.consecutive_limits == 1
    assert second.resume_at == detected + timedelta(seconds=300)


def test_explicit_time_is_never_stretched_by_backoff() -> None:
    first = apply_policy(None, _generic(T0), policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)
    detected = first.resume_at
    explicit = _event(PatternKind.EXPLICIT_CLOCK_TIME, detected, detected + timedelta(minutes=1))

    second = apply_policy(first, explicit, policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)

    assert second.consecutive_limits == 2
    assert second.resume_at == detected + timedelta(minutes=1)


@pytest.mark.parametrize(
    ("policy", "expected"),
    [
        (WaitPolicy.OVERWRITE, T0 + timedelta(minutes=40)),
        (WaitPolicy.LATEST, T0 + timedelta(hours=2)),
    ],
)
def test_new_event_during_pending_wait(policy: WaitPolicy, expected: datetime) -> None:
    pending = WaitState(
        resume_at=T0 + timedelta(hours=2),
        detected_at=T0,
        pattern_kind=PatternKind.EXPLICIT_CLOCK_TIME,
        raw_text="blocking until 12:00",
        pending_completion_task_id="task-000001",
    )
    event = _event(
        PatternKind.RELATIVE_DURATION,
        T0 + timedelta(minutes=10),
        T0 + timedelta(minutes=40),
    )

    wait = apply_policy(pending, event, policy=policy, backoff=BACKOFF)

    assert wait.resume_at == expected
    assert wait.pending_completion_task_id == "task-000001"


def test_wait_state_round_trip_and_malformed_state() -> None:
    wait = WaitState(
        resume_at=T0 + timedelta(minutes=5),
        detected_at=T0,
        pattern_kind=PatternKind.GENERIC_EXCEEDED,
        raw_text="usage limit exceeded",
        consecutive_limits=3,
    )

    assert WaitState.from_state(wait.to_state()) == wait
    with pytest.raises(CheckpointIOError):
        WaitState.from_state({"resume_at": "soon"})


def test_recover_wait(checkpoints: CheckpointStore) -> None:
    assert recover_wait(checkpoints, T0).status is RecoveryStatus.FRESH

    wait = apply_policy(None, _generic(T0), policy=WaitPolicy.OVERWRITE, backoff=BACKOFF)
    save_wait(checkpoints, wait)

    waiting = recover_wait(checkpoints, T0 + timedelta(minutes=2))
    assert waiting.status is RecoveryStatus.WAITING
    assert waiting.wait == wait
    assert waiting.remaining_seconds == 180

    resumed = recover_wait(checkpoints, T0 + timedelta(minutes=6))
    assert resumed.status is RecoveryStatus.RESUMED
    assert checkpoints.read_or_none(WAIT_SCOPE) is None
