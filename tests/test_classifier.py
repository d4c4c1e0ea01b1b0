from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import allure
import pytest

from auto_resume.supervisor.classifier import (
    RATE_LIMIT_CLASSIFIER_VERSION,
    classify_rate_limit,
)
from auto_resume.supervisor.models import PatternKind

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Rate-Limit Classification"),
]

NOW = datetime(2026, 3, 14, 10, 0, tzinfo=UTC)


def test_classifier_version_is_stable() -> None:
    assert RATE_LIMIT_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    "text",
    [
        "Claude usage limit exceeded",
        "Error: rate limit reached, please slow down",
        "429 Too Many Requests",
        "API quota exceeded for this project",
        "Your daily limit reached",
    ],
)
def test_generic_phrase_waits_default_backoff(text: str) -> None:
    event = classify_rate_limit(text, NOW, default_backoff_seconds=300)

    assert event is not None
    assert event.pattern_kind is PatternKind.GENERIC_EXCEEDED
    assert event.resume_at == NOW + timedelta(minutes=5)
    assert event.detected_at == NOW
    assert event.wait_seconds == 300


def test_generic_phrase_is_deterministic() -> None:
    first = classify_rate_limit("usage limit exceeded", NOW)
    second = classify_rate_limit("usage limit exceeded", NOW)
    assert first == second


def test_clock_time_earlier_than_now_rolls_to_next_day() -> None:
    now = datetime(2026, 3, 14, 23, 50, tzinfo=UTC)

    event = classify_rate_limit("Claude AI usage limit reached, blocking until 2am", now)

    assert event is not None
    assert event.pattern_kind is PatternKind.EXPLICIT_CLOCK_TIME
    assert event.resume_at == datetime(2026, 3, 15, 2, 0, tzinfo=UTC)


def test_clock_time_later_today_stays_today() -> None:
    event = classify_rate_limit("5-hour limit reached - resets 3:30pm", NOW)

    assert event is not None
    assert event.pattern_kind is PatternKind.EXPLICIT_CLOCK_TIME
    assert event.resume_at == datetime(2026, 3, 14, 15, 30, tzinfo=UTC)


def test_clock_time_wins_over_generic_phrase_in_same_chunk() -> None:
    text = "usage limit exceeded\nPlease try again at 11:15"

    event = classify_rate_limit(text, NOW)

    assert event is not None
    assert event.pattern_kind is PatternKind.EXPLICIT_CLOCK_TIME
    assert event.resume_at == datetime(2026, 3, 14, 11, 15, tzinfo=UTC)
    assert event.raw_text == "Please try again at 11:15"


def test_clock_time_with_zone_is_converted() -> None:
    try:
        ZoneInfo("Europe/Berlin")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not installed")

    event = classify_rate_limit("Your limit resets 1pm (Europe/Berlin)", NOW)

    assert event is not None
    assert event.resume_at == datetime(2026, 3, 14, 12, 0, tzinfo=UTC)
    assert event.resume_at.tzinfo == NOW.tzinfo


def test_epoch_marker_is_explicit_clock_time() -> None:
    resume = NOW + timedelta(hours=2)

    event = classify_rate_limit(f"Claude AI usage limit reached|{int(resume.timestamp())}", NOW)

    assert event is not None
    assert event.pattern_kind is PatternKind.EXPLICIT_CLOCK_TIME
    assert event.resume_at == resume


def test_relative_duration() -> None:
    event = classify_rate_limit("Rate limited. Please retry in 2 hours 30 minutes.", NOW)

    assert event is not None
    assert event.pattern_kind is PatternKind.RELATIVE_DURATION
    assert event.resume_at == NOW + timedelta(hours=2, minutes=30)


def test_relative_duration_wins_over_generic_phrase() -> None:
    event = classify_rate_limit("Too many requests, try again in 90 seconds", NOW)

    assert event is not None
    assert event.pattern_kind is PatternKind.RELATIVE_DURATION
    assert event.resume_at == NOW + timedelta(seconds=90)


def test_ambiguous_clock_time_falls_back_to_generic() -> None:
    event = classify_rate_limit("usage limit exceeded, blocking until 27:90", NOW)

    assert event is not None
    assert event.pattern_kind is PatternKind.GENERIC_EXCEEDED


def test_implausible_duration_is_ignored() -> None:
    assert classify_rate_limit("please wait 900 hours", NOW) is None


def test_unknown_zone_is_not_fatal() -> None:
    assert classify_rate_limit("resets 3pm (Mars/Olympus)", NOW) is None


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   \n",
        "Refactored the rate limiter module; all 42 tests pass.",
        "Running pytest... done",
    ],
)
def test_ordinary_output_is_not_a_limit(text: str) -> None:
    assert classify_rate_limit(text, NOW) is None


def test_raw_text_is_the_matching_line() -> None:
    text = "thinking...\nError: usage limit reached\nmore output"

    event = classify_rate_limit(text, NOW)

    assert event is not None
    assert event.raw_text == "Error: usage limit reached"


def test_clock_time_equal_to_now_stays_today() -> None:
    event = classify_rate_limit("usage limit reached, try again at 10:00", NOW)

    assert event is not None
    assert event.resume_at == NOW
    assert event.wait_seconds == 0


@pytest.mark.parametrize(
    "text",
    [
        "Retry in 5s",
        "Connection reset by peer, retry in 10 seconds",
        "wait 2 seconds for the dev server to reload",
    ],
)
def test_short_retry_without_limit_phrase_is_not_a_limit(text: str) -> None:
    assert classify_rate_limit(text, NOW) is None


def test_short_retry_next_to_limit_phrase_is_a_limit() -> None:
    event = classify_rate_limit("Rate limit hit, retry in 20 seconds", NOW)

    assert event is not None
    assert event.pattern_kind is PatternKind.RELATIVE_DURATION
    assert event.resume_at == NOW + timedelta(seconds=20)
