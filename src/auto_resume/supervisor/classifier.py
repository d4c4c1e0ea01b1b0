"""Deterministic rate-limit classification of agent output."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from auto_resume.supervisor.errors import ClassificationAmbiguous
from auto_resume.supervisor.models import PatternKind, RateLimitEvent

logger = logging.getLogger(__name__)

RATE_LIMIT_CLASSIFIER_VERSION = 1
DEFAULT_BACKOFF_SECONDS = 300

_RAW_TEXT_MAX_CHARS = 240
_MAX_RELATIVE_WAIT = timedelta(days=7)

_CLOCK_TIME_RE = re.compile(
    r"\b(?:"
    r"(?:blocking|blocked|wait(?:ing)?|try\s+again|available(?:\s+again)?|retry|resum(?:e|es|ing))"
    r"\s+(?:until|at)"
    r"|resets?(?:\s+at)?"
    r")\s+"
    r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?(?![\d:])"
    r"\s*(?P<meridiem>[ap]\.?m\b\.?)?"
    r"(?:\s*\((?P<zone>[A-Za-z][A-Za-z0-9_+\-]*(?:/[A-Za-z0-9_+\-]+)*)\))?",
    re.IGNORECASE,
)
_EPOCH_RE = re.compile(
    r"\b(?:usage|rate)\s+limit\s+reached\s*\|\s*(?P<epoch>\d{10})\b",
    re.IGNORECASE,
)
_DURATION_UNIT = r"(?:hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)\b"
_RELATIVE_DURATION_RE = re.compile(
    r"\b(?:retry|try\s+again|wait|available(?:\s+again)?|resum(?:e|es|ing)|resets?|back)"
    r"\s+(?:(?:in|for|after)\s+)?(?:about\s+|approximately\s+|~\s*)?"
    rf"(?P<duration>\d+\s*{_DURATION_UNIT}(?:\s*(?:,|and)?\s*\d+\s*{_DURATION_UNIT})*)",
    re.IGNORECASE,
)
_DURATION_PART_RE = re.compile(rf"(?P<amount>\d+)\s*(?P<unit>{_DURATION_UNIT})", re.IGNORECASE)
# Short retries ("Retry in 5s") are ordinary tool output unless a limit is named nearby.
_LIMIT_CONTEXT_RE = re.compile(
    r"\b(?:usage|rate|request|daily|hourly|weekly)\s+limit|\brate[-\s]?limited\b|\bquota\b"
    r"|\btoo\s+many\s+requests\b|\b429\b",
    re.IGNORECASE,
)
_GENERIC_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (name, re.compile(pattern, re.IGNORECASE))
    for name, pattern in (
        ("usage_limit", r"\busage\s+limit\s+(?:exceeded|reached|hit)\b"),
        ("rate_limit", r"\brate\s+limit\s+(?:exceeded|reached|hit)\b"),
        ("request_limit", r"\brequest\s+limit\s+exceeded\b"),
        ("quota", r"\b(?:api\s+)?quota\s+exceeded\b"),
        ("too_many_requests", r"\btoo\s+many\s+requests\b"),
        (
            "periodic_limit",
            r"\b(?:daily|hourly|weekly|\d+-hour)\s+(?:usage\s+)?limit\s+(?:exceeded|reached)\b",
        ),
    )
)


def classify_rate_limit(
    text: str,
    now: datetime,
    *,
    default_backoff_seconds: int = DEFAULT_BACKOFF_SECONDS,
) -> RateLimitEvent | None:
    """Map one output chunk to a rate-limit event, or None when it is not one.

    Explicit clock times win over relative durations, which win over generic
    exhaustion phrases. Unparseable time expressions never raise.
    """

    if not text or not text.strip():
        return None

    event = _match_clock_time(text, now)
    if event is not None:
        return event

    event = _match_relative_duration(text, now)
    if event is not None:
        return event

    for _name, pattern in _GENERIC_PATTERNS:
        match = pattern.search(text)
        if match is not None:
            return RateLimitEvent(
                raw_text=_snippet(text, match),
                pattern_kind=PatternKind.GENERIC_EXCEEDED,
                resume_at=now + timedelta(seconds=max(0, default_backoff_seconds)),
                detected_at=now,
            )
    return None


def _match_clock_time(text: str, now: datetime) -> RateLimitEvent | None:
    match = _EPOCH_RE.search(text)
    if match is not None:
        tz = now.tzinfo or timezone.utc
        resume_at = max(now, datetime.fromtimestamp(int(match.group("epoch")), tz=tz))
        return RateLimitEvent(
            raw_text=_snippet(text, match),
            pattern_kind=PatternKind.EXPLICIT_CLOCK_TIME,
            resume_at=resume_at,
            detected_at=now,
        )

    for match in _CLOCK_TIME_RE.finditer(text):
        try:
            resume_at = _resolve_clock_time(
                now=now,
                hour_raw=match.group("hour"),
                minute_raw=match.group("minute"),
                meridiem_raw=match.group("meridiem"),
                zone_raw=match.group("zone"),
            )
        except ClassificationAmbiguous as error:
            logger.debug("Ignoring ambiguous clock time %r: %s", match.group(0), error)
            continue
        return RateLimitEvent(
            raw_text=_snippet(text, match),
            pattern_kind=PatternKind.EXPLICIT_CLOCK_TIME,
            resume_at=resume_at,
            detected_at=now,
        )
    return None


def _resolve_clock_time(
    *,
    now: datetime,
    hour_raw: str,
    minute_raw: str | None,
    meridiem_raw: str | None,
    zone_raw: str | None,
) -> datetime:
    hour = int(hour_raw)
    minute = int(minute_raw) if minute_raw is not None else 0
    if minute > 59:
        raise ClassificationAmbiguous(f"minute out of range: {minute_raw}")

    if meridiem_raw:
        if not 1 <= hour <= 12:
            raise ClassificationAmbiguous(f"12-hour clock out of range: {hour_raw}")
        is_pm = meridiem_raw.lower().startswith("p")
        hour = hour % 12 + (12 if is_pm else 0)
    else:
        if minute_raw is None:
            raise ClassificationAmbiguous(f"bare hour without minutes or am/pm: {hour_raw}")
        if hour > 23:
            raise ClassificationAmbiguous(f"24-hour clock out of range: {hour_raw}")

    local_now = now
    if zone_raw:
        if now.tzinfo is None:
            raise ClassificationAmbiguous("zone given but detection time is naive")
        try:
            local_now = now.astimezone(ZoneInfo(zone_raw))
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ClassificationAmbiguous(f"unknown time zone: {zone_raw}") from error

    target = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target < local_now:
        target += timedelta(days=1)
    if now.tzinfo is not None:
        return target.astimezone(now.tzinfo)
    return target


def _match_relative_duration(text: str, now: datetime) -> RateLimitEvent | None:
    for match in _RELATIVE_DURATION_RE.finditer(text):
        if _seconds_only(match.group("duration")) and _LIMIT_CONTEXT_RE.search(text) is None:
            logger.debug("Ignoring short retry without a limit phrase: %r", match.group(0))
            continue
        try:
            duration = _parse_duration(match.group("duration"))
        except ClassificationAmbiguous as error:
            logger.debug("Ignoring ambiguous duration %r: %s", match.group(0), error)
            continue
        return RateLimitEvent(
            raw_text=_snippet(text, match),
            pattern_kind=PatternKind.RELATIVE_DURATION,
            resume_at=now + duration,
            detected_at=now,
        )
    return None


def _seconds_only(raw: str) -> bool:
    return all(
        part.group("unit").lower().startswith("s") for part in _DURATION_PART_RE.finditer(raw)
    )


def _parse_duration(raw: str) -> timedelta:
    total = timedelta()
    for part in _DURATION_PART_RE.finditer(raw):
        amount = int(part.group("amount"))
        unit = part.group("unit").lower()
        if unit.startswith("h"):
            total += timedelta(hours=amount)
        elif unit.startswith("m"):
            total += timedelta(minutes=amount)
        else:
            total += timedelta(seconds=amount)
    if total > _MAX_RELATIVE_WAIT:
        raise ClassificationAmbiguous(f"implausible wait duration: {raw}")
    return total


def _snippet(text: str, match: re.Match[str]) -> str:
    line_start = text.rfind("\n", 0, match.start()) + 1
    line_end = text.find("\n", match.end())
    if line_end == -1:
        line_end = len(text)
    return text[line_start:line_end].strip()[:_RAW_TEXT_MAX_CHARS]
