"""Runtime configuration for the supervisor, queue and agent session."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from auto_resume.supervisor.models import WaitPolicy
from auto_resume.supervisor.prompts import DEFAULT_COMPLETION_MARKER, validate_marker_template

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True, frozen=True)
class QueueSettings:
    """Task queue defaults and lock discipline."""

    default_max_attempts: int = 3
    default_timeout_seconds: int = 3_600
    requeue_on_failure: bool = True
    lock_stale_after_seconds: int = 300
    lock_wait_seconds: float = 30.0
    lock_retry_interval_seconds: float = 1.0
    busy_timeout_ms: int = 5_000
    checkpoint_write_attempts: int = 3


@dataclass(slots=True, frozen=True)
class UsageLimitSettings:
    """How long to wait when the agent reports a usage limit."""

    cooldown_seconds: int = 300
    backoff_factor: float = 1.5
    max_backoff_seconds: int = 1_800
    wait_policy: WaitPolicy = WaitPolicy.OVERWRITE
    resume_command: str = "continue"
    heartbeat_interval_seconds: float = 30.0
    # IANA zone for clock times printed by the agent; empty means the host zone.
    timezone: str = ""


@dataclass(slots=True, frozen=True)
class SessionSettings:
    """tmux session running the agent."""

    name: str = "claude-auto-resume"
    command: str = "claude"
    cwd: Path | None = None
    tmux_executable: str = "tmux"
    startup_delay_seconds: float = 5.0
    history_lines: int = 2_000
    max_consecutive_restarts: int = 3
    restart_delay_seconds: float = 30.0
    max_restart_delay_seconds: float = 300.0


@dataclass(slots=True, frozen=True)
class MonitorSettings:
    """Monitor loop pacing and task hand-off."""

    poll_interval_seconds: float = 5.0
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    clear_context_between_tasks: bool = True
    clear_context_command: str = "/clear"
    retry_on_timeout: bool = False


@dataclass(slots=True, frozen=True)
class Settings:
    """Application settings grouped by concern."""

    state_dir: Path = Path(".auto_resume")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    usage_limit: UsageLimitSettings = field(default_factory=UsageLimitSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @property
    def db_path(self) -> Path:
        return self.state_dir / "queue.db"

    @property
    def checkpoint_dir(self) -> Path:
        return self.state_dir / "checkpoints"

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from ``AUTO_RESUME_*`` environment variables."""

        cwd_raw = os.getenv("AUTO_RESUME_SESSION_CWD", "").strip()
        return cls(
            state_dir=state_dir or Path(os.getenv("AUTO_RESUME_STATE_DIR", ".auto_resume")),
            log_level=os.getenv("AUTO_RESUME_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                default_max_attempts=int(os.getenv("AUTO_RESUME_TASK_MAX_ATTEMPTS", "3")),
                default_timeout_seconds=int(os.getenv("AUTO_RESUME_TASK_TIMEOUT_SECONDS", "3600")),
                requeue_on_failure=_env_bool("AUTO_RESUME_REQUEUE_ON_FAILURE", default=True),
                lock_stale_after_seconds=int(
                    os.getenv("AUTO_RESUME_LOCK_STALE_AFTER_SECONDS", "300"),
                ),
                lock_wait_seconds=float(os.getenv("AUTO_RESUME_LOCK_WAIT_SECONDS", "30")),
                lock_retry_interval_seconds=float(
                    os.getenv("AUTO_RESUME_LOCK_RETRY_INTERVAL_SECONDS", "1"),
                ),
                busy_timeout_ms=int(os.getenv("AUTO_RESUME_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                checkpoint_write_attempts=int(
                    os.getenv("AUTO_RESUME_CHECKPOINT_WRITE_ATTEMPTS", "3"),
                ),
            ),
            usage_limit=UsageLimitSettings(
                cooldown_seconds=int(os.getenv("AUTO_RESUME_USAGE_LIMIT_COOLDOWN_SECONDS", "300")),
                backoff_factor=float(os.getenv("AUTO_RESUME_BACKOFF_FACTOR", "1.5")),
                max_backoff_seconds=int(os.getenv("AUTO_RESUME_MAX_BACKOFF_SECONDS", "1800")),
                wait_policy=_env_wait_policy("AUTO_RESUME_WAIT_POLICY"),
                resume_command=os.getenv("AUTO_RESUME_RESUME_COMMAND", "continue"),
                heartbeat_interval_seconds=float(
                    os.getenv("AUTO_RESUME_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
                timezone=os.getenv("AUTO_RESUME_TIMEZONE", "").strip(),
            ),
            session=SessionSettings(
                name=os.getenv("AUTO_RESUME_SESSION_NAME", "claude-auto-resume"),
                command=os.getenv("AUTO_RESUME_AGENT_COMMAND", "claude"),
                cwd=Path(cwd_raw) if cwd_raw else None,
                tmux_executable=os.getenv("AUTO_RESUME_TMUX", "tmux"),
                startup_delay_seconds=float(os.getenv("AUTO_RESUME_STARTUP_DELAY_SECONDS", "5")),
                history_lines=int(os.getenv("AUTO_RESUME_HISTORY_LINES", "2000")),
                max_consecutive_restarts=int(
                    os.getenv("AUTO_RESUME_MAX_CONSECUTIVE_RESTARTS", "3"),
                ),
                restart_delay_seconds=float(os.getenv("AUTO_RESUME_RESTART_DELAY_SECONDS", "30")),
                max_restart_delay_seconds=float(
                    os.getenv("AUTO_RESUME_MAX_RESTART_DELAY_SECONDS", "300"),
                ),
            ),
            monitor=MonitorSettings(
                poll_interval_seconds=float(os.getenv("AUTO_RESUME_POLL_INTERVAL_SECONDS", "5")),
                completion_marker=os.getenv(
                    "AUTO_RESUME_COMPLETION_MARKER",
                    DEFAULT_COMPLETION_MARKER,
                ),
                clear_context_between_tasks=_env_bool(
                    "AUTO_RESUME_CLEAR_CONTEXT_BETWEEN_TASKS",
                    default=True,
                ),
                clear_context_command=os.getenv("AUTO_RESUME_CLEAR_CONTEXT_COMMAND", "/clear"),
                retry_on_timeout=_env_bool("AUTO_RESUME_RETRY_ON_TIMEOUT", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise ValueError describing the first invalid setting."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"AUTO_RESUME_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}.")
        if self.queue.default_max_attempts < 1:
            raise ValueError("AUTO_RESUME_TASK_MAX_ATTEMPTS must be >= 1.")
        if self.queue.default_timeout_seconds < 1:
            raise ValueError("AUTO_RESUME_TASK_TIMEOUT_SECONDS must be >= 1.")
        if self.queue.lock_stale_after_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_STALE_AFTER_SECONDS must be > 0.")
        if self.queue.lock_wait_seconds < 0:
            raise ValueError("AUTO_RESUME_LOCK_WAIT_SECONDS must be >= 0.")
        if self.queue.lock_retry_interval_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_RETRY_INTERVAL_SECONDS must be > 0.")
        if self.queue.checkpoint_write_attempts < 1:
            raise ValueError("AUTO_RESUME_CHECKPOINT_WRITE_ATTEMPTS must be >= 1.")
        if self.usage_limit.cooldown_seconds < 0:
            raise ValueError("AUTO_RESUME_USAGE_LIMIT_COOLDOWN_SECONDS must be >= 0.")
        if self.usage_limit.backoff_factor < 1.0:
            raise ValueError("AUTO_RESUME_BACKOFF_FACTOR must be >= 1.0.")
        if self.usage_limit.max_backoff_seconds < self.usage_limit.cooldown_seconds:
            raise ValueError(
                "AUTO_RESUME_MAX_BACKOFF_SECONDS must be >= AUTO_RESUME_USAGE_LIMIT_COOLDOWN_SECONDS.",
            )
        if self.usage_limit.timezone:
            try:
                ZoneInfo(self.usage_limit.timezone)
            except (ZoneInfoNotFoundError, ValueError) as error:
                raise ValueError(
                    f"AUTO_RESUME_TIMEZONE is not a known time zone: {self.usage_limit.timezone!r}.",
                ) from error
        if self.usage_limit.heartbeat_interval_seconds <= 0:
            raise ValueError("AUTO_RESUME_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.usage_limit.heartbeat_interval_seconds >= self.queue.lock_stale_after_seconds:
            raise ValueError(
                "AUTO_RESUME_HEARTBEAT_INTERVAL_SECONDS must be shorter than "
                "AUTO_RESUME_LOCK_STALE_AFTER_SECONDS.",
            )
        if not self.session.name.strip() or any(char in self.session.name for char in ".:"):
            raise ValueError("AUTO_RESUME_SESSION_NAME must be non-empty and contain no '.' or ':'.")
        if self.session.max_consecutive_restarts < 0:
            raise ValueError("AUTO_RESUME_MAX_CONSECUTIVE_RESTARTS must be >= 0.")
        if self.session.restart_delay_seconds < 0:
            raise ValueError("AUTO_RESUME_RESTART_DELAY_SECONDS must be >= 0.")
        if self.session.max_restart_delay_seconds < self.session.restart_delay_seconds:
            raise ValueError(
                "AUTO_RESUME_MAX_RESTART_DELAY_SECONDS must be >= AUTO_RESUME_RESTART_DELAY_SECONDS.",
            )
        if self.session.history_lines < 1:
            raise ValueError("AUTO_RESUME_HISTORY_LINES must be >= 1.")
        if self.monitor.poll_interval_seconds < 0:
            raise ValueError("AUTO_RESUME_POLL_INTERVAL_SECONDS must be >= 0.")
        validate_marker_template(self.monitor.completion_marker)


def _env_wait_policy(name: str) -> WaitPolicy:
    value = os.getenv(name, WaitPolicy.OVERWRITE.value).strip().lower()
    try:
        return WaitPolicy(value)
    except ValueError as error:
        allowed = ", ".join(policy.value for policy in WaitPolicy)
        raise ValueError(f"Invalid value for {name}: {value!r} (expected one of: {allowed})") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
