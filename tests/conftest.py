"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from auto_resume.storage.checkpoints import CheckpointStore
from auto_resume.supervisor.engine import TaskQueueEngine
from auto_resume.supervisor.errors import SessionCrashed
from auto_resume.supervisor.locking import SupervisorLock
from auto_resume.supervisor.monitor import MonitorOptions, SupervisorMonitor
from auto_resume.supervisor.repository import QueueRepository
from auto_resume.supervisor.session import SessionController


class FakeClock:
    """Deterministic clock whose ``sleep`` advances time instead of blocking."""

    def __init__(self, start: datetime) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeMultiplexer:
    """In-memory tmux stand-in: each session is a list of pane lines."""

    def __init__(self, *, echo: bool = True) -> None:
        self.sessions: dict[str, list[str]] = {}
        self.created: list[str] = []
        self.killed: list[str] = []
        self.keys: list[tuple[str, str, bool]] = []
        self.echo = echo
        self.responder: Callable[[str], list[str]] | None = None

    def create(self, name: str, command: str | None, cwd: Path | None) -> None:
        self.sessions[name] = [f"{command or 'sh'} ready"]
        self.created.append(name)

    def exists(self, name: str) -> bool:
        return name in self.sessions

    def send_keys(self, name: str, text: str, *, literal: bool = True, enter: bool = True) -> None:
        if name not in self.sessions:
            raise SessionCrashed(f"tmux session is gone: can't find session: {name}")
        self.keys.append((name, text, literal))
        if self.echo and literal and text:
            self.sessions[name].append(f"> {text}")
        if self.responder is not None and literal:
            self.sessions[name].extend(self.responder(text))

    def capture_pane(self, name: str) -> str:
        if name not in self.sessions:
            raise SessionCrashed(f"tmux session is gone: can't find session: {name}")
        return "\n".join(self.sessions[name]) + "\n"

    def kill(self, name: str) -> None:
        self.sessions.pop(name, None)
        self.killed.append(name)

    def emit(self, name: str, *lines: str) -> None:
        self.sessions[name].extend(lines)

    def crash(self, name: str) -> None:
        self.sessions.pop(name, None)

    def typed(self, name: str | None = None) -> list[str]:
        return [text for session, text, literal in self.keys if literal and name in (None, session)]


@dataclass(slots=True)
class SupervisorHarness:
    clock: FakeClock
    multiplexer: FakeMultiplexer
    repository: QueueRepository
    checkpoints: CheckpointStore
    lock: SupervisorLock
    engine: TaskQueueEngine
    session: SessionController
    state_dir: Path

    def monitor(self, **options: object) -> SupervisorMonitor:
        merged: dict[str, object] = {
            "session_name": "agent",
            "poll_interval_seconds": 5.0,
            "restart_delay_seconds": 0.0,
            "timezone": UTC,
        }
        merged.update(options)
        return SupervisorMonitor(
            engine=self.engine,
            session=self.session,
            checkpoints=self.checkpoints,
            lock=self.lock,
            options=MonitorOptions(**merged),  # type: ignore[arg-type]
            clock=self.clock,
            sleeper=self.clock.sleep,
        )

    def second_lock(self, owner_id: str = "instance-b", *, wait_seconds: float = 0.0) -> SupervisorLock:
        return SupervisorLock(
            self.repository.engine,
            owner_id=owner_id,
            wait_seconds=wait_seconds,
            clock=self.clock,
            sleeper=self.clock.sleep,
        )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 14, 10, 0, tzinfo=UTC))


@pytest.fixture()
def repository(tmp_path: Path, clock: FakeClock):
    repo = QueueRepository(tmp_path / "queue.db", clock=clock)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def checkpoints(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "checkpoints")


@pytest.fixture()
def harness(
    tmp_path: Path,
    clock: FakeClock,
    repository: QueueRepository,
    checkpoints: CheckpointStore,
) -> SupervisorHarness:
    lock = SupervisorLock(
        repository.engine,
        owner_id="instance-a",
        wait_seconds=0.0,
        clock=clock,
        sleeper=clock.sleep,
    )
    engine = TaskQueueEngine(
        repository=repository,
        lock=lock,
        checkpoints=checkpoints,
        sleeper=clock.sleep,
    )
    multiplexer = FakeMultiplexer()
    session = SessionController(
        multiplexer,
        command="claude",
        clock=clock,
        sleeper=clock.sleep,
    )
    return SupervisorHarness(
        clock=clock,
        multiplexer=multiplexer,
        repository=repository,
        checkpoints=checkpoints,
        lock=lock,
        engine=engine,
        session=session,
        state_dir=tmp_path,
    )
