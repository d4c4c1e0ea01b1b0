"""Terminal-multiplexer session control for the supervised agent."""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from auto_resume.storage.common import utc_now
from auto_resume.supervisor.errors import SessionCrashed, SupervisorError

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LINES = 2000
DEFAULT_CHUNK_LINES = 40
DEFAULT_CHUNK_CHARS = 4000
DEFAULT_FOOTER_LINES = 20


class MultiplexerError(SupervisorError):
    """A multiplexer command failed for a reason other than a missing session."""


class Multiplexer(Protocol):
    def create(self, name: str, command: str | None, cwd: Path | None) -> None: ...

    def exists(self, name: str) -> bool: ...

    def send_keys(self, name: str, text: str, *, literal: bool = True, enter: bool = True) -> None: ...

    def capture_pane(self, name: str) -> str: ...

    def kill(self, name: str) -> None: ...


class TmuxMultiplexer:
    """``Multiplexer`` implemented with tmux subprocess calls."""

    def __init__(
        self,
        *,
        executable: str = "tmux",
        history_lines: int = DEFAULT_HISTORY_LINES,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.executable = executable
        self.history_lines = history_lines
        self.timeout_seconds = timeout_seconds

    def create(self, name: str, command: str | None, cwd: Path | None) -> None:
        args = ["new-session", "-d", "-s", name]
        if cwd is not None:
            args.extend(["-c", str(cwd)])
        if command:
            args.append(command)
        self._run(args)

    def exists(self, name: str) -> bool:
        return self._run(["has-session", "-t", name], check=False).returncode == 0

    def send_keys(self, name: str, text: str, *, literal: bool = True, enter: bool = True) -> None:
        if text:
            args = ["send-keys", "-t", name]
            if literal:
                args.append("-l")
            args.append(text)
            self._run(args)
        if enter:
            self._run(["send-keys", "-t", name, "Enter"])

    def capture_pane(self, name: str) -> str:
        completed = self._run(
            ["capture-pane", "-p", "-J", "-t", name, "-S", f"-{self.history_lines}"],
        )
        return completed.stdout

    def kill(self, name: str) -> None:
        self._run(["kill-session", "-t", name], check=False)

    def _run(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        argv = [self.executable, *args]
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as error:
            raise MultiplexerError(f"tmux command timed out: {' '.join(args[:1])}") from error
        except OSError as error:
            raise MultiplexerError(f"Failed to start {self.executable}: {error}") from error

        if check and completed.returncode != 0:
            stderr = completed.stderr.strip()
            if "can't find session" in stderr or "no server running" in stderr:
                raise SessionCrashed(f"tmux session is gone: {stderr}")
            raise MultiplexerError(
                f"tmux {args[0]} failed (exit={completed.returncode}): {stderr}",
            )
        return completed


@dataclass(slots=True)
class SessionHandle:
    """Supervised multiplexer session; generation grows with every restart."""

    name: str
    generation: int
    started_at: datetime
    attached: bool = False


class OutputTracker:
    """Turns successive pane snapshots into the lines that are new since the last poll.

    Agent TUIs redraw an input box and status footer at the bottom of the
    pane and print new output above it, so the previous snapshot is anchored
    with up to ``max_footer_lines`` of its trailing lines dropped. When no
    anchor is found (screen cleared or redrawn) only lines never seen in the
    previous snapshot are returned.
    """

    def __init__(self, *, max_footer_lines: int = DEFAULT_FOOTER_LINES) -> None:
        if max_footer_lines < 0:
            raise ValueError("max_footer_lines must be >= 0")
        self.max_footer_lines = max_footer_lines
        self._lines: list[str] = []

    @property
    def last_snapshot(self) -> list[str]:
        return list(self._lines)

    def reset(self, snapshot: str = "") -> None:
        self._lines = _snapshot_lines(snapshot)

    def diff(self, snapshot: str) -> list[str]:
        lines = _snapshot_lines(snapshot)
        previous = self._lines
        self._lines = lines
        if not previous:
            return lines

        best_overlap = 0
        best_footer = 0
        for footer in range(min(self.max_footer_lines, len(previous) - 1) + 1):
            overlap = _overlap(previous[: len(previous) - footer], lines)
            if overlap > best_overlap:
                best_overlap, best_footer = overlap, footer

        if best_overlap:
            fresh = lines[best_overlap:]
            if best_footer and fresh[-best_footer:] == previous[-best_footer:]:
                # Footer redrawn unchanged below the new output.
                fresh = fresh[:-best_footer]
            return fresh

        seen = set(previous)
        return [line for line in lines if line not in seen]


class SessionController:
    """Owns the lifecycle of the agent session and its output stream."""

    def __init__(  # noqa: PLR0913
        self,
        multiplexer: Multiplexer,
        *,
        command: str | None = None,
        cwd: Path | None = None,
        startup_delay_seconds: float = 0.0,
        chunk_lines: int = DEFAULT_CHUNK_LINES,
        chunk_chars: int = DEFAULT_CHUNK_CHARS,
        clock: Callable[[], datetime] = utc_now,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        if chunk_lines < 1 or chunk_chars < 1:
            raise ValueError("chunk bounds must be >= 1")
        self.multiplexer = multiplexer
        self.command = command
        self.cwd = cwd
        self.startup_delay_seconds = startup_delay_seconds
        self.chunk_lines = chunk_lines
        self.chunk_chars = chunk_chars
        self._clock = clock
        self._sleeper = sleeper
        self._tracker = OutputTracker()

    def ensure_session(self, name: str, *, generation: int = 0) -> SessionHandle:
        """Attach to ``name`` if it is running, otherwise start it."""

        if self.multiplexer.exists(name):
            # Output already on screen predates this supervisor; do not classify it again.
            self._tracker.reset(self.multiplexer.capture_pane(name))
            logger.info("Attached to existing session %s", name)
            return SessionHandle(name=name, generation=generation, started_at=self._clock(), attached=True)

        self._start(name)
        return SessionHandle(name=name, generation=generation, started_at=self._clock())

    def is_alive(self, handle: SessionHandle) -> bool:
        return self.multiplexer.exists(handle.name)

    def send(self, handle: SessionHandle, text: str) -> None:
        """Type ``text`` into the session and submit it as one line."""

        self._require_alive(handle)
        line = " ".join(text.splitlines()).strip()
        self.multiplexer.send_keys(handle.name, line, literal=True, enter=True)
        logger.debug("Sent %d chars to session %s", len(line), handle.name)

    def interrupt(self, handle: SessionHandle) -> None:
        self._require_alive(handle)
        self.multiplexer.send_keys(handle.name, "Escape", literal=False, enter=False)
        logger.info("Interrupted agent in session %s", handle.name)

    def read_output(self, handle: SessionHandle) -> Iterator[str]:
        """Yield bounded chunks of output that appeared since the previous read."""

        self._require_alive(handle)
        snapshot = self.multiplexer.capture_pane(handle.name)
        new_lines = self._tracker.diff(snapshot)
        return _chunk_lines(new_lines, max_lines=self.chunk_lines, max_chars=self.chunk_chars)

    def restart(self, handle: SessionHandle) -> SessionHandle:
        if self.multiplexer.exists(handle.name):
            self.multiplexer.kill(handle.name)
        self._start(handle.name)
        logger.warning("Restarted session %s (generation %d)", handle.name, handle.generation + 1)
        return SessionHandle(
            name=handle.name,
            generation=handle.generation + 1,
            started_at=self._clock(),
        )

    def stop(self, handle: SessionHandle) -> None:
        self.multiplexer.kill(handle.name)
        self._tracker.reset()
        logger.info("Stopped session %s", handle.name)

    def _start(self, name: str) -> None:
        self.multiplexer.create(name, self.command, self.cwd)
        self._tracker.reset()
        logger.info("Started session %s (command=%s)", name, self.command or "<shell>")
        if self.startup_delay_seconds > 0:
            self._sleeper(self.startup_delay_seconds)

    def _require_alive(self, handle: SessionHandle) -> None:
        if not self.multiplexer.exists(handle.name):
            raise SessionCrashed(f"Session {handle.name} is not running.")


def _snapshot_lines(snapshot: str) -> list[str]:
    lines = [line.rstrip() for line in snapshot.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def _overlap(previous: list[str], current: list[str]) -> int:
    """Length of the longest tail of ``previous`` that is a head of ``current``."""

    if not previous or not current:
        return 0
    first = current[0]
    for start, line in enumerate(previous):
        if line != first:
            continue
        size = len(previous) - start
        if size <= len(current) and previous[start:] == current[:size]:
            return size
    return 0


def _chunk_lines(lines: list[str], *, max_lines: int, max_chars: int) -> Iterator[str]:
    buffer: list[str] = []
    size = 0
    for line in lines:
        line = line[:max_chars]
        if buffer and (len(buffer) >= max_lines or size + len(line) + 1 > max_chars):
            yield "\n".join(buffer)
            buffer = []
            size = 0
        buffer.append(line)
        size += len(line) + 1
    if buffer:
        yield "\n".join(buffer)
