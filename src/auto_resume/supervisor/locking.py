"""Single-writer supervisor lock stored as a heartbeat row in the queue database."""

from __future__ import annotations

import logging
import math
import os
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from auto_resume.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from auto_resume.storage.sqlmodel_models import SupervisorLockRow
from auto_resume.supervisor.errors import LockConflict, LockStale
from auto_resume.supervisor.models import LockAcquisition, LockView

logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "queue"
DEFAULT_STALE_AFTER_SECONDS = 300
DEFAULT_WAIT_SECONDS = 30.0
DEFAULT_RETRY_INTERVAL_SECONDS = 1.0


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SupervisorLock:
    """Lock with owner identity and heartbeat; abandoned holders are reclaimed.

    The monitor acquires it once and keeps it for the whole run, refreshing
    the heartbeat on every iteration. Short-lived callers (CLI mutations)
    take it through ``hold()`` and release it on exit. ``hold()`` is
    re-entrant for the owner that already holds the lock.
    """

    def __init__(  # noqa: PLR0913
        self,
        engine: Engine,
        *,
        owner_id: str | None = None,
        lock_name: str = DEFAULT_LOCK_NAME,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be > 0")
        if retry_interval_seconds <= 0:
            raise ValueError("retry_interval_seconds must be > 0")
        self.engine = engine
        self.owner_id = owner_id or default_owner_id()
        self.lock_name = lock_name
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.wait_seconds = max(0.0, wait_seconds)
        self.retry_interval_seconds = retry_interval_seconds
        self._clock = clock
        self._sleeper = sleeper
        self._held = False
        self._depth = 0

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self, *, wait: bool = True, reclaim_stale: bool = True) -> LockAcquisition:
        """Take the lock, waiting up to ``wait_seconds`` for a live holder to let go."""

        attempts = 1
        if wait and self.wait_seconds > 0:
            attempts += math.ceil(self.wait_seconds / self.retry_interval_seconds)

        for attempt in range(1, attempts + 1):
            try:
                acquisition = self._try_acquire(reclaim_stale=reclaim_stale)
            except LockConflict:
                if attempt >= attempts:
                    raise
                logger.debug(
                    "Supervisor lock busy, retrying (lock=%s attempt=%d/%d)",
                    self.lock_name,
                    attempt,
                    attempts,
                )
                self._sleeper(self.retry_interval_seconds)
                continue
            self._held = True
            return acquisition
        raise AssertionError("unreachable")  # pragma: no cover

    def heartbeat(self) -> bool:
        """Refresh our heartbeat; False means the lock is no longer ours."""

        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SupervisorLockRow)
                .where(
                    col(SupervisorLockRow.lock_name) == self.lock_name,
                    col(SupervisorLockRow.owner_id) == self.owner_id,
                )
                .values(heartbeat_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                self._held = False
                return False
            session.commit()
        return True

    def release(self) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(SupervisorLockRow).where(
                    col(SupervisorLockRow.lock_name) == self.lock_name,
                    col(SupervisorLockRow.owner_id) == self.owner_id,
                ),
            )
            session.commit()
            released = result.rowcount == 1
        self._held = False
        self._depth = 0
        if released:
            logger.debug("Supervisor lock released (lock=%s owner=%s)", self.lock_name, self.owner_id)
        return released

    def force_release(self) -> LockView | None:
        """Drop the lock row whoever owns it; returns the removed holder."""

        current = self.inspect()
        if current is None:
            return None
        with Session(self.engine) as session:
            session.exec(
                sa_delete(SupervisorLockRow).where(
                    col(SupervisorLockRow.lock_name) == self.lock_name,
                    col(SupervisorLockRow.owner_id) == current.owner_id,
                ),
            )
            session.commit()
        if current.owner_id == self.owner_id:
            self._held = False
            self._depth = 0
        logger.warning(
            "Supervisor lock force-released (lock=%s owner=%s pid=%s)",
            self.lock_name,
            current.owner_id,
            current.pid,
        )
        return current

    def inspect(self) -> LockView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SupervisorLockRow).where(SupervisorLockRow.lock_name == self.lock_name),
            ).one_or_none()
            if row is None:
                return None
            return self._to_view(row)

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Run a block under the lock, taking it only if we do not already hold it."""

        acquired_here = False
        if self._depth == 0:
            if self._held:
                if not self.heartbeat():
                    self._raise_lost()
            else:
                self.acquire()
                acquired_here = True
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if acquired_here and self._held:
                self.release()

    def _try_acquire(self, *, reclaim_stale: bool) -> LockAcquisition:
        while True:
            now = self._clock()
            with Session(self.engine) as session:
                session.add(
                    SupervisorLockRow(
                        lock_name=self.lock_name,
                        owner_id=self.owner_id,
                        pid=os.getpid(),
                        hostname=socket.gethostname(),
                        acquired_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                    ),
                )
                try:
                    session.commit()
                    logger.info(
                        "Supervisor lock acquired (lock=%s owner=%s)",
                        self.lock_name,
                        self.owner_id,
                    )
                    return LockAcquisition(owner_id=self.owner_id, acquired_at=now)
                except IntegrityError as error:
                    session.rollback()
                    current = session.exec(
                        select(SupervisorLockRow).where(
                            SupervisorLockRow.lock_name == self.lock_name,
                        ),
                    ).one_or_none()
                    if current is None:
                        continue

                    if current.owner_id == self.owner_id:
                        if not self._compare_and_swap(session=session, current=current, now=now):
                            continue
                        return LockAcquisition(
                            owner_id=self.owner_id,
                            acquired_at=to_utc_aware_datetime(current.acquired_at),
                            refreshed=True,
                        )

                    heartbeat_at = to_utc_aware_datetime(current.heartbeat_at)
                    if now - heartbeat_at > self.stale_after:
                        if not reclaim_stale:
                            raise LockStale(
                                owner_id=current.owner_id,
                                heartbeat_at=heartbeat_at,
                            ) from error
                        stale_owner = current.owner_id
                        if not self._compare_and_swap(
                            session=session,
                            current=current,
                            now=now,
                            take_over=True,
                        ):
                            continue
                        logger.warning(
                            "Reclaimed stale supervisor lock "
                            "(lock=%s stale_owner=%s stale_heartbeat_at=%s).",
                            self.lock_name,
                            stale_owner,
                            heartbeat_at.isoformat(),
                        )
                        return LockAcquisition(
                            owner_id=self.owner_id,
                            acquired_at=now,
                            reclaimed_from=stale_owner,
                        )

                    raise LockConflict(
                        owner_id=current.owner_id,
                        pid=current.pid,
                        heartbeat_at=heartbeat_at,
                    ) from error

    def _compare_and_swap(
        self,
        *,
        session: Session,
        current: SupervisorLockRow,
        now: datetime,
        take_over: bool = False,
    ) -> bool:
        values: dict[str, object] = {"heartbeat_at": to_db_datetime(now)}
        if take_over:
            values.update(
                owner_id=self.owner_id,
                pid=os.getpid(),
                hostname=socket.gethostname(),
                acquired_at=to_db_datetime(now),
            )
        result = session.exec(
            sa_update(SupervisorLockRow)
            .where(
                col(SupervisorLockRow.lock_name) == self.lock_name,
                col(SupervisorLockRow.owner_id) == current.owner_id,
                col(SupervisorLockRow.heartbeat_at) == current.heartbeat_at,
            )
            .values(**values),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        session.commit()
        return True

    def _raise_lost(self) -> None:
        current = self.inspect()
        self._held = False
        if current is None:
            raise LockConflict(owner_id="<none>", pid=0, heartbeat_at=self._clock())
        raise LockConflict(
            owner_id=current.owner_id,
            pid=current.pid,
            heartbeat_at=current.heartbeat_at,
        )

    def _to_view(self, row: SupervisorLockRow) -> LockView:
        heartbeat_at = to_utc_aware_datetime(row.heartbeat_at)
        return LockView(
            lock_name=row.lock_name,
            owner_id=row.owner_id,
            pid=row.pid,
            hostname=row.hostname,
            acquired_at=to_utc_aware_datetime(row.acquired_at),
            heartbeat_at=heartbeat_at,
            is_stale=self._clock() - heartbeat_at > self.stale_after,
        )
