"""File-backed checkpoint store with atomic replace semantics.

Each scope lives in its own ``<scope>.json`` document. Writes go to a
temporary file in the same directory, are flushed to disk, and are then
swapped in with ``os.replace`` so readers only ever observe the previous or
the new complete document.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from auto_resume.storage.common import from_iso, utc_now
from auto_resume.supervisor.errors import CheckpointIOError, CheckpointNotFound
from auto_resume.supervisor.models import CheckpointRecord

logger = logging.getLogger(__name__)

CHECKPOINT_FORMAT_VERSION = 1
_TEMP_PREFIX = ".tmp-"
_SCOPE_RE = re.compile(r"^[a-z][a-z0-9_\-]{0,63}$")


class CheckpointStore:
    """Durable scope -> state records under one directory."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, scope: str) -> Path:
        _validate_scope(scope)
        return self.root_dir / f"{scope}.json"

    def write(
        self,
        scope: str,
        state: dict[str, Any],
        *,
        written_at: datetime | None = None,
    ) -> CheckpointRecord:
        """Persist ``state`` for ``scope``; raises CheckpointIOError on failure."""

        target = self.path_for(scope)
        record = CheckpointRecord(scope=scope, state=state, written_at=written_at or utc_now())
        document = {
            "format_version": CHECKPOINT_FORMAT_VERSION,
            "scope": scope,
            "written_at": record.written_at.isoformat(),
            "state": state,
        }
        try:
            encoded = _encode(document)
        except (TypeError, ValueError) as error:
            raise CheckpointIOError(f"Checkpoint state for {scope!r} is not serializable.") from error

        temp_name: str | None = None
        try:
            self.root_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="wb",
                dir=self.root_dir,
                prefix=f"{_TEMP_PREFIX}{scope}-",
                suffix=".json",
                delete=False,
            ) as handle:
                temp_name = handle.name
                handle.write(encoded)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
            temp_name = None
            _fsync_directory(self.root_dir)
        except OSError as error:
            raise CheckpointIOError(f"Failed to write checkpoint {scope!r}: {error}") from error
        finally:
            if temp_name is not None:
                _unlink_quietly(Path(temp_name))
        logger.debug("Checkpoint written: scope=%s path=%s", scope, target)
        return record

    def read(self, scope: str) -> CheckpointRecord:
        """Return the last complete checkpoint for ``scope``."""

        target = self.path_for(scope)
        try:
            raw = target.read_bytes()
        except FileNotFoundError as error:
            raise CheckpointNotFound(f"No checkpoint for scope {scope!r}.") from error
        except OSError as error:
            raise CheckpointIOError(f"Failed to read checkpoint {scope!r}: {error}") from error

        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise CheckpointIOError(f"Checkpoint {scope!r} is corrupted: {error}") from error
        if not isinstance(document, dict) or not isinstance(document.get("state"), dict):
            raise CheckpointIOError(f"Checkpoint {scope!r} has unexpected structure.")

        return CheckpointRecord(
            scope=scope,
            state=document["state"],
            written_at=from_iso(str(document.get("written_at") or utc_now().isoformat())),
        )

    def read_or_none(self, scope: str) -> CheckpointRecord | None:
        try:
            return self.read(scope)
        except CheckpointNotFound:
            return None

    def clear(self, scope: str) -> bool:
        """Remove checkpoint for ``scope``; returns False when none existed."""

        target = self.path_for(scope)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise CheckpointIOError(f"Failed to clear checkpoint {scope!r}: {error}") from error
        _fsync_directory(self.root_dir)
        return True

    def scopes(self) -> list[str]:
        if not self.root_dir.exists():
            return []
        return sorted(
            path.stem
            for path in self.root_dir.glob("*.json")
            if not path.name.startswith(_TEMP_PREFIX)
        )

    def sweep_temp_files(self) -> int:
        """Delete temp files left behind by writers that crashed before rename."""

        if not self.root_dir.exists():
            return 0
        removed = 0
        for path in self.root_dir.glob(f"{_TEMP_PREFIX}*"):
            if _unlink_quietly(path):
                removed += 1
        if removed:
            logger.info("Removed %d orphaned checkpoint temp file(s) in %s", removed, self.root_dir)
        return removed


def encode_state(state: dict[str, Any]) -> bytes:
    """Canonical byte form of a state document, used for equality checks."""

    return _encode(state)


def _encode(document: dict[str, Any]) -> bytes:
    return json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8")


def _validate_scope(scope: str) -> None:
    if not _SCOPE_RE.match(scope):
        raise ValueError(f"Invalid checkpoint scope: {scope!r}")


def _fsync_directory(path: Path) -> None:
    if not hasattr(os, "O_DIRECTORY"):
        return
    try:
        fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _unlink_quietly(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
