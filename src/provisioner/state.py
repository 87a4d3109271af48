"""State snapshot storage.

The executor never talks to storage directly: the reconciler loads a
snapshot before planning, checks it again before applying, and saves the
executor's working snapshot afterwards (also after a partial failure, so
the next run starts from what really exists).

SECURITY: File reads enforce a size limit; writes go to a temporary file
that is renamed over the target, so a crash never leaves half a snapshot.
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .errors import StateConflictError, StateLoadError
from .models import StateSnapshot

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Persists and loads StateSnapshots between runs."""

    @abstractmethod
    def load(self) -> StateSnapshot:
        """Load the current snapshot; an empty one if nothing was saved yet."""

    @abstractmethod
    def save(self, snapshot: StateSnapshot) -> None:
        """Persist a snapshot."""

    def check_current(self, lineage: str, serial: int) -> StateSnapshot:
        """Load the snapshot and verify it is the one a plan was built on.

        Raises:
            StateConflictError: If lineage or serial no longer match.
        """
        current = self.load()
        if serial == 0 and current.serial == 0 and not current.resources:
            # Nothing was ever saved; the plan's lineage starts the history
            current.lineage = lineage
            return current
        if current.lineage != lineage or current.serial != serial:
            raise StateConflictError(
                "State changed since the plan was computed "
                f"(expected lineage={lineage} serial={serial}, "
                f"found lineage={current.lineage} serial={current.serial}); "
                "re-run plan before applying",
                operation="apply",
            )
        return current


class MemoryStateStore(StateStore):
    """Keeps the snapshot in memory. Used by tests and dry runs."""

    def __init__(self, snapshot: StateSnapshot | None = None) -> None:
        self._snapshot = snapshot.copy_snapshot() if snapshot else StateSnapshot()
        self.save_count = 0

    def load(self) -> StateSnapshot:
        return self._snapshot.copy_snapshot()

    def save(self, snapshot: StateSnapshot) -> None:
        self._snapshot = snapshot.copy_snapshot()
        self.save_count += 1


class FileStateStore(StateStore):
    """Stores the snapshot as a JSON document on local disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StateSnapshot:
        """Load the snapshot from disk.

        Raises:
            StateLoadError: If the file is too large, unreadable or invalid.
        """
        if not self._path.exists():
            logger.info("No state file found, starting empty", extra={"path": str(self._path)})
            return StateSnapshot()

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateLoadError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateLoadError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateLoadError(f"Failed to read state file {self._path}: {e}") from e

        try:
            snapshot = StateSnapshot.model_validate_json(content)
        except ValidationError as e:
            raise StateLoadError(f"Invalid state file {self._path}: {e}") from e

        logger.debug(
            "State loaded",
            extra={
                "path": str(self._path),
                "serial": snapshot.serial,
                "resource_count": len(snapshot),
            },
        )
        return snapshot

    def save(self, snapshot: StateSnapshot) -> None:
        """Atomically write the snapshot to disk."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = snapshot.model_dump_json(by_alias=True, indent=2)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info(
            "State saved",
            extra={
                "path": str(self._path),
                "serial": snapshot.serial,
                "resource_count": len(snapshot),
            },
        )
