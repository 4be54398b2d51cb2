"""Durable storage for the upload queue.

The queue is persisted as a JSON array of jobs and rewritten in full after every
mutation. Writes go to a temporary file which is flushed, fsynced and renamed over
the previous state, so a crash leaves either the old or the new queue on disk.
"""

import json
import logging
import os
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from fieldsensor.uploads.models import UploadJob

logger = logging.getLogger(__name__)

_JOBS_ADAPTER = TypeAdapter(list[UploadJob])


class PersistenceError(OSError):
    """Raised when the queue state cannot be read from or written to stable storage."""


class QueueStateStore:
    """Reads and atomically writes the serialized job queue."""

    def __init__(self, state_path: Path) -> None:
        self.state_path = state_path

    def load(self) -> list[UploadJob]:
        """Read the persisted queue.

        Returns:
            The jobs in queue order, or an empty list when no state exists yet

        Raises:
            PersistenceError: If the state exists but cannot be read or parsed
        """
        if not self.state_path.exists():
            return []

        try:
            raw = self.state_path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot read queue state {self.state_path}: {e}") from e

        if not raw.strip():
            return []

        try:
            return _JOBS_ADAPTER.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise PersistenceError(f"Queue state {self.state_path} is corrupt: {e}") from e

    def save(self, jobs: list[UploadJob]) -> None:
        """Atomically replace the persisted queue.

        Raises:
            PersistenceError: If the state cannot be written
        """
        payload = json.dumps(_JOBS_ADAPTER.dump_python(jobs, mode="json"), indent=2)
        temp_path = self.state_path.with_suffix(".tmp")

        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(self.state_path)  # Atomic on POSIX
        except OSError as e:
            logger.error(
                "Failed to persist upload queue",
                extra={"path": str(self.state_path), "jobs": len(jobs), "error": str(e)},
            )
            raise PersistenceError(f"Cannot write queue state {self.state_path}: {e}") from e
