"""Persistent FIFO queue of detection uploads.

Per-job lifecycle::

    Pending -> Uploading -> Completed (removed)
                         -> Failed -> Pending (retry_count + 1)
                         -> Evicted (removed once retry_count reaches the ceiling)

The on-disk state is the source of truth across restarts. Every mutation persists the
full queue before it takes effect in memory, so a failed write leaves memory and disk
in agreement and surfaces as :class:`PersistenceError`.
"""

import asyncio
import logging
from typing import NamedTuple

from fieldsensor.system.file_manager import FileManager
from fieldsensor.uploads.backend import DetectionBackend, UploadError
from fieldsensor.uploads.models import DetectionMetadata, UploadJob
from fieldsensor.uploads.store import QueueStateStore

logger = logging.getLogger(__name__)


class DrainResult(NamedTuple):
    """Summary of one drain pass."""

    uploaded: int = 0
    evicted: int = 0
    failed: bool = False  # Stopped early because an upload attempt failed
    skipped: bool = False  # Another drain was already active


class UploadQueue:
    """Ordered, durable list of pending upload jobs."""

    def __init__(
        self,
        store: QueueStateStore,
        backend: DetectionBackend,
        file_manager: FileManager,
        max_retries: int = 10,
    ) -> None:
        """Initialize the queue from its persisted state.

        Args:
            store: Durable queue state
            backend: Destination for uploads
            file_manager: Resolves and deletes audio artifacts
            max_retries: Retry ceiling after which a job is evicted

        Raises:
            PersistenceError: If existing state cannot be read
        """
        self.store = store
        self.backend = backend
        self.file_manager = file_manager
        self.max_retries = max_retries
        self._jobs: list[UploadJob] = store.load()
        self._write_lock = asyncio.Lock()
        self._draining = False

        if self._jobs:
            logger.info("Restored %d pending uploads from %s", len(self._jobs), store.state_path)

    @property
    def jobs(self) -> tuple[UploadJob, ...]:
        """Snapshot of the pending jobs in delivery order."""
        return tuple(self._jobs)

    @property
    def is_draining(self) -> bool:
        """Whether a drain pass is currently active."""
        return self._draining

    def pending_count(self) -> int:
        """Number of jobs awaiting delivery."""
        return len(self._jobs)

    async def _commit(self, jobs: list[UploadJob]) -> None:
        """Persist ``jobs`` and then make them the in-memory queue. Caller holds the lock."""
        await asyncio.to_thread(self.store.save, jobs)
        self._jobs = jobs

    async def enqueue(self, audio_ref: str, metadata: DetectionMetadata) -> UploadJob:
        """Append a new job to the tail of the queue.

        Returns once the job is durable; delivery happens on a later drain.

        Raises:
            PersistenceError: If the queue state cannot be written
        """
        job = UploadJob(audio_ref=audio_ref, metadata=metadata)
        async with self._write_lock:
            await self._commit([*self._jobs, job])

        logger.info(
            "Detection queued for upload",
            extra={"job_id": job.id, "pending": len(self._jobs), "confidence": metadata.confidence},
        )
        return job

    async def drain(self) -> DrainResult:
        """Deliver pending jobs in FIFO order.

        Only one drain runs at a time; a call made while another is active returns
        immediately with ``skipped=True``. The pass stops at the first failed
        attempt so ordering is preserved and a failing backend is not hammered.

        Raises:
            PersistenceError: If the queue state cannot be written
        """
        if self._draining:
            logger.debug("Drain already in progress, skipping")
            return DrainResult(skipped=True)

        self._draining = True
        uploaded = evicted = 0
        try:
            while self._jobs:
                job = self._jobs[0]

                if job.retry_count >= self.max_retries:
                    await self._evict(job)
                    evicted += 1
                    continue

                try:
                    await self._deliver(job)
                except Exception as e:
                    if not isinstance(e, UploadError):
                        logger.exception("Unexpected error uploading job %s", job.id)
                    if await self._record_failure(job, e):
                        evicted += 1
                    return DrainResult(uploaded=uploaded, evicted=evicted, failed=True)

                await self._complete(job)
                uploaded += 1
        finally:
            self._draining = False

        if uploaded or evicted:
            logger.info(
                "Upload queue drained", extra={"uploaded": uploaded, "evicted": evicted}
            )
        return DrainResult(uploaded=uploaded, evicted=evicted)

    async def _deliver(self, job: UploadJob) -> None:
        audio_url = await self.backend.upload_audio(
            self.file_manager.resolve(job.audio_ref), job.object_path
        )
        await self.backend.save_detection(job.metadata, audio_url)

    async def _complete(self, job: UploadJob) -> None:
        async with self._write_lock:
            await self._commit([j for j in self._jobs if j.id != job.id])
        self.file_manager.delete_audio(job.audio_ref)
        logger.info("Upload completed", extra={"job_id": job.id, "pending": len(self._jobs)})

    async def _record_failure(self, job: UploadJob, error: Exception) -> bool:
        """Count a failed attempt, evicting the job once it reaches the ceiling.

        Returns:
            True if the job was evicted
        """
        failed = job.model_copy(update={"retry_count": job.retry_count + 1})
        logger.warning(
            "Upload failed",
            extra={
                "job_id": job.id,
                "retry_count": failed.retry_count,
                "max_retries": self.max_retries,
                "error": str(error),
                "kind": str(getattr(error, "kind", "unexpected")),
            },
        )

        if failed.retry_count >= self.max_retries:
            await self._evict(failed)
            return True

        async with self._write_lock:
            await self._commit([failed if j.id == job.id else j for j in self._jobs])
        return False

    async def _evict(self, job: UploadJob) -> None:
        async with self._write_lock:
            await self._commit([j for j in self._jobs if j.id != job.id])
        self.file_manager.delete_audio(job.audio_ref)
        logger.warning(
            "Upload job evicted after exhausting retries",
            extra={
                "job_id": job.id,
                "retry_count": job.retry_count,
                "metadata": job.metadata.model_dump(mode="json"),
            },
        )

    async def clear(self) -> int:
        """Drop every pending job and delete its audio artifact.

        Returns:
            Number of jobs removed
        """
        async with self._write_lock:
            removed = self._jobs
            await self._commit([])

        for job in removed:
            self.file_manager.delete_audio(job.audio_ref)
        logger.info("Upload queue cleared", extra={"removed": len(removed)})
        return len(removed)
