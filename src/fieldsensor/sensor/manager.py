"""Monitoring loop for the field sensor.

Each captured segment is classified; positive detections are tagged with the current
location and queued for upload, everything else is discarded. Repeated classifier
failures stop monitoring automatically so a dead server does not drain the battery.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING

from fieldsensor.config import FieldSensorConfig
from fieldsensor.detections.classifier import (
    ClassificationError,
    ClassificationErrorKind,
    ClassifierClient,
)
from fieldsensor.detections.models import AudioSegment, DetectionResult
from fieldsensor.location.gps import LocationProvider
from fieldsensor.sensor.models import MonitoringState, SensorStats
from fieldsensor.system.file_manager import FileManager
from fieldsensor.uploads.models import DetectionMetadata
from fieldsensor.uploads.queue import DrainResult, UploadQueue
from fieldsensor.uploads.store import PersistenceError

if TYPE_CHECKING:
    from fieldsensor.audio.capture import SegmentSource

logger = logging.getLogger(__name__)

AUTO_STOP_MESSAGE = (
    "Monitoring stopped after 5 consecutive failures. "
    "Check classifier server connection and try again."
)
UNREACHABLE_MESSAGE = "Classifier server unreachable. Check server configuration."


class StartError(RuntimeError):
    """Raised when monitoring cannot start because capture failed to begin."""


def describe_classification_error(error: ClassificationError) -> str:
    """User-facing status text for a classifier failure."""
    if error.kind in (ClassificationErrorKind.NETWORK, ClassificationErrorKind.TIMEOUT):
        return UNREACHABLE_MESSAGE
    return "Analysis error: " + str(error)[:100]


class SensorManager:
    """Owns the monitoring lifecycle and the live statistics snapshot."""

    MAX_CONSECUTIVE_ERRORS = 5
    ERROR_MESSAGE_COOLDOWN = 30.0  # Seconds between user-facing error message updates

    def __init__(
        self,
        config: FieldSensorConfig,
        classifier: ClassifierClient,
        upload_queue: UploadQueue,
        capture: "SegmentSource",
        file_manager: FileManager,
        location: LocationProvider | None = None,
        on_stats_update: Callable[[SensorStats], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.classifier = classifier
        self.upload_queue = upload_queue
        self.capture = capture
        self.file_manager = file_manager
        self.location = location
        self.on_stats_update = on_stats_update
        self._clock = clock

        self.state = MonitoringState.STOPPED
        self.stats = SensorStats(pending_uploads=upload_queue.pending_count())
        self._consecutive_errors = 0
        self._last_error_time: float | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._finishing: asyncio.Task[None] | None = None  # Left mid-classification by stop()
        self._run = 0  # Incremented on every start; results from an earlier run are discarded
        self._processing = False
        self._background: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        """Whether segments are currently being processed."""
        return self.state is MonitoringState.RUNNING

    async def start(self) -> None:
        """Start capturing and processing segments.

        Does nothing when already running.

        Raises:
            StartError: If the capture subsystem cannot begin
        """
        if self.state in (MonitoringState.RUNNING, MonitoringState.STARTING):
            return

        self.state = MonitoringState.STARTING
        self._consecutive_errors = 0
        self._last_error_time = None
        self.stats.consecutive_errors = 0
        self.stats.last_error = None

        # Classifications never overlap, so a consumer still finishing must exit first
        if self._finishing is not None:
            finishing, self._finishing = self._finishing, None
            await asyncio.gather(finishing, return_exceptions=True)
            if self.state is not MonitoringState.STARTING:
                return

        try:
            await self.capture.start()
        except Exception as e:
            self.state = MonitoringState.STOPPED
            logger.error("Audio capture failed to start: %s", e)
            raise StartError(f"Audio capture could not start: {e}") from e

        self._run += 1
        self.state = MonitoringState.RUNNING
        self.stats.is_running = True
        self._consumer = asyncio.create_task(self._consume_segments())
        logger.info("Monitoring started", extra={"threshold": self.config.detection_threshold})
        self._publish()

    async def stop(self) -> None:
        """Stop capturing segments.

        An in-flight classification is allowed to finish, but its result is discarded.
        Upload draining and location tracking are unaffected.
        """
        if self.state in (MonitoringState.STOPPED, MonitoringState.STOPPING):
            return

        self.state = MonitoringState.STOPPING
        await self.capture.stop()

        consumer, self._consumer = self._consumer, None
        if consumer is not None and consumer is not asyncio.current_task():
            if self._processing:
                self._finishing = consumer
            else:
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)

        self._discard_queued_segments()
        self.state = MonitoringState.STOPPED
        self.stats.is_running = False
        logger.info("Monitoring stopped")
        self._publish()

    async def _consume_segments(self) -> None:
        """Process segments from the capture channel one at a time."""
        while self.is_running and self._consumer is asyncio.current_task():
            segment = await self.capture.segments.get()
            self._processing = True
            try:
                await self.process_segment(segment)
            except PersistenceError as e:
                logger.exception("Could not persist detection, stopping monitoring")
                await self.stop()
                self.stats.last_error = f"Cannot save detection: {e}"
                self._publish()
            except Exception:
                logger.exception("Unexpected error processing segment %s", segment.audio_ref)
            finally:
                self._processing = False

    def _discard_queued_segments(self) -> None:
        while not self.capture.segments.empty():
            segment = self.capture.segments.get_nowait()
            self.file_manager.delete_audio(segment.audio_ref)

    async def process_segment(self, segment: AudioSegment) -> DetectionResult | None:
        """Classify one segment and act on the result.

        Returns:
            The detection result, or None if classification failed or monitoring
            stopped while the call was in flight

        Raises:
            PersistenceError: If a positive detection cannot be queued durably
        """
        run = self._run
        try:
            result = await self.classifier.classify(segment.audio_ref)
        except ClassificationError as e:
            self.file_manager.delete_audio(segment.audio_ref)
            if self._is_current(run):
                await self._handle_classification_failure(e)
            return None

        if not self._is_current(run):
            self.file_manager.delete_audio(segment.audio_ref)
            return None

        self._consecutive_errors = 0
        self.stats.consecutive_errors = 0
        self.stats.last_error = None
        self.stats.total_segments_processed += 1
        self.stats.current_confidence = result.confidence

        if result.is_positive:
            await self._handle_detection(segment, result)
        else:
            self.file_manager.delete_audio(segment.audio_ref)

        self._publish()
        return result

    def _is_current(self, run: int) -> bool:
        """Whether monitoring is still in the run that began at ``run``."""
        return self.is_running and self._run == run

    async def _handle_classification_failure(self, error: ClassificationError) -> None:
        self._consecutive_errors += 1
        self.stats.consecutive_errors = self._consecutive_errors
        logger.warning(
            "Classification failed",
            extra={
                "kind": str(error.kind),
                "error": str(error),
                "consecutive_errors": self._consecutive_errors,
            },
        )

        if self._consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
            logger.error(
                "Too many consecutive classification errors (%d), stopping monitoring",
                self._consecutive_errors,
            )
            await self.stop()
            self.stats.last_error = AUTO_STOP_MESSAGE
            self._publish()
            return

        now = self._clock()
        last = self._last_error_time
        if last is None or now - last > self.ERROR_MESSAGE_COOLDOWN:
            self.stats.last_error = describe_classification_error(error)
            self._last_error_time = now
        self._publish()

    async def _handle_detection(self, segment: AudioSegment, result: DetectionResult) -> None:
        latitude, longitude = self.config.latitude, self.config.longitude
        location = self.location.get_current_location() if self.location else None
        if location is not None:
            latitude, longitude = location.latitude, location.longitude

        metadata = DetectionMetadata(
            device_id=self.config.device_id,
            timestamp=segment.timestamp,
            latitude=latitude,
            longitude=longitude,
            model_name=result.model_name,
            confidence=result.confidence,
        )
        try:
            await self.upload_queue.enqueue(segment.audio_ref, metadata)
        except PersistenceError:
            # Nothing references the recording once the job cannot be stored
            self.file_manager.delete_audio(segment.audio_ref)
            raise
        self.stats.total_detections += 1
        self.stats.last_detection = segment.timestamp
        logger.info(
            "Target species detected: %s (confidence: %.3f)",
            result.species,
            result.confidence,
        )

        if self.config.uploads.auto_sync:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        task = asyncio.create_task(self.sync_data())
        self._background.add(task)
        task.add_done_callback(self._drain_finished)

    def _drain_finished(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background upload drain failed: %s", error)
            self.stats.last_error = f"Upload queue error: {error}"
            self._publish()

    async def sync_data(self) -> DrainResult:
        """Deliver queued detections now, e.g. after connectivity returns.

        Raises:
            PersistenceError: If the queue state cannot be written
        """
        result = await self.upload_queue.drain()
        self._publish()
        return result

    def update_config(
        self,
        detection_threshold: float | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> None:
        """Change the threshold or fallback coordinates while running.

        A new threshold takes effect on the next classification call.
        """
        if detection_threshold is not None:
            if not 0.0 <= detection_threshold <= 1.0:
                raise ValueError(
                    f"detection_threshold must be between 0.0 and 1.0, got {detection_threshold}"
                )
            self.classifier.set_threshold(detection_threshold)
            self.config.detection_threshold = detection_threshold

        if latitude is not None:
            if not -90 <= latitude <= 90:
                raise ValueError(f"latitude must be between -90 and 90, got {latitude}")
            self.config.latitude = latitude

        if longitude is not None:
            if not -180 <= longitude <= 180:
                raise ValueError(f"longitude must be between -180 and 180, got {longitude}")
            self.config.longitude = longitude

    def get_stats(self) -> SensorStats:
        """Copy of the current statistics."""
        self.stats.pending_uploads = self.upload_queue.pending_count()
        return replace(self.stats)

    def get_model_name(self) -> str:
        """Name of the active classification model."""
        return getattr(self.classifier, "model_name", None) or "Unknown"

    async def close(self) -> None:
        """Stop monitoring and wait for background drains to settle."""
        await self.stop()
        pending = [*self._background]
        if self._finishing is not None:
            pending.append(self._finishing)
            self._finishing = None
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _publish(self) -> None:
        self.stats.pending_uploads = self.upload_queue.pending_count()
        if self.on_stats_update:
            self.on_stats_update(replace(self.stats))
