"""Tests for the SensorManager monitoring loop."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fieldsensor.detections.classifier import ClassificationError, ClassificationErrorKind
from fieldsensor.detections.models import DetectionResult
from fieldsensor.location.gps import GPSCoordinates
from fieldsensor.sensor.manager import (
    AUTO_STOP_MESSAGE,
    UNREACHABLE_MESSAGE,
    SensorManager,
    StartError,
)
from fieldsensor.sensor.models import MonitoringState
from fieldsensor.uploads.queue import DrainResult, UploadQueue
from fieldsensor.uploads.store import PersistenceError, QueueStateStore

POSITIVE = DetectionResult(
    confidence=0.93,
    model_name="BirdNET",
    is_positive=True,
    species="Lathamus discolor_Swift Parrot",
    scientific_name="Lathamus discolor",
    common_name="Swift Parrot",
)
NEGATIVE = DetectionResult.empty("BirdNET")


def network_error() -> ClassificationError:
    """Classifier failure caused by an unreachable server."""
    return ClassificationError(ClassificationErrorKind.NETWORK, "connection refused")


class FakeCapture:
    """Capture collaborator fed by the test through ``segments``."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.segments: asyncio.Queue = asyncio.Queue()
        self.fail_with = fail_with
        self.start_calls = 0
        self.stop_calls = 0

    async def start(self) -> None:
        self.start_calls += 1
        if self.fail_with:
            raise self.fail_with

    async def stop(self) -> None:
        self.stop_calls += 1


class FakeClock:
    """Monotonic clock advanced manually."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def wait_for(condition, timeout: float = 1.0) -> None:
    """Poll until ``condition()`` holds."""
    async with asyncio.timeout(timeout):
        while not condition():
            await asyncio.sleep(0.01)


@pytest.fixture
def classifier():
    """Classifier returning negative results by default."""
    mock = MagicMock()
    mock.model_name = "BirdNET"
    mock.classify = AsyncMock(return_value=NEGATIVE)
    return mock


@pytest.fixture
def backend():
    """Backend mock accepting every upload."""
    mock = MagicMock()
    mock.upload_audio = AsyncMock(return_value="https://backend.test/public/a.wav")
    mock.save_detection = AsyncMock(return_value={"id": 1})
    return mock


@pytest.fixture
def upload_queue(path_resolver, backend, file_manager):
    """Real upload queue in the temporary data directory."""
    store = QueueStateStore(path_resolver.get_upload_queue_path())
    return UploadQueue(store, backend, file_manager, max_retries=3)


@pytest.fixture
def capture():
    """Capture collaborator that starts successfully."""
    return FakeCapture()


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def manager_factory(config_factory, classifier, upload_queue, capture, file_manager, clock):
    """Create a SensorManager with test collaborators."""
    published = []

    def _create(**kwargs) -> SensorManager:
        config = kwargs.pop("config", None) or config_factory()
        manager = SensorManager(
            config,
            kwargs.pop("classifier", classifier),
            upload_queue,
            kwargs.pop("capture", capture),
            file_manager,
            on_stats_update=published.append,
            clock=clock,
            **kwargs,
        )
        manager.published = published
        return manager

    return _create


@pytest.fixture
async def running_manager(manager_factory):
    """Started manager, stopped after the test."""
    manager = manager_factory()
    await manager.start()
    yield manager
    await manager.close()


class TestLifecycle:
    """Test start and stop transitions."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager_factory, capture):
        """Test the manager moves through running and stopped states."""
        manager = manager_factory()
        assert manager.state is MonitoringState.STOPPED

        await manager.start()

        assert manager.state is MonitoringState.RUNNING
        assert manager.get_stats().is_running
        assert manager.published[-1].is_running

        await manager.stop()

        assert manager.state is MonitoringState.STOPPED
        assert not manager.get_stats().is_running
        assert capture.stop_calls == 1

    @pytest.mark.asyncio
    async def test_start_when_running_is_noop(self, running_manager, capture):
        """Test a second start does not restart capture."""
        await running_manager.start()

        assert capture.start_calls == 1

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, manager_factory, capture):
        """Test stopping an idle manager does nothing."""
        await manager_factory().stop()

        assert capture.stop_calls == 0

    @pytest.mark.asyncio
    async def test_capture_failure_raises_start_error(self, manager_factory):
        """Test a capture failure propagates as StartError."""
        manager = manager_factory(capture=FakeCapture(fail_with=RuntimeError("no input device")))

        with pytest.raises(StartError, match="no input device"):
            await manager.start()

        assert manager.state is MonitoringState.STOPPED
        assert not manager.get_stats().is_running

    @pytest.mark.asyncio
    async def test_stop_discards_queued_segments(
        self, running_manager, capture, segment_factory, file_manager
    ):
        """Test segments still waiting when monitoring stops are deleted."""
        await running_manager.stop()
        segments = [segment_factory(), segment_factory()]
        for segment in segments:
            capture.segments.put_nowait(segment)

        await running_manager.start()
        await running_manager.stop()

        assert capture.segments.empty()
        assert not any(file_manager.file_exists(s.audio_ref) for s in segments)


class TestSegmentProcessing:
    """Test how classification results are acted on."""

    @pytest.mark.asyncio
    async def test_negative_segment_deletes_audio(
        self, running_manager, segment_factory, file_manager, upload_queue
    ):
        """Test non-positive segments are discarded."""
        segment = segment_factory()

        result = await running_manager.process_segment(segment)

        assert result is NEGATIVE
        assert not file_manager.file_exists(segment.audio_ref)
        assert upload_queue.pending_count() == 0
        stats = running_manager.get_stats()
        assert stats.total_segments_processed == 1
        assert stats.total_detections == 0
        assert stats.current_confidence == 0

    @pytest.mark.asyncio
    async def test_positive_segment_is_queued_with_fallback_location(
        self, running_manager, classifier, segment_factory, file_manager, upload_queue
    ):
        """Test positive detections are enqueued with configured coordinates."""
        classifier.classify.return_value = POSITIVE
        segment = segment_factory()

        await running_manager.process_segment(segment)

        assert file_manager.file_exists(segment.audio_ref)
        (job,) = upload_queue.jobs
        assert job.audio_ref == segment.audio_ref
        assert job.metadata.device_id == "sensor_1700000000000_abc123xyz"
        assert job.metadata.timestamp == segment.timestamp
        assert job.metadata.latitude == -42.8821
        assert job.metadata.longitude == 147.3272
        assert job.metadata.confidence == 0.93
        assert job.metadata.model_name == "BirdNET"
        stats = running_manager.get_stats()
        assert stats.total_detections == 1
        assert stats.pending_uploads == 1
        assert stats.last_detection == segment.timestamp

    @pytest.mark.asyncio
    async def test_positive_segment_uses_gps_fix(
        self, manager_factory, classifier, segment_factory, upload_queue
    ):
        """Test a current GPS fix takes precedence over configured coordinates."""
        classifier.classify.return_value = POSITIVE
        location = MagicMock()
        location.get_current_location.return_value = GPSCoordinates(
            latitude=-41.0,
            longitude=146.0,
            altitude=None,
            accuracy=4.0,
            timestamp=datetime.now(UTC),
        )
        manager = manager_factory(location=location)
        await manager.start()

        await manager.process_segment(segment_factory())
        await manager.close()

        assert upload_queue.jobs[0].metadata.latitude == -41.0
        assert upload_queue.jobs[0].metadata.longitude == 146.0

    @pytest.mark.asyncio
    async def test_positive_segment_without_any_location(
        self, manager_factory, config_factory, classifier, segment_factory, upload_queue
    ):
        """Test detections are still queued when no location is known."""
        classifier.classify.return_value = POSITIVE
        location = MagicMock()
        location.get_current_location.return_value = None
        manager = manager_factory(
            config=config_factory(latitude=None, longitude=None), location=location
        )
        await manager.start()

        await manager.process_segment(segment_factory())
        await manager.close()

        assert upload_queue.jobs[0].metadata.latitude is None
        assert upload_queue.jobs[0].metadata.longitude is None

    @pytest.mark.asyncio
    async def test_auto_sync_drains_after_detection(
        self, manager_factory, config_factory, classifier, segment_factory, backend, upload_queue
    ):
        """Test a positive detection triggers a background drain when auto sync is on."""
        classifier.classify.return_value = POSITIVE
        config = config_factory()
        config.uploads.auto_sync = True
        manager = manager_factory(config=config)
        await manager.start()

        await manager.process_segment(segment_factory())
        await manager.close()

        backend.upload_audio.assert_awaited_once()
        assert upload_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_result_discarded_when_stopped_in_flight(
        self, running_manager, classifier, segment_factory, file_manager, upload_queue
    ):
        """Test a classification finishing after stop is ignored."""
        release = asyncio.Event()

        async def slow_classify(audio_ref):
            await release.wait()
            return POSITIVE

        classifier.classify.side_effect = slow_classify
        segment = segment_factory()

        processing = asyncio.create_task(running_manager.process_segment(segment))
        await asyncio.sleep(0)
        await running_manager.stop()
        release.set()

        assert await processing is None
        assert upload_queue.pending_count() == 0
        assert not file_manager.file_exists(segment.audio_ref)
        assert running_manager.get_stats().total_segments_processed == 0

    @pytest.mark.asyncio
    async def test_consumer_processes_captured_segments(
        self, running_manager, capture, segment_factory
    ):
        """Test segments put on the capture channel are processed one at a time."""
        for _ in range(3):
            capture.segments.put_nowait(segment_factory())

        await wait_for(lambda: running_manager.get_stats().total_segments_processed == 3)

    @pytest.mark.asyncio
    async def test_persistence_failure_stops_monitoring(
        self, running_manager, capture, classifier, segment_factory, upload_queue
    ):
        """Test a detection that cannot be stored durably halts monitoring."""
        classifier.classify.return_value = POSITIVE

        with patch.object(upload_queue.store, "save", side_effect=PersistenceError("disk full")):
            capture.segments.put_nowait(segment_factory())
            await wait_for(lambda: running_manager.state is MonitoringState.STOPPED)

        assert "disk full" in running_manager.get_stats().last_error

    @pytest.mark.asyncio
    async def test_persistence_failure_deletes_unqueued_audio(
        self, running_manager, classifier, segment_factory, file_manager, upload_queue
    ):
        """Test the recording is removed when its detection cannot be queued."""
        classifier.classify.return_value = POSITIVE
        segment = segment_factory()

        with patch.object(upload_queue.store, "save", side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                await running_manager.process_segment(segment)

        assert not file_manager.file_exists(segment.audio_ref)
        assert running_manager.get_stats().total_detections == 0

    @pytest.mark.asyncio
    async def test_restart_during_classification_discards_earlier_result(
        self, running_manager, capture, classifier, segment_factory, file_manager, upload_queue
    ):
        """Test a restart mid-classification neither overlaps calls nor keeps the old result."""
        release = asyncio.Event()
        in_flight = 0
        peak = 0

        async def slow_classify(audio_ref):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await release.wait()
            finally:
                in_flight -= 1
            return POSITIVE

        classifier.classify.side_effect = slow_classify
        earlier = segment_factory()
        capture.segments.put_nowait(earlier)
        await wait_for(lambda: in_flight == 1)

        await running_manager.stop()
        restarting = asyncio.create_task(running_manager.start())
        later = segment_factory()
        capture.segments.put_nowait(later)
        await asyncio.sleep(0.05)
        release.set()
        await restarting

        await wait_for(lambda: upload_queue.pending_count() == 1)
        assert peak == 1
        assert [job.audio_ref for job in upload_queue.jobs] == [later.audio_ref]
        assert not file_manager.file_exists(earlier.audio_ref)
        assert running_manager.is_running

    @pytest.mark.asyncio
    async def test_stop_during_restart_wait_keeps_monitoring_stopped(
        self, running_manager, capture, classifier, segment_factory
    ):
        """Test a stop issued while start waits for the earlier classification wins."""
        release = asyncio.Event()

        async def slow_classify(audio_ref):
            await release.wait()
            return NEGATIVE

        classifier.classify.side_effect = slow_classify
        capture.segments.put_nowait(segment_factory())
        await wait_for(lambda: classifier.classify.call_count == 1)

        await running_manager.stop()
        restarting = asyncio.create_task(running_manager.start())
        await asyncio.sleep(0)
        await running_manager.stop()
        release.set()
        await restarting

        assert running_manager.state is MonitoringState.STOPPED
        assert capture.start_calls == 1


class TestClassificationFailures:
    """Test the consecutive-error counter and auto-stop."""

    @pytest.mark.asyncio
    async def test_five_failures_auto_stop(
        self, running_manager, classifier, capture, segment_factory, file_manager
    ):
        """Test exactly five consecutive failures stop monitoring."""
        classifier.classify.side_effect = network_error()

        for _ in range(4):
            await running_manager.process_segment(segment_factory())
        assert running_manager.is_running
        assert running_manager.get_stats().consecutive_errors == 4

        segment = segment_factory()
        await running_manager.process_segment(segment)

        assert running_manager.state is MonitoringState.STOPPED
        assert capture.stop_calls == 1
        stats = running_manager.get_stats()
        assert not stats.is_running
        assert stats.consecutive_errors == 5
        assert stats.last_error == AUTO_STOP_MESSAGE
        assert not file_manager.file_exists(segment.audio_ref)

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, running_manager, classifier, segment_factory):
        """Test four failures, a success and four more failures never auto-stop."""
        outcomes = [network_error()] * 4 + [NEGATIVE] + [network_error()] * 4
        classifier.classify.side_effect = outcomes

        for _ in outcomes:
            await running_manager.process_segment(segment_factory())

        assert running_manager.is_running
        assert running_manager.get_stats().consecutive_errors == 4

    @pytest.mark.asyncio
    async def test_restart_resets_counter(self, running_manager, classifier, segment_factory):
        """Test a new start after auto-stop begins counting from zero."""
        classifier.classify.side_effect = network_error()
        for _ in range(5):
            await running_manager.process_segment(segment_factory())
        assert not running_manager.is_running

        await running_manager.start()

        stats = running_manager.get_stats()
        assert stats.consecutive_errors == 0
        assert stats.last_error is None
        assert running_manager.is_running

    @pytest.mark.asyncio
    async def test_error_message_rate_limited(
        self, running_manager, classifier, clock, segment_factory
    ):
        """Test message updates are limited to one per cooldown while counting every failure."""
        classifier.classify.side_effect = [
            network_error(),
            ClassificationError(ClassificationErrorKind.SERVER_ERROR, "Classifier returned 500"),
            ClassificationError(ClassificationErrorKind.SERVER_ERROR, "Classifier returned 503"),
        ]

        await running_manager.process_segment(segment_factory())
        assert running_manager.get_stats().last_error == UNREACHABLE_MESSAGE

        clock.now += 10
        await running_manager.process_segment(segment_factory())
        assert running_manager.get_stats().last_error == UNREACHABLE_MESSAGE
        assert running_manager.get_stats().consecutive_errors == 2

        clock.now += 25
        await running_manager.process_segment(segment_factory())
        stats = running_manager.get_stats()
        assert stats.last_error == "Analysis error: Classifier returned 503"
        assert stats.consecutive_errors == 3

    @pytest.mark.asyncio
    async def test_analysis_error_message_is_truncated(
        self, running_manager, classifier, segment_factory
    ):
        """Test long error details are cut to 100 characters."""
        classifier.classify.side_effect = ClassificationError(
            ClassificationErrorKind.MALFORMED_RESPONSE, "x" * 300
        )

        await running_manager.process_segment(segment_factory())

        assert running_manager.get_stats().last_error == "Analysis error: " + "x" * 100

    @pytest.mark.asyncio
    async def test_stats_published_on_every_failure(
        self, running_manager, classifier, segment_factory
    ):
        """Test a snapshot is broadcast for each failure, even within the cooldown."""
        classifier.classify.side_effect = network_error()
        before = len(running_manager.published)

        for _ in range(3):
            await running_manager.process_segment(segment_factory())

        counts = [s.consecutive_errors for s in running_manager.published[before:]]
        assert counts == [1, 2, 3]


class TestControls:
    """Test runtime configuration and manual sync."""

    @pytest.mark.asyncio
    async def test_update_threshold(self, running_manager, classifier):
        """Test a new threshold is handed to the classifier."""
        running_manager.update_config(detection_threshold=0.65)

        classifier.set_threshold.assert_called_once_with(0.65)
        assert running_manager.config.detection_threshold == 0.65

    @pytest.mark.asyncio
    async def test_update_coordinates(self, running_manager):
        """Test fallback coordinates can change while running."""
        running_manager.update_config(latitude=-43.1, longitude=146.9)

        assert running_manager.config.latitude == -43.1
        assert running_manager.config.longitude == 146.9

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [{"detection_threshold": 1.2}, {"latitude": 95.0}, {"longitude": -181.0}],
    )
    async def test_update_rejects_out_of_range(self, running_manager, classifier, kwargs):
        """Test invalid values are rejected."""
        with pytest.raises(ValueError):
            running_manager.update_config(**kwargs)

        classifier.set_threshold.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_data_drains_queue(
        self, running_manager, upload_queue, segment_factory, metadata_factory, backend
    ):
        """Test an explicit sync delivers pending detections."""
        await upload_queue.enqueue(segment_factory().audio_ref, metadata_factory())

        result = await running_manager.sync_data()

        assert result == DrainResult(uploaded=1)
        assert running_manager.get_stats().pending_uploads == 0

    @pytest.mark.asyncio
    async def test_get_stats_returns_copy(self, running_manager):
        """Test callers cannot mutate the live snapshot."""
        stats = running_manager.get_stats()
        stats.total_detections = 99

        assert running_manager.get_stats().total_detections == 0

    def test_get_model_name(self, manager_factory, classifier):
        """Test the classifier's model name is reported."""
        assert manager_factory().get_model_name() == "BirdNET"

        classifier.model_name = ""
        assert manager_factory().get_model_name() == "Unknown"
