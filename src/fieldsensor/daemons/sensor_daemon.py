"""Long-running field sensor process: capture, classify, queue and upload."""

import asyncio
import logging
import signal
from types import FrameType

from fieldsensor.audio.capture import AudioCaptureService
from fieldsensor.config import ConfigManager, FieldSensorConfig
from fieldsensor.detections.classifier import BirdNETClassifierClient
from fieldsensor.detections.policy import DetectionPolicy
from fieldsensor.location.gps import GPSService
from fieldsensor.sensor.manager import SensorManager, StartError
from fieldsensor.sensor.models import SensorStats
from fieldsensor.system.file_manager import FileManager
from fieldsensor.system.path_resolver import PathResolver
from fieldsensor.system.structlog_configurator import configure_structlog
from fieldsensor.uploads.backend import SupabaseBackend
from fieldsensor.uploads.queue import UploadQueue
from fieldsensor.uploads.store import PersistenceError, QueueStateStore

logger = logging.getLogger(__name__)


class DaemonState:
    """Handles shared between the main loop and the signal handler."""

    shutdown_flag: bool = False
    sensor_manager: SensorManager | None = None
    gps_service: GPSService | None = None
    sync_task: "asyncio.Task[None] | None" = None

    @classmethod
    def reset(cls) -> None:
        """Forget the previous run."""
        cls.shutdown_flag = False
        cls.sensor_manager = None
        cls.gps_service = None
        cls.sync_task = None


def _signal_handler(signum: int, frame: FrameType | None) -> None:
    logger.info("Received signal %s, shutting down", signum)
    DaemonState.shutdown_flag = True


def _log_stats(stats: SensorStats) -> None:
    logger.debug(
        "Sensor stats updated",
        extra={
            "segments": stats.total_segments_processed,
            "detections": stats.total_detections,
            "pending_uploads": stats.pending_uploads,
            "consecutive_errors": stats.consecutive_errors,
        },
    )
    if stats.last_error:
        logger.warning("Sensor status: %s", stats.last_error)


def build_sensor_manager(
    config: FieldSensorConfig, path_resolver: PathResolver
) -> tuple[SensorManager, GPSService]:
    """Wire the monitoring loop from configuration."""
    file_manager = FileManager(path_resolver)

    store = QueueStateStore(path_resolver.get_upload_queue_path())
    backend = SupabaseBackend(config.backend)
    if not backend.is_configured():
        logger.warning("Backend is not configured; detections will stay queued locally")
        config.uploads.auto_sync = False
    upload_queue = UploadQueue(store, backend, file_manager, config.uploads.max_retries)

    policy = DetectionPolicy(
        threshold=config.detection_threshold,
        target_markers=tuple(config.target_species),
        model_name=config.classifier.model_name,
    )
    classifier = BirdNETClassifierClient(config.classifier, policy, file_manager)

    gps_service = GPSService(config.enable_gps, config.gps_update_interval)
    capture = AudioCaptureService(config, path_resolver, file_manager)

    manager = SensorManager(
        config,
        classifier,
        upload_queue,
        capture,
        file_manager,
        location=gps_service,
        on_stats_update=_log_stats,
    )
    return manager, gps_service


async def periodic_sync(manager: SensorManager, interval: float) -> None:
    """Drain the upload queue every ``interval`` seconds."""
    while not DaemonState.shutdown_flag:
        await asyncio.sleep(interval)
        try:
            result = await manager.sync_data()
        except PersistenceError as e:
            logger.error("Periodic sync could not update queue state: %s", e)
            continue
        if result.uploaded or result.evicted:
            logger.info(
                "Periodic sync uploaded %d and evicted %d detections",
                result.uploaded,
                result.evicted,
            )


async def async_main() -> None:
    """Run monitoring until a signal arrives or monitoring stops on its own."""
    path_resolver = PathResolver()
    config_manager = ConfigManager(path_resolver)
    config = config_manager.load()
    configure_structlog(config)

    logger.info("Starting field sensor daemon.", extra={"device_id": config.device_id})

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    manager, gps_service = build_sensor_manager(config, path_resolver)
    DaemonState.sensor_manager = manager
    DaemonState.gps_service = gps_service

    # Detections left over from a previous run go out first
    if config.uploads.auto_sync:
        await manager.sync_data()

    await gps_service.start()
    try:
        await manager.start()
    except StartError as e:
        logger.error("Could not start monitoring: %s", e)
        await gps_service.stop()
        return

    if config.uploads.auto_sync and config.uploads.sync_interval > 0:
        DaemonState.sync_task = asyncio.create_task(
            periodic_sync(manager, config.uploads.sync_interval)
        )

    try:
        while not DaemonState.shutdown_flag:
            if not manager.is_running:
                logger.error("Monitoring stopped: %s", manager.get_stats().last_error)
                break
            await asyncio.sleep(1)
    finally:
        if DaemonState.sync_task:
            DaemonState.sync_task.cancel()
            try:
                await DaemonState.sync_task
            except asyncio.CancelledError:
                pass
        await manager.close()
        await gps_service.stop()
        logger.info("Field sensor daemon stopped.")


def main() -> None:
    """Run the field sensor daemon."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
