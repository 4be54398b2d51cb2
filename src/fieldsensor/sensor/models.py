"""Live state of the monitoring loop."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class MonitoringState(StrEnum):
    """Lifecycle of the monitoring loop."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SensorStats:
    """Snapshot of monitoring statistics, rebuilt after every event. Not persisted."""

    is_running: bool = False
    total_segments_processed: int = 0
    total_detections: int = 0
    pending_uploads: int = 0
    last_detection: datetime | None = None
    current_confidence: float | None = None
    consecutive_errors: int = 0
    last_error: str | None = None
