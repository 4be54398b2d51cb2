import datetime
import os
from pathlib import Path


class PathResolver:
    """Central authority for all file path resolution in the field sensor.

    Uses environment variables for configuration with sensible defaults.
    """

    def __init__(self) -> None:
        """Initialize PathResolver with environment-based configuration."""
        self.data_dir = Path(os.getenv("FIELDSENSOR_DATA", "/var/lib/fieldsensor"))

    def get_config_path(self) -> Path:
        """Get the path to the main configuration file.

        Checks FIELDSENSOR_CONFIG environment variable first, then falls back to default.
        """
        config_path = os.getenv("FIELDSENSOR_CONFIG")
        if config_path:
            return Path(config_path)

        return self.data_dir / "config" / "fieldsensor.yaml"

    def get_data_dir(self) -> Path:
        """Get the data directory path.

        Returns:
            Path to the data directory where all runtime data is stored.
        """
        return self.data_dir

    def get_recordings_dir(self) -> Path:
        """Get the directory for captured audio segments."""
        return self.data_dir / "recordings"

    def get_segment_audio_path(self, timestamp: datetime.datetime, extension: str = "wav") -> Path:
        """Get the path for a newly captured audio segment.

        Args:
            timestamp: Capture start time of the segment
            extension: Audio file extension without the leading dot

        Returns:
            Absolute path inside the recordings directory
        """
        filename = f"{timestamp.strftime('%Y%m%d_%H%M%S')}_{timestamp.microsecond:06d}.{extension}"
        return self.get_recordings_dir() / timestamp.strftime("%Y-%m-%d") / filename

    def get_upload_queue_path(self) -> Path:
        """Get the path to the persisted upload queue."""
        return self.data_dir / "state" / "pending_detections.json"
