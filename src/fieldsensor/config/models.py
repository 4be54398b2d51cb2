"""Configuration models for the field sensor.

This module contains all configuration-related Pydantic models used throughout the application.
"""

from pydantic import BaseModel, Field, field_validator


class LoggingConfig(BaseModel):
    """Structlog-based logging configuration."""

    level: str = "INFO"
    json_logs: bool | None = None  # None = auto-detect based on environment
    include_caller: bool = False  # Include file:line info (useful for debugging)
    extra_fields: dict[str, str] = Field(default_factory=lambda: {"service": "fieldsensor"})


class ClassifierConfig(BaseModel):
    """Remote species-classification service settings."""

    server_url: str = ""  # Base URL of the inference server
    inference_path: str = "/inference/"
    auth_token: str = ""  # Sent as a bearer token when set
    timeout: float = 30.0  # Seconds; the server is untrusted and may hang
    model_name: str = "BirdNET"

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Require a bounded, positive timeout."""
        if v <= 0:
            raise ValueError(f"timeout must be positive, got {v}")
        return v

    @property
    def endpoint(self) -> str:
        """Full inference endpoint URL."""
        return f"{self.server_url.rstrip('/')}/{self.inference_path.lstrip('/')}"


class BackendConfig(BaseModel):
    """Detection storage backend (Supabase storage + REST) settings."""

    supabase_url: str = ""
    supabase_anon_key: str = ""
    bucket: str = "detections"  # Object store bucket for audio artifacts
    table: str = "detections"  # Table receiving detection metadata records
    timeout: float = 60.0

    @property
    def is_configured(self) -> bool:
        """Whether enough settings are present to reach the backend."""
        return bool(self.supabase_url and self.supabase_anon_key)


class UploadConfig(BaseModel):
    """Durable upload queue settings."""

    max_retries: int = 10  # Jobs are evicted once their retry count reaches this ceiling
    auto_sync: bool = True  # Drain the queue right after each enqueue
    sync_interval: float = 300.0  # Seconds between periodic drains, 0 disables

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Require at least one upload attempt per job."""
        if v < 1:
            raise ValueError(f"max_retries must be at least 1, got {v}")
        return v


class FieldSensorConfig(BaseModel):
    """Configuration settings for the field sensor application."""

    # Version tracking
    config_version: str = "1.1.0"

    # Sensor identity
    site_name: str = "Field Sensor"
    device_id: str = ""  # Generated once on first load

    # Fallback location used when GPS has no fix
    latitude: float | None = None
    longitude: float | None = None

    # Detection
    detection_threshold: float = 0.9
    target_species: list[str] = Field(default_factory=lambda: ["lathamus"])

    # Audio capture
    segment_duration: float = 5.0  # Seconds per captured segment
    sample_rate: int = 48000
    audio_channels: int = 1
    audio_device_index: int = -1  # -1 selects the system default input

    # GPS
    enable_gps: bool = False
    gps_update_interval: float = 5.0

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    uploads: UploadConfig = Field(default_factory=UploadConfig)

    @field_validator("detection_threshold")
    @classmethod
    def validate_detection_threshold(cls, v: float) -> float:
        """Validate the confidence threshold lies in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"detection_threshold must be between 0.0 and 1.0, got {v}")
        return v

    @field_validator("latitude")
    @classmethod
    def validate_latitude(cls, v: float | None) -> float | None:
        """Validate latitude range."""
        if v is not None and not -90 <= v <= 90:
            raise ValueError(f"latitude must be between -90 and 90, got {v}")
        return v

    @field_validator("longitude")
    @classmethod
    def validate_longitude(cls, v: float | None) -> float | None:
        """Validate longitude range."""
        if v is not None and not -180 <= v <= 180:
            raise ValueError(f"longitude must be between -180 and 180, got {v}")
        return v

    @field_validator("target_species")
    @classmethod
    def validate_target_species(cls, v: list[str]) -> list[str]:
        """Drop blank markers; an empty marker would match every species."""
        markers = [marker.strip() for marker in v if marker.strip()]
        if not markers:
            raise ValueError("target_species must contain at least one non-empty marker")
        return markers
