"""Persisted models for pending detection uploads."""

import secrets
import string
import time
from datetime import datetime
from pathlib import PurePath

from pydantic import BaseModel, Field

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase


def generate_job_id() -> str:
    """Generate a job identifier from the current time and a random suffix."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}_{suffix}"


class DetectionMetadata(BaseModel):
    """Detection record stored alongside the uploaded audio."""

    device_id: str
    timestamp: datetime
    latitude: float | None = None
    longitude: float | None = None
    model_name: str
    confidence: float


class UploadJob(BaseModel):
    """One detection awaiting delivery to the backend."""

    id: str = Field(default_factory=generate_job_id)
    audio_ref: str
    metadata: DetectionMetadata
    retry_count: int = 0

    @property
    def audio_extension(self) -> str:
        """Extension of the audio artifact without the leading dot."""
        return PurePath(self.audio_ref).suffix.lstrip(".") or "wav"

    @property
    def object_path(self) -> str:
        """Object store path for this job's audio: ``<device_id>/<job_id>.<ext>``."""
        return f"{self.metadata.device_id}/{self.id}.{self.audio_extension}"
