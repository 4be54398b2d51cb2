from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from fieldsensor.config import FieldSensorConfig
from fieldsensor.config.models import BackendConfig, ClassifierConfig, UploadConfig
from fieldsensor.detections.models import AudioSegment
from fieldsensor.system.file_manager import FileManager
from fieldsensor.system.path_resolver import PathResolver
from fieldsensor.uploads.models import DetectionMetadata


@pytest.fixture
def path_resolver(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> PathResolver:
    """Provide a PathResolver rooted in a temporary data directory.

    FIELDSENSOR_CONFIG is cleared so a developer's environment cannot redirect
    config writes outside the temporary directory.
    """
    monkeypatch.delenv("FIELDSENSOR_CONFIG", raising=False)
    monkeypatch.setenv("FIELDSENSOR_DATA", str(tmp_path / "data"))
    resolver = PathResolver()
    resolver.get_recordings_dir().mkdir(parents=True)
    return resolver


@pytest.fixture
def file_manager(path_resolver: PathResolver) -> FileManager:
    """Provide a FileManager writing into the temporary recordings directory."""
    return FileManager(path_resolver)


@pytest.fixture
def config_factory() -> Callable[..., FieldSensorConfig]:
    """Create FieldSensorConfig instances pointing at test endpoints.

    Example usage:
        config = config_factory()
        config = config_factory(detection_threshold=0.5, enable_gps=True)
    """

    def _create_config(**kwargs: Any) -> FieldSensorConfig:
        defaults: dict[str, Any] = {
            "device_id": "sensor_1700000000000_abc123xyz",
            "latitude": -42.8821,
            "longitude": 147.3272,
            "detection_threshold": 0.8,
            "classifier": ClassifierConfig(server_url="http://classifier.test", timeout=5.0),
            "backend": BackendConfig(
                supabase_url="https://backend.test", supabase_anon_key="anon-key"
            ),
            "uploads": UploadConfig(max_retries=3, auto_sync=False, sync_interval=0),
        }
        defaults.update(kwargs)
        return FieldSensorConfig(**defaults)

    return _create_config


@pytest.fixture
def metadata_factory() -> Callable[..., DetectionMetadata]:
    """Create DetectionMetadata with sensible defaults."""

    def _create_metadata(**kwargs: Any) -> DetectionMetadata:
        defaults: dict[str, Any] = {
            "device_id": "sensor_1700000000000_abc123xyz",
            "timestamp": datetime(2025, 10, 3, 6, 15, 0, tzinfo=UTC),
            "latitude": -42.8821,
            "longitude": 147.3272,
            "model_name": "BirdNET",
            "confidence": 0.91,
        }
        defaults.update(kwargs)
        return DetectionMetadata(**defaults)

    return _create_metadata


@pytest.fixture
def segment_factory(file_manager: FileManager) -> Callable[..., AudioSegment]:
    """Write a small audio artifact and return the segment referencing it."""
    counter = {"n": 0}

    def _create_segment(name: str | None = None, content: bytes = b"RIFF....WAVE") -> AudioSegment:
        counter["n"] += 1
        filename = name or f"segment_{counter['n']:03d}.wav"
        path = file_manager.base_path / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return AudioSegment(
            audio_ref=file_manager.to_reference(path),
            timestamp=datetime(2025, 10, 3, 6, 15, counter["n"] % 60, tzinfo=UTC),
            duration=5.0,
        )

    return _create_segment
