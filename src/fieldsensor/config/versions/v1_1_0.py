"""Configuration version 1.1.0 definition."""

from typing import Any

from .registry import deep_merge


class ConfigVersion_1_1_0:  # noqa: N801
    """Configuration version 1.1.0 - Current version with nested service settings."""

    version = "1.1.0"
    previous_version = "1.0.0"

    @property
    def defaults(self) -> dict[str, Any]:
        """Default values for version 1.1.0."""
        return {
            "config_version": "1.1.0",
            "site_name": "Field Sensor",
            "device_id": "",
            "latitude": None,
            "longitude": None,
            # Detection
            "detection_threshold": 0.9,  # Renamed from threshold
            "target_species": ["lathamus"],
            # Audio capture
            "segment_duration": 5.0,
            "sample_rate": 48000,
            "audio_channels": 1,
            "audio_device_index": -1,
            # GPS
            "enable_gps": False,
            "gps_update_interval": 5.0,
            "logging": {
                "level": "INFO",
                "json_logs": None,  # None = auto-detect
                "include_caller": False,
                "extra_fields": {"service": "fieldsensor"},
            },
            "classifier": {
                "server_url": "",
                "inference_path": "/inference/",
                "auth_token": "",
                "timeout": 30.0,
                "model_name": "BirdNET",
            },
            "backend": {
                "supabase_url": "",
                "supabase_anon_key": "",
                "bucket": "detections",
                "table": "detections",
                "timeout": 60.0,
            },
            "uploads": {
                "max_retries": 10,
                "auto_sync": True,
                "sync_interval": 300.0,
            },
        }

    def apply_defaults(self, config: dict[str, Any]) -> dict[str, Any]:
        """Apply version 1.1.0 defaults to config."""
        return deep_merge(self.defaults, config)

    def upgrade_from_previous(self, config: dict[str, Any]) -> dict[str, Any]:
        """Upgrade from version 1.0.0 flat settings.

        Changes:
        - threshold -> detection_threshold
        - birdnet_server_url -> classifier.server_url
        - supabase_url, supabase_anon_key -> backend.*
        - auto_sync -> uploads.auto_sync
        - textual latitude/longitude -> floats
        """
        upgraded = config.copy()

        if "threshold" in upgraded:
            upgraded["detection_threshold"] = float(upgraded.pop("threshold"))

        # The settings screen stored coordinates as text
        for coordinate in ("latitude", "longitude"):
            value = upgraded.get(coordinate)
            if isinstance(value, str):
                upgraded[coordinate] = float(value) if value.strip() else None

        server_url = upgraded.pop("birdnet_server_url", "")
        if server_url:
            upgraded.setdefault("classifier", {})["server_url"] = server_url

        backend = upgraded.setdefault("backend", {})
        for old_key in ("supabase_url", "supabase_anon_key"):
            value = upgraded.pop(old_key, "")
            if value:
                backend[old_key] = value

        if "auto_sync" in upgraded:
            upgraded.setdefault("uploads", {})["auto_sync"] = bool(upgraded.pop("auto_sync"))

        return self.apply_defaults(upgraded)

    def validate(self, config: dict[str, Any]) -> list[str]:
        """Validate a version 1.1.0 config."""
        errors = []

        thresh = config.get("detection_threshold", 0.9)
        if not 0.0 <= thresh <= 1.0:
            errors.append(f"detection_threshold must be between 0.0 and 1.0, got {thresh}")

        lat = config.get("latitude")
        if lat is not None and not -90 <= lat <= 90:
            errors.append(f"latitude must be between -90 and 90, got {lat}")

        lon = config.get("longitude")
        if lon is not None and not -180 <= lon <= 180:
            errors.append(f"longitude must be between -180 and 180, got {lon}")

        if not config.get("target_species"):
            errors.append("target_species must list at least one marker")

        max_retries = config.get("uploads", {}).get("max_retries", 10)
        if max_retries < 1:
            errors.append(f"uploads.max_retries must be at least 1, got {max_retries}")

        timeout = config.get("classifier", {}).get("timeout", 30.0)
        if timeout <= 0:
            errors.append(f"classifier.timeout must be positive, got {timeout}")

        return errors
