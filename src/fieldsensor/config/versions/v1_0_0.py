"""Configuration version 1.0.0 definition.

The flat key set written by the first sensor releases.
"""

from typing import Any

from .registry import deep_merge


class ConfigVersion_1_0_0:  # noqa: N801
    """Configuration version 1.0.0 - Flat settings."""

    version = "1.0.0"
    previous_version = None  # This is our oldest tracked version

    @property
    def defaults(self) -> dict[str, Any]:
        """Default values for version 1.0.0."""
        return {
            "device_id": "",
            "latitude": None,
            "longitude": None,
            "threshold": 0.9,
            "auto_sync": True,
            "segment_duration": 5.0,
            "birdnet_server_url": "",
            "supabase_url": "",
            "supabase_anon_key": "",
            "logging": {"level": "INFO"},
        }

    def apply_defaults(self, config: dict[str, Any]) -> dict[str, Any]:
        """Apply version 1.0.0 defaults to config."""
        return deep_merge(self.defaults, config)

    def upgrade_from_previous(self, config: dict[str, Any]) -> dict[str, Any]:
        """No upgrade needed as this is the oldest version."""
        return config

    def validate(self, config: dict[str, Any]) -> list[str]:
        """Validate a version 1.0.0 config."""
        errors = []

        thresh = config.get("threshold", 0.9)
        if not 0.0 <= float(thresh) <= 1.0:
            errors.append(f"threshold must be between 0.0 and 1.0, got {thresh}")

        return errors
