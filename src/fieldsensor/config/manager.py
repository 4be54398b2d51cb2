"""Loading, migrating and saving the sensor's YAML configuration."""

import logging
import os
import secrets
import shutil
import string
import tempfile
import time
from typing import Any

import yaml

from fieldsensor.config.models import FieldSensorConfig
from fieldsensor.config.versions import VersionRegistry
from fieldsensor.system.path_resolver import PathResolver

logger = logging.getLogger(__name__)

_DEVICE_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_device_id() -> str:
    """Generate a sensor identifier in the form ``sensor_<epoch-ms>_<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_DEVICE_ID_ALPHABET) for _ in range(9))
    return f"sensor_{int(time.time() * 1000)}_{suffix}"


class ConfigManager:
    """Reads the config file, upgrades old layouts and writes changes back."""

    CURRENT_VERSION = "1.1.0"

    def __init__(self, path_resolver: PathResolver | None = None):
        self.path_resolver = path_resolver or PathResolver()
        self.registry = VersionRegistry()
        self.config_path = self.path_resolver.get_config_path()

    def load(self) -> FieldSensorConfig:
        """Load the configuration, creating or upgrading the file as needed.

        A missing file is written with current defaults. Older layouts are migrated
        and saved back, and a device identifier is assigned the first time one is
        missing so it stays stable across restarts.

        Raises:
            ValueError: If the file holds invalid settings or an unknown version
        """
        if not self.config_path.exists():
            self._write_yaml(self._current_defaults())

        raw = yaml.safe_load(self.config_path.read_text()) or {}
        stored_version = raw.get("config_version", "1.0.0")
        raw = self.registry.get_version(stored_version).apply_defaults(raw)

        needs_save = stored_version != self.CURRENT_VERSION
        if needs_save:
            raw = self._upgrade(raw, stored_version)

        problems = self.registry.get_version(self.CURRENT_VERSION).validate(raw)
        if problems:
            raise ValueError(f"Configuration validation failed: {', '.join(problems)}")

        config = self._to_model(raw)
        if not config.device_id:
            config.device_id = generate_device_id()
            logger.info("Assigned device identifier %s", config.device_id)
            needs_save = True

        if needs_save:
            self.save(config)
        return config

    def save(self, config: FieldSensorConfig) -> None:
        """Write the configuration, keeping the previous file as ``.yaml.backup``."""
        if self.config_path.exists():
            backup_path = self.config_path.with_suffix(".yaml.backup")
            try:
                shutil.copy2(self.config_path, backup_path)
            except PermissionError:
                logger.warning("Could not create backup at %s", backup_path)

        self._write_yaml(config.model_dump())
        logger.info("Configuration saved to %s", self.config_path)

    def reload(self) -> FieldSensorConfig:
        """Re-read the configuration from disk."""
        return self.load()

    def _current_defaults(self) -> dict[str, Any]:
        handler = self.registry.get_version(self.CURRENT_VERSION)
        return handler.apply_defaults({"config_version": self.CURRENT_VERSION})

    def _write_yaml(self, data: dict[str, Any]) -> None:
        """Replace the config file atomically so a power cut cannot truncate it."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)

        fd, tmp_name = tempfile.mkstemp(dir=self.config_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.config_path)
        except BaseException:
            os.unlink(tmp_name)
            raise

    def _upgrade(self, raw: dict[str, Any], from_version: str) -> dict[str, Any]:
        for handler in self.registry.get_upgrade_path(from_version, self.CURRENT_VERSION):
            raw = handler.upgrade_from_previous(raw)
            raw["config_version"] = handler.version
        logger.info("Migrated configuration from %s to %s", from_version, self.CURRENT_VERSION)
        return raw

    def _to_model(self, raw: dict[str, Any]) -> FieldSensorConfig:
        known = FieldSensorConfig.model_fields.keys()
        leftover = sorted(set(raw) - set(known))
        if leftover:
            logger.warning("Ignoring unrecognised config keys: %s", ", ".join(leftover))
        return FieldSensorConfig(**{key: value for key, value in raw.items() if key in known})
