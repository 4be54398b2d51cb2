"""Discovery of config version handlers and the upgrade chain between them."""

import importlib
import pkgutil
from typing import Any, Protocol

HANDLER_PREFIX = "ConfigVersion_"


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` onto ``base``; nested dictionaries merge key by key."""
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def version_key(version_string: str) -> tuple[int, ...]:
    """Sort key for dotted version strings ("1.10.0" sorts after "1.9.0")."""
    return tuple(int(part) for part in version_string.split("."))


class ConfigVersion(Protocol):
    """One historical layout of the config file."""

    version: str
    previous_version: str | None

    def apply_defaults(self, config: dict[str, Any]) -> dict[str, Any]: ...

    def upgrade_from_previous(self, config: dict[str, Any]) -> dict[str, Any]: ...

    def validate(self, config: dict[str, Any]) -> list[str]:
        """Return human-readable problems, empty when the config is valid."""
        ...


class VersionRegistry:
    """Every known config version, keyed by version string."""

    def __init__(self):
        self._versions: dict[str, ConfigVersion] = {}
        package = importlib.import_module(__package__)
        for module_info in pkgutil.iter_modules(package.__path__):
            if module_info.name.startswith("v"):
                self._register_module(f"{__package__}.{module_info.name}")

    def _register_module(self, module_name: str) -> None:
        module = importlib.import_module(module_name)  # nosemgrep
        for attr_name, handler_class in vars(module).items():
            if attr_name.startswith(HANDLER_PREFIX):
                handler = handler_class()
                self._versions[handler.version] = handler

    def get_version(self, version_string: str) -> ConfigVersion:
        """Look up a handler.

        Raises:
            ValueError: If the version is not known
        """
        try:
            return self._versions[version_string]
        except KeyError:
            raise ValueError(f"Unknown config version: {version_string}") from None

    def get_upgrade_path(self, from_version: str, to_version: str) -> list[ConfigVersion]:
        """Handlers to apply, oldest first, to move a config between two versions.

        The chain is followed backwards from ``to_version`` through each handler's
        ``previous_version``.
        """
        path: list[ConfigVersion] = []
        handler = self.get_version(to_version)
        while handler.version != from_version:
            path.append(handler)
            if handler.previous_version is None:
                raise ValueError(f"No upgrade path from {from_version} to {to_version}")
            handler = self.get_version(handler.previous_version)
        path.reverse()
        return path

    def get_current_version(self) -> ConfigVersion:
        """Handler for the newest known version."""
        if not self._versions:
            raise ValueError("No configuration versions found")
        return self._versions[max(self._versions, key=version_key)]
