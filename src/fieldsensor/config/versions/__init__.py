"""Configuration version definitions.

Each version module describes one layout of the config file:
- Default values
- Validation rules
- Upgrade logic from previous version
"""

from .registry import VersionRegistry, deep_merge

__all__ = ["VersionRegistry", "deep_merge"]
