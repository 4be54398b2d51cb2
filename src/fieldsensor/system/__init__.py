"""System domain package.

This package contains system-level components:
- FileManager: File system operations for recorded audio artifacts
- PathResolver: Path resolution and management
- structlog_configurator: Structured logging configuration (import the module directly)
"""

from fieldsensor.system.file_manager import FileManager
from fieldsensor.system.path_resolver import PathResolver

__all__ = [
    "FileManager",
    "PathResolver",
]
