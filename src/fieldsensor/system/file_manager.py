import logging
from pathlib import Path

import numpy as np
import soundfile as sf

from fieldsensor.system.path_resolver import PathResolver

logger = logging.getLogger(__name__)


class FileManager:
    """Manages audio artifact files using PathResolver."""

    def __init__(self, path_resolver: PathResolver) -> None:
        self.path_resolver = path_resolver
        self.base_path = path_resolver.get_recordings_dir()

    def resolve(self, audio_ref: str) -> Path:
        """Resolve an audio reference to an absolute path.

        References are stored relative to the recordings directory when possible so the
        queue survives a relocated data directory.
        """
        path = Path(audio_ref)
        return path if path.is_absolute() else self.base_path / path

    def to_reference(self, path: Path) -> str:
        """Convert an absolute path into a reference suitable for persistence."""
        try:
            return str(path.relative_to(self.base_path))
        except ValueError:
            return str(path)

    def file_exists(self, audio_ref: str) -> bool:
        """Check if the referenced audio artifact exists."""
        return self.resolve(audio_ref).is_file()

    def delete_audio(self, audio_ref: str) -> bool:
        """Delete a referenced audio artifact, best-effort.

        Returns:
            True if a file was removed, False otherwise
        """
        full_path = self.resolve(audio_ref)
        try:
            full_path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not delete audio artifact %s: %s", full_path, e)
            return False

    def save_segment_audio(
        self,
        path: Path,
        audio_data: np.ndarray,
        sample_rate: int,
    ) -> Path:
        """Write captured audio samples to a WAV file.

        Args:
            path: Absolute destination path
            audio_data: Samples as returned by the capture device
            sample_rate: Sample rate in Hz

        Returns:
            The path that was written
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        sf.write(str(path), audio_data, sample_rate, subtype="PCM_16")
        return path
