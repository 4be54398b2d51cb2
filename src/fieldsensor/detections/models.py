"""Value types flowing through the detection pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import NamedTuple


@dataclass(frozen=True)
class AudioSegment:
    """One captured audio segment awaiting classification.

    ``audio_ref`` points at the recorded artifact (a file path relative to the
    recordings directory, or an absolute path). The segment does not own the file;
    whoever consumes the segment decides whether to delete it or hand it on.
    """

    audio_ref: str
    timestamp: datetime  # Capture start time, timezone-aware
    duration: float  # Seconds


class SpeciesPrediction(NamedTuple):
    """A single raw ``(identifier, probability)`` pair from the classifier."""

    species: str
    confidence: float


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of classifying one segment."""

    confidence: float
    model_name: str
    is_positive: bool
    species: str | None = None
    scientific_name: str | None = None
    common_name: str | None = None
    all_detections: list[SpeciesPrediction] = field(default_factory=list)

    @classmethod
    def empty(cls, model_name: str) -> "DetectionResult":
        """Result for a segment with nothing above threshold."""
        return cls(confidence=0.0, model_name=model_name, is_positive=False)
