"""Decides whether classifier predictions amount to a positive detection."""

from collections.abc import Iterable
from dataclasses import dataclass, replace

from fieldsensor.detections.models import DetectionResult, SpeciesPrediction
from fieldsensor.species.parser import SpeciesParser


def clamp_confidence(value: float) -> float:
    """Clamp a probability into [0, 1]."""
    return min(1.0, max(0.0, value))


@dataclass(frozen=True)
class DetectionPolicy:
    """Threshold and target-species rule applied to raw predictions.

    A detection is positive only when a target species (matched by case-insensitive
    substring against ``target_markers``) has a probability at or above ``threshold``.
    Non-target species never make a segment positive, however confident.
    """

    threshold: float
    target_markers: tuple[str, ...]
    model_name: str = "BirdNET"

    def __post_init__(self) -> None:
        object.__setattr__(self, "threshold", clamp_confidence(self.threshold))
        object.__setattr__(self, "target_markers", tuple(self.target_markers))

    def with_threshold(self, threshold: float) -> "DetectionPolicy":
        """Return a copy of this policy using a new threshold."""
        return replace(self, threshold=threshold)

    def is_target(self, species: str) -> bool:
        """Check whether a species identifier matches any configured target marker."""
        return SpeciesParser.matches_marker(species, list(self.target_markers))

    def evaluate(self, predictions: Iterable[SpeciesPrediction]) -> DetectionResult:
        """Apply the policy to a list of predictions.

        Args:
            predictions: Raw ``(species, confidence)`` pairs in any order

        Returns:
            DetectionResult describing the selected detection
        """
        all_detections = sorted(
            (SpeciesPrediction(p.species, p.confidence) for p in predictions),
            key=lambda p: p.confidence,
            reverse=True,
        )
        admitted = [p for p in all_detections if p.confidence >= self.threshold]
        targets = [p for p in admitted if self.is_target(p.species)]

        # Sorted descending, so the first entry of each list is its maximum
        if targets:
            selected = targets[0]
        elif admitted:
            selected = admitted[0]
        else:
            return replace(
                DetectionResult.empty(self.model_name), all_detections=all_detections
            )

        components = SpeciesParser.parse_label(selected.species)
        return DetectionResult(
            confidence=selected.confidence,
            model_name=self.model_name,
            is_positive=bool(targets),
            species=selected.species,
            scientific_name=components.scientific_name,
            common_name=components.common_name,
            all_detections=all_detections,
        )


def evaluate_predictions(
    predictions: Iterable[SpeciesPrediction],
    threshold: float,
    target_markers: Iterable[str],
    model_name: str = "BirdNET",
) -> DetectionResult:
    """Functional form of :meth:`DetectionPolicy.evaluate`."""
    policy = DetectionPolicy(
        threshold=threshold, target_markers=tuple(target_markers), model_name=model_name
    )
    return policy.evaluate(predictions)
