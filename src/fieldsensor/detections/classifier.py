"""Client for the remote species-classification service.

The service accepts one audio artifact as multipart form content (field ``file``)
and answers with time-segmented predictions::

    {
      "predictions": [
        {
          "start_time": 0,
          "stop_time": 3,
          "species": [
            {"species_name": "Lathamus discolor_Swift Parrot", "probability": 0.95}
          ]
        }
      ]
    }
"""

import asyncio
import logging
import mimetypes
import time
from enum import StrEnum
from typing import Any, Protocol

import httpx

from fieldsensor.config.models import ClassifierConfig
from fieldsensor.detections.models import DetectionResult, SpeciesPrediction
from fieldsensor.detections.policy import DetectionPolicy, clamp_confidence
from fieldsensor.system.file_manager import FileManager

logger = logging.getLogger(__name__)


class ClassificationErrorKind(StrEnum):
    """Why a classification call produced no usable result."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    AUDIO_UNAVAILABLE = "audio_unavailable"


class ClassificationError(RuntimeError):
    """Raised when the classifier cannot produce a parseable result."""

    def __init__(self, kind: ClassificationErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ClassifierClient(Protocol):
    """Capability interface for classification backends."""

    @property
    def model_name(self) -> str:
        """Name of the model reported with every detection."""
        ...

    def set_threshold(self, threshold: float) -> None:
        """Change the confidence threshold used for the next classification."""
        ...

    async def classify(self, audio_ref: str) -> DetectionResult:
        """Classify one audio artifact without mutating or deleting it."""
        ...


def parse_predictions(payload: Any) -> list[SpeciesPrediction]:
    """Flatten a classifier response body into prediction pairs.

    An empty ``predictions`` list is a valid response with zero detections.

    Raises:
        ClassificationError: If the body does not follow the expected shape
    """
    try:
        segments = payload["predictions"]
        if not isinstance(segments, list):
            raise TypeError("predictions is not a list")

        predictions = []
        for segment in segments:
            for entry in segment.get("species", []):
                species = entry.get("species_name") or entry.get("identifier") or ""
                probability = float(entry.get("probability", 0.0))
                predictions.append(SpeciesPrediction(str(species), clamp_confidence(probability)))
        return predictions
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ClassificationError(
            ClassificationErrorKind.MALFORMED_RESPONSE, f"Unexpected classifier response: {e}"
        ) from e


class BirdNETClassifierClient:
    """Sends audio segments to a BirdNET inference server over HTTP."""

    def __init__(
        self,
        config: ClassifierConfig,
        policy: DetectionPolicy,
        file_manager: FileManager,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Classifier endpoint settings
            policy: Detection policy applied to every response
            file_manager: Resolves audio references to files
            transport: Optional httpx transport (used by tests)
        """
        self.config = config
        self.policy = policy
        self.file_manager = file_manager
        self._transport = transport

    @property
    def model_name(self) -> str:
        """Name of the model reported with every detection."""
        return self.policy.model_name

    def set_threshold(self, threshold: float) -> None:
        """Change the confidence threshold used for the next classification."""
        self.policy = self.policy.with_threshold(threshold)
        logger.info("Detection threshold updated to %.2f", self.policy.threshold)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        return headers

    async def fetch_predictions(self, audio_ref: str) -> list[SpeciesPrediction]:
        """POST the audio artifact and return the raw predictions.

        Raises:
            ClassificationError: On network failure, timeout, non-2xx status or a
                malformed body
        """
        path = self.file_manager.resolve(audio_ref)
        try:
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ClassificationError(
                ClassificationErrorKind.AUDIO_UNAVAILABLE, f"Cannot read audio {path}: {e}"
            ) from e

        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        files = {"file": (path.name, content, content_type)}
        timeout = httpx.Timeout(self.config.timeout)

        try:
            # httpx timeouts apply per phase; the outer bound caps the whole exchange
            async with asyncio.timeout(self.config.timeout):
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    response = await client.post(
                        self.config.endpoint, files=files, headers=self._headers()
                    )
        except (httpx.TimeoutException, TimeoutError) as e:
            raise ClassificationError(
                ClassificationErrorKind.TIMEOUT,
                f"Classifier did not answer within {self.config.timeout:.0f}s",
            ) from e
        except httpx.RequestError as e:
            raise ClassificationError(
                ClassificationErrorKind.NETWORK,
                f"Cannot reach classifier at {self.config.endpoint}: {e}",
            ) from e

        if not response.is_success:
            raise ClassificationError(
                ClassificationErrorKind.SERVER_ERROR,
                f"Classifier returned {response.status_code}: {response.text[:200]}",
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ClassificationError(
                ClassificationErrorKind.MALFORMED_RESPONSE, "Classifier response is not JSON"
            ) from e

        return parse_predictions(payload)

    async def classify(self, audio_ref: str) -> DetectionResult:
        """Classify one audio artifact and apply the detection policy."""
        started = time.monotonic()
        predictions = await self.fetch_predictions(audio_ref)
        result = self.policy.evaluate(predictions)

        logger.info(
            "Segment classified",
            extra={
                "audio_ref": audio_ref,
                "elapsed_ms": int((time.monotonic() - started) * 1000),
                "predictions": len(predictions),
                "confidence": result.confidence,
                "species": result.species,
                "positive": result.is_positive,
            },
        )
        return result
