"""Backend storage for confirmed detections.

Delivery of one job is two steps: the audio artifact is uploaded to the object store,
then a metadata record referencing the artifact's public URL is inserted. Both must
succeed for the job to count as delivered.
"""

import asyncio
import logging
import mimetypes
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import httpx

from fieldsensor.config.models import BackendConfig
from fieldsensor.uploads.models import DetectionMetadata

logger = logging.getLogger(__name__)


class UploadErrorKind(StrEnum):
    """Why a delivery attempt failed."""

    NETWORK = "network"
    SERVER_ERROR = "server_error"
    STORAGE_FULL = "storage_full"
    MISSING_AUDIO = "missing_audio"


class UploadError(RuntimeError):
    """Raised when a delivery attempt fails; the job stays queued for a later retry."""

    def __init__(self, kind: UploadErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class DetectionBackend(Protocol):
    """Capability interface for detection storage backends."""

    async def upload_audio(self, local_path: Path, object_path: str) -> str:
        """Upload an audio artifact and return its public URL."""
        ...

    async def save_detection(self, metadata: DetectionMetadata, audio_url: str) -> dict[str, Any]:
        """Insert a detection record referencing ``audio_url``."""
        ...


class SupabaseBackend:
    """Supabase storage and REST implementation of the detection backend."""

    def __init__(
        self, config: BackendConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        """Initialize the backend.

        Args:
            config: Backend connection settings
            transport: Optional httpx transport (used by tests)
        """
        self.config = config
        self._transport = transport
        self.base_url = config.supabase_url.rstrip("/")

    def is_configured(self) -> bool:
        """Whether URL and key are both present."""
        return self.config.is_configured

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.supabase_anon_key}",
            "apikey": self.config.supabase_anon_key,
        }

    def public_url(self, object_path: str) -> str:
        """Public URL of an object in the configured bucket."""
        return f"{self.base_url}/storage/v1/object/public/{self.config.bucket}/{object_path}"

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request, translating transport failures into UploadError."""
        if not self.is_configured():
            raise UploadError(UploadErrorKind.SERVER_ERROR, "Supabase backend is not configured")

        try:
            async with asyncio.timeout(self.config.timeout):
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout), transport=self._transport
                ) as client:
                    response = await client.request(method, url, **kwargs)
        except (httpx.TimeoutException, TimeoutError) as e:
            raise UploadError(UploadErrorKind.NETWORK, f"Timed out talking to {url}") from e
        except httpx.RequestError as e:
            raise UploadError(UploadErrorKind.NETWORK, f"Cannot reach {url}: {e}") from e

        if response.status_code in (413, 507):
            raise UploadError(
                UploadErrorKind.STORAGE_FULL,
                f"Backend refused content ({response.status_code}): {response.text[:200]}",
            )
        if not response.is_success:
            raise UploadError(
                UploadErrorKind.SERVER_ERROR,
                f"Backend returned {response.status_code}: {response.text[:200]}",
            )
        return response

    async def upload_audio(self, local_path: Path, object_path: str) -> str:
        """Upload an audio artifact, overwriting any earlier upload at the same path.

        Returns:
            The public URL of the stored object
        """
        try:
            content = await asyncio.to_thread(local_path.read_bytes)
        except OSError as e:
            raise UploadError(
                UploadErrorKind.MISSING_AUDIO, f"Cannot read audio {local_path}: {e}"
            ) from e

        content_type = mimetypes.guess_type(local_path.name)[0] or "application/octet-stream"
        url = f"{self.base_url}/storage/v1/object/{self.config.bucket}/{object_path}"
        await self._request(
            "POST",
            url,
            content=content,
            headers={**self._headers(), "Content-Type": content_type, "x-upsert": "true"},
        )
        logger.debug("Uploaded audio", extra={"object_path": object_path, "bytes": len(content)})
        return self.public_url(object_path)

    async def save_detection(self, metadata: DetectionMetadata, audio_url: str) -> dict[str, Any]:
        """Insert a detection record.

        Returns:
            The inserted record as returned by the REST API
        """
        record = {**metadata.model_dump(mode="json"), "audio_file_url": audio_url}
        response = await self._request(
            "POST",
            f"{self.base_url}/rest/v1/{self.config.table}",
            json=record,
            headers={**self._headers(), "Prefer": "return=representation"},
        )
        rows = response.json() if response.content else []
        return rows[0] if isinstance(rows, list) and rows else record

    async def get_detections(self, limit: int = 20) -> list[dict[str, Any]]:
        """Fetch the most recent detection records, newest first."""
        response = await self._request(
            "GET",
            f"{self.base_url}/rest/v1/{self.config.table}",
            params={"select": "*", "order": "timestamp.desc", "limit": str(limit)},
            headers=self._headers(),
        )
        return response.json()
