"""Durable upload queue delivering positive detections to the backend."""

from fieldsensor.uploads.backend import DetectionBackend, SupabaseBackend, UploadError
from fieldsensor.uploads.models import DetectionMetadata, UploadJob
from fieldsensor.uploads.queue import DrainResult, UploadQueue
from fieldsensor.uploads.store import PersistenceError, QueueStateStore

__all__ = [
    "DetectionBackend",
    "DetectionMetadata",
    "DrainResult",
    "PersistenceError",
    "QueueStateStore",
    "SupabaseBackend",
    "UploadError",
    "UploadJob",
    "UploadQueue",
]
