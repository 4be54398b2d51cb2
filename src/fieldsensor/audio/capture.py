"""Microphone capture producing fixed-length segments for classification.

PortAudio delivers blocks on its own thread; they are handed to the event loop and
assembled into segments that are written to disk and put on an asyncio queue.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Protocol

import numpy as np
import sounddevice as sd

from fieldsensor.config import FieldSensorConfig
from fieldsensor.detections.models import AudioSegment
from fieldsensor.system.file_manager import FileManager
from fieldsensor.system.path_resolver import PathResolver

logger = logging.getLogger(__name__)


class SegmentSource(Protocol):
    """Capture collaborator feeding the monitoring loop."""

    segments: asyncio.Queue[AudioSegment]

    async def start(self) -> None:
        """Begin producing segments; raises if capture cannot begin."""
        ...

    async def stop(self) -> None:
        """Stop producing segments."""
        ...


class AudioCaptureService:
    """Records fixed-duration segments from an input device using sounddevice."""

    def __init__(
        self,
        config: FieldSensorConfig,
        path_resolver: PathResolver,
        file_manager: FileManager,
        segments: asyncio.Queue[AudioSegment] | None = None,
    ) -> None:
        """Set up capture without opening the device.

        Args:
            config: Sensor configuration (device, sample rate, segment duration)
            path_resolver: Resolves where segment files are written
            file_manager: Writes segment audio to disk
            segments: Channel receiving completed segments
        """
        self.config = config
        self.path_resolver = path_resolver
        self.file_manager = file_manager
        self.segments: asyncio.Queue[AudioSegment] = segments or asyncio.Queue()
        self.stream: sd.InputStream | None = None
        self._chunks: asyncio.Queue[np.ndarray] | None = None
        self._assembler: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def segment_frames(self) -> int:
        """Number of frames in one segment."""
        return int(self.config.segment_duration * self.config.sample_rate)

    @property
    def is_active(self) -> bool:
        """Whether the input stream is currently recording."""
        return self.stream is not None

    def _callback(
        self, indata: np.ndarray, frames: int, time: object, status: sd.CallbackFlags
    ) -> None:
        """Hand a block of samples from the PortAudio thread to the event loop."""
        if status:
            logger.warning("Audio stream status: %s", status)
        if self._loop and self._chunks is not None:
            self._loop.call_soon_threadsafe(self._chunks.put_nowait, indata.copy())

    async def start(self) -> None:
        """Open the input device and start producing segments.

        Raises:
            sd.PortAudioError: If the input device cannot be opened
        """
        if self.stream is not None:
            return

        # sounddevice expects None for default device, not -1
        device_id = self.config.audio_device_index
        if device_id == -1:
            device_id = None

        self._loop = asyncio.get_running_loop()
        chunks: asyncio.Queue[np.ndarray] = asyncio.Queue()
        self._chunks = chunks
        stream = sd.InputStream(
            device=device_id,
            channels=self.config.audio_channels,
            samplerate=self.config.sample_rate,
            dtype="int16",
            callback=self._callback,
        )
        stream.start()
        self.stream = stream
        self._assembler = asyncio.create_task(self._assemble_segments(chunks))
        logger.info(
            "Audio capture started (%.1fs segments at %d Hz)",
            self.config.segment_duration,
            self.config.sample_rate,
        )

    async def stop(self) -> None:
        """Stop recording; a partially recorded segment is discarded."""
        if self.stream is None:
            return

        self.stream.stop()
        self.stream.close()
        self.stream = None

        if self._assembler:
            self._assembler.cancel()
            try:
                await self._assembler
            except asyncio.CancelledError:
                pass
            self._assembler = None
        self._chunks = None
        logger.info("Audio capture stopped")

    async def _assemble_segments(self, chunks: asyncio.Queue[np.ndarray]) -> None:
        """Collect blocks into segments, write each to disk and publish it."""
        buffered: list[np.ndarray] = []
        buffered_frames = 0
        segment_start = datetime.now(UTC)

        while True:
            chunk = await chunks.get()
            if not buffered:
                # Back-date the start by the length of the first block
                segment_start = datetime.now(UTC) - timedelta(
                    seconds=len(chunk) / self.config.sample_rate
                )
            buffered.append(chunk)
            buffered_frames += len(chunk)

            if buffered_frames < self.segment_frames:
                continue

            audio = np.concatenate(buffered)
            segment_audio = audio[: self.segment_frames]
            remainder = audio[self.segment_frames :]
            buffered = [remainder] if len(remainder) else []
            buffered_frames = len(remainder)

            await self._publish_segment(segment_audio, segment_start)
            segment_start = segment_start + timedelta(seconds=self.config.segment_duration)

    async def _publish_segment(self, audio: np.ndarray, started_at: datetime) -> None:
        path = self.path_resolver.get_segment_audio_path(started_at)
        try:
            await asyncio.to_thread(
                self.file_manager.save_segment_audio, path, audio, self.config.sample_rate
            )
        except (OSError, RuntimeError) as e:  # soundfile raises RuntimeError subclasses
            logger.error("Failed to write audio segment %s: %s", path, e)
            return

        segment = AudioSegment(
            audio_ref=self.file_manager.to_reference(path),
            timestamp=started_at,
            duration=len(audio) / self.config.sample_rate,
        )
        await self.segments.put(segment)
        logger.debug("Audio segment ready", extra={"audio_ref": segment.audio_ref})
