"""GPS position source for tagging detections.

A background task polls gpsd for TPV reports. Detections use the latest fix while it
is fresh; otherwise the sensor falls back to its configured coordinates.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, NamedTuple, Protocol

from gpsdclient.client import GPSDClient

logger = logging.getLogger(__name__)

# gpsd TPV modes: 0 unknown, 1 no fix, 2 two-dimensional, 3 three-dimensional
MIN_FIX_MODE = 2


class GPSCoordinates(NamedTuple):
    """A single position fix."""

    latitude: float
    longitude: float
    altitude: float | None
    accuracy: float | None  # Estimated horizontal error in metres
    timestamp: datetime
    satellite_count: int | None = None


class LocationProvider(Protocol):
    """Anything that can report the sensor's current position."""

    def get_current_location(self) -> GPSCoordinates | None:
        """Return a recent fix, or None if unavailable."""
        ...


def coordinates_from_tpv(packet: dict[str, Any], received_at: datetime) -> GPSCoordinates | None:
    """Convert a gpsd TPV report, returning None when it carries no usable fix."""
    if packet.get("mode", 0) < MIN_FIX_MODE:
        return None
    if packet.get("lat") is None or packet.get("lon") is None:
        return None
    return GPSCoordinates(
        latitude=float(packet["lat"]),
        longitude=float(packet["lon"]),
        altitude=packet.get("alt"),
        accuracy=packet.get("eps"),
        timestamp=received_at,
        satellite_count=packet.get("nSat"),
    )


class GPSService:
    """Tracks the sensor position from gpsd while enabled."""

    def __init__(self, enable_gps: bool = False, update_interval: float = 5.0) -> None:
        self.enable_gps = enable_gps
        self.update_interval = update_interval
        self.current_location: GPSCoordinates | None = None
        self.is_running = False
        self._poll_task: asyncio.Task[None] | None = None
        self._had_fix = False

        self.gpsd_client: GPSDClient | None = None
        if enable_gps:
            try:
                self.gpsd_client = GPSDClient()
            except Exception as e:
                logger.warning("gpsd unavailable, using configured coordinates: %s", e)
                self.enable_gps = False

    @property
    def max_fix_age(self) -> float:
        """Seconds after which a fix is considered stale."""
        return self.update_interval * 2

    async def start(self) -> None:
        """Begin polling gpsd. Does nothing when disabled or already running."""
        if not self.enable_gps or self.is_running:
            return

        self.is_running = True
        self._poll_task = asyncio.create_task(self._poll())
        logger.info("GPS tracking started", extra={"update_interval": self.update_interval})

    async def stop(self) -> None:
        """Stop polling gpsd."""
        if not self.is_running:
            return

        self.is_running = False
        task, self._poll_task = self._poll_task, None
        if task:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        logger.info("GPS tracking stopped")

    async def _poll(self) -> None:
        while self.is_running:
            try:
                # gpsdclient reads from a blocking socket
                fix = await asyncio.to_thread(self._read_fix)
            except OSError as e:
                logger.error("Lost connection to gpsd: %s", e)
                fix = None
            except Exception:
                # Malformed reports surface as ValueError from the JSON decoder
                logger.exception("Could not read a report from gpsd")
                fix = None
            self._record(fix)
            await asyncio.sleep(self.update_interval)

    def _record(self, fix: GPSCoordinates | None) -> None:
        if fix is not None:
            self.current_location = fix
        if fix is not None and not self._had_fix:
            logger.info(
                "GPS fix acquired",
                extra={"satellites": fix.satellite_count, "accuracy": fix.accuracy},
            )
        elif fix is None and self._had_fix:
            logger.warning("GPS fix lost")
        self._had_fix = fix is not None

    def _read_fix(self) -> GPSCoordinates | None:
        """Block until gpsd sends the next TPV report and convert it."""
        if not self.gpsd_client:
            return None

        for packet in self.gpsd_client.dict_stream(filter={"TPV"}):
            return coordinates_from_tpv(packet, datetime.now(UTC))
        return None

    def get_current_location(self) -> GPSCoordinates | None:
        """Latest fix, or None when GPS is disabled or the fix is stale."""
        if not self.enable_gps or self.current_location is None:
            return None

        age = (datetime.now(UTC) - self.current_location.timestamp).total_seconds()
        return self.current_location if age <= self.max_fix_age else None
