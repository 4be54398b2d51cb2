"""Location domain for GPS fixes attached to detections."""

from fieldsensor.location.gps import GPSCoordinates, GPSService

__all__ = ["GPSCoordinates", "GPSService"]
