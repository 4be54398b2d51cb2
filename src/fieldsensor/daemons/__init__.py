"""Field sensor daemon processes.

- sensor_daemon: Captures audio, classifies segments and uploads positive detections
"""

__all__ = ["sensor_daemon"]
