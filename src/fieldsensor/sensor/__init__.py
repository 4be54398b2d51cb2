"""Monitoring loop coordinating capture, classification and uploads."""

from fieldsensor.sensor.manager import SensorManager, StartError
from fieldsensor.sensor.models import MonitoringState, SensorStats

__all__ = ["MonitoringState", "SensorManager", "SensorStats", "StartError"]
