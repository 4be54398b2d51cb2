"""Detections domain: classifier client, detection policy and result models.

Import directly from submodules:
    from fieldsensor.detections.models import AudioSegment, DetectionResult
    from fieldsensor.detections.policy import DetectionPolicy
    from fieldsensor.detections.classifier import BirdNETClassifierClient
"""
