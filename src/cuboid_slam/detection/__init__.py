"""2D object detection."""

from .object_detector import Detection, ObjectDetector

__all__ = [
    "Detection",
    "ObjectDetector",
]
