"""Map entities: keyframes, map points, object landmarks, covisibility."""

from .covisibility import CovisibilityGraph
from .keyframe import KeyFrame
from .map_point import MapPoint, Observation
from .object_landmark import ObjectLandmark
from .slam_map import Map

__all__ = [
    "KeyFrame",
    "MapPoint",
    "Observation",
    "ObjectLandmark",
    "CovisibilityGraph",
    "Map",
]
