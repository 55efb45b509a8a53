"""Python Cuboid SLAM - local bundle adjustment with point and object landmarks."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .camera import CameraIntrinsics, ScalePyramid
from .geometry import SE3, Cuboid
from .map import CovisibilityGraph, KeyFrame, Map, MapPoint, ObjectLandmark, Observation
from .backend import (
    LocalBAConfig,
    LocalBAResult,
    LocalBAState,
    LocalBundleAdjustment,
    LocalMapping,
    LocalMappingResult,
    LocalWindow,
    select_local_window,
)
from .detection import Detection, ObjectDetector
from .visualization import RerunVisualizer

__all__ = [
    "__version__",
    # Geometry
    "SE3",
    "Cuboid",
    # Camera
    "CameraIntrinsics",
    "ScalePyramid",
    # Map
    "Map",
    "KeyFrame",
    "MapPoint",
    "Observation",
    "ObjectLandmark",
    "CovisibilityGraph",
    # Local bundle adjustment
    "LocalBAConfig",
    "LocalBundleAdjustment",
    "LocalBAResult",
    "LocalBAState",
    "LocalWindow",
    "select_local_window",
    "LocalMapping",
    "LocalMappingResult",
    # Detection
    "ObjectDetector",
    "Detection",
    # Visualization
    "RerunVisualizer",
]
