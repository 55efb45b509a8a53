"""Shared map of keyframes, map points and object landmarks.

The map is read without synchronization by the optimization code and
written only while holding `update_lock`, the single process-wide
mutual-exclusion resource for map mutation.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np

from .covisibility import CovisibilityGraph
from .map_point import MapPoint
from .object_landmark import ObjectLandmark

if TYPE_CHECKING:
    from ..geometry import Cuboid
    from .keyframe import KeyFrame


class Map:
    """Registry of map entities plus their covisibility graph."""

    def __init__(self, min_shared_points: int = 15) -> None:
        """Initialize an empty map.

        Args:
            min_shared_points: Covisibility edge threshold
        """
        self._keyframes: dict[int, KeyFrame] = {}
        self._points: dict[int, MapPoint] = {}
        self._landmarks: dict[int, ObjectLandmark] = {}
        self._covisibility = CovisibilityGraph(min_shared_points=min_shared_points)
        self._next_point_id: int = 0
        self._next_landmark_id: int = 0

        self.update_lock = threading.Lock()

    # Keyframes

    def add_keyframe(self, keyframe: KeyFrame) -> None:
        """Register a keyframe and connect it in the covisibility graph."""
        if keyframe.id in self._keyframes:
            raise ValueError(f"Keyframe {keyframe.id} already in map")
        self._keyframes[keyframe.id] = keyframe
        self._covisibility.add_keyframe(keyframe)

    def update_connections(self, keyframe: KeyFrame) -> None:
        """Recompute covisibility edges after a keyframe's matches changed."""
        self._covisibility.update_keyframe(keyframe)

    def get_keyframe(self, kf_id: int) -> KeyFrame | None:
        return self._keyframes.get(kf_id)

    def get_all_keyframes(self) -> list[KeyFrame]:
        """Return all keyframes ordered by id."""
        return [self._keyframes[k] for k in sorted(self._keyframes)]

    def get_covisible_keyframes(self, keyframe: KeyFrame) -> list[KeyFrame]:
        """Return direct covisibility neighbours, strongest first."""
        return [
            self._keyframes[other_id]
            for other_id, _ in self._covisibility.get_connected_keyframes(keyframe.id)
            if other_id in self._keyframes
        ]

    @property
    def covisibility(self) -> CovisibilityGraph:
        return self._covisibility

    # Map points

    def create_map_point(self, position: np.ndarray) -> MapPoint:
        """Create and register a map point with the next free id."""
        point = MapPoint(id=self._next_point_id, position=position)
        self.add_map_point(point)
        return point

    def add_map_point(self, point: MapPoint) -> None:
        if point.id in self._points:
            raise ValueError(f"Map point {point.id} already in map")
        self._points[point.id] = point
        self._next_point_id = max(self._next_point_id, point.id + 1)

    def add_observation(self, keyframe: KeyFrame, point: MapPoint, keypoint_idx: int) -> None:
        """Link a keyframe slot and a map point on both sides."""
        keyframe.add_map_point_match(keypoint_idx, point)
        point.add_observation(keyframe, keypoint_idx)

    def get_map_point(self, point_id: int) -> MapPoint | None:
        """Return the map point if it exists and is not bad."""
        point = self._points.get(point_id)
        if point is not None and not point.is_bad:
            return point
        return None

    def get_all_map_points(self) -> list[MapPoint]:
        return [p for p in self._points.values() if not p.is_bad]

    def get_all_positions(self) -> np.ndarray:
        """Return Nx3 positions of all good map points."""
        points = self.get_all_map_points()
        if len(points) == 0:
            return np.empty((0, 3), dtype=np.float64)
        return np.array([p.position for p in points], dtype=np.float64)

    # Object landmarks

    def create_object_landmark(
        self, cuboid: Cuboid, quality: float = 1.0, class_idx: int = -1
    ) -> ObjectLandmark:
        landmark = ObjectLandmark(
            id=self._next_landmark_id, cuboid=cuboid, quality=quality, class_idx=class_idx
        )
        self.add_object_landmark(landmark)
        return landmark

    def add_object_landmark(self, landmark: ObjectLandmark) -> None:
        if landmark.id in self._landmarks:
            raise ValueError(f"Object landmark {landmark.id} already in map")
        self._landmarks[landmark.id] = landmark
        self._next_landmark_id = max(self._next_landmark_id, landmark.id + 1)

    def get_object_landmark(self, landmark_id: int) -> ObjectLandmark | None:
        return self._landmarks.get(landmark_id)

    def get_all_object_landmarks(self) -> list[ObjectLandmark]:
        return list(self._landmarks.values())

    @property
    def num_keyframes(self) -> int:
        return len(self._keyframes)

    @property
    def num_points(self) -> int:
        return sum(1 for p in self._points.values() if not p.is_bad)

    @property
    def num_object_landmarks(self) -> int:
        return len(self._landmarks)
