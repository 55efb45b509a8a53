"""Selection of the keyframes and landmarks taking part in local BA.

Starting from the keyframe that triggered the optimization:

1. Local keyframes: the keyframe itself plus its direct covisibility
   neighbours that are not bad.
2. Local landmarks: every good map point matched in a local keyframe
   (each once), every object landmark observed by a local keyframe, and
   for each (local keyframe, object landmark) pair the object's cuboid
   expressed in that keyframe's camera frame.
3. Fixed keyframes: keyframes observing a local map point that are not
   local themselves. They are held fixed so the local problem stays
   anchored to the rest of the map.

Which entities were already visited is tracked in id sets owned by the
selection call, so nothing is written to the shared entities.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..geometry import Cuboid
    from ..map import KeyFrame, Map, MapPoint, ObjectLandmark

logger = logging.getLogger(__name__)


@dataclass
class LocalWindow:
    """Entities selected for one local bundle adjustment call.

    Attributes:
        trigger: Keyframe that triggered the optimization
        local_keyframes: Keyframes whose poses are optimized (trigger first)
        fixed_keyframes: Keyframes observing local points, held fixed
        map_points: Local map points, each listed once
        object_landmarks: Object landmarks seen by local keyframes
        object_measurements: (keyframe id, landmark id) -> cuboid in the
            keyframe's camera frame
    """

    trigger: KeyFrame
    local_keyframes: list[KeyFrame] = field(default_factory=list)
    fixed_keyframes: list[KeyFrame] = field(default_factory=list)
    map_points: list[MapPoint] = field(default_factory=list)
    object_landmarks: list[ObjectLandmark] = field(default_factory=list)
    object_measurements: dict[tuple[int, int], Cuboid] = field(default_factory=dict)
    local_ids: set[int] = field(default_factory=set)
    fixed_ids: set[int] = field(default_factory=set)

    def landmarks_seen_by(self, keyframe: KeyFrame) -> list[ObjectLandmark]:
        """Return the object landmarks with a cached measurement in `keyframe`."""
        return [
            lm for lm in self.object_landmarks
            if (keyframe.id, lm.id) in self.object_measurements
        ]

    def is_local(self, keyframe: KeyFrame) -> bool:
        return keyframe.id in self.local_ids

    def is_fixed(self, keyframe: KeyFrame) -> bool:
        return keyframe.id in self.fixed_ids

    @property
    def num_keyframes(self) -> int:
        return len(self.local_keyframes) + len(self.fixed_keyframes)


def select_local_window(keyframe: KeyFrame, slam_map: Map) -> LocalWindow:
    """Select local keyframes, local landmarks and fixed keyframes.

    Args:
        keyframe: Keyframe that triggered local bundle adjustment
        slam_map: Map providing covisibility queries

    Returns:
        LocalWindow for this call
    """
    window = LocalWindow(trigger=keyframe)

    _select_local_keyframes(window, keyframe, slam_map)
    _aggregate_landmarks(window)
    _select_fixed_keyframes(window)

    logger.debug(
        "Local window for keyframe %d: %d local, %d fixed keyframes, "
        "%d points, %d objects",
        keyframe.id,
        len(window.local_keyframes),
        len(window.fixed_keyframes),
        len(window.map_points),
        len(window.object_landmarks),
    )
    return window


def _select_local_keyframes(window: LocalWindow, keyframe: KeyFrame, slam_map: Map) -> None:
    # The trigger is always included, bad or not
    window.local_keyframes.append(keyframe)
    window.local_ids.add(keyframe.id)

    for neighbour in slam_map.get_covisible_keyframes(keyframe):
        if neighbour.id in window.local_ids:
            continue
        # Bad neighbours are marked visited too, so they never become fixed
        window.local_ids.add(neighbour.id)
        if not neighbour.is_bad:
            window.local_keyframes.append(neighbour)


def _aggregate_landmarks(window: LocalWindow) -> None:
    point_ids: set[int] = set()
    landmark_ids: set[int] = set()

    for kf in window.local_keyframes:
        for point in kf.get_map_point_matches():
            if point is None or point.is_bad or point.id in point_ids:
                continue
            point_ids.add(point.id)
            window.map_points.append(point)

        for landmark in kf.get_landmarks():
            if landmark.id not in landmark_ids:
                landmark_ids.add(landmark.id)
                window.object_landmarks.append(landmark)
            window.object_measurements[(kf.id, landmark.id)] = (
                landmark.get_cuboid().transform_to(kf.pose)
            )


def _select_fixed_keyframes(window: LocalWindow) -> None:
    # Only point observers are anchored; object observers are not
    for point in window.map_points:
        for obs in point.get_observations():
            kf = obs.keyframe
            if kf.id in window.local_ids or kf.id in window.fixed_ids:
                continue
            window.fixed_ids.add(kf.id)
            if not kf.is_bad:
                window.fixed_keyframes.append(kf)
