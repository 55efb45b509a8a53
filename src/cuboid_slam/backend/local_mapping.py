"""Local mapping: insert keyframes into the map and run local BA.

LocalMapping owns the abort flag of the optimization. Another thread
(typically tracking, when it is about to insert a new keyframe) calls
`interrupt_ba()` to make a running local bundle adjustment stop early.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..map import Map
from .config import LocalBAConfig
from .local_bundle_adjustment import LocalBAResult, LocalBundleAdjustment

if TYPE_CHECKING:
    from ..map import KeyFrame, MapPoint, ObjectLandmark

logger = logging.getLogger(__name__)


@dataclass
class LocalMappingResult:
    """Result of inserting one keyframe."""

    success: bool
    ba_result: LocalBAResult | None = None
    num_keyframes_optimized: int = 0
    num_points_optimized: int = 0
    num_outliers: int = 0
    message: str = ""


class LocalMapping:
    """Adds keyframes to the map and refines the neighbourhood with local BA."""

    def __init__(
        self,
        slam_map: Map | None = None,
        config: LocalBAConfig | None = None,
    ) -> None:
        """Initialize local mapping.

        Args:
            slam_map: Map to work on (a new empty map if None)
            config: Configuration for local BA
        """
        self._map = slam_map if slam_map is not None else Map()
        self._local_ba = LocalBundleAdjustment(config)
        self._abort_ba = threading.Event()

    def insert_keyframe(
        self,
        keyframe: KeyFrame,
        new_map_points: list[MapPoint] | None = None,
        new_landmarks: list[ObjectLandmark] | None = None,
    ) -> LocalMappingResult:
        """Insert a keyframe and run local bundle adjustment around it.

        The keyframe's `map_point_matches` and `landmarks` must already be
        filled in; the matching observations are registered on the map
        points here.

        Args:
            keyframe: New keyframe
            new_map_points: Map points created together with this keyframe
            new_landmarks: Object landmarks first seen in this keyframe

        Returns:
            LocalMappingResult
        """
        self._abort_ba.clear()

        with self._map.update_lock:
            for point in new_map_points or []:
                self._map.add_map_point(point)
            for landmark in new_landmarks or []:
                self._map.add_object_landmark(landmark)
            for kp_idx, point in keyframe.map_point_matches.items():
                point.add_observation(keyframe, kp_idx)
            self._map.add_keyframe(keyframe)

        if self._map.num_keyframes < 2:
            return LocalMappingResult(success=True, message="Not enough keyframes for BA")

        ba_result = self._local_ba.run(keyframe, self._map, stop_flag=self._abort_ba)

        if ba_result.aborted:
            return LocalMappingResult(
                success=False, ba_result=ba_result, message="Local BA aborted"
            )

        # Pruned observations change covisibility weights
        touched = {kf.id: kf for kf, _ in ba_result.outliers}
        with self._map.update_lock:
            for kf in touched.values():
                self._map.update_connections(kf)

        return LocalMappingResult(
            success=True,
            ba_result=ba_result,
            num_keyframes_optimized=len(ba_result.window.local_keyframes),
            num_points_optimized=len(ba_result.window.map_points),
            num_outliers=len(ba_result.outliers),
            message="second pass skipped" if not ba_result.second_pass_run else "",
        )

    def interrupt_ba(self) -> None:
        """Ask a running local bundle adjustment to stop early."""
        logger.debug("Local BA interrupt requested")
        self._abort_ba.set()

    @property
    def abort_flag(self) -> threading.Event:
        return self._abort_ba

    @property
    def map(self) -> Map:
        return self._map

    @property
    def local_ba(self) -> LocalBundleAdjustment:
        return self._local_ba
