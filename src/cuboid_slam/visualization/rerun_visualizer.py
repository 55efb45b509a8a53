"""Rerun-based visualization of the local map after bundle adjustment."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

if TYPE_CHECKING:
    from ..backend import LocalBAResult
    from ..geometry import Cuboid
    from ..map import KeyFrame, Map, MapPoint

# Corner index pairs of the 12 cuboid edges (see Cuboid.corners)
_CUBOID_EDGES = [
    (0, 1), (1, 2), (2, 3), (3, 0),
    (4, 5), (5, 6), (6, 7), (7, 4),
    (0, 4), (1, 5), (2, 6), (3, 7),
]


class RerunVisualizer:
    """Rerun visualization for local bundle adjustment.

    Entity hierarchy:
        world/
            keyframes/local   - optimized keyframe centres (green)
            keyframes/fixed   - fixed keyframe centres (blue)
            keyframes/<id>    - per keyframe camera transform
            map               - all good map points
            objects/<id>      - object landmark cuboids (orange wireframes)
            outliers          - pruned observations, camera to point (red)
            trajectory        - keyframe trajectory
    """

    def __init__(self, app_name: str = "python-cuboid-slam", spawn: bool = True) -> None:
        """Initialize Rerun visualization.

        Args:
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
        """
        rr.init(app_name, spawn=spawn)
        rr.log("world", rr.ViewCoordinates.RDF, static=True)
        rr.send_blueprint(
            rrb.Blueprint(rrb.Spatial3DView(name="Local map", origin="world"))
        )

    def log_local_ba(self, result: LocalBAResult, slam_map: Map) -> None:
        """Log the state of the map right after a local BA call.

        Args:
            result: Result returned by LocalBundleAdjustment.run
            slam_map: Map the result was committed to
        """
        rr.set_time("keyframe", sequence=result.window.trigger.id)

        self.log_keyframes(result.window.local_keyframes, "world/keyframes/local", [0, 255, 0])
        self.log_keyframes(result.window.fixed_keyframes, "world/keyframes/fixed", [0, 128, 255])
        self.log_map_points(slam_map.get_all_positions())
        for landmark in result.window.object_landmarks:
            self.log_cuboid(landmark.get_cuboid(), f"world/objects/{landmark.id}")
        self.log_outliers(result.outliers)
        self.log_trajectory(
            np.array([kf.camera_center for kf in slam_map.get_all_keyframes()])
        )

    def log_keyframes(
        self,
        keyframes: list[KeyFrame],
        entity_path: str,
        color: list[int],
    ) -> None:
        """Log keyframe centres as points and their poses as transforms."""
        if len(keyframes) == 0:
            return

        centers = np.array([kf.camera_center for kf in keyframes], dtype=np.float64)
        rr.log(entity_path, rr.Points3D(centers, colors=[color], radii=0.05))

        for kf in keyframes:
            rr.log(
                f"world/keyframes/{kf.id}",
                rr.Transform3D(translation=kf.pose.translation, mat3x3=kf.pose.rotation),
            )

    def log_map_points(self, positions: np.ndarray, entity_path: str = "world/map") -> None:
        """Log sparse map points, skipping non-finite ones."""
        if len(positions) == 0:
            return

        valid_positions = positions[np.isfinite(positions).all(axis=1)]
        if len(valid_positions) == 0:
            return

        rr.log(
            entity_path,
            rr.Points3D(valid_positions, colors=[[200, 200, 200]], radii=0.02),
        )

    def log_cuboid(self, cuboid: Cuboid, entity_path: str) -> None:
        """Log a cuboid as a wireframe of its 12 edges."""
        corners = cuboid.corners()
        strips = [[corners[a], corners[b]] for a, b in _CUBOID_EDGES]
        rr.log(
            entity_path,
            rr.LineStrips3D(strips, colors=[[255, 165, 0]], radii=0.01),
        )

    def log_outliers(
        self,
        outliers: list[tuple[KeyFrame, MapPoint]],
        entity_path: str = "world/outliers",
    ) -> None:
        """Log pruned observations as red segments from camera to point."""
        if len(outliers) == 0:
            rr.log(entity_path, rr.Clear(recursive=False))
            return

        strips = [[kf.camera_center, point.position] for kf, point in outliers]
        rr.log(
            entity_path,
            rr.LineStrips3D(strips, colors=[[255, 0, 0]], radii=0.005),
        )

    def log_trajectory(
        self,
        positions: np.ndarray,
        entity_path: str = "world/trajectory",
    ) -> None:
        """Log keyframe positions as a 3D line strip."""
        if len(positions) < 2:
            return

        rr.log(
            entity_path,
            rr.LineStrips3D([positions], colors=[[255, 255, 0]], radii=0.01),
        )
