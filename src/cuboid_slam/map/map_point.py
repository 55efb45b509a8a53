"""Map point (point landmark) with its keyframe observations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from .keyframe import KeyFrame


@dataclass(eq=False)
class Observation:
    """A single observation of a map point in a keyframe.

    Attributes:
        keyframe: The observing keyframe
        keypoint_idx: Index into the keyframe's keypoints array
    """

    keyframe: KeyFrame
    keypoint_idx: int

    @property
    def pixel_coords(self) -> np.ndarray:
        """Return the observed (u, v) pixel coordinates."""
        return self.keyframe.keypoints[self.keypoint_idx]

    @property
    def is_stereo(self) -> bool:
        return self.keyframe.is_stereo(self.keypoint_idx)


@dataclass(eq=False)
class MapPoint:
    """A 3D landmark in the map with its observations.

    Attributes:
        id: Unique identifier for this map point
        position: 3D position in world frame
        observations: keyframe id -> Observation
        is_bad: True once the point has been culled; bad points are
            skipped by local bundle adjustment
        normal: Mean viewing direction from the observing cameras
        min_distance: Scale-invariance lower distance bound
        max_distance: Scale-invariance upper distance bound
    """

    id: int
    position: np.ndarray
    observations: dict[int, Observation] = field(default_factory=dict)
    is_bad: bool = False
    normal: np.ndarray = field(default_factory=lambda: np.zeros(3))
    min_distance: float = 0.0
    max_distance: float = 0.0
    reference_keyframe: KeyFrame | None = None

    def __post_init__(self) -> None:
        self.position = np.asarray(self.position, dtype=np.float64).flatten()

    @property
    def num_observations(self) -> int:
        """Return the number of keyframes observing this point."""
        return len(self.observations)

    def add_observation(self, keyframe: KeyFrame, keypoint_idx: int) -> None:
        """Record that `keyframe` observes this point at `keypoint_idx`."""
        if keyframe.id in self.observations:
            return
        self.observations[keyframe.id] = Observation(keyframe, keypoint_idx)
        if self.reference_keyframe is None:
            self.reference_keyframe = keyframe

    def erase_observation(self, keyframe: KeyFrame) -> None:
        """Forget the observation from `keyframe`.

        A point left with fewer than two observations can no longer be
        triangulated and is flagged bad.
        """
        if self.observations.pop(keyframe.id, None) is None:
            return

        if self.reference_keyframe is keyframe:
            remaining = list(self.observations.values())
            self.reference_keyframe = remaining[0].keyframe if remaining else None

        if self.num_observations < 2:
            self.set_bad()

    def set_bad(self) -> None:
        """Flag the point bad and unlink it from every observing keyframe."""
        self.is_bad = True
        observations = list(self.observations.values())
        self.observations.clear()
        for obs in observations:
            obs.keyframe.erase_map_point_match(self)

    def get_observations(self) -> list[Observation]:
        """Return a snapshot of the observations."""
        return list(self.observations.values())

    def is_observed_by(self, keyframe: KeyFrame) -> bool:
        return keyframe.id in self.observations

    def set_world_pos(self, position: np.ndarray) -> None:
        """Overwrite the 3D position (used when committing optimization)."""
        self.position = np.asarray(position, dtype=np.float64).flatten()

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the distance range.

        The distance range is derived from the reference keyframe: the
        point is expected to be re-detectable between the distances at
        which its patch would map to the coarsest and the finest octave.
        """
        if self.is_bad or not self.observations or self.reference_keyframe is None:
            return

        normals = []
        for obs in self.observations.values():
            ray = self.position - obs.keyframe.camera_center
            norm = np.linalg.norm(ray)
            if norm > 0:
                normals.append(ray / norm)
        if normals:
            mean = np.mean(normals, axis=0)
            mean_norm = np.linalg.norm(mean)
            if mean_norm > 0:
                self.normal = mean / mean_norm

        ref = self.reference_keyframe
        ref_obs = self.observations.get(ref.id)
        if ref_obs is None:
            return
        pyramid = ref.pyramid
        level = int(ref.octaves[ref_obs.keypoint_idx])
        dist = float(np.linalg.norm(self.position - ref.camera_center))
        self.max_distance = dist * float(pyramid.scale_factors[level])
        self.min_distance = self.max_distance / float(pyramid.scale_factors[-1])

    def __repr__(self) -> str:
        p = self.position
        return (
            f"MapPoint(id={self.id}, position=[{p[0]:.3f}, {p[1]:.3f}, {p[2]:.3f}], "
            f"obs={self.num_observations}, bad={self.is_bad})"
        )
