"""Keyframe data structure.

A keyframe is a camera snapshot that is kept permanently in the map. It
stores the undistorted keypoints extracted from its image, the pyramid
octave each keypoint was detected at, the right-image column for stereo
keypoints, and its associations to map points and object landmarks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from ..camera import CameraIntrinsics, ScalePyramid
    from ..geometry import SE3
    from .map_point import MapPoint
    from .object_landmark import ObjectLandmark


@dataclass(eq=False)
class KeyFrame:
    """A keyframe with everything local bundle adjustment reads.

    Keyframes hash by identity so they can be used as dictionary keys.

    Attributes:
        id: Unique, monotonically increasing identifier (0 is the map origin)
        pose: Camera pose T_world_camera
        keypoints: (N, 2) undistorted keypoint pixel coordinates
        octaves: (N,) pyramid level each keypoint was detected at
        camera: Intrinsics shared by all keypoints of this keyframe
        pyramid: Scale pyramid giving the per-octave measurement variance
        u_right: (N,) right-image column per keypoint, negative if monocular
        map_point_matches: keypoint slot -> matched MapPoint
        landmarks: landmark id -> ObjectLandmark observed in this keyframe
        is_bad: Set by map maintenance when the keyframe is culled
    """

    id: int
    pose: SE3
    keypoints: np.ndarray
    octaves: np.ndarray
    camera: CameraIntrinsics
    pyramid: ScalePyramid
    u_right: np.ndarray | None = None
    map_point_matches: dict[int, MapPoint] = field(default_factory=dict)
    landmarks: dict[int, ObjectLandmark] = field(default_factory=dict)
    is_bad: bool = False

    def __post_init__(self) -> None:
        self.keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 2)
        self.octaves = np.asarray(self.octaves, dtype=np.int64).flatten()
        if len(self.octaves) != len(self.keypoints):
            raise ValueError(
                f"Got {len(self.octaves)} octaves for {len(self.keypoints)} keypoints"
            )
        if self.u_right is None:
            self.u_right = np.full(len(self.keypoints), -1.0)
        else:
            self.u_right = np.asarray(self.u_right, dtype=np.float64).flatten()
            if len(self.u_right) != len(self.keypoints):
                raise ValueError(
                    f"Got {len(self.u_right)} u_right values for "
                    f"{len(self.keypoints)} keypoints"
                )

    def add_map_point_match(self, keypoint_idx: int, map_point: MapPoint) -> None:
        """Associate a keypoint slot with a map point."""
        self.map_point_matches[keypoint_idx] = map_point

    def erase_map_point_match(self, map_point: MapPoint) -> None:
        """Remove every slot matched to `map_point`."""
        for kp_idx in [k for k, mp in self.map_point_matches.items() if mp is map_point]:
            del self.map_point_matches[kp_idx]

    def get_map_point_matches(self) -> list[MapPoint]:
        """Return the matched map points (one entry per matched slot)."""
        return list(self.map_point_matches.values())

    def get_map_point(self, keypoint_idx: int) -> MapPoint | None:
        return self.map_point_matches.get(keypoint_idx)

    def add_landmark(self, landmark: ObjectLandmark) -> None:
        self.landmarks[landmark.id] = landmark

    def get_landmarks(self) -> list[ObjectLandmark]:
        return list(self.landmarks.values())

    def is_stereo(self, keypoint_idx: int) -> bool:
        """Return True if the keypoint has a valid right-image match."""
        return bool(self.u_right[keypoint_idx] >= 0)

    def inv_sigma2(self, keypoint_idx: int) -> float:
        """Inverse measurement variance for a keypoint, from its octave."""
        return float(self.pyramid.inv_level_sigma2[self.octaves[keypoint_idx]])

    @property
    def camera_center(self) -> np.ndarray:
        """Camera centre in world coordinates."""
        return self.pose.position

    @property
    def num_observations(self) -> int:
        """Return number of matched map points."""
        return len(self.map_point_matches)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id}, matches={self.num_observations}, bad={self.is_bad})"
