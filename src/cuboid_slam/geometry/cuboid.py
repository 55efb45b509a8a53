"""Nine degree-of-freedom cuboid used to represent object landmarks.

A cuboid is a rigid pose (6 DoF) plus three half-extents along its local
x, y and z axes (3 DoF). Object landmarks keep their cuboid in world
coordinates; a keyframe observes it expressed in its own camera frame.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .pose import SE3

# Unit cube corners, scaled by the half-extents to get the box corners.
_CORNER_SIGNS = np.array(
    [
        [1, 1, -1],
        [1, -1, -1],
        [-1, -1, -1],
        [-1, 1, -1],
        [1, 1, 1],
        [1, -1, 1],
        [-1, -1, 1],
        [-1, 1, 1],
    ],
    dtype=np.float64,
)


@dataclass
class Cuboid:
    """Oriented 3D box.

    Attributes:
        pose: Transform from the cuboid frame to the parent frame
        scale: (3,) half-extents along the cuboid's x, y, z axes
    """

    pose: SE3
    scale: np.ndarray

    def __post_init__(self) -> None:
        self.scale = np.asarray(self.scale, dtype=np.float64).flatten()
        if self.scale.shape != (3,):
            raise ValueError(f"Scale must be (3,), got {self.scale.shape}")

    @classmethod
    def from_vector(cls, vec: np.ndarray) -> Cuboid:
        """Create a cuboid from [rvec(3), translation(3), scale(3)]."""
        vec = np.asarray(vec, dtype=np.float64).flatten()
        if vec.shape != (9,):
            raise ValueError(f"Cuboid vector must be (9,), got {vec.shape}")
        return cls(pose=SE3.from_rvec_tvec(vec[0:3], vec[3:6]), scale=vec[6:9])

    def to_vector(self) -> np.ndarray:
        """Return [rvec(3), translation(3), scale(3)]."""
        rvec, tvec = self.pose.to_rvec_tvec()
        return np.concatenate([rvec, tvec, self.scale])

    def transform_to(self, frame_pose: SE3) -> Cuboid:
        """Express this cuboid in another frame.

        Args:
            frame_pose: Pose of the target frame in this cuboid's parent
                frame, e.g. a keyframe's T_world_camera

        Returns:
            Cuboid whose pose is T_frame_object, with unchanged dimensions
        """
        return Cuboid(
            pose=frame_pose.inverse().compose(self.pose),
            scale=self.scale.copy(),
        )

    def transform_from(self, frame_pose: SE3) -> Cuboid:
        """Inverse of `transform_to`: lift a frame-local cuboid to the parent."""
        return Cuboid(pose=frame_pose.compose(self.pose), scale=self.scale.copy())

    def log_error(self, other: Cuboid) -> np.ndarray:
        """Return the 9-vector error of this cuboid relative to `other`.

        Layout is [rotation(3), translation(3), scale(3)], where the pose
        part comes from other.pose^{-1} @ self.pose and the scale part is a
        plain difference. The error is zero when both cuboids coincide.
        """
        delta = other.pose.inverse().compose(self.pose)
        rvec, _ = cv2.Rodrigues(delta.rotation)
        return np.concatenate([rvec.flatten(), delta.translation, self.scale - other.scale])

    def corners(self) -> np.ndarray:
        """Return the 8x3 box corners in the parent frame."""
        return self.pose.transform_points(_CORNER_SIGNS * self.scale)

    def copy(self) -> Cuboid:
        return Cuboid(pose=self.pose.copy(), scale=self.scale.copy())

    def __repr__(self) -> str:
        pos = self.pose.translation
        return (
            f"Cuboid(position=[{pos[0]:.3f}, {pos[1]:.3f}, {pos[2]:.3f}], "
            f"scale=[{self.scale[0]:.3f}, {self.scale[1]:.3f}, {self.scale[2]:.3f}])"
        )
