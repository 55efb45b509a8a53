"""SE(3) rigid transform used for keyframe and object poses."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation).

    Keyframe poses are stored as T_world_camera, so that

        p_world = R @ p_camera + t

    Object poses are stored the same way (T_world_object). The optimizer
    works with the inverse, T_camera_world, when projecting points.

    Attributes:
        rotation: 3x3 orthonormal rotation matrix
        translation: (3,) translation vector
    """

    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Return the identity transform."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create SE3 from a 4x4 homogeneous matrix [[R, t], [0, 1]]."""
        T = np.asarray(T)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create SE3 from a Rodrigues rotation vector and a translation.

        This is the parameterization used by the least-squares solver:
        6 numbers per pose, 3 for the axis-angle rotation and 3 for the
        translation.

        Args:
            rvec: 3D Rodrigues rotation vector (axis * angle)
            tvec: 3D translation vector

        Returns:
            SE3 transformation
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(rotation=R, translation=np.asarray(tvec).flatten())

    def to_matrix(self) -> np.ndarray:
        """Return the 4x4 homogeneous matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (rvec, tvec), the inverse of `from_rvec_tvec`."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.translation.copy()

    def inverse(self) -> SE3:
        """Return T^{-1} = [R^T, -R^T @ t]."""
        R_inv = self.rotation.T
        return SE3(rotation=R_inv, translation=-R_inv @ self.translation)

    def compose(self, other: SE3) -> SE3:
        """Return self @ other.

        Example:
            T_world_camera.inverse().compose(T_world_object) gives
            T_camera_object.
        """
        R = self.rotation @ other.rotation
        t = self.rotation @ other.translation + self.translation
        return SE3(rotation=R, translation=t)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the transform to an Nx3 array of points."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, 3)
        if points.shape[1] != 3:
            raise ValueError(f"Points must be Nx3, got {points.shape}")
        return (self.rotation @ points.T).T + self.translation

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Apply the transform to a single 3D point."""
        point = np.asarray(point, dtype=np.float64).flatten()
        return self.rotation @ point + self.translation

    def copy(self) -> SE3:
        """Return a deep copy."""
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    @property
    def position(self) -> np.ndarray:
        """Return the origin of the local frame in world coordinates.

        For a keyframe pose (T_world_camera) this is the camera centre.
        """
        return self.translation.copy()

    def __repr__(self) -> str:
        pos = self.translation
        return f"SE3(position=[{pos[0]:.3f}, {pos[1]:.3f}, {pos[2]:.3f}])"

    def __matmul__(self, other: SE3) -> SE3:
        return self.compose(other)
