"""Pinhole camera intrinsics and ORB scale pyramid."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import yaml


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters (rectified pinhole model).

    Attributes:
        fx: Focal length x (pixels)
        fy: Focal length y (pixels)
        cx: Principal point x (pixels)
        cy: Principal point y (pixels)
        bf: Stereo baseline times fx (pixels * meters), 0 for monocular
    """

    fx: float
    fy: float
    cx: float
    cy: float
    bf: float = 0.0

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> CameraIntrinsics:
        """Load intrinsics from a EuRoC-style sensor.yaml.

        Reads `intrinsics: [fu, fv, cu, cv]` and, for a rectified stereo
        rig, an optional `bf` entry.

        Args:
            yaml_path: Path to the calibration file

        Returns:
            CameraIntrinsics

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the intrinsics entry is missing or malformed
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Calibration file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        intrinsics_list = data.get("intrinsics")
        if intrinsics_list is None or len(intrinsics_list) != 4:
            raise ValueError(f"Invalid intrinsics in {yaml_path}")

        return cls(
            fx=float(intrinsics_list[0]),
            fy=float(intrinsics_list[1]),
            cx=float(intrinsics_list[2]),
            cy=float(intrinsics_list[3]),
            bf=float(data.get("bf", 0.0)),
        )

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def project(self, point_camera: np.ndarray) -> np.ndarray:
        """Project a point in the camera frame to pixel coordinates (u, v)."""
        x, y, z = point_camera
        return np.array([self.fx * x / z + self.cx, self.fy * y / z + self.cy])

    def project_stereo(self, point_camera: np.ndarray) -> np.ndarray:
        """Project to (u, v, u_right), u_right being the right-image column."""
        uv = self.project(point_camera)
        return np.array([uv[0], uv[1], uv[0] - self.bf / point_camera[2]])


@dataclass
class ScalePyramid:
    """Image pyramid used by the feature extractor.

    Keypoints detected at octave `n` have a position uncertainty that
    grows with scale_factor**n, so their measurements are weighted with
    inv_level_sigma2[n] = 1 / scale_factor**(2n).
    """

    n_levels: int = 8
    scale_factor: float = 1.2
    scale_factors: np.ndarray = field(init=False, repr=False)
    level_sigma2: np.ndarray = field(init=False, repr=False)
    inv_level_sigma2: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.n_levels < 1:
            raise ValueError(f"n_levels must be >= 1, got {self.n_levels}")
        if self.scale_factor < 1.0:
            raise ValueError(f"scale_factor must be >= 1, got {self.scale_factor}")
        self.scale_factors = self.scale_factor ** np.arange(self.n_levels, dtype=np.float64)
        self.level_sigma2 = self.scale_factors**2
        self.inv_level_sigma2 = 1.0 / self.level_sigma2
