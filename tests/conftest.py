"""Synthetic scenes shared by the tests.

Cameras look down +z with identity rotation and sit on the x axis, so
keypoints are exact projections of the ground-truth points unless a test
perturbs them.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from cuboid_slam.camera import CameraIntrinsics, ScalePyramid
from cuboid_slam.geometry import SE3, Cuboid
from cuboid_slam.map import KeyFrame, Map, MapPoint

CAMERA = CameraIntrinsics(fx=500.0, fy=500.0, cx=320.0, cy=240.0, bf=40.0)
PYRAMID = ScalePyramid(n_levels=8, scale_factor=1.2)

GROUND_TRUTH_POINTS = np.array(
    [
        [0.3, -0.2, 5.0],
        [-0.8, 0.5, 4.0],
        [1.2, 0.3, 6.0],
        [0.0, -0.6, 5.5],
        [-0.5, -0.4, 4.5],
        [0.9, 0.7, 5.2],
        [0.4, 0.1, 3.8],
        [-1.0, -0.1, 6.5],
    ]
)

CAMERA_POSITIONS = [
    np.array([0.0, 0.0, 0.0]),
    np.array([0.5, 0.0, 0.0]),
    np.array([1.0, 0.0, 0.0]),
]


def make_keyframe(
    kf_id: int,
    position: np.ndarray,
    points: np.ndarray,
    stereo: bool = False,
    octave: int = 0,
) -> KeyFrame:
    """Create a keyframe whose slot i is the exact projection of points[i]."""
    pose = SE3(rotation=np.eye(3), translation=position)
    T_camera_world = pose.inverse()
    projections = np.array(
        [CAMERA.project_stereo(T_camera_world.transform_point(p)) for p in points]
    ).reshape(-1, 3)
    return KeyFrame(
        id=kf_id,
        pose=pose,
        keypoints=projections[:, :2],
        octaves=np.full(len(points), octave),
        camera=CAMERA,
        pyramid=PYRAMID,
        u_right=projections[:, 2] if stereo else None,
    )


def link(slam_map: Map, keyframe: KeyFrame, points: list[MapPoint]) -> None:
    """Register keyframe slot i as an observation of points[i]."""
    for slot, point in enumerate(points):
        slam_map.add_observation(keyframe, point, slot)


@dataclass
class Scene:
    """Three keyframes (0, 1, 2) observing the same points.

    Keyframe 1 is covisible with keyframe 0 only, so local BA triggered on
    keyframe 1 optimizes {1, 0} and holds keyframe 2 fixed.
    """

    slam_map: Map
    keyframes: list[KeyFrame]
    points: list[MapPoint]
    ground_truth: np.ndarray

    @property
    def trigger(self) -> KeyFrame:
        return self.keyframes[1]


def build_scene(
    ground_truth: np.ndarray = GROUND_TRUTH_POINTS,
    stereo: bool = False,
    octave: int = 0,
) -> Scene:
    slam_map = Map()
    keyframes = [
        make_keyframe(i, pos, ground_truth, stereo=stereo, octave=octave)
        for i, pos in enumerate(CAMERA_POSITIONS)
    ]
    # Added before linking, so covisibility is set explicitly below
    for kf in keyframes:
        slam_map.add_keyframe(kf)

    points = [slam_map.create_map_point(p.copy()) for p in ground_truth]
    for kf in keyframes:
        link(slam_map, kf, points)

    slam_map.covisibility.connect(1, 0, len(points))
    return Scene(slam_map=slam_map, keyframes=keyframes, points=points, ground_truth=ground_truth)


def make_cuboid(center: np.ndarray, scale: np.ndarray = np.array([0.5, 0.3, 0.4])) -> Cuboid:
    return Cuboid(pose=SE3(rotation=np.eye(3), translation=center), scale=scale)


@pytest.fixture
def scene() -> Scene:
    return build_scene()


@pytest.fixture
def stereo_scene() -> Scene:
    return build_scene(stereo=True)


def random_points(rng: np.random.Generator, n_points: int = 60) -> np.ndarray:
    """Points spread in front of all three cameras."""
    return np.column_stack(
        [
            rng.uniform(-2.0, 3.0, n_points),
            rng.uniform(-1.5, 1.5, n_points),
            rng.uniform(3.0, 6.0, n_points),
        ]
    )


def build_noisy_scene(
    seed: int = 7,
    n_points: int = 60,
    pixel_sigma: float = 0.5,
    point_sigma: float = 0.05,
) -> Scene:
    """Scene with Gaussian keypoint noise and perturbed initial points.

    No observation is a gross outlier, so local BA should keep them all.
    """
    rng = np.random.default_rng(seed)
    scene = build_scene(ground_truth=random_points(rng, n_points))
    for kf in scene.keyframes:
        kf.keypoints += rng.normal(0.0, pixel_sigma, kf.keypoints.shape)
    for point in scene.points:
        point.position = point.position + rng.normal(0.0, point_sigma, 3)
    return scene
