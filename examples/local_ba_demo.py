#!/usr/bin/env python3
"""Demo script for local bundle adjustment on a synthetic scene.

A stereo-less camera moves along the x axis observing a cloud of points
and one box-shaped object. Keypoints get pixel noise and a few gross
outliers. Every keyframe is passed to LocalMapping, which runs local
BA around it and prunes the outlier observations.

Usage:
    uv run python examples/local_ba_demo.py [--rerun]
"""

import argparse
import logging

import numpy as np

from cuboid_slam import (
    SE3,
    CameraIntrinsics,
    Cuboid,
    KeyFrame,
    LocalMapping,
    MapPoint,
    ObjectLandmark,
    RerunVisualizer,
    ScalePyramid,
)


def make_keyframe(kf_id, position, points, camera, pyramid, rng, outlier_ratio):
    """Project the points into a camera at `position` with noise and outliers."""
    pose = SE3(rotation=np.eye(3), translation=position)
    T_camera_world = pose.inverse()
    keypoints = np.array([camera.project(T_camera_world.transform_point(p)) for p in points])
    keypoints += rng.normal(0.0, 0.5, keypoints.shape)

    n_outliers = int(outlier_ratio * len(points))
    if kf_id > 0 and n_outliers > 0:
        idx = rng.choice(len(points), n_outliers, replace=False)
        keypoints[idx] += rng.uniform(15.0, 30.0, (n_outliers, 2))

    return KeyFrame(
        id=kf_id,
        pose=pose,
        keypoints=keypoints,
        octaves=np.zeros(len(points), dtype=int),
        camera=camera,
        pyramid=pyramid,
    )


def main() -> None:
    """Run local BA on a synthetic sequence."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--rerun", action="store_true", help="Stream results to Rerun")
    parser.add_argument("--keyframes", type=int, default=6)
    parser.add_argument("--points", type=int, default=60)
    parser.add_argument("--seed", type=int, default=0)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    rng = np.random.default_rng(args.seed)
    camera = CameraIntrinsics(fx=458.0, fy=457.0, cx=367.0, cy=248.0)
    pyramid = ScalePyramid()

    truth = np.column_stack(
        [
            rng.uniform(-2.0, 4.0, args.points),
            rng.uniform(-1.5, 1.5, args.points),
            rng.uniform(4.0, 8.0, args.points),
        ]
    )
    points = [
        MapPoint(id=i, position=p + rng.normal(0.0, 0.05, 3)) for i, p in enumerate(truth)
    ]
    box = ObjectLandmark(
        id=0,
        cuboid=Cuboid(
            pose=SE3(rotation=np.eye(3), translation=np.array([1.0, 0.5, 6.0])),
            scale=np.array([0.6, 0.4, 0.5]),
        ),
        quality=0.8,
        class_idx=56,
    )

    mapping = LocalMapping()
    visualizer = RerunVisualizer("cuboid-slam-local-ba") if args.rerun else None

    print(f"{'KF':>3} {'Local':>5} {'Fixed':>5} {'Points':>6} {'Outl':>5} | {'Mean error':>10}")
    print("-" * 48)

    for kf_id in range(args.keyframes):
        position = np.array([0.4 * kf_id, 0.0, 0.0])
        kf = make_keyframe(kf_id, position, truth, camera, pyramid, rng, outlier_ratio=0.05)
        for slot, point in enumerate(points):
            kf.add_map_point_match(slot, point)
        kf.add_landmark(box)

        result = mapping.insert_keyframe(
            kf,
            new_map_points=points if kf_id == 0 else None,
            new_landmarks=[box] if kf_id == 0 else None,
        )
        if result.ba_result is None:
            print(f"{kf_id:3d} {result.message}")
            continue

        window = result.ba_result.window
        good = mapping.map.get_all_map_points()
        errors = [np.linalg.norm(p.position - truth[p.id]) for p in good]
        print(
            f"{kf_id:3d} {len(window.local_keyframes):5d} {len(window.fixed_keyframes):5d} "
            f"{result.num_points_optimized:6d} {result.num_outliers:5d} | "
            f"{np.mean(errors):9.4f}m"
        )

        if visualizer is not None:
            visualizer.log_local_ba(result.ba_result, mapping.map)

    print()
    print(f"Keyframes:  {mapping.map.num_keyframes}")
    print(f"Map points: {mapping.map.num_points}")
    print(f"Object:     {box.get_cuboid()}")


if __name__ == "__main__":
    main()
