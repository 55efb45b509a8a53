"""Tests for LocalBundleAdjustment."""

import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from cuboid_slam.backend import LocalBAConfig, LocalBAState, LocalBundleAdjustment
from cuboid_slam.backend import local_bundle_adjustment as lba_module
from cuboid_slam.backend.local_window import select_local_window
from cuboid_slam.backend.optimizer import EdgeKind, ScipyGraphSolver, VertexKind

from conftest import GROUND_TRUTH_POINTS, build_noisy_scene, build_scene, make_cuboid


def _snapshot(scene):
    return {
        "poses": [kf.pose.to_matrix().copy() for kf in scene.keyframes],
        "positions": [p.position.copy() for p in scene.points],
        "matches": [dict(kf.map_point_matches) for kf in scene.keyframes],
        "observations": [set(p.observations) for p in scene.points],
    }


class TestGraphConstruction:
    """Vertices and edges created for the local window."""

    def test_pose_vertices_fixed_and_free(self, scene):
        """Keyframe 0 is the origin, keyframe 2 is a fixed camera."""
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))
        graph = lba_graph.graph

        assert graph.vertex(0).fixed
        assert not graph.vertex(1).fixed
        assert graph.vertex(2).fixed

    def test_point_vertices_are_marginalized(self, scene):
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))

        point_ids = lba_graph.vertex_ids(VertexKind.POINT)
        assert len(point_ids) == len(scene.points)
        for vid in point_ids:
            vertex = lba_graph.graph.vertex(vid)
            assert vertex.marginalized
            assert not vertex.fixed

    def test_vertex_id_ranges_do_not_collide(self, scene):
        """max(pose ids) < min(cuboid ids) < min(point ids)."""
        kf0, kf1 = scene.keyframes[0], scene.keyframes[1]
        lm_a = scene.slam_map.create_object_landmark(make_cuboid(np.array([0.0, 0.0, 6.0])))
        scene.slam_map.create_object_landmark(make_cuboid(np.array([9.0, 9.0, 9.0])))
        lm_c = scene.slam_map.create_object_landmark(make_cuboid(np.array([1.0, 0.0, 7.0])))
        kf0.add_landmark(lm_a)
        kf1.add_landmark(lm_c)

        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))

        pose_ids = lba_graph.vertex_ids(VertexKind.POSE)
        cuboid_ids = lba_graph.vertex_ids(VertexKind.CUBOID)
        point_ids = lba_graph.vertex_ids(VertexKind.POINT)

        assert len(cuboid_ids) == 2
        assert max(pose_ids) < min(cuboid_ids)
        assert max(cuboid_ids) < min(point_ids)
        assert len(set(pose_ids) | set(cuboid_ids) | set(point_ids)) == (
            len(pose_ids) + len(cuboid_ids) + len(point_ids)
        )

    def test_mono_edges(self, scene):
        """One robust 2-D edge per observation, weighted by octave."""
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))

        edges = [rep.edge for rep in lba_graph.reprojection_edges]
        assert len(edges) == 3 * len(scene.points)
        for edge in edges:
            assert edge.kind is EdgeKind.MONO
            assert edge.robust_delta == pytest.approx(np.sqrt(5.991))
            np.testing.assert_allclose(edge.information, np.eye(2))
            assert edge.camera is scene.keyframes[0].camera

    def test_stereo_edges(self):
        """Stereo keypoints give 3-D edges with the stereo Huber threshold."""
        scene = build_scene(stereo=True, octave=2)
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))

        inv_sigma2 = 1.0 / 1.2**4
        for rep in lba_graph.reprojection_edges:
            assert rep.edge.kind is EdgeKind.STEREO
            assert rep.edge.measurement.shape == (3,)
            assert rep.edge.robust_delta == pytest.approx(np.sqrt(7.815))
            np.testing.assert_allclose(rep.edge.information, np.eye(3) * inv_sigma2)
            assert rep.edge.chi2() == pytest.approx(0.0, abs=1e-12)

        # Stereo observations never produce object edges
        assert lba_graph.object_edges == []

    def test_bad_keyframe_observations_are_skipped(self, scene):
        scene.keyframes[2].is_bad = True
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))

        assert all(rep.keyframe.id != 2 for rep in lba_graph.reprojection_edges)
        assert len(lba_graph.reprojection_edges) == 2 * len(scene.points)

    def test_object_edge_information_scales_with_quality(self, scene):
        """Information diagonal is (2q)^2; halving q scales it by 1/4."""
        kf1 = scene.keyframes[1]
        landmark = scene.slam_map.create_object_landmark(
            make_cuboid(np.array([0.2, 0.1, 6.0])), quality=0.8
        )
        kf1.add_landmark(landmark)
        lba = LocalBundleAdjustment()

        lba_graph = lba.build_graph(select_local_window(kf1, scene.slam_map))
        full = lba_graph.object_edges[0].information

        np.testing.assert_allclose(np.diag(full), np.full(9, (2 * 0.8) ** 2))
        assert np.count_nonzero(full - np.diag(np.diag(full))) == 0

        landmark.quality = 0.4
        lba_graph = lba.build_graph(select_local_window(kf1, scene.slam_map))
        half = lba_graph.object_edges[0].information
        np.testing.assert_allclose(half, full / 4.0)

    def test_object_edges_per_mono_observation(self, scene):
        """Each monocular observation of the keyframe adds one object edge."""
        kf1 = scene.keyframes[1]
        landmark = scene.slam_map.create_object_landmark(make_cuboid(np.array([0.2, 0.1, 6.0])))
        kf1.add_landmark(landmark)

        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(kf1, scene.slam_map))

        assert len(lba_graph.object_edges) == len(scene.points)
        for edge in lba_graph.object_edges:
            assert edge.kind is EdgeKind.CUBOID
            assert edge.robust_delta is None
            assert edge.vertices[0].id == kf1.id
            assert edge.chi2() == pytest.approx(0.0, abs=1e-12)


class TestTwoPassOptimization:
    """End-to-end behaviour of LocalBundleAdjustment.run."""

    def test_consistent_observations_have_no_outliers(self):
        """Single point, three consistent views: converges to ground truth."""
        ground_truth = GROUND_TRUTH_POINTS[:1]
        scene = build_scene(ground_truth=ground_truth)
        point = scene.points[0]
        point.position = ground_truth[0] + np.array([0.04, -0.03, 0.15])

        result = LocalBundleAdjustment().run(scene.trigger, scene.slam_map)

        assert result.state is LocalBAState.COMMITTED
        assert result.second_pass_run
        assert result.outliers == []
        np.testing.assert_allclose(point.position, ground_truth[0], atol=1e-2)
        assert point.num_observations == 3

    @pytest.mark.parametrize("seed", [0, 7, 21])
    def test_noisy_observations_are_kept(self, seed):
        """Half-pixel noise with no gross errors: nothing is pruned."""
        scene = build_noisy_scene(seed=seed)
        initial_error = np.mean(
            [np.linalg.norm(p.position - gt) for p, gt in zip(scene.points, scene.ground_truth)]
        )

        result = LocalBundleAdjustment().run(scene.trigger, scene.slam_map)

        assert result.second_pass_run
        assert result.outliers == []
        assert all(p.num_observations == 3 and not p.is_bad for p in scene.points)
        final_error = np.mean(
            [np.linalg.norm(p.position - gt) for p, gt in zip(scene.points, scene.ground_truth)]
        )
        assert final_error < initial_error

    def test_robust_pass_leaves_inliers_below_threshold(self):
        """After the 5-iteration robust pass no inlier edge fails the chi2 test."""
        scene = build_noisy_scene(seed=3)
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))

        solver = ScipyGraphSolver(lba_graph.graph)
        solver.initialize()
        solver.optimize(lba.config.first_pass_iterations)

        assert lba.gate_inliers(lba_graph) == 0

    def test_perturbed_observation_is_pruned(self, scene):
        """A 50 px error in keyframe 2 is found and unlinked on both sides."""
        kf2 = scene.keyframes[2]
        point = scene.points[0]
        kf2.keypoints[0, 1] += 50.0

        result = LocalBundleAdjustment().run(scene.trigger, scene.slam_map)

        assert [(kf.id, p.id) for kf, p in result.outliers] == [(2, point.id)]
        assert kf2.get_map_point(0) is None
        assert not point.is_observed_by(kf2)
        assert point.is_observed_by(scene.keyframes[0])
        assert point.is_observed_by(scene.keyframes[1])
        assert not point.is_bad

        np.testing.assert_allclose(point.position, scene.ground_truth[0], atol=5e-2)
        np.testing.assert_allclose(
            scene.keyframes[1].pose.translation, [0.5, 0.0, 0.0], atol=1e-2
        )
        np.testing.assert_allclose(scene.keyframes[0].pose.translation, np.zeros(3))

    def test_outliers_excluded_from_second_pass(self, scene):
        scene.keyframes[2].keypoints[0, 1] += 50.0
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))

        solver = ScipyGraphSolver(lba_graph.graph)
        solver.initialize()
        solver.optimize(5)
        excluded = lba.gate_inliers(lba_graph)

        assert excluded == 1
        levels = {
            (rep.keyframe.id, rep.map_point.id): rep.edge.level
            for rep in lba_graph.reprojection_edges
        }
        assert levels[(2, scene.points[0].id)] == 1
        assert sum(levels.values()) == 1
        assert all(rep.edge.robust_delta is None for rep in lba_graph.reprojection_edges)

    def test_final_gating_is_idempotent(self, scene):
        scene.keyframes[2].keypoints[0, 1] += 50.0
        scene.keyframes[2].keypoints[3, 0] -= 30.0
        lba = LocalBundleAdjustment()
        lba_graph = lba.build_graph(select_local_window(scene.trigger, scene.slam_map))
        solver = ScipyGraphSolver(lba_graph.graph)
        solver.initialize()
        solver.optimize(5)

        first = lba.collect_outliers(lba_graph)
        second = lba.collect_outliers(lba_graph)

        assert [(kf.id, p.id) for kf, p in first] == [(kf.id, p.id) for kf, p in second]
        assert len(first) >= 1

    def test_stop_flag_before_solving_leaves_map_untouched(self, scene):
        """No lock taken, no pose or position written."""
        scene.keyframes[2].keypoints[0, 1] += 50.0
        stop = threading.Event()
        stop.set()
        lock = MagicMock()
        scene.slam_map.update_lock = lock
        before = _snapshot(scene)
        pose_objects = [kf.pose for kf in scene.keyframes]

        result = LocalBundleAdjustment().run(scene.trigger, scene.slam_map, stop_flag=stop)

        assert result.aborted
        assert result.outliers == []
        lock.__enter__.assert_not_called()
        after = _snapshot(scene)
        for a, b in zip(before["poses"], after["poses"]):
            np.testing.assert_array_equal(a, b)
        for a, b in zip(before["positions"], after["positions"]):
            np.testing.assert_array_equal(a, b)
        assert before["matches"] == after["matches"]
        assert before["observations"] == after["observations"]
        assert all(kf.pose is pose for kf, pose in zip(scene.keyframes, pose_objects))

    def test_stop_flag_between_passes(self, scene, monkeypatch):
        """Pass 2 is skipped, final gating and commit still happen."""
        scene.keyframes[2].keypoints[0, 1] += 50.0
        stop = threading.Event()
        budgets = []

        class StoppingSolver(ScipyGraphSolver):
            def optimize(self, iterations):
                budgets.append(iterations)
                evaluations = super().optimize(iterations)
                stop.set()
                return evaluations

        monkeypatch.setattr(lba_module, "ScipyGraphSolver", StoppingSolver)
        kf1_pose = scene.keyframes[1].pose

        result = LocalBundleAdjustment().run(scene.trigger, scene.slam_map, stop_flag=stop)

        assert budgets == [5]
        assert not result.second_pass_run
        assert result.state is LocalBAState.COMMITTED
        assert [(kf.id, p.id) for kf, p in result.outliers] == [(2, scene.points[0].id)]
        assert scene.keyframes[2].get_map_point(0) is None
        assert scene.keyframes[1].pose is not kf1_pose

    def test_commit_holds_the_map_lock(self, scene):
        lock = MagicMock()
        scene.slam_map.update_lock = lock

        LocalBundleAdjustment().run(scene.trigger, scene.slam_map)

        lock.__enter__.assert_called_once()
        lock.__exit__.assert_called_once()

    def test_fixed_keyframes_are_not_written(self, scene):
        kf0_pose = scene.keyframes[0].pose
        kf2_pose = scene.keyframes[2].pose

        LocalBundleAdjustment().run(scene.trigger, scene.slam_map)

        # Origin keyframe is local, so it is rewritten with its fixed value
        np.testing.assert_allclose(scene.keyframes[0].pose.to_matrix(), kf0_pose.to_matrix())
        assert scene.keyframes[2].pose is kf2_pose

    def test_object_landmark_committed(self, scene):
        kf1 = scene.keyframes[1]
        cuboid = make_cuboid(np.array([0.2, 0.1, 6.0]))
        landmark = scene.slam_map.create_object_landmark(cuboid, quality=0.9)
        kf1.add_landmark(landmark)

        LocalBundleAdjustment().run(kf1, scene.slam_map)

        assert landmark.cuboid is not cuboid
        np.testing.assert_allclose(landmark.cuboid.scale, cuboid.scale, atol=1e-6)
        np.testing.assert_allclose(
            landmark.cuboid.pose.translation, cuboid.pose.translation, atol=1e-3
        )

    def test_points_get_normal_and_depth(self, scene):
        LocalBundleAdjustment().run(scene.trigger, scene.slam_map)

        for point in scene.points:
            assert np.linalg.norm(point.normal) == pytest.approx(1.0)
            assert point.max_distance > point.min_distance > 0.0

    def test_custom_iteration_budgets(self, scene, monkeypatch):
        budgets = []

        class RecordingSolver(ScipyGraphSolver):
            def optimize(self, iterations):
                budgets.append(iterations)
                return super().optimize(iterations)

        monkeypatch.setattr(lba_module, "ScipyGraphSolver", RecordingSolver)
        config = LocalBAConfig(first_pass_iterations=3, second_pass_iterations=7)

        LocalBundleAdjustment(config).run(scene.trigger, scene.slam_map)

        assert budgets == [3, 7]
