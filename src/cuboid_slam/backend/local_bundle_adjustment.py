"""Local bundle adjustment over points and cuboid object landmarks.

Given a freshly inserted keyframe, LocalBundleAdjustment:

1. selects the local window (see local_window.py),
2. builds a factor graph with one pose vertex per local/fixed keyframe,
   one cuboid vertex per object landmark and one point vertex per map
   point, plus reprojection and object-pose edges,
3. optimizes it twice: a short robust pass over every edge, then, after
   dropping the edges whose chi2 exceeds the 95% threshold, a longer
   plain least-squares pass over the inliers,
4. flags the observations that are still outliers, and
5. under the map's update lock, unlinks those observations and writes the
   optimized poses, cuboids and point positions back into the map.

The optimization can be cancelled through a threading.Event. If the event
is set before the solver starts nothing in the map is touched; if it is set
during the first pass, the second pass is skipped but the results of the
first pass are still gated and committed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

from .config import LocalBAConfig
from .local_window import LocalWindow, select_local_window
from .optimizer import Edge, EdgeKind, FactorGraph, ScipyGraphSolver, Vertex, VertexKind

if TYPE_CHECKING:
    from ..map import KeyFrame, Map, MapPoint, ObjectLandmark

logger = logging.getLogger(__name__)


class LocalBAState(Enum):
    """Progress of one local bundle adjustment call."""

    BUILT = "built"
    ABORTED = "aborted"
    PASS1_SOLVED = "pass1_solved"
    GATED = "gated"
    PASS2_SOLVED = "pass2_solved"
    FINAL_GATED = "final_gated"
    COMMITTED = "committed"


@dataclass
class ReprojectionEdge:
    """A reprojection edge together with the observation it came from."""

    edge: Edge
    keyframe: KeyFrame
    map_point: MapPoint


@dataclass
class LocalBAGraph:
    """Factor graph built for one call, with the bookkeeping to read it back.

    Vertex ids: poses use keyframe ids; cuboids use
    max_pose_id + 1 + landmark.id; points use
    max_pose_id + max_landmark_id + 2 + point.id.
    """

    graph: FactorGraph
    max_pose_id: int
    max_landmark_id: int
    reprojection_edges: list[ReprojectionEdge] = field(default_factory=list)
    object_edges: list[Edge] = field(default_factory=list)

    def cuboid_vertex_id(self, landmark: ObjectLandmark) -> int:
        return self.max_pose_id + 1 + landmark.id

    def point_vertex_id(self, point: MapPoint) -> int:
        return self.max_pose_id + self.max_landmark_id + 2 + point.id

    def vertex_ids(self, kind: VertexKind) -> list[int]:
        return [v.id for v in self.graph.vertices if v.kind is kind]


@dataclass
class LocalBAResult:
    """Outcome of a local bundle adjustment call."""

    state: LocalBAState
    window: LocalWindow
    outliers: list[tuple[KeyFrame, MapPoint]] = field(default_factory=list)
    num_vertices: int = 0
    num_edges: int = 0
    second_pass_run: bool = False
    initial_cost: float = 0.0
    final_cost: float = 0.0

    @property
    def aborted(self) -> bool:
        return self.state is LocalBAState.ABORTED

    @property
    def committed(self) -> bool:
        return self.state is LocalBAState.COMMITTED


# Converts an optimized vertex estimate into the value stored in the map
_READBACK: dict[VertexKind, Callable[[Any], Any]] = {
    VertexKind.POSE: lambda T_camera_world: T_camera_world.inverse(),
    VertexKind.CUBOID: lambda cuboid: cuboid.copy(),
    VertexKind.POINT: lambda position: np.array(position, dtype=np.float64),
}


class LocalBundleAdjustment:
    """Two-pass local bundle adjustment with outlier pruning."""

    def __init__(self, config: LocalBAConfig | None = None) -> None:
        self._config = config or LocalBAConfig()

    @property
    def config(self) -> LocalBAConfig:
        return self._config

    def run(
        self,
        keyframe: KeyFrame,
        slam_map: Map,
        stop_flag: threading.Event | None = None,
    ) -> LocalBAResult:
        """Optimize the local window around `keyframe` and update the map.

        Args:
            keyframe: Keyframe that triggered the optimization
            slam_map: Map holding the keyframe; written under its update lock
            stop_flag: Set by another thread to request early termination

        Returns:
            LocalBAResult describing what was done
        """
        window = select_local_window(keyframe, slam_map)
        lba_graph = self.build_graph(window)

        result = LocalBAResult(
            state=LocalBAState.BUILT,
            window=window,
            num_vertices=lba_graph.graph.num_vertices,
            num_edges=lba_graph.graph.num_edges,
        )

        if _is_set(stop_flag):
            logger.debug("Local BA for keyframe %d aborted before solving", keyframe.id)
            result.state = LocalBAState.ABORTED
            return result

        solver = ScipyGraphSolver(lba_graph.graph, stop_flag=stop_flag)
        solver.initialize()
        result.initial_cost = solver.total_cost(robust=True)
        solver.optimize(self._config.first_pass_iterations)
        result.state = LocalBAState.PASS1_SOLVED

        if not _is_set(stop_flag):
            self.gate_inliers(lba_graph)
            result.state = LocalBAState.GATED

            solver.initialize(0)
            solver.optimize(self._config.second_pass_iterations)
            result.second_pass_run = True
            result.state = LocalBAState.PASS2_SOLVED

        result.final_cost = solver.total_cost(robust=not result.second_pass_run)
        result.outliers = self.collect_outliers(lba_graph)
        result.state = LocalBAState.FINAL_GATED

        self.commit(slam_map, window, lba_graph, result.outliers)
        result.state = LocalBAState.COMMITTED

        logger.info(
            "Local BA for keyframe %d: %d local / %d fixed keyframes, %d points, "
            "%d objects, %d outliers pruned",
            keyframe.id,
            len(window.local_keyframes),
            len(window.fixed_keyframes),
            len(window.map_points),
            len(window.object_landmarks),
            len(result.outliers),
        )
        return result

    def build_graph(self, window: LocalWindow) -> LocalBAGraph:
        """Create vertices and edges for the selected window."""
        cfg = self._config
        graph = FactorGraph()

        max_pose_id = 0
        for kf in window.local_keyframes:
            graph.add_vertex(
                Vertex(
                    id=kf.id,
                    kind=VertexKind.POSE,
                    estimate=kf.pose.inverse(),
                    fixed=kf.id == cfg.origin_keyframe_id,
                )
            )
            max_pose_id = max(max_pose_id, kf.id)

        for kf in window.fixed_keyframes:
            graph.add_vertex(
                Vertex(id=kf.id, kind=VertexKind.POSE, estimate=kf.pose.inverse(), fixed=True)
            )
            max_pose_id = max(max_pose_id, kf.id)

        max_landmark_id = max((lm.id for lm in window.object_landmarks), default=0)
        lba_graph = LocalBAGraph(
            graph=graph, max_pose_id=max_pose_id, max_landmark_id=max_landmark_id
        )

        for landmark in window.object_landmarks:
            graph.add_vertex(
                Vertex(
                    id=lba_graph.cuboid_vertex_id(landmark),
                    kind=VertexKind.CUBOID,
                    estimate=landmark.get_cuboid().copy(),
                )
            )

        for point in window.map_points:
            point_vertex = graph.add_vertex(
                Vertex(
                    id=lba_graph.point_vertex_id(point),
                    kind=VertexKind.POINT,
                    estimate=point.position.copy(),
                    marginalized=True,
                )
            )

            for obs in point.get_observations():
                kf = obs.keyframe
                if kf.is_bad or not (window.is_local(kf) or window.is_fixed(kf)):
                    continue
                pose_vertex = graph.vertex(kf.id)
                idx = obs.keypoint_idx

                if kf.is_stereo(idx):
                    self._add_stereo_edge(lba_graph, point_vertex, pose_vertex, kf, point, idx)
                else:
                    self._add_mono_edge(lba_graph, point_vertex, pose_vertex, kf, point, idx)
                    for landmark in window.landmarks_seen_by(kf):
                        self._add_object_edge(lba_graph, window, pose_vertex, kf, landmark)

        logger.debug(
            "Local BA graph: %d vertices, %d reprojection edges, %d object edges",
            graph.num_vertices,
            len(lba_graph.reprojection_edges),
            len(lba_graph.object_edges),
        )
        return lba_graph

    def _add_mono_edge(
        self,
        lba_graph: LocalBAGraph,
        point_vertex: Vertex,
        pose_vertex: Vertex,
        kf: KeyFrame,
        point: MapPoint,
        idx: int,
    ) -> None:
        edge = lba_graph.graph.add_edge(
            Edge(
                kind=EdgeKind.MONO,
                vertices=(point_vertex, pose_vertex),
                measurement=np.array(kf.keypoints[idx], dtype=np.float64),
                information=np.eye(2) * kf.inv_sigma2(idx),
                camera=kf.camera,
                robust_delta=self._config.huber_mono,
            )
        )
        lba_graph.reprojection_edges.append(ReprojectionEdge(edge, kf, point))

    def _add_stereo_edge(
        self,
        lba_graph: LocalBAGraph,
        point_vertex: Vertex,
        pose_vertex: Vertex,
        kf: KeyFrame,
        point: MapPoint,
        idx: int,
    ) -> None:
        u, v = kf.keypoints[idx]
        edge = lba_graph.graph.add_edge(
            Edge(
                kind=EdgeKind.STEREO,
                vertices=(point_vertex, pose_vertex),
                measurement=np.array([u, v, kf.u_right[idx]], dtype=np.float64),
                information=np.eye(3) * kf.inv_sigma2(idx),
                camera=kf.camera,
                robust_delta=self._config.huber_stereo,
            )
        )
        lba_graph.reprojection_edges.append(ReprojectionEdge(edge, kf, point))

    def _add_object_edge(
        self,
        lba_graph: LocalBAGraph,
        window: LocalWindow,
        pose_vertex: Vertex,
        kf: KeyFrame,
        landmark: ObjectLandmark,
    ) -> None:
        inv_sigma = self._config.object_information_scale * landmark.quality
        edge = lba_graph.graph.add_edge(
            Edge(
                kind=EdgeKind.CUBOID,
                vertices=(pose_vertex, lba_graph.graph.vertex(lba_graph.cuboid_vertex_id(landmark))),
                measurement=window.object_measurements[(kf.id, landmark.id)],
                information=np.diag(np.full(9, inv_sigma * inv_sigma)),
            )
        )
        lba_graph.object_edges.append(edge)

    def _is_outlier(self, edge: Edge) -> bool:
        threshold = (
            self._config.chi2_mono if edge.kind is EdgeKind.MONO else self._config.chi2_stereo
        )
        return edge.chi2() > threshold or not edge.is_depth_positive()

    def gate_inliers(self, lba_graph: LocalBAGraph) -> int:
        """Exclude outlier edges from the next pass and drop robust kernels.

        Returns:
            Number of edges moved to level 1
        """
        excluded = 0
        for rep in lba_graph.reprojection_edges:
            if rep.map_point.is_bad:
                continue
            if self._is_outlier(rep.edge):
                rep.edge.level = 1
                excluded += 1
            rep.edge.robust_delta = None
        logger.debug("Gating excluded %d edges from the second pass", excluded)
        return excluded

    def collect_outliers(self, lba_graph: LocalBAGraph) -> list[tuple[KeyFrame, MapPoint]]:
        """Return (keyframe, map point) pairs whose observation is an outlier.

        Reads the graph only; calling it again without re-optimizing gives
        the same list. Object edges are never reported.
        """
        return [
            (rep.keyframe, rep.map_point)
            for rep in lba_graph.reprojection_edges
            if not rep.map_point.is_bad and self._is_outlier(rep.edge)
        ]

    def commit(
        self,
        slam_map: Map,
        window: LocalWindow,
        lba_graph: LocalBAGraph,
        outliers: list[tuple[KeyFrame, MapPoint]],
    ) -> None:
        """Prune outliers and write optimized values back, atomically."""
        graph = lba_graph.graph
        with slam_map.update_lock:
            for kf, point in outliers:
                kf.erase_map_point_match(point)
                point.erase_observation(kf)

            for kf in window.local_keyframes:
                kf.pose = _READBACK[VertexKind.POSE](graph.vertex(kf.id).estimate)

            for landmark in window.object_landmarks:
                vertex = graph.vertex(lba_graph.cuboid_vertex_id(landmark))
                landmark.set_pose_and_dimension(_READBACK[VertexKind.CUBOID](vertex.estimate))

            for point in window.map_points:
                vertex = graph.vertex(lba_graph.point_vertex_id(point))
                point.set_world_pos(_READBACK[VertexKind.POINT](vertex.estimate))
                point.update_normal_and_depth()


def _is_set(stop_flag: threading.Event | None) -> bool:
    return stop_flag is not None and stop_flag.is_set()
