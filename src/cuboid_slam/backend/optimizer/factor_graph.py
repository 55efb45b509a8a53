"""Factor graph arena for bundle adjustment.

Vertices hold the variables being optimized and edges hold the
measurements that constrain them. Both are tagged with a kind; the error
function of an edge and the parameter packing of a vertex are looked up
in small dispatch tables keyed by that kind.

Vertex estimates:
    POSE    SE3, T_camera_world (6 DoF)
    CUBOID  Cuboid in world coordinates (9 DoF)
    POINT   (3,) world position (3 DoF)

Edge errors (measurement - prediction for reprojections):
    MONO    (point, pose)   2-vector, pixel (u, v)
    STEREO  (point, pose)   3-vector, pixel (u, v, u_right)
    CUBOID  (pose, cuboid)  9-vector, relative cuboid log error
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np

from ...camera import CameraIntrinsics
from ...geometry import SE3, Cuboid


class VertexKind(Enum):
    POSE = "pose"
    CUBOID = "cuboid"
    POINT = "point"

    @property
    def dim(self) -> int:
        return _VERTEX_DIMS[self]


class EdgeKind(Enum):
    MONO = "mono"
    STEREO = "stereo"
    CUBOID = "cuboid"

    @property
    def dim(self) -> int:
        return _EDGE_DIMS[self]


_VERTEX_DIMS = {VertexKind.POSE: 6, VertexKind.CUBOID: 9, VertexKind.POINT: 3}
_EDGE_DIMS = {EdgeKind.MONO: 2, EdgeKind.STEREO: 3, EdgeKind.CUBOID: 9}

# Smallest |z| used when projecting, keeps residuals finite
_MIN_DEPTH = 1e-12


@dataclass(eq=False)
class Vertex:
    """A variable of the optimization problem.

    Attributes:
        id: Numeric id, unique across all vertex kinds of one graph
        kind: Which estimate type the vertex carries
        estimate: Current value (see module docstring for types)
        fixed: Held constant during optimization
        marginalized: Eliminated first by the solver (point landmarks)
    """

    id: int
    kind: VertexKind
    estimate: Any
    fixed: bool = False
    marginalized: bool = False


@dataclass(eq=False)
class Edge:
    """A measurement constraining one or more vertices.

    Attributes:
        kind: Residual type
        vertices: Connected vertices, in the order the error function expects
        measurement: (2,) / (3,) pixel observation, or a Cuboid
        information: Inverse covariance of the measurement
        camera: Intrinsics for reprojection edges
        robust_delta: Huber break point on sqrt(chi2); None disables it
        level: Only edges whose level matches the solver's level are used
    """

    kind: EdgeKind
    vertices: tuple[Vertex, ...]
    measurement: Any
    information: np.ndarray
    camera: CameraIntrinsics | None = None
    robust_delta: float | None = None
    level: int = 0

    def compute_error(self, estimates: Sequence[Any] | None = None) -> np.ndarray:
        """Evaluate the error at the given estimates (default: current ones)."""
        if estimates is None:
            estimates = [v.estimate for v in self.vertices]
        return _ERROR_FUNCTIONS[self.kind](self, estimates)

    def chi2(self) -> float:
        """Return e^T * information * e at the current estimates."""
        error = self.compute_error()
        return float(error @ self.information @ error)

    def is_depth_positive(self) -> bool:
        """Return True if the landmark lies in front of the camera.

        Only reprojection edges have a depth; object edges always pass.
        """
        if self.kind not in (EdgeKind.MONO, EdgeKind.STEREO):
            return True
        point, pose = self.vertices[0].estimate, self.vertices[1].estimate
        return bool(pose.transform_point(point)[2] > 0.0)

    def robust_cost(self, chi2: float) -> float:
        """Huber cost rho(chi2).

        Quadratic (rho = chi2) inside the break point and linear in the
        residual norm beyond it: rho = 2 * delta * sqrt(chi2) - delta^2.
        """
        if self.robust_delta is None:
            return chi2
        delta2 = self.robust_delta * self.robust_delta
        if chi2 <= delta2:
            return chi2
        return 2.0 * self.robust_delta * np.sqrt(chi2) - delta2


def _project(camera: CameraIntrinsics, point_camera: np.ndarray) -> tuple[float, float, float]:
    z = point_camera[2]
    if abs(z) < _MIN_DEPTH:
        z = _MIN_DEPTH if z >= 0 else -_MIN_DEPTH
    inv_z = 1.0 / z
    u = camera.fx * point_camera[0] * inv_z + camera.cx
    v = camera.fy * point_camera[1] * inv_z + camera.cy
    return u, v, inv_z


def _mono_error(edge: Edge, estimates: Sequence[Any]) -> np.ndarray:
    point, pose = estimates
    u, v, _ = _project(edge.camera, pose.transform_point(point))
    return edge.measurement - np.array([u, v])


def _stereo_error(edge: Edge, estimates: Sequence[Any]) -> np.ndarray:
    point, pose = estimates
    u, v, inv_z = _project(edge.camera, pose.transform_point(point))
    return edge.measurement - np.array([u, v, u - edge.camera.bf * inv_z])


def _cuboid_error(edge: Edge, estimates: Sequence[Any]) -> np.ndarray:
    pose, cuboid = estimates
    local = Cuboid(pose=pose.compose(cuboid.pose), scale=cuboid.scale)
    return local.log_error(edge.measurement)


_ERROR_FUNCTIONS: dict[EdgeKind, Callable[[Edge, Sequence[Any]], np.ndarray]] = {
    EdgeKind.MONO: _mono_error,
    EdgeKind.STEREO: _stereo_error,
    EdgeKind.CUBOID: _cuboid_error,
}


def pack_estimate(vertex: Vertex) -> np.ndarray:
    """Return the vertex estimate as a flat parameter vector."""
    return _PACKERS[vertex.kind](vertex.estimate)


def unpack_estimate(kind: VertexKind, params: np.ndarray) -> Any:
    """Inverse of `pack_estimate`."""
    return _UNPACKERS[kind](params)


def _pack_pose(pose: SE3) -> np.ndarray:
    rvec, tvec = pose.to_rvec_tvec()
    return np.concatenate([rvec, tvec])


_PACKERS: dict[VertexKind, Callable[[Any], np.ndarray]] = {
    VertexKind.POSE: _pack_pose,
    VertexKind.CUBOID: lambda cuboid: cuboid.to_vector(),
    VertexKind.POINT: lambda point: np.asarray(point, dtype=np.float64).copy(),
}

_UNPACKERS: dict[VertexKind, Callable[[np.ndarray], Any]] = {
    VertexKind.POSE: lambda p: SE3.from_rvec_tvec(p[0:3], p[3:6]),
    VertexKind.CUBOID: Cuboid.from_vector,
    VertexKind.POINT: lambda p: np.array(p, dtype=np.float64),
}


class FactorGraph:
    """Arena of vertices keyed by id plus the list of edges between them.

    The graph owns every vertex and edge added to it and is meant to live
    for a single optimization call.
    """

    def __init__(self) -> None:
        self._vertices: dict[int, Vertex] = {}
        self._edges: list[Edge] = []

    def add_vertex(self, vertex: Vertex) -> Vertex:
        """Register a vertex.

        Raises:
            ValueError: If the id is already taken
        """
        if vertex.id in self._vertices:
            raise ValueError(f"Vertex id {vertex.id} already in graph")
        self._vertices[vertex.id] = vertex
        return vertex

    def vertex(self, vertex_id: int) -> Vertex:
        """Return the vertex with the given id.

        Raises:
            KeyError: If no such vertex was added
        """
        try:
            return self._vertices[vertex_id]
        except KeyError:
            raise KeyError(f"No vertex with id {vertex_id} in graph") from None

    def add_edge(self, edge: Edge) -> Edge:
        """Register an edge whose vertices are already in the graph."""
        if len(edge.vertices) != len(_EDGE_VERTEX_KINDS[edge.kind]):
            raise ValueError(
                f"{edge.kind.name} edge needs {len(_EDGE_VERTEX_KINDS[edge.kind])} vertices"
            )
        for vertex, expected in zip(edge.vertices, _EDGE_VERTEX_KINDS[edge.kind]):
            if self._vertices.get(vertex.id) is not vertex:
                raise KeyError(f"Vertex {vertex.id} is not part of this graph")
            if vertex.kind is not expected:
                raise ValueError(
                    f"{edge.kind.name} edge expects a {expected.name} vertex, "
                    f"got {vertex.kind.name}"
                )
        dim = edge.kind.dim
        if edge.information.shape != (dim, dim):
            raise ValueError(
                f"{edge.kind.name} edge needs a {dim}x{dim} information matrix, "
                f"got {edge.information.shape}"
            )
        self._edges.append(edge)
        return edge

    def edges_at_level(self, level: int) -> list[Edge]:
        return [e for e in self._edges if e.level == level]

    @property
    def vertices(self) -> list[Vertex]:
        return list(self._vertices.values())

    @property
    def edges(self) -> list[Edge]:
        return list(self._edges)

    @property
    def num_vertices(self) -> int:
        return len(self._vertices)

    @property
    def num_edges(self) -> int:
        return len(self._edges)


_EDGE_VERTEX_KINDS = {
    EdgeKind.MONO: (VertexKind.POINT, VertexKind.POSE),
    EdgeKind.STEREO: (VertexKind.POINT, VertexKind.POSE),
    EdgeKind.CUBOID: (VertexKind.POSE, VertexKind.CUBOID),
}
