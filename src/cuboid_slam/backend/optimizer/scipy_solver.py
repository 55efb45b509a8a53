"""Factor graph solver using scipy.optimize.least_squares.

The solver minimizes

    sum_e rho_e( e_e(x)^T * Omega_e * e_e(x) )

over the free vertices of a FactorGraph, where e_e is the edge error,
Omega_e its information matrix and rho_e its Huber kernel (identity when
the edge has no robust kernel). Each edge contributes a whitened residual
block W e (with W^T W = Omega), whose squared norm is the edge chi2. The
kernel is handed to scipy as a `loss` callable evaluated on the chi2 of
each block, so the trust-region steps use scipy's robust Jacobian
correction.

The Jacobian is sparse: an edge only touches the parameters of the
vertices it connects, which is passed to scipy as `jac_sparsity`.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .factor_graph import Edge, FactorGraph, Vertex, pack_estimate, unpack_estimate

logger = logging.getLogger(__name__)


class _ForceStop(Exception):
    """Raised from the residual function when the stop flag is set."""


class ScipyGraphSolver:
    """Levenberg-Marquardt style solver over a FactorGraph.

    Usage mirrors a sparse graph optimizer: select the edges to use with
    `initialize(level)`, then run `optimize(iterations)`. Optimized values
    are written back into the vertex estimates.

    Point vertices flagged `marginalized` are placed after all other free
    parameters, so the parameter vector is [poses/cuboids | points] and
    the Jacobian has the usual bundle adjustment block-arrow structure.
    """

    def __init__(
        self,
        graph: FactorGraph,
        stop_flag: threading.Event | None = None,
        ftol: float = 1e-8,
        xtol: float = 1e-8,
    ) -> None:
        """Initialize the solver.

        Args:
            graph: Graph to optimize (vertex estimates are updated in place)
            stop_flag: Cooperative stop request, polled on every residual
                evaluation; when set the solver stops and keeps the best
                estimate seen so far
            ftol: Function tolerance for convergence
            xtol: Parameter tolerance for convergence
        """
        self._graph = graph
        self._stop_flag = stop_flag
        self._ftol = ftol
        self._xtol = xtol

        self._initialized = False
        self._edges: list[Edge] = []
        self._free_vertices: list[Vertex] = []
        self._offsets: dict[int, int] = {}
        self._n_params = 0
        self._whiteners: list[np.ndarray] = []
        self._residual_blocks = np.empty(0, dtype=np.intp)
        self._huber_deltas = np.empty(0)
        self._best_x: np.ndarray | None = None
        self._best_cost = np.inf

    def initialize(self, level: int = 0) -> bool:
        """Select the edges at `level` and the free vertices they touch.

        Returns:
            True if there is at least one edge to optimize
        """
        self._edges = self._graph.edges_at_level(level)

        touched: dict[int, Vertex] = {}
        for edge in self._edges:
            for vertex in edge.vertices:
                if not vertex.fixed:
                    touched[vertex.id] = vertex

        # Marginalized vertices last, ids ascending within each block
        self._free_vertices = sorted(
            touched.values(), key=lambda v: (v.marginalized, v.id)
        )
        self._offsets = {}
        offset = 0
        for vertex in self._free_vertices:
            self._offsets[vertex.id] = offset
            offset += vertex.kind.dim
        self._n_params = offset

        self._whiteners = [_whitener(edge.information) for edge in self._edges]
        self._residual_blocks = np.repeat(
            np.arange(len(self._edges)), [edge.kind.dim for edge in self._edges]
        ).astype(np.intp)
        # np.inf disables the kernel
        self._huber_deltas = np.array(
            [np.inf if e.robust_delta is None else e.robust_delta for e in self._edges],
            dtype=np.float64,
        )
        self._initialized = True

        logger.debug(
            "Solver initialized at level %d: %d edges, %d free vertices, %d parameters",
            level,
            len(self._edges),
            len(self._free_vertices),
            self._n_params,
        )
        return len(self._edges) > 0

    def optimize(self, iterations: int) -> int:
        """Run up to `iterations` solver iterations.

        Args:
            iterations: Iteration budget (residual evaluations, excluding
                those spent on the numerical Jacobian)

        Returns:
            Number of residual evaluations performed (0 if nothing to do or
            the stop flag was already set)
        """
        if not self._initialized:
            raise RuntimeError("optimize() called before initialize()")
        if iterations <= 0 or not self._edges or self._n_params == 0:
            return 0
        if self._stop_requested():
            return 0

        x0 = self._pack()
        self._best_x = x0.copy()
        self._best_cost = np.inf

        initial_cost = self.total_cost(robust=True)
        try:
            result = least_squares(
                fun=self._compute_residuals,
                x0=x0,
                jac_sparsity=self._build_sparsity_matrix(),
                method="trf",
                loss=self._loss,
                ftol=self._ftol,
                xtol=self._xtol,
                max_nfev=iterations,
                verbose=0,
            )
        except _ForceStop:
            logger.debug("Solver stopped by request, keeping best estimate")
            self._unpack(self._best_x)
            return 0

        self._unpack(result.x)
        logger.debug(
            "Solver finished: cost %.4f -> %.4f in %d evaluations (%s)",
            initial_cost,
            float(result.cost),
            result.nfev,
            result.message,
        )
        return int(result.nfev)

    def total_cost(self, robust: bool = True) -> float:
        """Return half the summed (robust) chi2 of the active edges."""
        cost = 0.0
        for edge in self._edges:
            chi2 = edge.chi2()
            cost += edge.robust_cost(chi2) if robust else chi2
        return 0.5 * cost

    def _stop_requested(self) -> bool:
        return self._stop_flag is not None and self._stop_flag.is_set()

    def _pack(self) -> np.ndarray:
        x = np.zeros(self._n_params, dtype=np.float64)
        for vertex in self._free_vertices:
            offset = self._offsets[vertex.id]
            x[offset : offset + vertex.kind.dim] = pack_estimate(vertex)
        return x

    def _unpack(self, x: np.ndarray) -> None:
        for vertex in self._free_vertices:
            offset = self._offsets[vertex.id]
            vertex.estimate = unpack_estimate(vertex.kind, x[offset : offset + vertex.kind.dim])

    def _estimates_at(self, x: np.ndarray) -> dict[int, Any]:
        return {
            vertex.id: unpack_estimate(
                vertex.kind, x[self._offsets[vertex.id] : self._offsets[vertex.id] + vertex.kind.dim]
            )
            for vertex in self._free_vertices
        }

    def _compute_residuals(self, x: np.ndarray) -> np.ndarray:
        """Stack the whitened residual blocks of all edges."""
        if self._stop_requested():
            raise _ForceStop

        free = self._estimates_at(x)
        blocks = []
        for edge, whitener in zip(self._edges, self._whiteners):
            estimates = [free.get(v.id, v.estimate) for v in edge.vertices]
            error = edge.compute_error(estimates)
            blocks.append(whitener @ error)

        residuals = np.concatenate(blocks)
        cost = float(np.sum(self._block_costs(residuals**2)[0]))
        if cost < self._best_cost:
            self._best_cost = cost
            self._best_x = x.copy()
        return residuals

    def _block_costs(self, z: np.ndarray) -> np.ndarray:
        """Huber rho and rho' of every edge block, shape (2, n_edges).

        `z` holds the squared residuals; the kernel argument of a block is
        their sum, the edge chi2.
        """
        chi2 = np.bincount(self._residual_blocks, weights=z, minlength=len(self._edges))
        rho = np.empty((2, len(chi2)))
        rho[0] = chi2
        rho[1] = 1.0

        deltas = self._huber_deltas
        outer = chi2 > deltas * deltas
        if np.any(outer):
            s = chi2[outer]
            delta = deltas[outer]
            root = np.sqrt(s)
            rho[0, outer] = 2.0 * delta * root - delta * delta
            rho[1, outer] = delta / root
        return rho

    def _loss(self, z: np.ndarray) -> np.ndarray:
        """Per-residual loss for least_squares.

        rho' of a block is shared by its residuals; rho is split between
        them in proportion to z so that its sum is the block cost. rho'' is
        left at zero, so the Gauss-Newton Hessian of an edge is weighted by
        rho' alone, as in g2o.
        """
        blocks = self._residual_blocks
        rho_blocks = self._block_costs(z)
        chi2 = np.bincount(blocks, weights=z, minlength=len(self._edges))[blocks]

        rho = np.empty((3, len(z)))
        rho[0] = rho_blocks[0, blocks] * np.divide(
            z, chi2, out=np.zeros_like(z), where=chi2 > 0.0
        )
        rho[1] = rho_blocks[1, blocks]
        rho[2] = 0.0
        return rho

    def _build_sparsity_matrix(self) -> lil_matrix:
        """Each edge block depends only on the parameters of its own vertices."""
        n_residuals = sum(edge.kind.dim for edge in self._edges)
        sparsity = lil_matrix((n_residuals, self._n_params), dtype=int)

        row = 0
        for edge in self._edges:
            rows = slice(row, row + edge.kind.dim)
            for vertex in edge.vertices:
                if vertex.id in self._offsets:
                    offset = self._offsets[vertex.id]
                    sparsity[rows, offset : offset + vertex.kind.dim] = 1
            row += edge.kind.dim

        return sparsity


def _whitener(information: np.ndarray) -> np.ndarray:
    """Return W with W^T W = information, so that |W e|^2 = e^T Omega e."""
    if np.count_nonzero(information - np.diag(np.diagonal(information))) == 0:
        return np.diag(np.sqrt(np.clip(np.diagonal(information), 0.0, None)))
    return np.linalg.cholesky(information).T
