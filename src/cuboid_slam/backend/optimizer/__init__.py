"""Factor graph and least-squares solver."""

from .factor_graph import Edge, EdgeKind, FactorGraph, Vertex, VertexKind
from .scipy_solver import ScipyGraphSolver

__all__ = [
    "FactorGraph",
    "Vertex",
    "VertexKind",
    "Edge",
    "EdgeKind",
    "ScipyGraphSolver",
]
