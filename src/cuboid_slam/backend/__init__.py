"""Local bundle adjustment backend."""

from .config import LocalBAConfig
from .local_bundle_adjustment import (
    LocalBAGraph,
    LocalBAResult,
    LocalBAState,
    LocalBundleAdjustment,
    ReprojectionEdge,
)
from .local_mapping import LocalMapping, LocalMappingResult
from .local_window import LocalWindow, select_local_window
from .optimizer import FactorGraph, ScipyGraphSolver

__all__ = [
    # Configuration
    "LocalBAConfig",
    # Window selection
    "LocalWindow",
    "select_local_window",
    # Local bundle adjustment
    "LocalBundleAdjustment",
    "LocalBAGraph",
    "LocalBAResult",
    "LocalBAState",
    "ReprojectionEdge",
    # Solver
    "FactorGraph",
    "ScipyGraphSolver",
    # Local mapping
    "LocalMapping",
    "LocalMappingResult",
]
