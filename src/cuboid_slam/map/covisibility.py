"""Covisibility graph for tracking shared observations between keyframes.

The covisibility graph is a weighted undirected graph where:
- Nodes are keyframes
- Edges connect keyframes that share observations of the same map points
- Edge weights represent the number of shared map points

Local bundle adjustment optimizes a keyframe together with its direct
neighbours in this graph.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .keyframe import KeyFrame


class CovisibilityGraph:
    """Graph tracking which keyframes share map point observations."""

    def __init__(self, min_shared_points: int = 15) -> None:
        """Initialize covisibility graph.

        Args:
            min_shared_points: Minimum shared points to create an edge. A
                keyframe with no neighbour above the threshold is still
                connected to its best neighbour.
        """
        self._min_shared = min_shared_points

        # kf_id -> {other_kf_id: weight}
        self._adjacency: dict[int, dict[int, int]] = defaultdict(dict)

        # mappoint_id -> set of kf_ids observing it
        self._mappoint_to_keyframes: dict[int, set[int]] = defaultdict(set)

        # kf_id -> set of observed mappoint_ids
        self._keyframe_observations: dict[int, set[int]] = {}

    def add_keyframe(self, keyframe: KeyFrame) -> None:
        """Add a keyframe and connect it to keyframes sharing map points."""
        self._keyframe_observations[keyframe.id] = set()
        self.update_keyframe(keyframe)

    def update_keyframe(self, keyframe: KeyFrame) -> None:
        """Re-read a keyframe's matches and recompute its edges."""
        kf_id = keyframe.id
        old_observations = self._keyframe_observations.get(kf_id, set())
        new_observations = {
            mp.id for mp in keyframe.get_map_point_matches() if not mp.is_bad
        }

        for mp_id in old_observations - new_observations:
            self._mappoint_to_keyframes[mp_id].discard(kf_id)
        for mp_id in new_observations - old_observations:
            self._mappoint_to_keyframes[mp_id].add(kf_id)

        self._keyframe_observations[kf_id] = new_observations
        self._recompute_edges_for_keyframe(kf_id)

    def _recompute_edges_for_keyframe(self, kf_id: int) -> None:
        for other_kf_id in list(self._adjacency.get(kf_id, {}).keys()):
            self._adjacency[other_kf_id].pop(kf_id, None)
        self._adjacency[kf_id].clear()

        shared_counts: dict[int, int] = defaultdict(int)
        for mp_id in self._keyframe_observations.get(kf_id, set()):
            for other_kf_id in self._mappoint_to_keyframes[mp_id]:
                if other_kf_id != kf_id:
                    shared_counts[other_kf_id] += 1

        if not shared_counts:
            return

        strong = {k: c for k, c in shared_counts.items() if c >= self._min_shared}
        if not strong:
            best_id = max(shared_counts, key=shared_counts.get)
            strong = {best_id: shared_counts[best_id]}

        for other_kf_id, count in strong.items():
            self.connect(kf_id, other_kf_id, count)

    def connect(self, kf1_id: int, kf2_id: int, weight: int) -> None:
        """Set the edge weight between two keyframes explicitly."""
        if kf1_id == kf2_id:
            raise ValueError(f"Cannot connect keyframe {kf1_id} to itself")
        self._adjacency[kf1_id][kf2_id] = weight
        self._adjacency[kf2_id][kf1_id] = weight

    def get_connected_keyframes(
        self,
        kf_id: int,
        min_shared: int = 0,
    ) -> list[tuple[int, int]]:
        """Get keyframes connected to a given keyframe.

        Args:
            kf_id: Keyframe ID
            min_shared: Minimum edge weight to report

        Returns:
            List of (kf_id, weight) tuples, sorted by weight descending
        """
        connections = [
            (other_id, weight)
            for other_id, weight in self._adjacency.get(kf_id, {}).items()
            if weight >= min_shared
        ]
        return sorted(connections, key=lambda x: (-x[1], x[0]))

    def get_keyframes_observing(self, mappoint_id: int) -> set[int]:
        return self._mappoint_to_keyframes.get(mappoint_id, set()).copy()

    def remove_keyframe(self, kf_id: int) -> None:
        """Remove a keyframe and all its edges."""
        for other_kf_id in self._adjacency.pop(kf_id, {}):
            self._adjacency[other_kf_id].pop(kf_id, None)

        for mp_id in self._keyframe_observations.pop(kf_id, set()):
            self._mappoint_to_keyframes[mp_id].discard(kf_id)

    def get_covisibility_weight(self, kf1_id: int, kf2_id: int) -> int:
        """Return the number of shared map points (0 if not connected)."""
        return self._adjacency.get(kf1_id, {}).get(kf2_id, 0)

    @property
    def num_keyframes(self) -> int:
        return len(self._keyframe_observations)

    @property
    def num_edges(self) -> int:
        # Each edge is stored twice
        return sum(len(adj) for adj in self._adjacency.values()) // 2
