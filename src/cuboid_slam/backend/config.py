"""Configuration for local bundle adjustment."""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from pathlib import Path

import yaml


@dataclass
class LocalBAConfig:
    """Configuration for local bundle adjustment.

    The chi-square thresholds are the 95% quantiles for 2 (monocular) and
    3 (stereo) degrees of freedom; the Huber break points are their
    square roots.
    """

    first_pass_iterations: int = 5  # Robust pass over all edges
    second_pass_iterations: int = 10  # Plain least squares over inliers
    chi2_mono: float = 5.991
    chi2_stereo: float = 7.815
    object_information_scale: float = 2.0  # info = (scale * quality)^2
    origin_keyframe_id: int = 0  # Pose held fixed as the map origin

    def __post_init__(self) -> None:
        if self.first_pass_iterations < 1 or self.second_pass_iterations < 1:
            raise ValueError("Iteration budgets must be positive")
        if self.chi2_mono <= 0 or self.chi2_stereo <= 0:
            raise ValueError("Chi-square thresholds must be positive")

    @property
    def huber_mono(self) -> float:
        return math.sqrt(self.chi2_mono)

    @property
    def huber_stereo(self) -> float:
        return math.sqrt(self.chi2_stereo)

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> LocalBAConfig:
        """Load a configuration, using defaults for missing keys.

        The file may hold the options at top level or under a
        `local_ba:` section.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file contains unknown keys
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Invalid config in {yaml_path}")
        data = data.get("local_ba", data)

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown local BA options in {yaml_path}: {sorted(unknown)}")

        return cls(**data)
