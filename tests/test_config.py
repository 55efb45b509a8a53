"""Tests for LocalBAConfig."""

import math
from pathlib import Path

import pytest

from cuboid_slam.backend import LocalBAConfig


class TestLocalBAConfig:
    """Test suite for LocalBAConfig."""

    def test_defaults(self):
        config = LocalBAConfig()

        assert config.first_pass_iterations == 5
        assert config.second_pass_iterations == 10
        assert config.huber_mono == pytest.approx(math.sqrt(5.991))
        assert config.huber_stereo == pytest.approx(math.sqrt(7.815))
        assert config.object_information_scale == 2.0
        assert config.origin_keyframe_id == 0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"first_pass_iterations": 0},
            {"second_pass_iterations": -1},
            {"chi2_mono": 0.0},
            {"chi2_stereo": -2.0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            LocalBAConfig(**kwargs)

    def test_from_yaml_section(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("local_ba:\n  first_pass_iterations: 3\n  chi2_mono: 4.0\n")

        config = LocalBAConfig.from_yaml(path)

        assert config.first_pass_iterations == 3
        assert config.chi2_mono == 4.0
        assert config.second_pass_iterations == 10

    def test_from_yaml_top_level(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("second_pass_iterations: 20\n")

        assert LocalBAConfig.from_yaml(path).second_pass_iterations == 20

    def test_from_yaml_empty_file(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert LocalBAConfig.from_yaml(path) == LocalBAConfig()

    def test_from_yaml_unknown_key(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("local_ba:\n  iterations: 3\n")

        with pytest.raises(ValueError, match="iterations"):
            LocalBAConfig.from_yaml(path)

    def test_from_yaml_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ValueError):
            LocalBAConfig.from_yaml(path)

    def test_from_yaml_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            LocalBAConfig.from_yaml(tmp_path / "missing.yaml")
