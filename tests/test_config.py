"""
Tests for dotcalib.config TOML loading/saving.
"""

import pytest

from dotcalib.config import (
    CalibConfig,
    ConicFinderParams,
    GridDecoderParams,
    config_from_dict,
    config_to_dict,
    create_default_config,
    load_config,
    save_config,
)
from dotcalib.errors import ConfigError


class TestDefaults:
    def test_conic_thresholds(self):
        params = ConicFinderParams()
        assert params.min_area == 4.0
        assert params.min_density == 0.6
        assert params.min_aspect == 0.2

    def test_default_config(self):
        config = create_default_config()
        assert config.camera_model == "fov"
        assert config.target.cols == 19
        assert config.target.rows == 10
        assert config.target.spacing == pytest.approx(0.254 / 18)
        assert config.image_processing.at_threshold == 0.9
        assert config.grid_decoder.min_fraction == 0.5

    def test_unknown_camera_model(self):
        with pytest.raises(ConfigError):
            create_default_config("kannala")


class TestTomlRoundTrip:
    def test_save_and_load(self, temp_dir):
        config = create_default_config("brown")
        path = temp_dir / "config.toml"
        save_config(config, path)
        assert path.exists()
        assert load_config(path) == config

    def test_dict_round_trip(self):
        config = CalibConfig(grid_decoder=GridDecoderParams(max_gap=2, min_fraction=0.3))
        assert config_from_dict(config_to_dict(config)) == config

    def test_partial_file_uses_defaults(self, temp_dir):
        path = temp_dir / "partial.toml"
        path.write_text("[target]\nspacing = 0.03\ncoded = false\n")
        config = load_config(path)
        assert config.target.spacing == 0.03
        assert config.target.coded is False
        assert config.pose == CalibConfig().pose

    def test_integer_accepted_for_float(self, temp_dir):
        path = temp_dir / "int.toml"
        path.write_text("[conic_finder]\nmin_area = 6\n")
        config = load_config(path)
        assert config.conic_finder.min_area == 6.0
        assert isinstance(config.conic_finder.min_area, float)


class TestInvalidConfig:
    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigError):
            load_config(temp_dir / "nope.toml")

    def test_malformed_toml(self, temp_dir):
        path = temp_dir / "bad.toml"
        path.write_text("[pose\niterations = 3\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_wrong_type(self, temp_dir):
        path = temp_dir / "bad.toml"
        path.write_text('[pose]\niterations = "many"\n')
        with pytest.raises(ConfigError, match="iterations"):
            load_config(path)

    def test_bool_is_not_an_integer(self):
        with pytest.raises(ConfigError):
            config_from_dict({"pose": {"iterations": True}})

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="unknown keys"):
            config_from_dict({"target": {"spacnig": 0.02}})

    def test_unknown_section(self):
        with pytest.raises(ConfigError):
            config_from_dict({"display": {}})

    def test_out_of_range(self):
        with pytest.raises(ConfigError, match="min_fraction"):
            config_from_dict({"grid_decoder": {"min_fraction": 1.5}})

    def test_radii_order(self):
        with pytest.raises(ConfigError):
            config_from_dict({"target": {"dot_radius_ratio": 0.1, "code_radius_ratio": 0.2}})

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            config_from_dict({"calibrator": {"loss": "l0"}})
