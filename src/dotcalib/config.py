"""
Configuration loading/saving.

Pure functions operating on frozen dataclasses, TOML on disk via rtoml.
Every tunable of the pipeline lives in one of the *Params structs below;
a missing key takes its default, a malformed value raises ConfigError.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import rtoml

from .camera import CAMERA_MODELS
from .errors import ConfigError


# ============================================================================
# Parameter structs
# ============================================================================


@dataclass(frozen=True, slots=True)
class ImageProcessingParams:
    """
    Binarization of grayscale frames into blobs.
    """

    black_on_white: bool = True  # dark dots on a light target
    at_threshold: float = 0.9  # pixel is "dot" if below at_threshold * local mean
    at_window_ratio: float = 30.0  # local-mean window = image width / ratio
    min_blob_area: int = 4  # connected components smaller than this are dropped


@dataclass(frozen=True, slots=True)
class ConicFinderParams:
    """
    Shape thresholds of the conic validator. A value exactly at a
    threshold is accepted.
    """

    min_area: float = 4.0
    min_density: float = 0.6
    min_aspect: float = 0.2


@dataclass(frozen=True, slots=True)
class TargetParams:
    """
    Physical grid-of-dots target.
    """

    spacing: float = 0.254 / 18  # metres between dot centres
    cols: int = 19
    rows: int = 10
    code_seed: int = 71
    dot_radius_ratio: float = 0.3  # big dot radius / spacing
    code_radius_ratio: float = 0.18  # small dot radius / spacing
    coded: bool = True  # False for a plain dot grid (no big/small code)


@dataclass(frozen=True, slots=True)
class GridDecoderParams:
    """
    Line extraction, code decoding and assignment thresholds.
    """

    neighbours: int = 8
    direction_tolerance_deg: float = 25.0
    line_distance_tolerance: float = 0.35  # fraction of the running step
    line_angle_tolerance_deg: float = 15.0
    max_gap: int = 1  # missing dots allowed between consecutive line members
    min_line_length: int = 2
    min_code_matches: int = 2
    code_mismatch_penalty: float = 0.25
    max_assignment_cost: float = 0.4
    min_fraction: float = 0.5  # tracking good iff accepted > min_fraction * grid size


@dataclass(frozen=True, slots=True)
class PoseParams:
    """
    Sample-consensus pose estimation.
    """

    iterations: int = 200
    inlier_threshold_px: float = 2.0
    support_fraction: float = 0.9
    min_inliers: int = 6
    sample_size: int = 4
    seed: int = 0


@dataclass(frozen=True, slots=True)
class CalibratorParams:
    """
    Background bundle adjustment.
    """

    max_nfev: int = 50  # function evaluations per pass
    convergence_tol: float = 1e-9
    loss: str = "linear"
    idle_wait_s: float = 0.05


@dataclass(frozen=True, slots=True)
class CalibConfig:
    """
    Complete dotcalib configuration. Corresponds to one TOML file with one
    table per params struct.
    """

    camera_model: str = "fov"
    image_processing: ImageProcessingParams = field(default_factory=ImageProcessingParams)
    conic_finder: ConicFinderParams = field(default_factory=ConicFinderParams)
    target: TargetParams = field(default_factory=TargetParams)
    grid_decoder: GridDecoderParams = field(default_factory=GridDecoderParams)
    pose: PoseParams = field(default_factory=PoseParams)
    calibrator: CalibratorParams = field(default_factory=CalibratorParams)


_SECTIONS = {
    "image_processing": ImageProcessingParams,
    "conic_finder": ConicFinderParams,
    "target": TargetParams,
    "grid_decoder": GridDecoderParams,
    "pose": PoseParams,
    "calibrator": CalibratorParams,
}

_LOSSES = ("linear", "soft_l1", "huber", "cauchy", "arctan")


# ============================================================================
# Validation
# ============================================================================


def _coerce(section: str, name: str, value: Any, default: Any) -> Any:
    """Convert a TOML value to the type of the field default."""
    where = f"[{section}].{name}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{where} must be a boolean, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{where} must be an integer, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{where} must be a number, got {value!r}")
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise ConfigError(f"{where} must be a string, got {value!r}")
        return value
    return value


def _parse_section(name: str, cls: type, data: Any):
    if not isinstance(data, dict):
        raise ConfigError(f"[{name}] must be a table, got {type(data).__name__}")

    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"[{name}] has unknown keys: {sorted(unknown)}")

    kwargs = {
        key: _coerce(name, key, value, getattr(defaults, key)) for key, value in data.items()
    }
    return cls(**kwargs)


def validate_config(config: CalibConfig) -> CalibConfig:
    """
    Check value ranges.

    Raises:
        ConfigError: On the first out-of-range value
    """
    if config.camera_model not in CAMERA_MODELS:
        raise ConfigError(
            f"camera_model must be one of {sorted(CAMERA_MODELS)}, got {config.camera_model!r}"
        )

    ip = config.image_processing
    if not 0.0 < ip.at_threshold <= 2.0:
        raise ConfigError(f"image_processing.at_threshold out of range: {ip.at_threshold}")
    if ip.at_window_ratio <= 0:
        raise ConfigError("image_processing.at_window_ratio must be positive")
    if ip.min_blob_area < 1:
        raise ConfigError("image_processing.min_blob_area must be >= 1")

    cf = config.conic_finder
    if cf.min_area < 0:
        raise ConfigError("conic_finder.min_area must be >= 0")
    if not 0.0 <= cf.min_density <= 1.0:
        raise ConfigError("conic_finder.min_density must be in [0, 1]")
    if not 0.0 <= cf.min_aspect <= 1.0:
        raise ConfigError("conic_finder.min_aspect must be in [0, 1]")

    tg = config.target
    if tg.spacing <= 0:
        raise ConfigError("target.spacing must be positive")
    if tg.cols < 2 or tg.rows < 2:
        raise ConfigError("target grid must be at least 2x2")
    if not 0.0 < tg.code_radius_ratio < tg.dot_radius_ratio < 0.5:
        raise ConfigError(
            "target radii must satisfy 0 < code_radius_ratio < dot_radius_ratio < 0.5"
        )

    gd = config.grid_decoder
    if gd.neighbours < 2:
        raise ConfigError("grid_decoder.neighbours must be >= 2")
    if gd.max_gap < 0:
        raise ConfigError("grid_decoder.max_gap must be >= 0")
    if gd.min_line_length < 2:
        raise ConfigError("grid_decoder.min_line_length must be >= 2")
    if gd.min_code_matches < 2:
        raise ConfigError("grid_decoder.min_code_matches must be >= 2")
    if not 0.0 <= gd.min_fraction < 1.0:
        raise ConfigError("grid_decoder.min_fraction must be in [0, 1)")
    if gd.max_assignment_cost <= 0:
        raise ConfigError("grid_decoder.max_assignment_cost must be positive")

    ps = config.pose
    if ps.sample_size < 4:
        raise ConfigError("pose.sample_size must be >= 4")
    if ps.min_inliers < ps.sample_size:
        raise ConfigError("pose.min_inliers must be >= pose.sample_size")
    if ps.iterations < 1:
        raise ConfigError("pose.iterations must be >= 1")
    if ps.inlier_threshold_px <= 0:
        raise ConfigError("pose.inlier_threshold_px must be positive")
    if not 0.0 < ps.support_fraction <= 1.0:
        raise ConfigError("pose.support_fraction must be in (0, 1]")

    cb = config.calibrator
    if cb.max_nfev < 1:
        raise ConfigError("calibrator.max_nfev must be >= 1")
    if cb.loss not in _LOSSES:
        raise ConfigError(f"calibrator.loss must be one of {list(_LOSSES)}, got {cb.loss!r}")
    if cb.idle_wait_s <= 0:
        raise ConfigError("calibrator.idle_wait_s must be positive")

    return config


# ============================================================================
# TOML Configuration
# ============================================================================


def config_from_dict(data: dict) -> CalibConfig:
    """
    Build a validated CalibConfig from parsed TOML data.

    Raises:
        ConfigError: On unknown sections/keys, wrong types or bad ranges
    """
    unknown = set(data) - set(_SECTIONS) - {"camera_model"}
    if unknown:
        raise ConfigError(f"Unknown configuration sections: {sorted(unknown)}")

    camera_model = data.get("camera_model", CalibConfig.camera_model)
    if not isinstance(camera_model, str):
        raise ConfigError(f"camera_model must be a string, got {camera_model!r}")

    sections = {
        name: _parse_section(name, cls, data.get(name, {})) for name, cls in _SECTIONS.items()
    }
    return validate_config(CalibConfig(camera_model=camera_model, **sections))


def config_to_dict(config: CalibConfig) -> dict:
    data: dict[str, Any] = {"camera_model": config.camera_model}
    for name in _SECTIONS:
        data[name] = asdict(getattr(config, name))
    return data


def load_config(path: Path) -> CalibConfig:
    """
    Load configuration from a TOML file.

    Args:
        path: Path to config.toml file

    Returns:
        CalibConfig dataclass

    Raises:
        ConfigError: If the file cannot be parsed or holds invalid values
    """
    path = Path(path)
    try:
        data = rtoml.load(path)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except rtoml.TomlParsingError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return config_from_dict(data)


def save_config(config: CalibConfig, path: Path) -> None:
    """
    Save configuration to a TOML file.

    Args:
        config: CalibConfig dataclass
        path: Path to save config.toml
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(config_to_dict(config), f)


def create_default_config(camera_model: str = "fov") -> CalibConfig:
    """
    Create a default configuration.

    Args:
        camera_model: Projection model name for new cameras

    Returns:
        CalibConfig with default values in every section
    """
    return validate_config(CalibConfig(camera_model=camera_model))
