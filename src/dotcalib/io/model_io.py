"""
Camera model files.

Calibrated cameras are stored as TOML, one [cameras.<id>] table each:
model name, image size, intrinsic parameters and the rig transform T_ck
as Rodrigues rotation + translation.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import numpy as np
import rtoml

from ..camera import Camera, get_camera_model
from ..types import pose_from_vector, pose_to_vector

logger = logging.getLogger(__name__)


class CameraModelWriter(Protocol):
    """Anything that can persist the calibrated rig."""

    def write(self, cameras: dict[int, Camera]) -> None: ...


class TomlCameraModelWriter:
    """Writes camera models to a TOML file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def write(self, cameras: dict[int, Camera]) -> None:
        write_camera_models(cameras, self.path)

    def __repr__(self) -> str:
        return f"TomlCameraModelWriter({str(self.path)!r})"


def camera_to_dict(camera: Camera) -> dict:
    vector = pose_to_vector(camera.T_ck)
    return {
        "model": camera.model_name,
        "size": [int(camera.width), int(camera.height)],
        "params": [float(p) for p in camera.params],
        "param_names": list(camera.model.param_names),
        "rotation": vector[0:3].tolist(),
        "translation": vector[3:6].tolist(),
    }


def camera_from_dict(index: int, data: dict) -> Camera:
    """
    Raises:
        ValueError: On a missing key or an unknown model
    """
    try:
        model = get_camera_model(data["model"])
        width, height = data["size"]
        T_ck = pose_from_vector(np.hstack([data["rotation"], data["translation"]]))
        return Camera(
            model=model,
            params=np.asarray(data["params"], dtype=np.float64),
            width=int(width),
            height=int(height),
            index=index,
            T_ck=T_ck,
        )
    except KeyError as exc:
        raise ValueError(f"Camera {index} is missing key {exc}") from None


def write_camera_models(cameras: dict[int, Camera], path: Path) -> None:
    """
    Save cameras to a TOML file.

    Args:
        cameras: Dict of camera id -> Camera
        path: Path to the output .toml file
    """
    path = Path(path)
    data = {"cameras": {str(cam_id): camera_to_dict(cam) for cam_id, cam in sorted(cameras.items())}}

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)

    logger.info("Wrote %d camera models to %s", len(cameras), path)


def load_camera_models(path: Path) -> dict[int, Camera]:
    """
    Load cameras from a TOML file written by write_camera_models().

    Returns:
        Dict of camera id -> Camera
    """
    data = rtoml.load(Path(path))
    return {
        int(cam_id): camera_from_dict(int(cam_id), cam_data)
        for cam_id, cam_data in data.get("cameras", {}).items()
    }
