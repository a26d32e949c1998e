"""
Camera projection models and the rig camera record.

A model is a stateless object exposing project()/unproject() over a flat
parameter vector; the core never looks inside the parameters beyond the
first four (fx, fy, cx, cy), which every model shares.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

import cv2
import numpy as np

from .types import Pose

# Points closer to the image plane than this are clamped before division.
MIN_DEPTH = 1e-9

_SMALL = 1e-8


def _split_depth(points_cam: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    points_cam = np.asarray(points_cam, dtype=np.float64).reshape(-1, 3)
    z = points_cam[:, 2]
    z = np.where(np.abs(z) < MIN_DEPTH, MIN_DEPTH, z)
    return points_cam[:, 0] / z, points_cam[:, 1] / z


class CameraModel:
    """Base class for projection models."""

    name: str = ""
    param_names: tuple[str, ...] = ()

    @property
    def num_params(self) -> int:
        return len(self.param_names)

    def default_params(self, width: int, height: int) -> np.ndarray:
        raise NotImplementedError

    def project(self, params: np.ndarray, points_cam: np.ndarray) -> np.ndarray:
        """Camera-frame 3D points (N, 3) -> pixels (N, 2)."""
        raise NotImplementedError

    def unproject(self, params: np.ndarray, uv: np.ndarray) -> np.ndarray:
        """Pixels (N, 2) -> normalized image coordinates (N, 2) on z = 1."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class PinholeModel(CameraModel):
    name = "pinhole"
    param_names = ("fx", "fy", "cx", "cy")

    def default_params(self, width: int, height: int) -> np.ndarray:
        return np.array([300.0, 300.0, width / 2.0, height / 2.0])

    def project(self, params, points_cam):
        fx, fy, cx, cy = params[:4]
        x, y = _split_depth(points_cam)
        return np.column_stack([fx * x + cx, fy * y + cy])

    def unproject(self, params, uv):
        fx, fy, cx, cy = params[:4]
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        return np.column_stack([(uv[:, 0] - cx) / fx, (uv[:, 1] - cy) / fy])


class FovModel(CameraModel):
    """
    Single-parameter field-of-view distortion model.

    Distorted radius rd = atan(2 r tan(w/2)) / w for undistorted radius r.
    """

    name = "fov"
    param_names = ("fx", "fy", "cx", "cy", "w")

    def default_params(self, width: int, height: int) -> np.ndarray:
        return np.array([300.0, 300.0, width / 2.0, height / 2.0, 0.2])

    @staticmethod
    def _distort_factor(r: np.ndarray, w: float) -> np.ndarray:
        if abs(w) < _SMALL:
            return np.ones_like(r)
        mul2tanwby2 = 2.0 * np.tan(w / 2.0)
        safe_r = np.where(r < _SMALL, 1.0, r)
        factor = np.arctan(safe_r * mul2tanwby2) / (safe_r * w)
        return np.where(r < _SMALL, mul2tanwby2 / w, factor)

    @staticmethod
    def _undistort_factor(rd: np.ndarray, w: float) -> np.ndarray:
        if abs(w) < _SMALL:
            return np.ones_like(rd)
        mul2tanwby2 = 2.0 * np.tan(w / 2.0)
        safe_rd = np.where(rd < _SMALL, 1.0, rd)
        factor = np.tan(safe_rd * w) / (safe_rd * mul2tanwby2)
        return np.where(rd < _SMALL, w / mul2tanwby2, factor)

    def project(self, params, points_cam):
        fx, fy, cx, cy, w = params[:5]
        x, y = _split_depth(points_cam)
        factor = self._distort_factor(np.hypot(x, y), w)
        return np.column_stack([fx * factor * x + cx, fy * factor * y + cy])

    def unproject(self, params, uv):
        fx, fy, cx, cy, w = params[:5]
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
        xd = (uv[:, 0] - cx) / fx
        yd = (uv[:, 1] - cy) / fy
        factor = self._undistort_factor(np.hypot(xd, yd), w)
        return np.column_stack([factor * xd, factor * yd])


class BrownModel(CameraModel):
    """
    Brown-Conrady radial/tangential model in OpenCV coefficient order.
    """

    name = "brown"
    param_names = ("fx", "fy", "cx", "cy", "k1", "k2", "p1", "p2", "k3")

    def default_params(self, width: int, height: int) -> np.ndarray:
        return np.array([300.0, 300.0, width / 2.0, height / 2.0, 0.0, 0.0, 0.0, 0.0, 0.0])

    def project(self, params, points_cam):
        fx, fy, cx, cy, k1, k2, p1, p2, k3 = params[:9]
        x, y = _split_depth(points_cam)
        r2 = x * x + y * y
        radial = 1.0 + k1 * r2 + k2 * r2 * r2 + k3 * r2 * r2 * r2
        xd = x * radial + 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
        yd = y * radial + p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
        return np.column_stack([fx * xd + cx, fy * yd + cy])

    def unproject(self, params, uv):
        fx, fy, cx, cy = params[:4]
        uv = np.asarray(uv, dtype=np.float64).reshape(-1, 1, 2)
        if uv.shape[0] == 0:
            return np.zeros((0, 2), dtype=np.float64)
        matrix = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)
        dist = np.asarray(params[4:9], dtype=np.float64)
        undistorted = cv2.undistortPoints(uv, matrix, dist)
        return undistorted.reshape(-1, 2).astype(np.float64)


CAMERA_MODELS: dict[str, CameraModel] = {
    model.name: model for model in (FovModel(), PinholeModel(), BrownModel())
}


def get_camera_model(name: str) -> CameraModel:
    """
    Look up a projection model by name.

    Raises:
        ValueError: If the name is not registered
    """
    try:
        return CAMERA_MODELS[name]
    except KeyError:
        raise ValueError(
            f"Unknown camera model {name!r}, expected one of {sorted(CAMERA_MODELS)}"
        ) from None


# ============================================================================
# Rig camera
# ============================================================================


@dataclass(frozen=True, eq=False)
class Camera:
    """
    One rig member: projection model, intrinsics and the rig -> camera
    transform T_ck. Values are replaced, never edited in place.
    """

    model: CameraModel
    params: np.ndarray
    width: int
    height: int
    index: int = -1
    T_ck: Pose = field(default_factory=Pose.identity)

    def __post_init__(self):
        params = np.asarray(self.params, dtype=np.float64).reshape(-1).copy()
        if params.shape[0] != self.model.num_params:
            raise ValueError(
                f"{self.model.name} model takes {self.model.num_params} parameters, "
                f"got {params.shape[0]}"
            )
        params.setflags(write=False)
        object.__setattr__(self, "params", params)

    @property
    def model_name(self) -> str:
        return self.model.name

    @property
    def matrix(self) -> np.ndarray:
        fx, fy, cx, cy = self.params[:4]
        return np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        return self.model.project(self.params, points_cam)

    def unproject(self, uv: np.ndarray) -> np.ndarray:
        return self.model.unproject(self.params, uv)

    def with_params(self, params: np.ndarray) -> "Camera":
        return replace(self, params=params)

    def with_transform(self, T_ck: Pose) -> "Camera":
        return replace(self, T_ck=T_ck)

    def with_index(self, index: int) -> "Camera":
        return replace(self, index=index)


def default_camera(model_name: str, width: int, height: int) -> Camera:
    """
    Initial camera guess: fx = fy = 300, principal point at the image
    centre, model-specific distortion defaults.
    """
    model = get_camera_model(model_name)
    return Camera(
        model=model,
        params=model.default_params(width, height),
        width=width,
        height=height,
    )
