"""
Synthetic target views for tests and demos.

Projects the dot target through a camera into ideal blob moments (and,
optionally, a rendered grayscale image), so the recognition pipeline and
the calibrator can be exercised against known ground truth.
"""

from __future__ import annotations

import math

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from .camera import Camera
from .target import TargetGridDot
from .types import BBox, Blob, Pose

_JACOBIAN_STEP = 1e-6


def target_pose(
    target: TargetGridDot,
    distance: float,
    rx: float = 0.0,
    ry: float = 0.0,
    rz: float = 0.0,
    offset: tuple[float, float] = (0.0, 0.0),
) -> Pose:
    """
    T_cw placing the target centre at (offset, distance) in front of the
    camera, rotated by xyz Euler angles (degrees) about its centre.
    """
    centre = np.array(
        [(target.cols - 1) * target.spacing / 2.0, (target.rows - 1) * target.spacing / 2.0, 0.0]
    )
    rotation = Rotation.from_euler("xyz", [rx, ry, rz], degrees=True).as_matrix()
    translation = np.array([offset[0], offset[1], distance]) - rotation @ centre
    return Pose(rotation=rotation, translation=translation)


def rig_transform(offset_x: float, distance: float) -> Pose:
    """
    T_ck of a camera displaced offset_x along the rig x axis and turned
    about y to look at the rig point (0, 0, distance).
    """
    angle = math.atan2(offset_x, distance)
    rotation = Rotation.from_rotvec([0.0, angle, 0.0]).as_matrix()
    position = np.array([offset_x, 0.0, 0.0])
    return Pose(rotation=rotation, translation=-rotation @ position)


def make_blob(
    center: tuple[float, float],
    major: float,
    minor: float,
    angle: float = 0.0,
) -> Blob:
    """
    Moments of an ideal filled ellipse (semi-axes major/minor, angle in
    radians).
    """
    c, s = math.cos(angle), math.sin(angle)
    rot = np.array([[c, -s], [s, c]])
    axes = rot @ np.diag([major, minor])
    return _ellipse_blob(np.asarray(center, dtype=np.float64), axes)


def _ellipse_blob(center: np.ndarray, axes: np.ndarray) -> Blob:
    """Blob of the filled ellipse {center + axes @ u : |u| <= 1}."""
    shape = axes @ axes.T
    cov = shape / 4.0
    half_x = math.sqrt(shape[0, 0])
    half_y = math.sqrt(shape[1, 1])
    area = math.pi * abs(float(np.linalg.det(axes)))
    return Blob(
        centroid=(float(center[0]), float(center[1])),
        bbox=BBox(
            float(center[0] - half_x),
            float(center[1] - half_y),
            float(center[0] + half_x),
            float(center[1] + half_y),
        ),
        area=area,
        moments=(float(cov[0, 0]), float(cov[0, 1]), float(cov[1, 1])),
    )


def _in_image(camera: Camera, uv: np.ndarray, margin: float) -> bool:
    return margin <= uv[0] < camera.width - margin and margin <= uv[1] < camera.height - margin


def project_dots(
    camera: Camera,
    pose: Pose,
    target: TargetGridDot,
    margin: float = 2.0,
) -> list[tuple[tuple[int, int], np.ndarray, np.ndarray]]:
    """
    Image ellipse of every visible dot.

    Args:
        camera: Camera model (T_ck is ignored; pose is camera-relative)
        pose: T_cw of the target
        target: Target geometry
        margin: Dots closer than this to the image border are dropped

    Returns:
        List of ((col, row), center (2,), axes (2, 2))
    """
    dots = []
    ex = np.array([_JACOBIAN_STEP, 0.0, 0.0])
    ey = np.array([0.0, _JACOBIAN_STEP, 0.0])
    for col, row in target.grid_coords():
        p = target.point_3d(int(col), int(row))
        p_cam = pose.apply(np.vstack([p, p + ex, p - ex, p + ey, p - ey]))
        if np.any(p_cam[:, 2] <= 0.0):
            continue
        uv = camera.project(p_cam)
        center = uv[0]
        if not _in_image(camera, center, margin):
            continue
        jac = np.column_stack(
            [(uv[1] - uv[2]) / (2 * _JACOBIAN_STEP), (uv[3] - uv[4]) / (2 * _JACOBIAN_STEP)]
        )
        axes = jac * target.radius(int(col), int(row))
        dots.append(((int(col), int(row)), center, axes))
    return dots


def synthetic_blobs(
    camera: Camera,
    pose: Pose,
    target: TargetGridDot,
    noise_px: float = 0.0,
    rng: np.random.Generator | None = None,
    exclude: set[tuple[int, int]] | None = None,
) -> tuple[list[Blob], list[tuple[int, int]]]:
    """
    Ideal blobs of the visible dots.

    Returns:
        (blobs, grid coordinate of each blob)
    """
    if rng is None:
        rng = np.random.default_rng(0)
    exclude = exclude or set()

    blobs, coords = [], []
    for grid, center, axes in project_dots(camera, pose, target):
        if grid in exclude:
            continue
        if noise_px > 0.0:
            center = center + rng.normal(0.0, noise_px, size=2)
        blobs.append(_ellipse_blob(center, axes))
        coords.append(grid)
    return blobs, coords


def render_target(
    camera: Camera,
    pose: Pose,
    target: TargetGridDot,
    background: int = 230,
    foreground: int = 20,
) -> np.ndarray:
    """
    Render dark dots on a light background as a uint8 image.
    """
    image = np.full((camera.height, camera.width), background, dtype=np.uint8)
    shift = 4
    scale = 1 << shift
    for _, center, axes in project_dots(camera, pose, target):
        shape = axes @ axes.T
        evals, evecs = np.linalg.eigh(shape)
        major, minor = math.sqrt(max(evals[1], 0.0)), math.sqrt(max(evals[0], 0.0))
        angle = math.degrees(math.atan2(evecs[1, 1], evecs[0, 1]))
        cv2.ellipse(
            image,
            (int(round(center[0] * scale)), int(round(center[1] * scale))),
            (int(round(major * scale)), int(round(minor * scale))),
            angle,
            0,
            360,
            int(foreground),
            thickness=-1,
            lineType=cv2.LINE_AA,
            shift=shift,
        )
    return image
