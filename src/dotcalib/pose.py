"""
Robust camera pose from 2D-3D correspondences.

Pure functions - no state. Sample consensus over minimal solvePnP
subsets, then nonlinear refinement on the consensus set.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np
from scipy.optimize import least_squares

from .camera import Camera
from .config import PoseParams
from .target import TargetGridDot
from .types import Conic, CorrespondenceMap, Pose, PoseEstimate, pose_from_vector, pose_to_vector

logger = logging.getLogger(__name__)

# Relative singular value below which a point set counts as planar.
PLANARITY_TOLERANCE = 1e-6


def is_planar(points_3d: np.ndarray) -> bool:
    centered = points_3d - points_3d.mean(axis=0)
    s = np.linalg.svd(centered, compute_uv=False)
    if s[0] <= 0.0:
        return True
    return s[-1] / s[0] < PLANARITY_TOLERANCE


def reprojection_errors(
    camera: Camera,
    pose: Pose,
    points_2d: np.ndarray,
    points_3d: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Per-point pixel error and depth of points_3d under pose T_cw.

    Returns:
        ((n,) pixel errors, (n,) camera-frame depths)
    """
    points_cam = pose.apply(points_3d)
    projected = camera.project(points_cam)
    errors = np.linalg.norm(projected - points_2d, axis=1)
    return errors, points_cam[:, 2]


def _count_inliers(errors: np.ndarray, depths: np.ndarray, threshold: float) -> np.ndarray:
    return np.isfinite(errors) & (errors < threshold) & (depths > 0.0)


def _solve_minimal(
    object_points: np.ndarray,
    normalized: np.ndarray,
    flag: int,
) -> Pose | None:
    try:
        ok, rvec, tvec = cv2.solvePnP(
            object_points.reshape(-1, 1, 3),
            normalized.reshape(-1, 1, 2),
            np.eye(3, dtype=np.float64),
            None,
            flags=flag,
        )
    except cv2.error:
        return None
    if not ok or not np.all(np.isfinite(rvec)) or not np.all(np.isfinite(tvec)):
        return None
    return pose_from_vector(np.hstack([rvec.ravel(), tvec.ravel()]))


def refine_pose(
    camera: Camera,
    pose: Pose,
    points_2d: np.ndarray,
    points_3d: np.ndarray,
) -> Pose:
    """
    Least-squares refinement of T_cw over pixel reprojection error.
    """

    def residuals(x: np.ndarray) -> np.ndarray:
        candidate = pose_from_vector(x)
        projected = camera.project(candidate.apply(points_3d))
        return (projected - points_2d).ravel()

    result = least_squares(
        residuals,
        pose_to_vector(pose),
        method="trf",
        x_scale="jac",
        loss="linear",
        ftol=1e-10,
        xtol=1e-10,
    )
    return pose_from_vector(result.x)


def estimate_pose(
    camera: Camera,
    points_2d: np.ndarray,
    points_3d: np.ndarray,
    params: PoseParams | None = None,
    rng: np.random.Generator | None = None,
) -> PoseEstimate | None:
    """
    Robust pose T_cw of a camera from 2D-3D correspondences.

    Args:
        camera: Camera whose projection model interprets points_2d
        points_2d: (n, 2) pixel observations
        points_3d: (n, 3) matching points in target coordinates
        params: Consensus parameters (defaults if None)
        rng: Random generator for sampling (seeded from params if None)

    Returns:
        PoseEstimate, or None if no pose gathers min_inliers inliers

    Raises:
        ValueError: If the point arrays have mismatched or wrong shapes
    """
    if params is None:
        params = PoseParams()

    points_2d = np.asarray(points_2d, dtype=np.float64)
    points_3d = np.asarray(points_3d, dtype=np.float64)
    if points_2d.ndim != 2 or points_2d.shape[1] != 2:
        raise ValueError(f"points_2d must be (n, 2), got {points_2d.shape}")
    if points_3d.ndim != 2 or points_3d.shape[1] != 3:
        raise ValueError(f"points_3d must be (n, 3), got {points_3d.shape}")
    if points_2d.shape[0] != points_3d.shape[0]:
        raise ValueError(
            f"Point count mismatch: {points_2d.shape[0]} 2D vs {points_3d.shape[0]} 3D"
        )

    n = points_2d.shape[0]
    if n < max(params.sample_size, params.min_inliers):
        return None

    if rng is None:
        rng = np.random.default_rng(params.seed)

    normalized = camera.unproject(points_2d)
    valid = np.all(np.isfinite(normalized), axis=1)
    valid_idx = np.flatnonzero(valid)
    if valid_idx.size < params.sample_size:
        return None

    flag = cv2.SOLVEPNP_IPPE if is_planar(points_3d) else cv2.SOLVEPNP_EPNP
    needed = params.support_fraction * n

    best_pose: Pose | None = None
    best_inliers = np.zeros(n, dtype=bool)
    for _ in range(params.iterations):
        sample = rng.choice(valid_idx, size=params.sample_size, replace=False)
        pose = _solve_minimal(points_3d[sample], normalized[sample], flag)
        if pose is None:
            continue
        errors, depths = reprojection_errors(camera, pose, points_2d, points_3d)
        inliers = _count_inliers(errors, depths, params.inlier_threshold_px)
        if inliers.sum() > best_inliers.sum():
            best_pose, best_inliers = pose, inliers
            if best_inliers.sum() >= needed:
                break

    if best_pose is None or best_inliers.sum() < params.sample_size:
        logger.debug("No consensus pose from %d correspondences", n)
        return None

    pose = refine_pose(camera, best_pose, points_2d[best_inliers], points_3d[best_inliers])
    errors, depths = reprojection_errors(camera, pose, points_2d, points_3d)
    inliers = _count_inliers(errors, depths, params.inlier_threshold_px)
    if inliers.sum() < best_inliers.sum():
        # Refinement drifted; keep the consensus pose
        pose = best_pose
        errors, depths = reprojection_errors(camera, pose, points_2d, points_3d)
        inliers = _count_inliers(errors, depths, params.inlier_threshold_px)

    if inliers.sum() < params.min_inliers:
        logger.debug("Pose rejected: %d inliers < %d", inliers.sum(), params.min_inliers)
        return None

    rms = float(np.sqrt(np.mean(errors[inliers] ** 2)))
    return PoseEstimate(pose=pose, inliers=inliers, rms_error=rms)


def pose_from_correspondence(
    camera: Camera,
    conics: list[Conic],
    correspondence: CorrespondenceMap,
    target: TargetGridDot,
    params: PoseParams | None = None,
) -> PoseEstimate | None:
    """
    Pose T_cw of a camera from a decoded correspondence.

    Returns None when tracking is not good or the estimator fails.
    """
    if not correspondence.tracking_good:
        return None
    matched = correspondence.matched()
    if not matched:
        return None
    points_2d = correspondence.image_points(conics)
    points_3d = np.array([target.point_3d(c, r) for _, (c, r) in matched], dtype=np.float64)
    return estimate_pose(camera, points_2d, points_3d, params)
