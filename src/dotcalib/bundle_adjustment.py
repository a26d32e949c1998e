"""
Multi-camera bundle adjustment over target observations.

Pure functions - no classes holding state. Jointly refines camera
intrinsics, the rig transform T_ck of every non-anchor camera and the rig
pose T_kw of every frame, so that a target point P_w observed by camera c
in frame k projects through T_ck * T_kw * P_w onto its pixel observation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from scipy.spatial.transform import Rotation

from .camera import Camera
from .config import CalibratorParams
from .errors import PassCancelled
from .types import Observation, Pose, pose_from_vector, pose_to_vector

logger = logging.getLogger(__name__)

POSE_PARAM_COUNT = 6


# ============================================================================
# Data Structures for Bundle Adjustment
# ============================================================================


@dataclass
class ObservationArrays:
    """
    Observations flattened into parallel arrays.
    """

    frame_ids: np.ndarray  # (n,) frame id of each observation
    camera_ids: np.ndarray  # (n,) camera id of each observation
    points_3d: np.ndarray  # (n, 3) target coordinates
    points_2d: np.ndarray  # (n, 2) pixel coordinates

    @classmethod
    def from_observations(cls, observations: Sequence[Observation]) -> "ObservationArrays":
        n = len(observations)
        return cls(
            frame_ids=np.fromiter((o.frame_id for o in observations), dtype=np.int64, count=n),
            camera_ids=np.fromiter((o.camera_id for o in observations), dtype=np.int64, count=n),
            points_3d=np.array([o.point_3d for o in observations], dtype=np.float64).reshape(n, 3),
            points_2d=np.array([o.point_2d for o in observations], dtype=np.float64).reshape(n, 2),
        )

    @property
    def n_observations(self) -> int:
        return self.points_2d.shape[0]


@dataclass
class ParameterLayout:
    """
    Where each camera / frame block lives in the optimization vector.
    """

    intrinsic_slices: dict[int, slice]
    transform_slices: dict[int, slice]  # non-anchor cameras only
    frame_slices: dict[int, slice]
    anchor: int
    size: int

    @classmethod
    def build(
        cls,
        cameras: dict[int, Camera],
        camera_ids: list[int],
        frame_ids: list[int],
        anchor: int,
    ) -> "ParameterLayout":
        offset = 0
        intrinsic_slices = {}
        for cam_id in camera_ids:
            n = cameras[cam_id].model.num_params
            intrinsic_slices[cam_id] = slice(offset, offset + n)
            offset += n

        transform_slices = {}
        for cam_id in camera_ids:
            if cam_id == anchor:
                continue
            transform_slices[cam_id] = slice(offset, offset + POSE_PARAM_COUNT)
            offset += POSE_PARAM_COUNT

        frame_slices = {}
        for frame_id in frame_ids:
            frame_slices[frame_id] = slice(offset, offset + POSE_PARAM_COUNT)
            offset += POSE_PARAM_COUNT

        return cls(intrinsic_slices, transform_slices, frame_slices, anchor, offset)


@dataclass(frozen=True)
class BundleAdjustmentResult:
    cameras: dict[int, Camera]
    frames: dict[int, Pose]
    mean_square_error: float
    converged: bool
    nfev: int


# ============================================================================
# Residuals
# ============================================================================


def _transform(rotvecs: np.ndarray, translations: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply per-row rotation-vector transforms to per-row points."""
    return Rotation.from_rotvec(rotvecs).apply(points) + translations


def _project_observations(
    x: np.ndarray,
    layout: ParameterLayout,
    cameras: dict[int, Camera],
    obs: ObservationArrays,
    frame_index: np.ndarray,
) -> np.ndarray:
    """
    Project every observation's target point with the parameters in x.
    """
    frame_params = x[layout.size - len(layout.frame_slices) * POSE_PARAM_COUNT : layout.size]
    frame_params = frame_params.reshape(-1, POSE_PARAM_COUNT)[frame_index]
    points_k = _transform(frame_params[:, 0:3], frame_params[:, 3:6], obs.points_3d)

    projected = np.zeros((obs.n_observations, 2), dtype=np.float64)
    for cam_id, intr_slice in layout.intrinsic_slices.items():
        mask = obs.camera_ids == cam_id
        if not np.any(mask):
            continue

        points_c = points_k[mask]
        if cam_id in layout.transform_slices:
            t_ck = x[layout.transform_slices[cam_id]]
            rot = Rotation.from_rotvec(t_ck[0:3])
            points_c = rot.apply(points_c) + t_ck[3:6]
        else:
            # Anchor camera: T_ck held fixed
            points_c = cameras[cam_id].T_ck.apply(points_c)

        projected[mask] = cameras[cam_id].model.project(x[intr_slice], points_c)

    return projected


def _residuals(
    x: np.ndarray,
    layout: ParameterLayout,
    cameras: dict[int, Camera],
    obs: ObservationArrays,
    frame_index: np.ndarray,
    cancel: threading.Event | None,
) -> np.ndarray:
    if cancel is not None and cancel.is_set():
        raise PassCancelled()
    projected = _project_observations(x, layout, cameras, obs, frame_index)
    return (projected - obs.points_2d).ravel()


def _get_sparsity_pattern(
    layout: ParameterLayout,
    obs: ObservationArrays,
) -> lil_matrix:
    """
    Build sparse Jacobian pattern for least_squares.
    """
    m = obs.n_observations * 2  # 2 residuals per observation (x, y)
    A = lil_matrix((m, layout.size), dtype=int)

    i = np.arange(obs.n_observations)

    # Intrinsics and rig transform of the observing camera
    for cam_id, intr_slice in layout.intrinsic_slices.items():
        rows = i[obs.camera_ids == cam_id]
        blocks = [intr_slice]
        if cam_id in layout.transform_slices:
            blocks.append(layout.transform_slices[cam_id])
        for block in blocks:
            for col in range(block.start, block.stop):
                A[2 * rows, col] = 1
                A[2 * rows + 1, col] = 1

    # Frame pose of the observation
    for frame_id, frame_slice in layout.frame_slices.items():
        rows = i[obs.frame_ids == frame_id]
        for col in range(frame_slice.start, frame_slice.stop):
            A[2 * rows, col] = 1
            A[2 * rows + 1, col] = 1

    return A


def _pack(
    layout: ParameterLayout,
    cameras: dict[int, Camera],
    frames: dict[int, Pose],
) -> np.ndarray:
    x = np.zeros(layout.size, dtype=np.float64)
    for cam_id, intr_slice in layout.intrinsic_slices.items():
        x[intr_slice] = cameras[cam_id].params
    for cam_id, t_slice in layout.transform_slices.items():
        x[t_slice] = pose_to_vector(cameras[cam_id].T_ck)
    for frame_id, f_slice in layout.frame_slices.items():
        x[f_slice] = pose_to_vector(frames[frame_id])
    return x


def _frame_index(layout: ParameterLayout, obs: ObservationArrays) -> np.ndarray:
    position = {frame_id: k for k, frame_id in enumerate(layout.frame_slices)}
    return np.fromiter(
        (position[f] for f in obs.frame_ids), dtype=np.int64, count=obs.n_observations
    )


def _select_anchor(camera_ids: list[int], reference_id: int) -> int:
    return reference_id if reference_id in camera_ids else min(camera_ids)


def _check_references(
    cameras: dict[int, Camera],
    frames: dict[int, Pose],
    obs: ObservationArrays,
) -> tuple[list[int], list[int]]:
    camera_ids = sorted(set(obs.camera_ids.tolist()))
    frame_ids = sorted(set(obs.frame_ids.tolist()))
    missing_cams = [c for c in camera_ids if c not in cameras]
    missing_frames = [f for f in frame_ids if f not in frames]
    if missing_cams or missing_frames:
        raise ValueError(
            f"Observations reference unknown cameras {missing_cams} or frames {missing_frames}"
        )
    return camera_ids, frame_ids


# ============================================================================
# Bundle Adjustment
# ============================================================================


def compute_mean_square_error(
    cameras: dict[int, Camera],
    frames: dict[int, Pose],
    observations: Sequence[Observation],
) -> float:
    """
    Mean over observations of the squared pixel reprojection error.

    Returns:
        NaN for an empty observation list
    """
    if len(observations) == 0:
        return float("nan")

    obs = ObservationArrays.from_observations(observations)
    camera_ids, frame_ids = _check_references(cameras, frames, obs)

    layout = ParameterLayout.build(cameras, camera_ids, frame_ids, anchor=-1)
    x = _pack(layout, cameras, frames)
    projected = _project_observations(x, layout, cameras, obs, _frame_index(layout, obs))
    error = projected - obs.points_2d
    return float(np.mean(np.sum(error**2, axis=1)))


def run_bundle_adjustment(
    cameras: dict[int, Camera],
    frames: dict[int, Pose],
    observations: Sequence[Observation],
    reference_id: int = 0,
    params: CalibratorParams | None = None,
    cancel: threading.Event | None = None,
) -> BundleAdjustmentResult:
    """
    Run bundle adjustment over intrinsics, rig transforms and frame poses.

    Only cameras and frames referenced by observations are refined. The
    anchor camera (reference_id if observed, else the lowest observed id)
    keeps its T_ck fixed.

    Args:
        cameras: Dict of camera id -> Camera (initial values)
        frames: Dict of frame id -> rig pose T_kw (initial values)
        observations: Observations to fit
        reference_id: Rig reference camera id
        params: Optimizer bounds (defaults if None)
        cancel: Event that aborts the pass when set

    Returns:
        BundleAdjustmentResult with refined copies of all given cameras
        and the refined observed frames

    Raises:
        ValueError: If there are no observations or they reference
            unknown cameras/frames
        PassCancelled: If cancel was set during the pass
    """
    if params is None:
        params = CalibratorParams()
    if len(observations) == 0:
        raise ValueError("Bundle adjustment needs at least one observation")

    obs = ObservationArrays.from_observations(observations)
    camera_ids, frame_ids = _check_references(cameras, frames, obs)
    anchor = _select_anchor(camera_ids, reference_id)

    layout = ParameterLayout.build(cameras, camera_ids, frame_ids, anchor)
    x0 = _pack(layout, cameras, frames)
    frame_index = _frame_index(layout, obs)
    sparsity = _get_sparsity_pattern(layout, obs)

    result = least_squares(
        _residuals,
        x0,
        jac_sparsity=sparsity,
        verbose=0,
        x_scale="jac",
        loss=params.loss,
        ftol=params.convergence_tol,
        xtol=params.convergence_tol,
        gtol=params.convergence_tol,
        max_nfev=params.max_nfev,
        method="trf",
        args=(layout, cameras, obs, frame_index, cancel),
    )

    refined_cameras = dict(cameras)
    for cam_id, intr_slice in layout.intrinsic_slices.items():
        cam = cameras[cam_id].with_params(result.x[intr_slice])
        if cam_id in layout.transform_slices:
            cam = cam.with_transform(pose_from_vector(result.x[layout.transform_slices[cam_id]]))
        refined_cameras[cam_id] = cam

    refined_frames = {
        frame_id: pose_from_vector(result.x[f_slice])
        for frame_id, f_slice in layout.frame_slices.items()
    }

    final_error = result.fun.reshape(-1, 2)
    mse = float(np.mean(np.sum(final_error**2, axis=1)))
    if not np.isfinite(mse):
        raise ValueError("Bundle adjustment diverged to a non-finite error")

    logger.debug(
        "BA: %d observations, %d cameras, %d frames, mse=%.6g, status=%d, nfev=%d",
        obs.n_observations,
        len(camera_ids),
        len(frame_ids),
        mse,
        result.status,
        result.nfev,
    )

    return BundleAdjustmentResult(
        cameras=refined_cameras,
        frames=refined_frames,
        mean_square_error=mse,
        converged=bool(result.status > 0),
        nfev=int(result.nfev),
    )
