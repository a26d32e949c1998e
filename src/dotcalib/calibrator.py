"""
Incremental calibration engine.

Acquisition threads append cameras, frames and observations while a
background worker keeps re-running bundle adjustment. Each pass works on a
copy of the data taken at pass start and publishes an immutable
CalibrationSnapshot; readers always see a whole snapshot.

Locks (acquire in this order, never the reverse):
    _status  - waiters on pass progress
    _ingest  - cameras, frame seeds, observation list
_state_lock only guards the snapshot reference and is never held with the
others. _pass_lock serializes passes.
"""

from __future__ import annotations

import logging
import math
import threading
from enum import Enum
from pathlib import Path
from types import MappingProxyType

import numpy as np

from .bundle_adjustment import run_bundle_adjustment
from .camera import Camera
from .config import CalibratorParams
from .errors import Failure, PassCancelled
from .io.model_io import CameraModelWriter, write_camera_models
from .types import CalibrationSnapshot, Observation, Pose, pose_to_vector

logger = logging.getLogger(__name__)

REFERENCE_CAMERA = 0


class CalibratorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class Calibrator:
    """
    Multi-camera rig calibration with background refinement.

    Camera ids and frame ids are assigned sequentially from 0. Camera 0 is
    the rig reference; its T_ck is the identity and never refined.
    """

    def __init__(self, params: CalibratorParams | None = None):
        self.params = params or CalibratorParams()

        self._ingest_lock = threading.Lock()
        self._wake = threading.Condition(self._ingest_lock)
        self._state_lock = threading.Lock()
        self._status = threading.Condition()
        self._pass_lock = threading.Lock()

        self._cameras: dict[int, Camera] = {}
        self._frame_seeds: dict[int, Pose] = {}
        self._observations: list[Observation] = []
        self._accepting = True

        self._snapshot = CalibrationSnapshot()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._busy = False

        self.failed_passes = 0
        self.last_error: BaseException | None = None
        self._last_failed_count = -1

    # ========================================================================
    # Ingestion
    # ========================================================================

    @property
    def accepting(self) -> bool:
        """Whether add_frame() creates frames (the "add frames" toggle)."""
        return self._accepting

    @accepting.setter
    def accepting(self, value: bool) -> None:
        self._accepting = bool(value)

    def add_camera(self, camera: Camera) -> int:
        """
        Register a rig camera.

        Returns:
            Stable camera id; the first camera becomes the reference
        """
        with self._ingest_lock:
            cam_id = len(self._cameras)
            camera = camera.with_index(cam_id)
            if cam_id == REFERENCE_CAMERA:
                camera = camera.with_transform(Pose.identity())
            self._cameras[cam_id] = camera
        logger.info("Added camera %d (%s, %dx%d)", cam_id, camera.model_name, camera.width, camera.height)
        return cam_id

    def add_frame(self, seed_pose: Pose) -> int | None:
        """
        Create a frame with an initial rig pose T_kw.

        Returns:
            Frame id, or None when frames are not being accepted
        """
        if not self._accepting:
            return None
        with self._ingest_lock:
            frame_id = len(self._frame_seeds)
            self._frame_seeds[frame_id] = seed_pose
        return frame_id

    def set_frame_seed(self, frame_id: int, pose: Pose) -> bool:
        """
        Replace the seed of a frame that no pass has refined yet.
        """
        with self._ingest_lock:
            if frame_id not in self._frame_seeds or frame_id in self._snapshot.frames:
                return False
            self._frame_seeds[frame_id] = pose
        return True

    def set_camera_transform(self, camera_id: int, T_ck: Pose) -> bool:
        """
        Initial rig transform guess for a non-reference camera that no pass
        has refined yet.
        """
        with self._ingest_lock:
            if camera_id == REFERENCE_CAMERA or camera_id not in self._cameras:
                return False
            if camera_id in self._snapshot.cameras:
                return False
            self._cameras[camera_id] = self._cameras[camera_id].with_transform(T_ck)
        return True

    def add_observation(self, frame_id: int, camera_id: int, point_3d, point_2d) -> bool:
        """
        Append one target point observation.

        Returns:
            False (and nothing is stored) for unknown ids or non-finite values

        Raises:
            ValueError: If point_3d is not 3 values or point_2d not 2 values
        """
        p3 = np.asarray(point_3d, dtype=np.float64).reshape(-1)
        p2 = np.asarray(point_2d, dtype=np.float64).reshape(-1)
        if p3.shape != (3,) or p2.shape != (2,):
            raise ValueError(
                f"Observation needs a 3D and a 2D point, got shapes {p3.shape} and {p2.shape}"
            )
        if not (np.all(np.isfinite(p3)) and np.all(np.isfinite(p2))):
            logger.debug("Dropped non-finite observation for frame %s camera %s", frame_id, camera_id)
            return False

        obs = Observation(
            frame_id=frame_id,
            camera_id=camera_id,
            point_3d=(float(p3[0]), float(p3[1]), float(p3[2])),
            point_2d=(float(p2[0]), float(p2[1])),
        )
        with self._wake:
            if frame_id not in self._frame_seeds or camera_id not in self._cameras:
                logger.debug(
                    "Dropped observation (%s): frame %s camera %s",
                    Failure.UNKNOWN_REFERENCE.value,
                    frame_id,
                    camera_id,
                )
                return False
            self._observations.append(obs)
            self._wake.notify_all()
        return True

    # ========================================================================
    # Refinement
    # ========================================================================

    def _has_pending_work(self) -> bool:
        with self._ingest_lock:
            count = len(self._observations)
        if count == 0 or count == self._last_failed_count:
            return False
        snapshot = self._snapshot
        return count > snapshot.num_observations or not snapshot.converged

    def refine_once(self, cancel: threading.Event | None = None) -> bool:
        """
        Run one bundle adjustment pass over all observations appended so far.

        Returns:
            True if a new snapshot was published
        """
        with self._pass_lock:
            with self._status:
                self._busy = True
            try:
                return self._refine(cancel)
            finally:
                with self._status:
                    self._busy = False
                    self._status.notify_all()

    def _refine(self, cancel: threading.Event | None) -> bool:
        with self._ingest_lock:
            count = len(self._observations)
            observations = self._observations[:count]
            cameras = dict(self._cameras)
            seeds = dict(self._frame_seeds)

        if count == 0:
            return False

        previous = self._snapshot
        cameras.update(previous.cameras)
        frames = {**seeds, **previous.frames}

        try:
            result = run_bundle_adjustment(
                cameras,
                frames,
                observations,
                reference_id=REFERENCE_CAMERA,
                params=self.params,
                cancel=cancel,
            )
        except PassCancelled:
            logger.debug("Refinement pass cancelled")
            return False
        except (MemoryError, np.linalg.LinAlgError, ValueError) as e:
            logger.warning("Refinement pass over %d observations failed: %s", count, e)
            with self._status:
                self.failed_passes += 1
                self.last_error = e
                self._last_failed_count = count
            return False

        if cancel is not None and cancel.is_set():
            logger.debug("Discarding refinement result after stop")
            return False

        observed = {o.camera_id for o in observations}
        refined_cameras = {
            cam_id: result.cameras[cam_id]
            for cam_id in sorted(observed | set(previous.cameras))
        }
        refined_frames = {**previous.frames, **result.frames}

        snapshot = CalibrationSnapshot(
            cameras=MappingProxyType(refined_cameras),
            frames=MappingProxyType(refined_frames),
            num_observations=count,
            mean_square_error=result.mean_square_error,
            passes=previous.passes + 1,
            converged=result.converged,
        )
        with self._state_lock:
            self._snapshot = snapshot

        logger.debug(
            "Pass %d: %d observations, mse=%.6g, converged=%s",
            snapshot.passes,
            count,
            snapshot.mean_square_error,
            snapshot.converged,
        )
        return True

    def _run(self) -> None:
        logger.info("Calibration worker started")
        while not self._stop_event.is_set():
            if self._has_pending_work():
                self.refine_once(cancel=self._stop_event)
                continue
            with self._wake:
                if self._stop_event.is_set():
                    break
                self._wake.wait(timeout=self.params.idle_wait_s)
        logger.info("Calibration worker stopped")

    def start(self) -> None:
        """Start background refinement (no-op when already running)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="dotcalib-refine", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """
        Stop background refinement. Blocks until the worker exits; an
        in-flight pass is discarded, every appended observation is kept.
        """
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        with self._wake:
            self._wake.notify_all()
        thread.join()
        self._thread = None

    @property
    def state(self) -> CalibratorState:
        if self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set():
            return CalibratorState.RUNNING
        return CalibratorState.IDLE

    def wait_for_passes(self, passes: int, timeout: float | None = None) -> bool:
        """Block until at least `passes` snapshots were published."""
        with self._status:
            return self._status.wait_for(lambda: self._snapshot.passes >= passes, timeout)

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """
        Block until no pass is running and the worker has nothing left to do
        (all observations refined and converged, or the last pass failed).
        """
        with self._status:
            return self._status.wait_for(
                lambda: not self._busy and not self._has_pending_work(), timeout
            )

    # ========================================================================
    # Results
    # ========================================================================

    def snapshot(self) -> CalibrationSnapshot:
        with self._state_lock:
            return self._snapshot

    def mean_square_error(self) -> float:
        """Latest published mean square reprojection error (NaN before any pass)."""
        return self.snapshot().mean_square_error

    def rms_error(self) -> float:
        mse = self.mean_square_error()
        return math.sqrt(mse) if mse >= 0 else float("nan")

    def get_camera(self, camera_id: int) -> Camera | None:
        """Latest refined camera, else its initial value; None if unknown."""
        snapshot = self.snapshot()
        if camera_id in snapshot.cameras:
            return snapshot.cameras[camera_id]
        with self._ingest_lock:
            return self._cameras.get(camera_id)

    def get_frame(self, frame_id: int) -> Pose | None:
        """Latest refined rig pose T_kw, else its seed; None if unknown."""
        snapshot = self.snapshot()
        if frame_id in snapshot.frames:
            return snapshot.frames[frame_id]
        with self._ingest_lock:
            return self._frame_seeds.get(frame_id)

    def cameras(self) -> dict[int, Camera]:
        with self._ingest_lock:
            ids = sorted(self._cameras)
        return {cam_id: self.get_camera(cam_id) for cam_id in ids}

    def num_cameras(self) -> int:
        with self._ingest_lock:
            return len(self._cameras)

    def num_frames(self) -> int:
        with self._ingest_lock:
            return len(self._frame_seeds)

    def num_observations(self) -> int:
        with self._ingest_lock:
            return len(self._observations)

    def observations(self) -> tuple[Observation, ...]:
        with self._ingest_lock:
            return tuple(self._observations)

    def results_summary(self) -> str:
        """Human-readable rig calibration report."""
        snapshot = self.snapshot()
        lines = [
            f"Passes: {snapshot.passes} (failed: {self.failed_passes})",
            f"Observations: {snapshot.num_observations} of {self.num_observations()}",
            f"Frames: {len(snapshot.frames)} refined of {self.num_frames()}",
            f"Mean square error: {snapshot.mean_square_error:.6g} px^2",
        ]
        for cam_id, cam in self.cameras().items():
            params = ", ".join(
                f"{name}={value:.6g}" for name, value in zip(cam.model.param_names, cam.params)
            )
            vector = pose_to_vector(cam.T_ck)
            lines.append(f"Camera {cam_id} [{cam.model_name} {cam.width}x{cam.height}]: {params}")
            lines.append(
                "  T_ck rotation="
                + " ".join(f"{v:.6g}" for v in vector[0:3])
                + " translation="
                + " ".join(f"{v:.6g}" for v in vector[3:6])
            )
        return "\n".join(lines)

    def write_camera_models(self, destination: CameraModelWriter | str | Path) -> None:
        """
        Persist the latest cameras through a writer, or to a TOML path.
        """
        cameras = self.cameras()
        if isinstance(destination, (str, Path)):
            write_camera_models(cameras, Path(destination))
        else:
            destination.write(cameras)

    def __enter__(self) -> "Calibrator":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
