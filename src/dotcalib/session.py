"""
Per-tick calibration loop.

For every camera image of a tick: blobs -> conics -> target
correspondence -> pose. Tracked views become a frame in the calibrator
with one observation per matched dot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np

from .calibrator import REFERENCE_CAMERA, Calibrator
from .camera import Camera
from .config import CalibConfig
from .detection.conics import find_conics
from .detection.image_processing import find_blobs
from .errors import Failure
from .pose import pose_from_correspondence
from .target import TargetGridDot, find_target
from .types import Blob, Conic, CorrespondenceMap, Pose

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackingResult:
    """
    What one camera saw in one tick; kept for display.

    pose is T_cw (target -> camera); it can be None for a good
    correspondence when pose estimation failed (failure = POSE_DEGENERATE).
    """

    camera_id: int
    conics: tuple[Conic, ...]
    correspondence: CorrespondenceMap
    pose: Pose | None = None
    failure: Failure | None = None

    @property
    def tracking_good(self) -> bool:
        return self.correspondence.tracking_good


@dataclass(frozen=True)
class TickResult:
    tracking: dict[int, TrackingResult] = field(default_factory=dict)
    frame_id: int | None = None
    observations_added: int = 0

    @property
    def any_tracked(self) -> bool:
        return any(t.tracking_good for t in self.tracking.values())


class CalibrationSession:
    """
    Feeds camera images into a Calibrator.

    Frame seed rule: the reference camera when it tracked, otherwise the
    tracked camera with the most matched dots among those whose rig
    transform is already known. A camera's rig transform is initialised
    from the first frame it tracks in.
    """

    def __init__(
        self,
        target: TargetGridDot,
        config: CalibConfig | None = None,
        calibrator: Calibrator | None = None,
    ):
        self.config = config or CalibConfig()
        self.target = target
        self.calibrator = calibrator or Calibrator(self.config.calibrator)
        self._initialized: set[int] = set()
        self.last_tick = TickResult()

    @property
    def add_frames(self) -> bool:
        return self.calibrator.accepting

    @add_frames.setter
    def add_frames(self, value: bool) -> None:
        self.calibrator.accepting = value

    def add_camera(self, camera: Camera) -> int:
        cam_id = self.calibrator.add_camera(camera)
        if cam_id == REFERENCE_CAMERA:
            self._initialized.add(cam_id)
        return cam_id

    # ========================================================================
    # Tracking
    # ========================================================================

    def track(self, camera_id: int, blobs: Sequence[Blob]) -> TrackingResult:
        """Run the recognition pipeline for one camera image."""
        camera = self.calibrator.get_camera(camera_id)
        if camera is None:
            raise ValueError(f"Unknown camera id {camera_id}")

        conics = find_conics(list(blobs), self.config.conic_finder)
        correspondence = find_target(self.target, conics, self.config.grid_decoder)
        if not correspondence.tracking_good:
            return TrackingResult(
                camera_id, tuple(conics), correspondence, failure=Failure.CORRESPONDENCE_INSUFFICIENT
            )

        estimate = pose_from_correspondence(
            camera, conics, correspondence, self.target, self.config.pose
        )
        if estimate is None:
            return TrackingResult(
                camera_id, tuple(conics), correspondence, failure=Failure.POSE_DEGENERATE
            )
        return TrackingResult(camera_id, tuple(conics), correspondence, pose=estimate.pose)

    def _seed_camera(self, tracking: dict[int, TrackingResult]) -> int | None:
        tracked = [
            cid
            for cid, t in tracking.items()
            if t.tracking_good and t.pose is not None and cid in self._initialized
        ]
        if not tracked:
            return None
        if REFERENCE_CAMERA in tracked:
            return REFERENCE_CAMERA
        return max(tracked, key=lambda cid: (tracking[cid].correspondence.num_matched, -cid))

    def process_blobs(self, blobs_per_camera: Sequence[Sequence[Blob]]) -> TickResult:
        """
        Process one tick given the blobs of every camera, in camera id order.
        """
        tracking = {
            cam_id: self.track(cam_id, blobs) for cam_id, blobs in enumerate(blobs_per_camera)
        }

        frame_id = None
        added = 0
        seed_cam = self._seed_camera(tracking)
        if seed_cam is not None and self.add_frames:
            T_ck = self.calibrator.get_camera(seed_cam).T_ck
            T_kw = T_ck.inverse().compose(tracking[seed_cam].pose)
            frame_id = self.calibrator.add_frame(T_kw)

        if frame_id is not None:
            for cam_id, result in tracking.items():
                if not result.tracking_good or result.pose is None:
                    continue
                if cam_id not in self._initialized:
                    T_ck = result.pose.compose(T_kw.inverse())
                    self.calibrator.set_camera_transform(cam_id, T_ck)
                    self._initialized.add(cam_id)
                    logger.info("Initialised rig transform of camera %d from frame %d", cam_id, frame_id)
                added += self._add_observations(frame_id, cam_id, result)

        tick = TickResult(tracking=tracking, frame_id=frame_id, observations_added=added)
        self.last_tick = tick
        return tick

    def _add_observations(self, frame_id: int, camera_id: int, result: TrackingResult) -> int:
        added = 0
        for conic_index, (col, row) in result.correspondence.matched():
            if not self.target.contains(col, row):
                continue
            ok = self.calibrator.add_observation(
                frame_id,
                camera_id,
                self.target.point_3d(col, row),
                result.conics[conic_index].center,
            )
            added += int(ok)
        return added

    def process_images(self, images: Sequence[np.ndarray]) -> TickResult:
        """Process one tick of grayscale images, in camera id order."""
        blobs = [find_blobs(image, self.config.image_processing) for image in images]
        return self.process_blobs(blobs)

    def run(
        self,
        source,
        max_ticks: int | None = None,
        on_tick: Callable[[list[np.ndarray], TickResult], bool | None] | None = None,
    ) -> int:
        """
        Process ticks from a frame source until it ends.

        Args:
            source: Object with read() -> list of images or None at the end
            max_ticks: Optional tick limit
            on_tick: Called after each tick; returning False stops the loop

        Returns:
            Number of ticks processed
        """
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            images = source.read()
            if images is None:
                logger.info("Acquisition ended (%s) after %d ticks", Failure.ACQUISITION_ENDED.value, ticks)
                break
            tick = self.process_images(images)
            ticks += 1
            if on_tick is not None and on_tick(images, tick) is False:
                break
        return ticks
