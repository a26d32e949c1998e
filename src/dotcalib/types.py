"""
Core data structures for dotcalib.

All types are frozen dataclasses - data containers only.
Logic is in separate pure functions (pose vectors live here because the
bundle adjustment and the camera-model writer both need them).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

import cv2
import numpy as np

if TYPE_CHECKING:
    from .camera import Camera
    from .errors import Failure


# ============================================================================
# Blob / Conic
# ============================================================================


@dataclass(frozen=True, slots=True)
class BBox:
    """
    Axis-aligned pixel bounding box, x1/y1 exclusive.
    """

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    @property
    def area(self) -> float:
        return max(self.width, 0.0) * max(self.height, 0.0)


@dataclass(frozen=True, slots=True)
class Blob:
    """
    Moment summary of one connected region, as produced by image processing.

    moments are the normalized central second moments (mu20, mu11, mu02),
    i.e. the covariance of the region's pixel coordinates.
    """

    centroid: tuple[float, float]
    bbox: BBox
    area: float
    moments: tuple[float, float, float]


@dataclass(frozen=True, slots=True)
class Conic:
    """
    Validated elliptical dot candidate.

    major/minor are semi-axis lengths in pixels, angle is the major axis
    direction in radians.
    """

    center: np.ndarray  # (2,)
    bbox: BBox
    area: float
    major: float
    minor: float
    angle: float
    density: float
    aspect: float

    @property
    def size(self) -> float:
        """Radius-like scale: geometric mean of the semi-axes."""
        return float(np.sqrt(self.major * self.minor))

    def matrix(self) -> np.ndarray:
        """
        3x3 symmetric conic matrix C with [x y 1] C [x y 1]^T = 0 on the boundary.
        """
        c, s = np.cos(self.angle), np.sin(self.angle)
        rot = np.array([[c, -s], [s, c]], dtype=np.float64)
        inv_axes = np.diag([1.0 / self.major**2, 1.0 / self.minor**2])
        a = rot @ inv_axes @ rot.T
        center = np.asarray(self.center, dtype=np.float64)
        b = -a @ center
        conic = np.zeros((3, 3), dtype=np.float64)
        conic[:2, :2] = a
        conic[:2, 2] = b
        conic[2, :2] = b
        conic[2, 2] = float(center @ a @ center) - 1.0
        return conic


# ============================================================================
# Grid correspondence
# ============================================================================


@dataclass(frozen=True, slots=True)
class LineGroup:
    """
    Ordered conic indices believed collinear in the target lattice.

    direction 0 chains run along a grid row (column index varies),
    direction 1 chains run along a grid column (row index varies).
    positions are integer lattice offsets along the chain; gaps are allowed.
    """

    direction: int
    members: tuple[int, ...]
    positions: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.members)


GridCoord = tuple[int, int]  # (col, row)


@dataclass(frozen=True)
class CorrespondenceMap:
    """
    Per-conic assignment to target grid coordinates for one camera/frame.

    grid_coords[i] is the (col, row) of conic i, or None when unmatched.
    values[i] is the decoded code bit of conic i (-1 when undecided).
    Each grid coordinate appears at most once.
    """

    grid_coords: tuple[GridCoord | None, ...]
    values: tuple[int, ...]
    tracking_good: bool
    low_confidence: bool = False
    line_groups: tuple[LineGroup, ...] = ()
    failure: "Failure | None" = None

    def __len__(self) -> int:
        return len(self.grid_coords)

    def matched(self) -> list[tuple[int, GridCoord]]:
        """(conic_index, (col, row)) for every matched conic."""
        return [(i, gc) for i, gc in enumerate(self.grid_coords) if gc is not None]

    @property
    def num_matched(self) -> int:
        return sum(1 for gc in self.grid_coords if gc is not None)

    def image_points(self, conics: list[Conic]) -> np.ndarray:
        """(n, 2) centers of matched conics, in matched() order."""
        pts = [conics[i].center for i, _ in self.matched()]
        return np.asarray(pts, dtype=np.float64).reshape(-1, 2)

    def grid_points(self) -> np.ndarray:
        """(n, 2) integer (col, row) of matched conics, in matched() order."""
        return np.asarray([gc for _, gc in self.matched()], dtype=np.int64).reshape(-1, 2)

    @classmethod
    def unmatched(
        cls,
        n: int,
        values: tuple[int, ...] | None = None,
        line_groups: tuple[LineGroup, ...] = (),
        low_confidence: bool = False,
        failure: "Failure | None" = None,
    ) -> "CorrespondenceMap":
        return cls(
            grid_coords=(None,) * n,
            values=values if values is not None else (-1,) * n,
            tracking_good=False,
            low_confidence=low_confidence,
            line_groups=line_groups,
            failure=failure,
        )


# ============================================================================
# Poses
# ============================================================================


@dataclass(frozen=True, slots=True)
class Pose:
    """
    Rigid transform T_ab mapping points from frame b into frame a:
    x_a = rotation @ x_b + translation.
    """

    rotation: np.ndarray  # (3, 3)
    translation: np.ndarray  # (3,)

    @classmethod
    def identity(cls) -> "Pose":
        return cls(rotation=np.eye(3, dtype=np.float64), translation=np.zeros(3, dtype=np.float64))

    def compose(self, other: "Pose") -> "Pose":
        """T_ab.compose(T_bc) -> T_ac."""
        return Pose(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )

    def inverse(self) -> "Pose":
        rot_t = self.rotation.T
        return Pose(rotation=rot_t, translation=-rot_t @ self.translation)

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.rotation.T + self.translation

    def matrix(self) -> np.ndarray:
        t = np.eye(4, dtype=np.float64)
        t[0:3, 0:3] = self.rotation
        t[0:3, 3] = self.translation
        return t


def pose_to_vector(pose: Pose) -> np.ndarray:
    """
    Convert a pose to a 6-element vector for optimization.
    [rodrigues_x, rodrigues_y, rodrigues_z, tx, ty, tz]
    """
    rodrigues = cv2.Rodrigues(np.asarray(pose.rotation, dtype=np.float64))[0][:, 0]
    return np.hstack([rodrigues, np.asarray(pose.translation, dtype=np.float64)])


def pose_from_vector(vector: np.ndarray) -> Pose:
    """
    Create a pose from a 6-element vector.
    """
    vector = np.asarray(vector, dtype=np.float64).reshape(6)
    rotation = cv2.Rodrigues(vector[0:3].copy())[0]
    return Pose(rotation=rotation, translation=vector[3:6].copy())


# ============================================================================
# Calibration data
# ============================================================================


@dataclass(frozen=True, slots=True)
class Observation:
    """
    One piece of evidence: a target point seen by a camera in a frame.
    """

    frame_id: int
    camera_id: int
    point_3d: tuple[float, float, float]
    point_2d: tuple[float, float]


@dataclass(frozen=True, slots=True)
class PoseEstimate:
    """
    Result of robust pose estimation. pose is T_cw (target -> camera).
    """

    pose: Pose
    inliers: np.ndarray  # (n,) bool
    rms_error: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))


@dataclass(frozen=True)
class CalibrationSnapshot:
    """
    Published refinement state.

    Replaced as a whole after every successful refinement pass; never
    mutated afterwards. cameras/frames only hold entries that have been
    refined at least once.
    """

    cameras: Mapping[int, "Camera"] = field(default_factory=lambda: MappingProxyType({}))
    frames: Mapping[int, Pose] = field(default_factory=lambda: MappingProxyType({}))
    num_observations: int = 0
    mean_square_error: float = float("nan")
    passes: int = 0
    converged: bool = False
