"""
Grid-of-dots target and the grid decoder / correspondence solver.

find_target() turns the conics of one image into a CorrespondenceMap:
line extraction -> lattice indexing -> code decoding -> homography
prediction -> Hungarian assignment -> acceptance test.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.spatial import cKDTree

from .config import GridDecoderParams, TargetParams
from .detection.lines import (
    Lattice,
    dominant_directions,
    extract_lines,
    index_lattice,
    line_spacing,
)
from .errors import Failure
from .types import Conic, CorrespondenceMap, LineGroup

logger = logging.getLogger(__name__)

# Homography RANSAC threshold as a fraction of the median dot spacing.
HOMOGRAPHY_THRESHOLD_RATIO = 0.3
ASSIGNMENT_ITERATIONS = 2
MIN_HOMOGRAPHY_POINTS = 4
# Lattice rows/columns a placement may extend past each grid edge.
MAX_OVERHANG = 2


# ============================================================================
# Target
# ============================================================================


class TargetGridDot:
    """
    Planar grid of dots, cols x rows, spacing metres apart in the target
    plane z = 0. Grid coordinate (c, r) sits at (c * spacing, r * spacing, 0).

    Coded targets mark each dot big (code 1) or small (code 0) from a
    pseudo-random binary matrix; uncoded targets use big dots only.
    """

    def __init__(
        self,
        spacing: float,
        grid_size: tuple[int, int] = (19, 10),
        codes: np.ndarray | None = None,
        dot_radius: float | None = None,
        code_radius: float | None = None,
    ):
        cols, rows = grid_size
        if spacing <= 0:
            raise ValueError(f"spacing must be positive, got {spacing}")
        if cols < 2 or rows < 2:
            raise ValueError(f"grid must be at least 2x2, got {grid_size}")
        if codes is not None:
            codes = np.asarray(codes, dtype=np.int8)
            if codes.shape != (rows, cols):
                raise ValueError(f"codes must have shape {(rows, cols)}, got {codes.shape}")
            if not np.all((codes == 0) | (codes == 1)):
                raise ValueError("codes must be binary")

        self.spacing = float(spacing)
        self.cols = int(cols)
        self.rows = int(rows)
        self.codes = codes
        self.dot_radius = float(dot_radius if dot_radius is not None else 0.3 * spacing)
        self.code_radius = float(code_radius if code_radius is not None else 0.18 * spacing)

    @classmethod
    def from_params(cls, params: TargetParams) -> "TargetGridDot":
        codes = None
        if params.coded:
            codes = generate_codes(params.rows, params.cols, params.code_seed)
        return cls(
            spacing=params.spacing,
            grid_size=(params.cols, params.rows),
            codes=codes,
            dot_radius=params.dot_radius_ratio * params.spacing,
            code_radius=params.code_radius_ratio * params.spacing,
        )

    @property
    def grid_size(self) -> tuple[int, int]:
        return self.cols, self.rows

    @property
    def num_points(self) -> int:
        return self.cols * self.rows

    @property
    def coded(self) -> bool:
        return self.codes is not None

    def contains(self, col: int, row: int) -> bool:
        return 0 <= col < self.cols and 0 <= row < self.rows

    def point_index(self, col: int, row: int) -> int:
        return row * self.cols + col

    def grid_coord(self, index: int) -> tuple[int, int]:
        return index % self.cols, index // self.cols

    def grid_coords(self) -> np.ndarray:
        """(N, 2) integer (col, row) in point-index order (row-major)."""
        rr, cc = np.mgrid[0 : self.rows, 0 : self.cols]
        return np.column_stack([cc.ravel(), rr.ravel()])

    def circles_3d(self) -> np.ndarray:
        """(N, 3) dot centres in target metres, point-index order."""
        grid = self.grid_coords().astype(np.float64)
        return np.column_stack([grid * self.spacing, np.zeros(self.num_points)])

    def point_3d(self, col: int, row: int) -> np.ndarray:
        return np.array([col * self.spacing, row * self.spacing, 0.0])

    def code(self, col: int, row: int) -> int:
        """Code bit at (col, row), -1 for an uncoded target."""
        if self.codes is None:
            return -1
        return int(self.codes[row, col])

    def radius(self, col: int, row: int) -> float:
        if self.codes is not None and self.codes[row, col] == 0:
            return self.code_radius
        return self.dot_radius

    def code_threshold(self) -> float:
        """Radius / spacing ratio separating big from small dots."""
        return 0.5 * (self.dot_radius + self.code_radius) / self.spacing

    def __repr__(self) -> str:
        return (
            f"TargetGridDot(spacing={self.spacing}, grid_size=({self.cols}, {self.rows}), "
            f"coded={self.coded})"
        )


def generate_codes(rows: int, cols: int, seed: int) -> np.ndarray:
    """Reproducible binary code matrix (rows, cols)."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 2, size=(rows, cols)).astype(np.int8)


# ============================================================================
# Code decoding
# ============================================================================


_ROTATIONS = (
    np.array([[1, 0], [0, 1]]),
    np.array([[0, -1], [1, 0]]),
    np.array([[-1, 0], [0, -1]]),
    np.array([[0, 1], [-1, 0]]),
)


@dataclass(frozen=True)
class GridHypothesis:
    """Lattice (u, v) -> grid (col, row) = rotation @ (u, v) + offset."""

    rotation: int
    offset: tuple[int, int]
    matches: int
    mismatches: int
    outside: int = 0

    @property
    def score(self) -> int:
        return self.matches - self.mismatches - self.outside

    def apply(self, uv: np.ndarray) -> np.ndarray:
        return uv @ _ROTATIONS[self.rotation].T + np.array(self.offset)


def decode_bits(
    conics: list[Conic],
    lines: list[LineGroup],
    target: TargetGridDot,
) -> np.ndarray:
    """
    Per-conic code bit from dot size relative to the local line spacing.

    Returns:
        (n,) int array of 0/1, -1 where the conic is in no line
    """
    n = len(conics)
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    centers = np.array([c.center for c in conics], dtype=np.float64)
    spacing = line_spacing(centers, lines)
    sizes = np.array([c.size for c in conics], dtype=np.float64)

    bits = np.full(n, -1, dtype=np.int64)
    known = np.isfinite(spacing) & (spacing > 0)
    bits[known] = (sizes[known] / spacing[known] > target.code_threshold()).astype(np.int64)
    return bits


def orientation_hypotheses(
    lattice: Lattice,
    bits: np.ndarray,
    target: TargetGridDot,
) -> list[GridHypothesis]:
    """
    Every rotation/offset placing the lattice on the grid, sorted best first.

    A placement may overhang each grid edge by up to MAX_OVERHANG rows or
    columns as long as most nodes land on the grid. Codes are compared on
    the in-grid nodes only; each node left outside costs one point of score.
    """
    nodes = np.array(sorted(lattice.coords), dtype=np.int64)
    uv = np.array([lattice.coords[i] for i in nodes], dtype=np.int64)
    node_bits = bits[nodes]
    decided = node_bits >= 0

    hypotheses = []
    for k, rot in enumerate(_ROTATIONS):
        cr = uv @ rot.T
        c_lo, r_lo = -cr.min(axis=0)
        c_hi = target.cols - 1 - cr[:, 0].max()
        r_hi = target.rows - 1 - cr[:, 1].max()
        for oy in range(r_lo - MAX_OVERHANG, r_hi + MAX_OVERHANG + 1):
            for ox in range(c_lo - MAX_OVERHANG, c_hi + MAX_OVERHANG + 1):
                placed = cr + np.array([ox, oy])
                inside = (
                    (placed[:, 0] >= 0)
                    & (placed[:, 0] < target.cols)
                    & (placed[:, 1] >= 0)
                    & (placed[:, 1] < target.rows)
                )
                n_inside = int(np.count_nonzero(inside))
                if n_inside < MIN_HOMOGRAPHY_POINTS or n_inside <= inside.size // 2:
                    continue
                matches = mismatches = 0
                scored = decided & inside
                if target.codes is not None and np.any(scored):
                    expected = target.codes[placed[scored, 1], placed[scored, 0]]
                    agree = expected == node_bits[scored]
                    matches = int(np.count_nonzero(agree))
                    mismatches = int(agree.size - matches)
                hypotheses.append(
                    GridHypothesis(
                        k, (int(ox), int(oy)), matches, mismatches, int(inside.size - n_inside)
                    )
                )

    hypotheses.sort(key=lambda h: (-h.score, h.rotation, h.offset[1], h.offset[0]))
    return hypotheses


def is_confident(
    hypotheses: list[GridHypothesis],
    target: TargetGridDot,
    params: GridDecoderParams,
) -> bool:
    """
    True when the best hypothesis is backed by enough agreeing codes, beats
    every other hypothesis, and disagrees on at most a quarter of the codes.
    """
    if not target.coded or not hypotheses:
        return False
    best = hypotheses[0]
    if best.matches < params.min_code_matches:
        return False
    if len(hypotheses) > 1 and hypotheses[1].score >= best.score:
        return False
    decided = best.matches + best.mismatches
    return best.mismatches <= 0.25 * decided


# ============================================================================
# Assignment
# ============================================================================


def _apply_homography(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 1, 2)
    return cv2.perspectiveTransform(pts, H).reshape(-1, 2)


def predict_grid(
    target: TargetGridDot,
    grid_coords: np.ndarray,
    image_points: np.ndarray,
    spacing_px: float,
) -> tuple[np.ndarray, np.ndarray] | None:
    """
    Predict the image position of every grid point.

    A RANSAC homography from grid to image is corrected by the mean residual
    of inlier correspondences in each point's 3x3 grid neighbourhood.

    Returns:
        ((N, 2) predicted pixels, (N,) predicted spacing in pixels) in
        point-index order, or None if no homography could be fit
    """
    if grid_coords.shape[0] < MIN_HOMOGRAPHY_POINTS:
        return None

    src = grid_coords.astype(np.float64)
    dst = image_points.astype(np.float64)
    threshold = max(HOMOGRAPHY_THRESHOLD_RATIO * spacing_px, 1.0)
    try:
        H, mask = cv2.findHomography(src, dst, cv2.RANSAC, threshold)
    except cv2.error:
        return None
    if H is None or not np.all(np.isfinite(H)):
        return None

    all_grid = target.grid_coords().astype(np.float64)
    pred = _apply_homography(H, all_grid)
    pred_c = _apply_homography(H, all_grid + np.array([1.0, 0.0]))
    pred_r = _apply_homography(H, all_grid + np.array([0.0, 1.0]))
    spacing = 0.5 * (
        np.linalg.norm(pred_c - pred, axis=1) + np.linalg.norm(pred_r - pred, axis=1)
    )

    # Local residual correction from RANSAC inliers
    inliers = mask.ravel().astype(bool)
    residual_sum = np.zeros((target.rows + 2, target.cols + 2, 2), dtype=np.float64)
    residual_cnt = np.zeros((target.rows + 2, target.cols + 2), dtype=np.float64)
    fitted = _apply_homography(H, src[inliers])
    for (c, r), obs, fit in zip(grid_coords[inliers], dst[inliers], fitted):
        residual_sum[r + 1, c + 1] += obs - fit
        residual_cnt[r + 1, c + 1] += 1.0

    local_sum = np.zeros((target.rows, target.cols, 2), dtype=np.float64)
    local_cnt = np.zeros((target.rows, target.cols), dtype=np.float64)
    for dr in range(3):
        for dc in range(3):
            local_sum += residual_sum[dr : dr + target.rows, dc : dc + target.cols]
            local_cnt += residual_cnt[dr : dr + target.rows, dc : dc + target.cols]

    has = local_cnt > 0
    correction = np.zeros_like(local_sum)
    correction[has] = local_sum[has] / local_cnt[has][:, None]
    pred = pred + correction.reshape(-1, 2)

    return pred, spacing


def assign(
    centers: np.ndarray,
    bits: np.ndarray,
    candidates: np.ndarray,
    predicted: np.ndarray,
    spacing: np.ndarray,
    target: TargetGridDot,
    params: GridDecoderParams,
) -> dict[int, int]:
    """
    Minimum-cost conic <-> grid point assignment (Hungarian).

    Cost is prediction distance over local spacing plus a penalty for a
    decided code bit disagreeing with the target code.

    Returns:
        conic index -> point index for assignments below max_assignment_cost
    """
    if candidates.size == 0:
        return {}

    diff = centers[candidates][:, None, :] - predicted[None, :, :]
    with np.errstate(divide="ignore", invalid="ignore"):
        cost = np.linalg.norm(diff, axis=2) / spacing[None, :]
    cost = np.where(np.isfinite(cost), cost, 1e6)

    if target.codes is not None:
        expected = target.codes.ravel()
        cand_bits = bits[candidates]
        mismatch = (cand_bits[:, None] >= 0) & (cand_bits[:, None] != expected[None, :])
        cost = cost + params.code_mismatch_penalty * mismatch

    rows, cols = linear_sum_assignment(cost)
    accepted = cost[rows, cols] < params.max_assignment_cost
    return {int(candidates[r]): int(c) for r, c in zip(rows[accepted], cols[accepted])}


# ============================================================================
# Grid decoder entry point
# ============================================================================


def find_target(
    target: TargetGridDot,
    conics: list[Conic],
    params: GridDecoderParams | None = None,
) -> CorrespondenceMap:
    """
    Establish the conic <-> grid correspondence for one image.

    Args:
        target: Known target
        conics: Validated conics of the image
        params: Decoder parameters (defaults if None)

    Returns:
        CorrespondenceMap; when tracking is not good every conic is
        unmatched (decoded values and line groups are still reported)
    """
    if params is None:
        params = GridDecoderParams()

    n = len(conics)
    if n == 0:
        return CorrespondenceMap.unmatched(0, failure=Failure.CORRESPONDENCE_INSUFFICIENT)

    centers = np.array([c.center for c in conics], dtype=np.float64).reshape(-1, 2)
    directions = dominant_directions(centers, params)
    if directions is None:
        return CorrespondenceMap.unmatched(n, failure=Failure.CORRESPONDENCE_INSUFFICIENT)

    tree = cKDTree(centers)
    lines = extract_lines(centers, directions[0], 0, params, tree=tree)
    lines += extract_lines(centers, directions[1], 1, params, tree=tree)
    line_groups = tuple(lines)

    bits = decode_bits(conics, lines, target)
    values = tuple(int(b) for b in bits)

    def insufficient(low_confidence: bool = False) -> CorrespondenceMap:
        return CorrespondenceMap.unmatched(
            n,
            values=values,
            line_groups=line_groups,
            low_confidence=low_confidence,
            failure=Failure.CORRESPONDENCE_INSUFFICIENT,
        )

    lattice = index_lattice(lines, directions)
    if lattice is None or len(lattice) < MIN_HOMOGRAPHY_POINTS:
        return insufficient()

    hypotheses = orientation_hypotheses(lattice, bits, target)
    if not hypotheses:
        logger.debug("Lattice of %d conics does not fit the grid", len(lattice))
        return insufficient()

    low_confidence = not is_confident(hypotheses, target, params)
    best = hypotheses[0]

    nodes = np.array(sorted(lattice.coords), dtype=np.int64)
    uv = np.array([lattice.coords[i] for i in nodes], dtype=np.int64)
    tentative_grid = best.apply(uv)
    on_grid = np.array([target.contains(int(c), int(r)) for c, r in tentative_grid], dtype=bool)
    if best.outside:
        logger.debug("Dropping %d lattice nodes outside the grid", best.outside)
    tentative_grid = tentative_grid[on_grid]
    tentative_image = centers[nodes[on_grid]]

    in_line = np.zeros(n, dtype=bool)
    for line in lines:
        in_line[list(line.members)] = True
    candidates = np.flatnonzero(in_line)

    line_spacings = line_spacing(centers, lines)[in_line]
    if not np.any(np.isfinite(line_spacings)):
        return insufficient(low_confidence)
    spacing_px = float(np.nanmedian(line_spacings))

    assignment: dict[int, int] = {}
    for _ in range(ASSIGNMENT_ITERATIONS):
        prediction = predict_grid(target, tentative_grid, tentative_image, spacing_px)
        if prediction is None:
            break
        predicted, spacing = prediction
        assignment = assign(centers, bits, candidates, predicted, spacing, target, params)
        if len(assignment) < MIN_HOMOGRAPHY_POINTS:
            break
        conic_idx = np.array(sorted(assignment), dtype=np.int64)
        tentative_grid = np.array(
            [target.grid_coord(assignment[i]) for i in conic_idx], dtype=np.int64
        )
        tentative_image = centers[conic_idx]

    needed = params.min_fraction * target.num_points
    if len(assignment) <= needed:
        logger.debug(
            "Tracking not good: %d assignments, need more than %.1f", len(assignment), needed
        )
        return insufficient(low_confidence)

    grid_coords: list[tuple[int, int] | None] = [None] * n
    for conic_index, point_index in assignment.items():
        grid_coords[conic_index] = target.grid_coord(point_index)

    return CorrespondenceMap(
        grid_coords=tuple(grid_coords),
        values=values,
        tracking_good=True,
        low_confidence=low_confidence,
        line_groups=line_groups,
    )
