"""
Line extraction and lattice indexing over conic centres.

Pure functions - no classes, no state. The output is an integer lattice
coordinate (u, v) for the largest consistent group of conics; mapping the
lattice onto the target grid (origin and orientation) happens in target.py.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from ..config import GridDecoderParams
from ..types import LineGroup

logger = logging.getLogger(__name__)

# Second lattice direction must be at least this far from the first.
MIN_DIRECTION_SEPARATION_DEG = 30.0

_HISTOGRAM_BINS = 180


@dataclass(frozen=True)
class Lattice:
    """
    Lattice coordinates of one connected component of line groups.

    coords maps conic index -> (u, v), normalized so the minimum of each is 0.
    """

    coords: dict[int, tuple[int, int]]
    directions: tuple[np.ndarray, np.ndarray]

    def __len__(self) -> int:
        return len(self.coords)


# ============================================================================
# Dominant directions
# ============================================================================


def _circular_smooth(hist: np.ndarray, half_width: int = 3) -> np.ndarray:
    kernel = np.ones(2 * half_width + 1, dtype=np.float64)
    padded = np.concatenate([hist[-half_width:], hist, hist[:half_width]])
    return np.convolve(padded, kernel, mode="valid")


def _refine_angle(angles: np.ndarray, peak: float, tolerance: float) -> float:
    """Mean axial angle (mod pi) of the samples within tolerance of peak."""
    diff = np.abs((angles - peak + math.pi / 2.0) % math.pi - math.pi / 2.0)
    near = angles[diff <= tolerance]
    if near.size == 0:
        return peak
    # Average on the doubled-angle circle so 179 deg and 1 deg agree
    mean = math.atan2(np.sin(2.0 * near).mean(), np.cos(2.0 * near).mean()) / 2.0
    return mean % math.pi


def dominant_directions(
    centers: np.ndarray,
    params: GridDecoderParams,
) -> tuple[np.ndarray, np.ndarray] | None:
    """
    Two dominant lattice directions from nearest-neighbour displacements.

    Args:
        centers: (n, 2) conic centres
        params: Decoder parameters

    Returns:
        (a, b) unit vectors with cross(a, b) > 0, or None if the point set
        has no second direction
    """
    n = centers.shape[0]
    if n < 3:
        return None

    k = min(5, n)
    tree = cKDTree(centers)
    _, nbrs = tree.query(centers, k=k)
    disp = centers[nbrs[:, 1:]] - centers[:, None, :]
    disp = disp.reshape(-1, 2)
    disp = disp[np.hypot(disp[:, 0], disp[:, 1]) > 0]
    if disp.shape[0] == 0:
        return None

    angles = np.arctan2(disp[:, 1], disp[:, 0]) % math.pi
    bins = np.floor(angles / math.pi * _HISTOGRAM_BINS).astype(int) % _HISTOGRAM_BINS
    hist = _circular_smooth(np.bincount(bins, minlength=_HISTOGRAM_BINS).astype(np.float64))

    first = int(np.argmax(hist))
    bin_deg = 180.0 / _HISTOGRAM_BINS
    offsets = np.abs((np.arange(_HISTOGRAM_BINS) - first + _HISTOGRAM_BINS // 2) % _HISTOGRAM_BINS
                     - _HISTOGRAM_BINS // 2) * bin_deg
    masked = np.where(offsets < MIN_DIRECTION_SEPARATION_DEG, 0.0, hist)
    second = int(np.argmax(masked))
    if masked[second] <= 0.0:
        return None

    tolerance = math.radians(params.direction_tolerance_deg)
    theta_a = _refine_angle(angles, (first + 0.5) * math.pi / _HISTOGRAM_BINS, tolerance)
    theta_b = _refine_angle(angles, (second + 0.5) * math.pi / _HISTOGRAM_BINS, tolerance)

    a = np.array([math.cos(theta_a), math.sin(theta_a)])
    b = np.array([math.cos(theta_b), math.sin(theta_b)])
    if a[0] * b[1] - a[1] * b[0] < 0.0:
        b = -b
    return a, b


# ============================================================================
# Line extraction
# ============================================================================


def _local_spacing(tree: cKDTree, centers: np.ndarray) -> np.ndarray:
    """Median distance to the four nearest neighbours of every centre."""
    k = min(5, centers.shape[0])
    dists, _ = tree.query(centers, k=k)
    return np.median(dists[:, 1:], axis=1)


def _seed_steps(
    tree: cKDTree,
    centers: np.ndarray,
    spacing: np.ndarray,
    direction: np.ndarray,
    params: GridDecoderParams,
) -> list[np.ndarray | None]:
    """
    Per conic: displacement to the nearest neighbour roughly along
    +/-direction, oriented to +direction and divided by the gap count.
    """
    n = centers.shape[0]
    k = min(params.neighbours + 1, n)
    dists, nbrs = tree.query(centers, k=k)
    cos_tol = math.cos(math.radians(params.direction_tolerance_deg))

    steps: list[np.ndarray | None] = [None] * n
    for i in range(n):
        for dist, j in zip(dists[i, 1:], nbrs[i, 1:]):
            if j >= n or dist <= 0.0:
                continue
            d = centers[j] - centers[i]
            cos_angle = float(d @ direction) / dist
            if abs(cos_angle) < cos_tol:
                continue
            step = d if cos_angle > 0 else -d
            ratio = dist / spacing[i] if spacing[i] > 0 else math.inf
            if ratio > params.max_gap + 1.5 or ratio < 0.5:
                break
            gaps = int(round(ratio))
            if gaps >= 2:
                step = step / gaps
            steps[i] = step
            break
    return steps


def _walk(
    start: int,
    step: np.ndarray,
    centers: np.ndarray,
    tree: cKDTree,
    claimed: np.ndarray,
    taken: set[int],
    params: GridDecoderParams,
) -> list[tuple[int, int]]:
    """Extend a line from start along step; returns (conic, position) pairs."""
    out = []
    cur, pos = start, 0
    cos_tol = math.cos(math.radians(params.line_angle_tolerance_deg))
    k = min(4, centers.shape[0])

    while True:
        step_len = float(np.hypot(step[0], step[1]))
        if step_len <= 0.0:
            break
        found = None
        for gap in range(1, params.max_gap + 2):
            pred = centers[cur] + gap * step
            dists, idx = tree.query(pred, k=k)
            for dist, j in zip(np.atleast_1d(dists), np.atleast_1d(idx)):
                if j >= centers.shape[0] or claimed[j] or j in taken:
                    continue
                if dist > params.line_distance_tolerance * step_len:
                    break
                d = centers[j] - centers[cur]
                d_len = float(np.hypot(d[0], d[1]))
                if d_len <= 0.0 or float(d @ step) / (d_len * step_len) < cos_tol:
                    continue
                found = (int(j), gap, d)
                break
            if found is not None:
                break
        if found is None:
            break

        j, gap, d = found
        step = d / gap
        pos += gap
        cur = j
        taken.add(j)
        out.append((j, pos))
    return out


def extract_lines(
    centers: np.ndarray,
    direction: np.ndarray,
    axis: int,
    params: GridDecoderParams,
    tree: cKDTree | None = None,
) -> list[LineGroup]:
    """
    Greedily chain conics into line groups along one lattice direction.

    Seeds are processed most-regular first. Each conic is claimed by at most
    one line per direction; chains shorter than min_line_length are dropped.

    Args:
        centers: (n, 2) conic centres
        direction: Unit vector of the lattice direction
        axis: 0 for row lines, 1 for column lines
        params: Decoder parameters
        tree: Optional prebuilt KD-tree over centers

    Returns:
        List of LineGroup, members ordered along +direction
    """
    n = centers.shape[0]
    if n < 2:
        return []
    if tree is None:
        tree = cKDTree(centers)

    spacing = _local_spacing(tree, centers)
    steps = _seed_steps(tree, centers, spacing, direction, params)

    def regularity(i: int) -> float:
        step = steps[i]
        return abs(math.log(float(np.hypot(step[0], step[1])) / spacing[i]))

    seeds = sorted((i for i in range(n) if steps[i] is not None and spacing[i] > 0), key=regularity)

    claimed = np.zeros(n, dtype=bool)
    lines = []
    for seed in seeds:
        if claimed[seed]:
            continue
        taken = {seed}
        forward = _walk(seed, steps[seed], centers, tree, claimed, taken, params)
        backward = _walk(seed, -steps[seed], centers, tree, claimed, taken, params)

        chain = [(j, -pos) for j, pos in reversed(backward)] + [(seed, 0)] + forward
        if len(chain) < params.min_line_length:
            continue

        base = chain[0][1]
        members = tuple(j for j, _ in chain)
        positions = tuple(pos - base for _, pos in chain)
        claimed[list(members)] = True
        lines.append(LineGroup(direction=axis, members=members, positions=positions))

    return lines


# ============================================================================
# Lattice indexing
# ============================================================================


def index_lattice(
    lines: list[LineGroup],
    directions: tuple[np.ndarray, np.ndarray],
) -> Lattice | None:
    """
    Combine row and column line groups into integer lattice coordinates.

    Coordinates propagate breadth-first along line edges. Conics reached with
    two different coordinates, and conics sharing a coordinate, are dropped;
    the largest remaining connected component is kept.
    """
    adjacency: dict[int, list[tuple[int, int, int]]] = {}
    for line in lines:
        for k in range(len(line.members) - 1):
            a, b = line.members[k], line.members[k + 1]
            dp = line.positions[k + 1] - line.positions[k]
            du, dv = (dp, 0) if line.direction == 0 else (0, dp)
            adjacency.setdefault(a, []).append((b, du, dv))
            adjacency.setdefault(b, []).append((a, -du, -dv))

    if not adjacency:
        return None

    visited: set[int] = set()
    best: dict[int, tuple[int, int]] = {}

    for root in sorted(adjacency):
        if root in visited:
            continue
        coords = {root: (0, 0)}
        conflicts: set[int] = set()
        queue = deque([root])
        visited.add(root)
        while queue:
            node = queue.popleft()
            u, v = coords[node]
            for other, du, dv in adjacency[node]:
                expected = (u + du, v + dv)
                if other in coords:
                    if coords[other] != expected:
                        conflicts.add(other)
                    continue
                coords[other] = expected
                visited.add(other)
                queue.append(other)

        for node in conflicts:
            coords.pop(node, None)

        by_coord: dict[tuple[int, int], list[int]] = {}
        for node, uv in coords.items():
            by_coord.setdefault(uv, []).append(node)
        component = {nodes[0]: uv for uv, nodes in by_coord.items() if len(nodes) == 1}

        if len(component) > len(best):
            best = component

    if not best:
        return None

    min_u = min(u for u, _ in best.values())
    min_v = min(v for _, v in best.values())
    coords = {node: (u - min_u, v - min_v) for node, (u, v) in best.items()}
    logger.debug("Lattice component with %d conics", len(coords))
    return Lattice(coords=coords, directions=directions)


def line_spacing(centers: np.ndarray, lines: list[LineGroup]) -> np.ndarray:
    """
    Mean image distance per lattice step to line neighbours, per conic
    (NaN for conics in no line).
    """
    n = centers.shape[0]
    total = np.zeros(n, dtype=np.float64)
    count = np.zeros(n, dtype=np.float64)
    for line in lines:
        for k in range(len(line.members) - 1):
            a, b = line.members[k], line.members[k + 1]
            dp = line.positions[k + 1] - line.positions[k]
            step = float(np.hypot(*(centers[b] - centers[a]))) / dp
            total[[a, b]] += step
            count[[a, b]] += 1.0
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(count > 0, total / np.maximum(count, 1.0), np.nan)
