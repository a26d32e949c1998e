"""
Conic validation: decide which blobs are plausible target dots.

Pure functions - no classes, no state.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from ..config import ConicFinderParams
from ..errors import Failure
from ..types import Blob, Conic

logger = logging.getLogger(__name__)


def ellipse_from_moments(blob: Blob) -> tuple[float, float, float]:
    """
    Semi-axes and orientation of the ellipse with the blob's second moments.

    A filled ellipse with semi-axes a >= b has covariance eigenvalues
    a^2/4 and b^2/4, so each semi-axis is 2 * sqrt(eigenvalue).
    Degenerate moments fall back to the bounding box.

    Returns:
        (major, minor, angle) with angle of the major axis in radians
    """
    mu20, mu11, mu02 = blob.moments
    cov = np.array([[mu20, mu11], [mu11, mu02]], dtype=np.float64)
    if not np.all(np.isfinite(cov)):
        return _bbox_axes(blob)

    evals = np.linalg.eigvalsh(cov)  # ascending
    if evals[1] <= 0.0:
        return _bbox_axes(blob)

    major = 2.0 * math.sqrt(evals[1])
    minor = 2.0 * math.sqrt(max(evals[0], 0.0))
    angle = 0.5 * math.atan2(2.0 * mu11, mu20 - mu02)
    return major, minor, angle


def _bbox_axes(blob: Blob) -> tuple[float, float, float]:
    w, h = blob.bbox.width / 2.0, blob.bbox.height / 2.0
    if w >= h:
        return w, h, 0.0
    return h, w, math.pi / 2.0


def blob_density(blob: Blob) -> float:
    """Fill fraction of the bounding box."""
    bbox_area = blob.bbox.area
    if bbox_area <= 0.0:
        return 0.0
    return blob.area / bbox_area


def blob_aspect(blob: Blob) -> float:
    """minor / major axis ratio, 0 for a degenerate blob."""
    major, minor, _ = ellipse_from_moments(blob)
    if major <= 0.0:
        return 0.0
    return minor / major


def validate_blob(blob: Blob, params: ConicFinderParams | None = None) -> Conic | None:
    """
    Accept or reject a single blob.

    Args:
        blob: Blob moment summary
        params: Shape thresholds (defaults if None)

    Returns:
        Conic if the blob passes every threshold (values exactly at a
        threshold pass), None otherwise
    """
    if params is None:
        params = ConicFinderParams()

    if not blob.area >= params.min_area:
        return None

    density = blob_density(blob)
    if density < params.min_density:
        return None

    aspect = blob_aspect(blob)
    if aspect < params.min_aspect:
        return None

    major, minor, angle = ellipse_from_moments(blob)

    return Conic(
        center=np.array(blob.centroid, dtype=np.float64),
        bbox=blob.bbox,
        area=float(blob.area),
        major=major,
        minor=minor,
        angle=angle,
        density=density,
        aspect=aspect,
    )


def find_conics(blobs: list[Blob], params: ConicFinderParams | None = None) -> list[Conic]:
    """
    Validate a batch of blobs, preserving input order.
    """
    if params is None:
        params = ConicFinderParams()

    conics = []
    for blob in blobs:
        conic = validate_blob(blob, params)
        if conic is not None:
            conics.append(conic)

    logger.debug(
        "Accepted %d of %d blobs as conics (%d %s)",
        len(conics),
        len(blobs),
        len(blobs) - len(conics),
        Failure.SHAPE_REJECTED.value,
    )
    return conics
