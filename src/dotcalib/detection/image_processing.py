"""
Grayscale image -> blob moments.

Adaptive thresholding against a box-filtered local mean, then connected
component labeling. Only the moment summary of each component leaves this
module; the conic validator decides which blobs are dots.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..config import ImageProcessingParams
from ..types import Blob, BBox


def to_gray(image: np.ndarray) -> np.ndarray:
    """
    Convert a BGR or single-channel frame to float32 grayscale.
    """
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image.astype(np.float32)


def threshold_image(gray: np.ndarray, params: ImageProcessingParams) -> np.ndarray:
    """
    Binary mask of "dot" pixels.

    A pixel is foreground when it is darker than at_threshold times the mean
    of its neighbourhood (or brighter, for white-on-black targets).
    """
    gray = to_gray(gray)
    height, width = gray.shape[:2]

    window = int(round(width / params.at_window_ratio))
    window = max(3, window | 1)  # odd, at least 3

    local_mean = cv2.boxFilter(
        gray, ddepth=-1, ksize=(window, window), borderType=cv2.BORDER_REPLICATE
    )

    if params.black_on_white:
        mask = gray < params.at_threshold * local_mean
    else:
        mask = gray * params.at_threshold > local_mean
    return mask.astype(np.uint8)


def find_blobs(gray: np.ndarray, params: ImageProcessingParams | None = None) -> list[Blob]:
    """
    Detect blobs in a grayscale frame.

    Args:
        gray: (H, W) image, uint8 or float; BGR is converted
        params: Thresholding parameters (defaults if None)

    Returns:
        List of Blob with centroid, bbox, pixel area and second moments
    """
    if params is None:
        params = ImageProcessingParams()

    mask = threshold_image(gray, params)
    n_labels, labels, stats, centroids = cv2.connectedComponentsWithStats(
        mask, connectivity=8, ltype=cv2.CV_32S
    )
    if n_labels <= 1:
        return []

    # Second moments per label from pixel sums
    ys, xs = np.nonzero(labels)
    lab = labels[ys, xs]
    xs = xs.astype(np.float64)
    ys = ys.astype(np.float64)
    count = np.bincount(lab, minlength=n_labels).astype(np.float64)
    count[count == 0] = 1.0
    sx = np.bincount(lab, weights=xs, minlength=n_labels) / count
    sy = np.bincount(lab, weights=ys, minlength=n_labels) / count
    sxx = np.bincount(lab, weights=xs * xs, minlength=n_labels) / count - sx * sx
    sxy = np.bincount(lab, weights=xs * ys, minlength=n_labels) / count - sx * sy
    syy = np.bincount(lab, weights=ys * ys, minlength=n_labels) / count - sy * sy

    blobs = []
    for label in range(1, n_labels):  # label 0 is background
        x, y, w, h, area = stats[label]
        if area < params.min_blob_area:
            continue
        blobs.append(
            Blob(
                centroid=(float(centroids[label][0]), float(centroids[label][1])),
                bbox=BBox(float(x), float(y), float(x + w), float(y + h)),
                area=float(area),
                moments=(float(sxx[label]), float(sxy[label]), float(syy[label])),
            )
        )
    return blobs
