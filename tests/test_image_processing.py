"""
Tests for dotcalib.detection.image_processing.
"""

import numpy as np
import pytest

from dotcalib.config import ImageProcessingParams
from dotcalib.detection.image_processing import find_blobs, threshold_image, to_gray
from dotcalib.synthetic import project_dots, render_target


class TestToGray:
    def test_bgr_converted(self):
        image = np.zeros((4, 5, 3), dtype=np.uint8)
        gray = to_gray(image)
        assert gray.shape == (4, 5)
        assert gray.dtype == np.float32


class TestThreshold:
    def test_uniform_image_has_no_foreground(self):
        image = np.full((480, 640), 200, dtype=np.uint8)
        assert threshold_image(image, ImageProcessingParams()).sum() == 0

    def test_dark_square_on_light(self):
        image = np.full((480, 640), 220, dtype=np.uint8)
        image[50:56, 70:76] = 10
        mask = threshold_image(image, ImageProcessingParams())
        assert mask[52, 72] == 1
        assert mask[10, 10] == 0

    def test_white_on_black(self):
        image = np.full((480, 640), 20, dtype=np.uint8)
        image[50:56, 70:76] = 240
        mask = threshold_image(image, ImageProcessingParams(black_on_white=False))
        assert mask[52, 72] == 1
        assert mask[10, 10] == 0


class TestFindBlobs:
    def test_uniform_image(self):
        assert find_blobs(np.full((100, 100), 128, dtype=np.uint8)) == []

    def test_single_square(self):
        image = np.full((480, 640), 220, dtype=np.uint8)
        image[40:50, 60:70] = 0
        blobs = find_blobs(image)
        assert len(blobs) == 1
        blob = blobs[0]
        assert blob.centroid == pytest.approx((64.5, 44.5))
        assert blob.area == 100.0
        assert (blob.bbox.x0, blob.bbox.y0, blob.bbox.x1, blob.bbox.y1) == (60.0, 40.0, 70.0, 50.0)
        # Uniform square: variance (n^2 - 1) / 12 per axis, no correlation
        assert blob.moments == pytest.approx((99.0 / 12.0, 0.0, 99.0 / 12.0))

    def test_min_blob_area(self):
        image = np.full((480, 640), 220, dtype=np.uint8)
        image[40, 60] = 0
        assert find_blobs(image, ImageProcessingParams(min_blob_area=2)) == []

    def test_rendered_target(self, truth_camera, frontal_pose, target):
        image = render_target(truth_camera, frontal_pose, target)
        blobs = find_blobs(image)
        expected = np.array([center for _, center, _ in project_dots(truth_camera, frontal_pose, target)])
        assert len(blobs) == target.num_points

        centroids = np.array([b.centroid for b in blobs])
        dist = np.linalg.norm(centroids[:, None, :] - expected[None, :, :], axis=2)
        assert np.all(dist.min(axis=1) < 0.5)
