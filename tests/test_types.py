"""
Tests for dotcalib.types dataclasses.
"""

import numpy as np
import pytest

from dotcalib.errors import Failure
from dotcalib.synthetic import make_blob
from dotcalib.detection.conics import validate_blob
from dotcalib.types import (
    BBox,
    CalibrationSnapshot,
    CorrespondenceMap,
    LineGroup,
    Observation,
    Pose,
    pose_from_vector,
    pose_to_vector,
)


class TestBBox:
    def test_dimensions(self):
        bbox = BBox(2.0, 3.0, 12.0, 8.0)
        assert bbox.width == 10.0
        assert bbox.height == 5.0
        assert bbox.area == 50.0

    def test_inverted_box_has_no_area(self):
        assert BBox(5.0, 5.0, 4.0, 9.0).area == 0.0


class TestConic:
    def test_matrix_vanishes_on_boundary(self):
        conic = validate_blob(make_blob((40.0, 25.0), 8.0, 5.0, angle=0.6))
        assert conic is not None

        conic_matrix = conic.matrix()
        for t in np.linspace(0.0, 2 * np.pi, 7):
            local = np.array([conic.major * np.cos(t), conic.minor * np.sin(t)])
            c, s = np.cos(conic.angle), np.sin(conic.angle)
            point = conic.center + np.array([[c, -s], [s, c]]) @ local
            h = np.array([point[0], point[1], 1.0])
            assert h @ conic_matrix @ h == pytest.approx(0.0, abs=1e-9)

    def test_matrix_negative_inside(self):
        conic = validate_blob(make_blob((10.0, 10.0), 4.0, 4.0))
        h = np.array([10.0, 10.0, 1.0])
        assert h @ conic.matrix() @ h < 0.0

    def test_size_is_geometric_mean(self):
        conic = validate_blob(make_blob((0.0, 0.0), 8.0, 2.0))
        assert conic.size == pytest.approx(4.0)


class TestCorrespondenceMap:
    def test_matched_helpers(self):
        conics = [validate_blob(make_blob((float(10 * i), 5.0), 3.0, 3.0)) for i in range(3)]
        cmap = CorrespondenceMap(
            grid_coords=((0, 0), None, (4, 2)),
            values=(1, -1, 0),
            tracking_good=True,
        )
        assert cmap.num_matched == 2
        assert cmap.matched() == [(0, (0, 0)), (2, (4, 2))]
        np.testing.assert_allclose(cmap.image_points(conics), [[0.0, 5.0], [20.0, 5.0]])
        np.testing.assert_array_equal(cmap.grid_points(), [[0, 0], [4, 2]])

    def test_unmatched(self):
        lines = (LineGroup(direction=0, members=(0, 1), positions=(0, 1)),)
        cmap = CorrespondenceMap.unmatched(
            2, values=(1, 0), line_groups=lines, failure=Failure.CORRESPONDENCE_INSUFFICIENT
        )
        assert len(cmap) == 2
        assert cmap.tracking_good is False
        assert cmap.num_matched == 0
        assert cmap.values == (1, 0)
        assert cmap.line_groups == lines
        assert cmap.grid_points().shape == (0, 2)

    def test_frozen(self):
        cmap = CorrespondenceMap.unmatched(1)
        with pytest.raises(AttributeError):
            cmap.tracking_good = True


class TestPose:
    def test_identity(self):
        pose = Pose.identity()
        points = np.array([[1.0, 2.0, 3.0]])
        np.testing.assert_allclose(pose.apply(points), points)

    def test_compose_with_inverse_is_identity(self):
        pose = pose_from_vector(np.array([0.1, -0.2, 0.3, 0.5, -1.0, 2.0]))
        both = pose.compose(pose.inverse())
        np.testing.assert_allclose(both.rotation, np.eye(3), atol=1e-12)
        np.testing.assert_allclose(both.translation, np.zeros(3), atol=1e-12)

    def test_compose_order(self):
        T_ab = pose_from_vector(np.array([0.0, 0.0, np.pi / 2, 1.0, 0.0, 0.0]))
        T_bc = pose_from_vector(np.array([0.0, 0.0, 0.0, 0.0, 2.0, 0.0]))
        point_c = np.array([[0.5, 0.0, 0.0]])
        expected = T_ab.apply(T_bc.apply(point_c))
        np.testing.assert_allclose(T_ab.compose(T_bc).apply(point_c), expected)

    def test_matrix(self):
        pose = pose_from_vector(np.array([0.0, 0.1, 0.0, 1.0, 2.0, 3.0]))
        m = pose.matrix()
        assert m.shape == (4, 4)
        np.testing.assert_allclose(m[0:3, 3], [1.0, 2.0, 3.0])
        np.testing.assert_allclose(m[3], [0.0, 0.0, 0.0, 1.0])

    def test_vector_round_trip(self):
        vector = np.array([0.3, -0.1, 0.25, 0.01, 0.2, 1.5])
        np.testing.assert_allclose(pose_to_vector(pose_from_vector(vector)), vector, atol=1e-12)


class TestObservation:
    def test_frozen(self):
        obs = Observation(frame_id=0, camera_id=1, point_3d=(0.0, 0.0, 0.0), point_2d=(1.0, 2.0))
        with pytest.raises(AttributeError):
            obs.frame_id = 3


class TestCalibrationSnapshot:
    def test_empty_defaults(self):
        snapshot = CalibrationSnapshot()
        assert snapshot.passes == 0
        assert snapshot.num_observations == 0
        assert np.isnan(snapshot.mean_square_error)
        assert dict(snapshot.cameras) == {}

    def test_maps_are_read_only(self):
        snapshot = CalibrationSnapshot()
        with pytest.raises(TypeError):
            snapshot.frames[0] = Pose.identity()
