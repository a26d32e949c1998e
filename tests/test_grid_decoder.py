"""
Tests for the grid decoder: dotcalib.detection.lines and dotcalib.target.
"""

import numpy as np
import pytest

from dotcalib import target as target_module
from dotcalib.config import GridDecoderParams
from dotcalib.detection.conics import find_conics
from dotcalib.detection.image_processing import find_blobs
from dotcalib.detection.lines import Lattice, dominant_directions, extract_lines, index_lattice
from dotcalib.errors import Failure
from dotcalib.synthetic import make_blob, project_dots, render_target, synthetic_blobs, target_pose
from dotcalib.target import (
    TargetGridDot,
    decode_bits,
    find_target,
    generate_codes,
    orientation_hypotheses,
)


def decode(camera, pose, target, exclude=None, extra=()):
    """Synthetic blobs -> conics -> correspondence, plus the true coords."""
    blobs, coords = synthetic_blobs(camera, pose, target, exclude=exclude)
    conics = find_conics(blobs + list(extra))
    return conics, coords, find_target(target, conics)


def assert_correct(cmap, coords):
    """Every matched conic carries its true grid coordinate, each at most once."""
    matched = cmap.matched()
    for conic_index, grid in matched:
        assert conic_index < len(coords)
        assert grid == coords[conic_index]
    grids = [grid for _, grid in matched]
    assert len(set(grids)) == len(grids)


def grid_points(cols, rows, spacing=10.0, origin=(50.0, 40.0)):
    return np.array(
        [[origin[0] + c * spacing, origin[1] + r * spacing] for r in range(rows) for c in range(cols)]
    )


class TestTarget:
    def test_geometry(self, target):
        assert target.grid_size == (19, 10)
        assert target.num_points == 190
        assert target.point_index(3, 2) == 41
        assert target.grid_coord(41) == (3, 2)
        np.testing.assert_allclose(target.circles_3d()[41], [0.06, 0.04, 0.0])
        assert target.contains(18, 9)
        assert not target.contains(19, 0)

    def test_codes_are_reproducible(self):
        np.testing.assert_array_equal(generate_codes(10, 19, 71), generate_codes(10, 19, 71))

    def test_radius_follows_code(self, target):
        big = [(c, r) for c, r in target.grid_coords() if target.code(c, r) == 1][0]
        small = [(c, r) for c, r in target.grid_coords() if target.code(c, r) == 0][0]
        assert target.radius(*big) == pytest.approx(0.3 * target.spacing)
        assert target.radius(*small) == pytest.approx(0.18 * target.spacing)

    def test_uncoded(self, uncoded_target):
        assert not uncoded_target.coded
        assert uncoded_target.code(0, 0) == -1

    def test_invalid(self):
        with pytest.raises(ValueError):
            TargetGridDot(spacing=0.0)
        with pytest.raises(ValueError):
            TargetGridDot(spacing=0.02, grid_size=(4, 3), codes=np.zeros((4, 3)))


class TestLines:
    def test_dominant_directions_of_grid(self):
        a, b = dominant_directions(grid_points(5, 4), GridDecoderParams())
        assert abs(a @ b) < 1e-6
        assert a[0] * b[1] - a[1] * b[0] > 0

    def test_collinear_points_have_no_second_direction(self):
        points = np.array([[float(x), 0.0] for x in range(0, 100, 10)])
        assert dominant_directions(points, GridDecoderParams()) is None

    def test_extract_lines_and_index(self):
        points = grid_points(5, 4)
        params = GridDecoderParams()
        a, b = dominant_directions(points, params)
        lines_a = extract_lines(points, a, 0, params)
        lines_b = extract_lines(points, b, 1, params)

        assert sum(len(line) for line in lines_a) == 20
        assert sum(len(line) for line in lines_b) == 20
        assert {len(line) for line in lines_a} | {len(line) for line in lines_b} == {4, 5}

        lattice = index_lattice(lines_a + lines_b, (a, b))
        assert len(lattice) == 20
        assert len(set(lattice.coords.values())) == 20
        us = {u for u, _ in lattice.coords.values()}
        vs = {v for _, v in lattice.coords.values()}
        assert min(us) == 0 and min(vs) == 0
        assert {len(us), len(vs)} == {4, 5}

    def test_line_bridges_single_gap(self):
        points = np.delete(grid_points(6, 3), 8, axis=0)  # (col 2, row 1) missing
        params = GridDecoderParams()
        a, b = dominant_directions(points, params)
        lattice = index_lattice(
            extract_lines(points, a, 0, params) + extract_lines(points, b, 1, params), (a, b)
        )
        assert len(lattice) == 17


class TestDecodeBits:
    def test_bits_match_codes(self, truth_camera, frontal_pose, target):
        conics, coords, cmap = decode(truth_camera, frontal_pose, target)
        bits = decode_bits(conics, list(cmap.line_groups), target)
        expected = np.array([target.code(c, r) for c, r in coords])
        np.testing.assert_array_equal(bits, expected)


class TestFindTarget:
    def test_full_view(self, truth_camera, frontal_pose, target):
        conics, coords, cmap = decode(truth_camera, frontal_pose, target)
        assert len(conics) == target.num_points
        assert cmap.tracking_good
        assert not cmap.low_confidence
        assert cmap.failure is None
        assert cmap.num_matched == target.num_points
        assert_correct(cmap, coords)

    @pytest.mark.parametrize("rz", [90.0, 180.0, -90.0])
    def test_rotated_target(self, truth_camera, target, rz):
        pose = target_pose(target, 0.55, rx=5.0, ry=5.0, rz=rz)
        _, coords, cmap = decode(truth_camera, pose, target)
        assert cmap.tracking_good
        assert cmap.num_matched > 0.9 * len(coords)
        assert_correct(cmap, coords)

    def test_tilted_view(self, truth_camera, target):
        pose = target_pose(target, 0.45, rx=20.0, ry=-20.0, rz=8.0)
        _, coords, cmap = decode(truth_camera, pose, target)
        assert cmap.tracking_good
        assert_correct(cmap, coords)

    def test_occluded_row(self, truth_camera, frontal_pose, target):
        hidden = {(c, 4) for c in range(target.cols)}
        _, coords, cmap = decode(truth_camera, frontal_pose, target, exclude=hidden)
        assert len(coords) == 171
        assert cmap.tracking_good
        assert cmap.num_matched == 171
        assert_correct(cmap, coords)

    def test_false_positives_stay_unmatched(self, truth_camera, frontal_pose, target):
        strays = [
            make_blob((12.0, 12.0), 4.0, 4.0),
            make_blob((628.0, 14.0), 4.0, 4.0),
            make_blob((14.0, 466.0), 4.0, 4.0),
            make_blob((626.0, 468.0), 4.0, 4.0),
            make_blob((320.0, 460.0), 12.0, 1.0),  # too thin to be a dot
        ]
        conics, coords, cmap = decode(truth_camera, frontal_pose, target, extra=strays)
        assert len(conics) == len(coords) + 4
        assert cmap.tracking_good
        assert all(cmap.grid_coords[i] is None for i in range(len(coords), len(conics)))
        assert_correct(cmap, coords)

    @pytest.mark.parametrize("strays", [[(19, 0)], [(-1, 5)], [(19, 0), (-1, 5)]])
    def test_aligned_strays_past_the_edge(self, truth_camera, frontal_pose, target, strays):
        extra = []
        for col, row in strays:
            point = np.array([col * target.spacing, row * target.spacing, 0.0])
            center = truth_camera.project(frontal_pose.apply(point))[0]
            extra.append(make_blob(tuple(center), 3.0, 3.0))

        conics, coords, cmap = decode(truth_camera, frontal_pose, target, extra=extra)
        assert len(conics) == len(coords) + len(strays)
        assert cmap.tracking_good
        assert cmap.num_matched == target.num_points
        assert all(cmap.grid_coords[i] is None for i in range(len(coords), len(conics)))
        assert_correct(cmap, coords)

    def test_overhanging_hypothesis_scores_outside_nodes(self, target):
        uv = [(c, 0) for c in range(target.cols + 1)] + [(c, 1) for c in range(target.cols)]
        lattice = Lattice(
            coords={i: coord for i, coord in enumerate(uv)},
            directions=(np.array([1.0, 0.0]), np.array([0.0, 1.0])),
        )
        bits = np.full(len(uv), -1, dtype=np.int64)

        hypotheses = orientation_hypotheses(lattice, bits, target)
        assert hypotheses
        best = hypotheses[0]
        assert best.outside == 1
        assert best.score == -1
        assert all(h.outside >= 1 for h in hypotheses)

    def test_no_finite_spacing(self, truth_camera, frontal_pose, target, monkeypatch):
        monkeypatch.setattr(
            target_module, "line_spacing", lambda centers, lines: np.full(len(centers), np.nan)
        )
        _, _, cmap = decode(truth_camera, frontal_pose, target)
        assert not cmap.tracking_good
        assert cmap.num_matched == 0
        assert cmap.failure == Failure.CORRESPONDENCE_INSUFFICIENT

    def test_empty_input(self, target):
        cmap = find_target(target, [])
        assert len(cmap) == 0
        assert not cmap.tracking_good
        assert cmap.failure == Failure.CORRESPONDENCE_INSUFFICIENT

    def test_too_few_visible(self, truth_camera, frontal_pose, target):
        hidden = {(c, r) for c in range(target.cols) for r in range(4, target.rows)}
        conics, coords, cmap = decode(truth_camera, frontal_pose, target, exclude=hidden)
        assert len(coords) == 76
        assert not cmap.tracking_good
        assert cmap.num_matched == 0
        assert len(cmap.values) == len(conics)
        assert cmap.failure == Failure.CORRESPONDENCE_INSUFFICIENT

    def test_uncoded_target_is_low_confidence(self, truth_camera, frontal_pose, uncoded_target):
        _, coords, cmap = decode(truth_camera, frontal_pose, uncoded_target)
        assert cmap.low_confidence
        assert cmap.tracking_good
        assert cmap.num_matched == len(coords)

    def test_rendered_image(self, truth_camera, target):
        pose = target_pose(target, 0.35, rx=8.0, ry=-6.0, rz=3.0)
        image = render_target(truth_camera, pose, target)
        conics = find_conics(find_blobs(image))
        cmap = find_target(target, conics)
        assert cmap.tracking_good

        truth = {grid: center for grid, center, _ in project_dots(truth_camera, pose, target)}
        for conic_index, grid in cmap.matched():
            assert np.linalg.norm(conics[conic_index].center - truth[grid]) < 1.0
