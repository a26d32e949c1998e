"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import numpy as np
import pytest

from dotcalib.camera import Camera, FovModel
from dotcalib.config import CalibratorParams
from dotcalib.synthetic import target_pose
from dotcalib.target import TargetGridDot, generate_codes
from dotcalib.types import Observation


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def target():
    """Coded 19x10 dot target, 2cm spacing."""
    return TargetGridDot(spacing=0.02, grid_size=(19, 10), codes=generate_codes(10, 19, 71))


@pytest.fixture
def uncoded_target():
    """Plain 19x10 dot grid without big/small code."""
    return TargetGridDot(spacing=0.02, grid_size=(19, 10), codes=None)


@pytest.fixture
def truth_camera():
    """Ground-truth FOV camera, 640x480."""
    return Camera(
        model=FovModel(),
        params=np.array([420.0, 425.0, 324.0, 236.0, 0.3]),
        width=640,
        height=480,
    )


@pytest.fixture
def frontal_pose(target):
    """Target centred 0.5m in front of the camera, slightly tilted."""
    return target_pose(target, 0.5, rx=8.0, ry=-6.0, rz=3.0)


@pytest.fixture
def view_poses(target):
    """Four tilted views of the target, T_cw."""
    return [
        target_pose(target, 0.45, rx=25.0, ry=0.0, rz=0.0),
        target_pose(target, 0.45, rx=-20.0, ry=20.0, rz=10.0),
        target_pose(target, 0.5, rx=0.0, ry=-28.0, rz=-5.0),
        target_pose(target, 0.4, rx=15.0, ry=15.0, rz=90.0),
    ]


@pytest.fixture
def fast_params():
    """Calibrator params with enough evaluations to converge in a few passes."""
    return CalibratorParams(max_nfev=200, convergence_tol=1e-12, idle_wait_s=0.01)


@pytest.fixture
def session_for_overlay(target, truth_camera):
    """Single-camera session, used only for tracking."""
    from dotcalib.session import CalibrationSession

    session = CalibrationSession(target)
    session.add_camera(truth_camera)
    return session


def project_observations(camera, poses, target, camera_id=0, T_ck=None):
    """
    Noise-free observations of every visible dot, one frame per pose.

    poses are rig poses T_kw; T_ck (default identity) maps rig to camera.
    """
    observations = []
    points = target.circles_3d()
    for frame_id, T_kw in enumerate(poses):
        T_cw = T_kw if T_ck is None else T_ck.compose(T_kw)
        points_cam = T_cw.apply(points)
        uv = camera.project(points_cam)
        for p3, p2, z in zip(points, uv, points_cam[:, 2]):
            if z <= 0 or not (0 <= p2[0] < camera.width and 0 <= p2[1] < camera.height):
                continue
            observations.append(
                Observation(
                    frame_id=frame_id,
                    camera_id=camera_id,
                    point_3d=tuple(float(v) for v in p3),
                    point_2d=tuple(float(v) for v in p2),
                )
            )
    return observations


def perturb_pose(pose, rng, angle=0.02, shift=0.01):
    """Small random rotation/translation error on a pose."""
    from dotcalib.types import pose_from_vector, pose_to_vector

    vector = pose_to_vector(pose)
    vector[0:3] += rng.uniform(-angle, angle, size=3)
    vector[3:6] += rng.uniform(-shift, shift, size=3)
    return pose_from_vector(vector)
