"""
Tests for dotcalib.io.model_io camera model files and dotcalib.camera models.
"""

import numpy as np
import pytest

from dotcalib.calibrator import Calibrator
from dotcalib.camera import BrownModel, Camera, FovModel, PinholeModel, default_camera, get_camera_model
from dotcalib.io.model_io import TomlCameraModelWriter, load_camera_models, write_camera_models
from dotcalib.synthetic import rig_transform


class TestCameraModels:
    @pytest.mark.parametrize("model", [FovModel(), PinholeModel(), BrownModel()])
    def test_unproject_inverts_project(self, model):
        params = model.default_params(640, 480)
        if model.name == "brown":
            params = params + np.array([0, 0, 0, 0, -0.05, 0.01, 0.001, -0.001, 0.0])
        points = np.array([[0.1, -0.2, 1.0], [0.0, 0.0, 2.0], [-0.3, 0.25, 1.5]])
        uv = model.project(params, points)
        normalized = model.unproject(params, uv)
        np.testing.assert_allclose(normalized, points[:, :2] / points[:, 2:], atol=1e-6)

    def test_fov_center_maps_to_principal_point(self):
        params = np.array([400.0, 410.0, 320.0, 240.0, 0.5])
        uv = FovModel().project(params, np.array([[0.0, 0.0, 1.0]]))
        np.testing.assert_allclose(uv, [[320.0, 240.0]])

    def test_fov_zero_w_is_pinhole(self):
        params = np.array([400.0, 410.0, 320.0, 240.0, 0.0])
        points = np.array([[0.2, 0.1, 1.0]])
        np.testing.assert_allclose(
            FovModel().project(params, points), PinholeModel().project(params[:4], points)
        )

    def test_wrong_parameter_count(self):
        with pytest.raises(ValueError):
            Camera(model=FovModel(), params=np.zeros(4), width=640, height=480)

    def test_params_read_only(self):
        camera = default_camera("fov", 640, 480)
        with pytest.raises(ValueError):
            camera.params[0] = 1.0

    def test_default_camera(self):
        camera = default_camera("fov", 640, 480)
        np.testing.assert_allclose(camera.params, [300.0, 300.0, 320.0, 240.0, 0.2])

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            get_camera_model("kannala")


class TestCameraModelFiles:
    def test_round_trip(self, temp_dir, truth_camera):
        cameras = {
            0: truth_camera,
            1: default_camera("brown", 800, 600).with_transform(rig_transform(0.1, 0.5)),
        }
        path = temp_dir / "out" / "cameras.toml"
        write_camera_models(cameras, path)
        loaded = load_camera_models(path)

        assert sorted(loaded) == [0, 1]
        for cam_id, cam in cameras.items():
            assert loaded[cam_id].model_name == cam.model_name
            assert (loaded[cam_id].width, loaded[cam_id].height) == (cam.width, cam.height)
            np.testing.assert_allclose(loaded[cam_id].params, cam.params)
            np.testing.assert_allclose(loaded[cam_id].T_ck.rotation, cam.T_ck.rotation, atol=1e-12)
            np.testing.assert_allclose(loaded[cam_id].T_ck.translation, cam.T_ck.translation)

    def test_missing_key(self, temp_dir):
        path = temp_dir / "bad.toml"
        path.write_text('[cameras.0]\nmodel = "fov"\n')
        with pytest.raises(ValueError):
            load_camera_models(path)

    def test_writer(self, temp_dir, truth_camera, fast_params):
        calibrator = Calibrator(fast_params)
        calibrator.add_camera(truth_camera)
        writer = TomlCameraModelWriter(temp_dir / "rig.toml")
        calibrator.write_camera_models(writer)
        loaded = load_camera_models(writer.path)
        np.testing.assert_allclose(loaded[0].params, truth_camera.params)

    def test_write_to_path(self, temp_dir, truth_camera, fast_params):
        calibrator = Calibrator(fast_params)
        calibrator.add_camera(truth_camera)
        calibrator.write_camera_models(temp_dir / "rig.toml")
        assert (temp_dir / "rig.toml").exists()
