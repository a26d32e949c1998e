"""
Tests for the dotcalib command line and logging setup.
"""

import logging

from dotcalib.cli import build_parser, main
from dotcalib.config import load_config
from dotcalib.io.model_io import load_camera_models
from dotcalib.logging_utils import ROOT_LOGGER_NAME, setup_logging


class TestLogging:
    def test_setup_is_idempotent(self, temp_dir):
        log_file = temp_dir / "logs" / "dotcalib.log"
        setup_logging("DEBUG", log_file)
        logger = setup_logging("DEBUG", log_file)
        assert logger.name == ROOT_LOGGER_NAME
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2

        logging.getLogger("dotcalib.session").info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert "hello" in log_file.read_text()
        setup_logging("WARNING")

    def test_unknown_level_falls_back_to_info(self):
        assert setup_logging("chatty").level == logging.INFO
        setup_logging("WARNING")


class TestCli:
    def test_parser(self):
        args = build_parser().parse_args(["run", "a.mp4", "b.mp4", "--spacing", "0.02"])
        assert args.cmd == "run"
        assert args.videos == ["a.mp4", "b.mp4"]
        assert args.spacing == 0.02

    def test_default_config(self, temp_dir):
        path = temp_dir / "dotcalib.toml"
        assert main(["--log-level", "WARNING", "default-config", str(path), "--model", "brown"]) == 0
        assert load_config(path).camera_model == "brown"

    def test_bad_config_exit_code(self, temp_dir):
        code = main(["--log-level", "WARNING", "run", "0", "--config", str(temp_dir / "missing.toml")])
        assert code == 2

    def test_simulate(self, temp_dir):
        out = temp_dir / "cameras.toml"
        code = main(
            [
                "--log-level",
                "WARNING",
                "simulate",
                "--cameras",
                "2",
                "--frames",
                "4",
                "--noise",
                "0",
                "--out",
                str(out),
            ]
        )
        assert code == 0
        cameras = load_camera_models(out)
        assert sorted(cameras) == [0, 1]
