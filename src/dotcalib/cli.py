#!/usr/bin/env python3
"""
dotcalib CLI - multi-camera calibration from grid-of-dots targets.

Usage:
    dotcalib run VIDEO [VIDEO ...]  - Calibrate a rig from one video per camera
    dotcalib simulate               - Calibrate a synthetic rig (demo / smoke test)
    dotcalib default-config PATH    - Write the default configuration
    dotcalib --help                 - Show this help
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

import numpy as np

from .camera import default_camera
from .config import CalibConfig, create_default_config, load_config, save_config
from .errors import ConfigError
from .logging_utils import setup_logging
from .session import CalibrationSession
from .target import TargetGridDot

logger = logging.getLogger(__name__)


def _load(args: argparse.Namespace) -> CalibConfig:
    config = load_config(args.config) if args.config else create_default_config()
    if getattr(args, "spacing", None) is not None:
        config = replace(config, target=replace(config.target, spacing=args.spacing))
    if getattr(args, "model", None) is not None:
        config = replace(config, camera_model=args.model)
    return config


def _finish(session: CalibrationSession, out: Path | None) -> None:
    calibrator = session.calibrator
    calibrator.stop()
    if calibrator.snapshot().passes == 0 and calibrator.num_observations() > 0:
        calibrator.refine_once()
    print(calibrator.results_summary())
    if out is not None:
        calibrator.write_camera_models(out)


def cmd_run(args: argparse.Namespace) -> int:
    import cv2

    from .io.video import VideoSource
    from .overlay import draw_tracking

    config = _load(args)
    target = TargetGridDot.from_params(config.target)
    session = CalibrationSession(target, config)
    session.add_frames = not args.no_add

    with VideoSource(args.videos) as source:
        for width, height in source.sizes:
            session.add_camera(default_camera(config.camera_model, width, height))

        def on_tick(images, tick):
            if tick.frame_id is not None:
                logger.debug("Frame %d: %d observations", tick.frame_id, tick.observations_added)
            if not args.show:
                return None
            for cam_id, image in enumerate(images):
                overlay = draw_tracking(image, tick.tracking[cam_id], target.grid_size)
                cv2.imshow(f"camera {cam_id}", overlay)
            key = cv2.waitKey(1) & 0xFF
            if key == ord("q"):
                return False
            if key == ord(" "):
                session.add_frames = not session.add_frames
                logger.info("Adding frames: %s", session.add_frames)
            return None

        session.calibrator.start()
        try:
            ticks = session.run(source, max_ticks=args.max_frames, on_tick=on_tick)
        finally:
            if args.show:
                cv2.destroyAllWindows()

    logger.info("Processed %d ticks", ticks)
    _finish(session, args.out)
    return 0


def cmd_simulate(args: argparse.Namespace) -> int:
    from .synthetic import rig_transform, synthetic_blobs, target_pose

    config = _load(args)
    target = TargetGridDot.from_params(config.target)
    session = CalibrationSession(target, config)

    # Ground truth a few percent away from the default initial guess
    truth = default_camera(config.camera_model, args.width, args.height)
    shift = np.zeros(truth.params.size)
    shift[2:4] = (4.0, -3.0)
    truth = truth.with_params(truth.params * 1.03 + shift)
    for _ in range(args.cameras):
        session.add_camera(default_camera(config.camera_model, args.width, args.height))

    rng = np.random.default_rng(args.seed)
    distance = 0.9 * target.cols * target.spacing
    rig = [rig_transform(0.2 * distance * j, distance) for j in range(args.cameras)]

    session.calibrator.start()
    for _ in range(args.frames):
        rx, ry, rz = rng.uniform(-25.0, 25.0, size=3)
        T_kw = target_pose(target, distance, rx, ry, rz)
        blobs = []
        for T_ck in rig:
            view, _ = synthetic_blobs(
                truth, T_ck.compose(T_kw), target, noise_px=args.noise, rng=rng
            )
            blobs.append(view)
        session.process_blobs(blobs)

    session.calibrator.wait_until_idle(timeout=args.timeout)
    _finish(session, args.out)
    return 0


def cmd_default_config(args: argparse.Namespace) -> int:
    save_config(create_default_config(args.model or "fov"), args.path)
    print(f"Wrote {args.path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dotcalib", description=__doc__.splitlines()[1])
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", type=Path, default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Calibrate from one video (or device index) per camera.")
    run.add_argument("videos", nargs="+")
    run.add_argument("--config", type=Path, default=None)
    run.add_argument("--spacing", type=float, default=None, help="Dot spacing in metres.")
    run.add_argument("--model", default=None, help="Camera model: fov, pinhole or brown.")
    run.add_argument("--out", type=Path, default=Path("cameras.toml"))
    run.add_argument("--show", action="store_true", help="Show tracking overlays.")
    run.add_argument("--no-add", action="store_true", help="Start with frame adding off.")
    run.add_argument("--max-frames", type=int, default=None)

    sim = sub.add_parser("simulate", help="Calibrate a synthetic rig.")
    sim.add_argument("--config", type=Path, default=None)
    sim.add_argument("--model", default=None)
    sim.add_argument("--cameras", type=int, default=2)
    sim.add_argument("--frames", type=int, default=8)
    sim.add_argument("--width", type=int, default=640)
    sim.add_argument("--height", type=int, default=480)
    sim.add_argument("--noise", type=float, default=0.1, help="Centre noise in pixels.")
    sim.add_argument("--seed", type=int, default=0)
    sim.add_argument("--timeout", type=float, default=60.0)
    sim.add_argument("--out", type=Path, default=None)

    cfg = sub.add_parser("default-config", help="Write the default configuration file.")
    cfg.add_argument("path", type=Path)
    cfg.add_argument("--model", default=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    commands = {
        "run": cmd_run,
        "simulate": cmd_simulate,
        "default-config": cmd_default_config,
    }
    try:
        return commands[args.cmd](args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
