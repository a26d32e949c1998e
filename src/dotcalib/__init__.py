# dotcalib - Multi-camera calibration from grid-of-dots targets

__version__ = "0.1.0"

# Core types
from dotcalib.types import (
    BBox,
    Blob,
    Conic,
    LineGroup,
    CorrespondenceMap,
    Pose,
    Observation,
    PoseEstimate,
    CalibrationSnapshot,
    pose_to_vector,
    pose_from_vector,
)

# Camera models
from dotcalib.camera import (
    Camera,
    CameraModel,
    FovModel,
    PinholeModel,
    BrownModel,
    CAMERA_MODELS,
    default_camera,
)

# Errors
from dotcalib.errors import Failure, ConfigError

# Configuration
from dotcalib.config import (
    CalibConfig,
    load_config,
    save_config,
    create_default_config,
)

# Recognition pipeline
from dotcalib.detection import find_blobs, validate_blob, find_conics
from dotcalib.target import TargetGridDot, find_target
from dotcalib.pose import estimate_pose, pose_from_correspondence

# Calibration engine
from dotcalib.bundle_adjustment import run_bundle_adjustment
from dotcalib.calibrator import Calibrator, CalibratorState
from dotcalib.session import CalibrationSession, TrackingResult

__all__ = [
    # Core types
    "BBox",
    "Blob",
    "Conic",
    "LineGroup",
    "CorrespondenceMap",
    "Pose",
    "Observation",
    "PoseEstimate",
    "CalibrationSnapshot",
    "pose_to_vector",
    "pose_from_vector",
    # Camera models
    "Camera",
    "CameraModel",
    "FovModel",
    "PinholeModel",
    "BrownModel",
    "CAMERA_MODELS",
    "default_camera",
    # Errors
    "Failure",
    "ConfigError",
    # Configuration
    "CalibConfig",
    "load_config",
    "save_config",
    "create_default_config",
    # Recognition pipeline
    "find_blobs",
    "validate_blob",
    "find_conics",
    "TargetGridDot",
    "find_target",
    "estimate_pose",
    "pose_from_correspondence",
    # Calibration engine
    "run_bundle_adjustment",
    "Calibrator",
    "CalibratorState",
    "CalibrationSession",
    "TrackingResult",
]
