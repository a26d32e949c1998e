"""
Input/output adapters: frame acquisition and camera model files.
"""

from .model_io import (
    CameraModelWriter,
    TomlCameraModelWriter,
    load_camera_models,
    write_camera_models,
)
from .video import VideoSource

__all__ = [
    "CameraModelWriter",
    "TomlCameraModelWriter",
    "load_camera_models",
    "write_camera_models",
    "VideoSource",
]
