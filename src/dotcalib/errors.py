"""
Failure taxonomy and exceptions.

Recognition failures are values, not exceptions: they travel in results
(CorrespondenceMap.failure, TrackingResult.failure) and never abort a
session. Exceptions are kept for invalid configuration and for internal
control flow of the refinement worker.
"""

from __future__ import annotations

from enum import Enum


class Failure(str, Enum):
    """Why a blob, frame or call produced no evidence."""

    SHAPE_REJECTED = "shape_rejected"
    CORRESPONDENCE_INSUFFICIENT = "correspondence_insufficient"
    POSE_DEGENERATE = "pose_degenerate"
    UNKNOWN_REFERENCE = "unknown_reference"
    ACQUISITION_ENDED = "acquisition_ended"


class ConfigError(ValueError):
    """Configuration file or struct holds an invalid value."""


class PassCancelled(Exception):
    """Raised inside a refinement pass when the engine is stopping."""
