"""
Synchronized grayscale frame acquisition from video files or devices.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def _open_capture(uri: str | int | Path) -> cv2.VideoCapture:
    if isinstance(uri, str) and uri.isdigit():
        uri = int(uri)
    if isinstance(uri, Path):
        uri = str(uri)
    return cv2.VideoCapture(uri)


class VideoSource:
    """
    One cv2.VideoCapture per camera, read in lockstep.

    read() returns one grayscale frame per stream, or None once any stream
    ends (acquisition ended).
    """

    def __init__(self, uris: list[str | int | Path]):
        if not uris:
            raise ValueError("VideoSource needs at least one stream")
        self.uris = list(uris)
        self._captures: list[cv2.VideoCapture] = []
        for uri in self.uris:
            cap = _open_capture(uri)
            if not cap.isOpened():
                self.close()
                raise IOError(f"Cannot open video: {uri}")
            self._captures.append(cap)
        self.frame_index = 0

    def __len__(self) -> int:
        return len(self.uris)

    @property
    def sizes(self) -> list[tuple[int, int]]:
        """(width, height) of each stream."""
        return [
            (int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))
            for cap in self._captures
        ]

    def read(self) -> list[np.ndarray] | None:
        frames = []
        for uri, cap in zip(self.uris, self._captures):
            ret, frame = cap.read()
            if not ret:
                logger.info("Stream %s ended after %d frames", uri, self.frame_index)
                return None
            if frame.ndim == 3:
                frame = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
            frames.append(frame)
        self.frame_index += 1
        return frames

    def close(self) -> None:
        for cap in self._captures:
            cap.release()
        self._captures = []

    def __enter__(self) -> "VideoSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
