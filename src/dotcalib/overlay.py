"""
Tracking overlay drawing for display.
"""

from __future__ import annotations

import cv2
import numpy as np

from .session import TrackingResult

# BGR
LINE_COLORS = ((255, 128, 0), (0, 200, 255))  # row lines, column lines
CODE_COLORS = {0: (0, 0, 255), 1: (0, 255, 0), -1: (160, 160, 160)}
TRACKING_GOOD_COLOR = (0, 255, 0)
TRACKING_BAD_COLOR = (0, 0, 255)


def gray_to_bgr(frame: np.ndarray) -> np.ndarray:
    """
    Convert a grayscale frame to a BGR copy for drawing.

    Args:
        frame: (H, W) or (H, W, 3) uint8 array

    Returns:
        (H, W, 3) BGR uint8 array
    """
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    return frame.copy()


def _bbox_color(col: int, row: int, cols: int, rows: int) -> tuple[int, int, int]:
    return (int(255 * col / max(cols - 1, 1)), int(255 * row / max(rows - 1, 1)), 255)


def draw_tracking(
    frame: np.ndarray,
    result: TrackingResult,
    grid_size: tuple[int, int],
    show_lines: bool = True,
    show_crosses: bool = True,
    show_bboxes: bool = True,
) -> np.ndarray:
    """
    Draw one camera's tracking result.

    Args:
        frame: Camera image (grayscale or BGR)
        result: TrackingResult of the camera
        grid_size: (cols, rows) of the target, for bbox colouring
        show_lines: Draw line groups
        show_crosses: Draw a cross per conic, coloured by its code value
        show_bboxes: Draw bboxes of matched conics, coloured by grid position

    Returns:
        New BGR image with the overlay
    """
    out = gray_to_bgr(frame)
    conics = result.conics
    cmap = result.correspondence

    if show_lines:
        for line in cmap.line_groups:
            pts = np.array([conics[i].center for i in line.members], dtype=np.float64)
            cv2.polylines(
                out, [np.round(pts).astype(np.int32)], False, LINE_COLORS[line.direction], 1
            )

    if show_crosses:
        for i, conic in enumerate(conics):
            value = cmap.values[i] if i < len(cmap.values) else -1
            x, y = (int(round(v)) for v in conic.center)
            cv2.drawMarker(out, (x, y), CODE_COLORS.get(value, CODE_COLORS[-1]), cv2.MARKER_CROSS, 6, 1)

    if show_bboxes:
        cols, rows = grid_size
        for i, (col, row) in cmap.matched():
            bbox = conics[i].bbox
            cv2.rectangle(
                out,
                (int(bbox.x0), int(bbox.y0)),
                (int(round(bbox.x1)), int(round(bbox.y1))),
                _bbox_color(col, row, cols, rows),
                1,
            )

    status = TRACKING_GOOD_COLOR if result.tracking_good else TRACKING_BAD_COLOR
    cv2.circle(out, (12, 12), 6, status, -1)
    return out
