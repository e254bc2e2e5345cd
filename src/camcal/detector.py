"""
Chessboard corner detection.

detect_chessboard() is a pure function of the frame and the board: it runs
on detector workers and touches no shared state.
"""
from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .model import BoardGeometry
from .state import Observation

FIND_FLAGS = (
    cv2.CALIB_CB_ADAPTIVE_THRESH
    | cv2.CALIB_CB_NORMALIZE_IMAGE
    | cv2.CALIB_CB_FAST_CHECK
)
SUBPIX_WINDOW = (11, 11)
SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.001)


@dataclass(frozen=True, eq=False)
class Detection:
    observation: Observation
    annotated: np.ndarray


def to_gray(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 3 and frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    if frame.ndim == 3:
        return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    return frame


def _subpix_window(board: BoardGeometry, corners: np.ndarray) -> tuple[int, int]:
    # Keep the search window inside one square for small boards in the image.
    pts = corners.reshape(-1, 2)
    first_row = pts[: board.cols]
    spacing = float(np.min(np.linalg.norm(np.diff(first_row, axis=0), axis=1)))
    half = int(max(2, min(SUBPIX_WINDOW[0], spacing / 2.0 - 1)))
    return (half, half)


def detect_chessboard(frame: np.ndarray, board: BoardGeometry) -> Detection | None:
    """
    Search a frame for the full inner-corner grid of the board.

    Args:
        frame: BGR, BGRA or grayscale image
        board: Board geometry

    Returns:
        Detection with the observation and an annotated copy of the frame,
        or None when the pattern is not found
    """
    gray = to_gray(frame)
    found, corners = cv2.findChessboardCorners(gray, board.pattern_size, flags=FIND_FLAGS)
    if not found or corners is None or len(corners) != board.corner_count:
        return None

    corners = cv2.cornerSubPix(
        gray,
        corners,
        _subpix_window(board, corners),
        (-1, -1),
        SUBPIX_CRITERIA,
    )

    if frame.ndim == 2:
        annotated = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
    else:
        annotated = frame.copy()
    cv2.drawChessboardCorners(annotated, board.pattern_size, corners, True)

    h, w = gray.shape[:2]
    observation = Observation(
        image_points=np.asarray(corners, dtype=np.float32).reshape(-1, 1, 2),
        object_points=board.object_points(),
        frame_size=(int(w), int(h)),
    )
    return Detection(observation=observation, annotated=annotated)
