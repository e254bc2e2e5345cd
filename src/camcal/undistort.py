"""
Undistortion engine.

Rectifies frames with the currently published camera model. Remap tables
are cached per (model version, frame size) and rebuilt when either changes.
"""

import threading
from typing import Optional, Tuple

import cv2
import numpy as np

from .log import get_logger
from .model import CameraModel
from .state import ModelCell, ModelSnapshot

logger = get_logger(__name__)

DEFAULT_ALPHA = 0.0


def build_rectify_maps(
    model: CameraModel,
    frame_size: Tuple[int, int],
    alpha: float = DEFAULT_ALPHA,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build remap tables for one model and frame size.

    Args:
        model: Camera model
        frame_size: (width, height) of the frames to rectify
        alpha: Free scaling, 0 crops to valid pixels, 1 keeps all source pixels

    Returns:
        (map1, map2) for cv2.remap
    """
    K = model.scaled_intrinsic(frame_size)
    D = model.dist_coeffs

    if model.fisheye:
        new_K = cv2.fisheye.estimateNewCameraMatrixForUndistortRectify(
            K, D, frame_size, np.eye(3), balance=alpha
        )
        return cv2.fisheye.initUndistortRectifyMap(
            K, D, np.eye(3), new_K, frame_size, cv2.CV_16SC2
        )

    new_K, _roi = cv2.getOptimalNewCameraMatrix(K, D, frame_size, alpha, frame_size)
    return cv2.initUndistortRectifyMap(K, D, None, new_K, frame_size, cv2.CV_16SC2)


class UndistortEngine:
    """
    Cached frame rectifier bound to a ModelCell.

    undistort() returns None while no calibrated model exists (the caller
    shows the raw frame).

    Usage:
        engine = UndistortEngine(model_cell, alpha=0.0)
        rectified = engine.undistort(frame)
    """

    def __init__(self, model_cell: ModelCell, alpha: float = DEFAULT_ALPHA):
        if not 0.0 <= alpha <= 1.0:
            raise ValueError("alpha must be in [0, 1]")
        self.model_cell: Optional[ModelCell] = model_cell
        self.alpha = float(alpha)

        self._lock = threading.Lock()
        self._key: Optional[Tuple[int, int, int]] = None
        self._maps: Optional[Tuple[np.ndarray, np.ndarray]] = None
        self.rebuild_count = 0

    def undistort(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Rectify a frame, or return None when there is no calibrated model."""
        cell = self.model_cell
        if cell is None:
            return None
        snap = cell.snapshot()
        if snap is None or not snap.calibrated:
            return None

        h, w = frame.shape[:2]
        map1, map2 = self._maps_for(snap, (int(w), int(h)))
        return cv2.remap(frame, map1, map2, interpolation=cv2.INTER_LINEAR,
                         borderMode=cv2.BORDER_CONSTANT)

    def _maps_for(self, snap: ModelSnapshot, frame_size: Tuple[int, int]):
        key = (snap.version, frame_size[0], frame_size[1])
        with self._lock:
            if self._key != key or self._maps is None:
                self._maps = build_rectify_maps(snap.model, frame_size, self.alpha)
                self._key = key
                self.rebuild_count += 1
                logger.debug(
                    "Rectify maps rebuilt for model v%d at %dx%d",
                    snap.version, frame_size[0], frame_size[1],
                )
            return self._maps

    @property
    def cache_key(self) -> Optional[Tuple[int, int, int]]:
        """(model version, width, height) of the cached maps."""
        return self._key

    def release(self) -> None:
        """Drop cached maps and the model reference."""
        with self._lock:
            self._maps = None
            self._key = None
            self.model_cell = None
