import sys
from pathlib import Path

import cv2
import numpy as np

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camcal.detector import detect_chessboard  # noqa: E402
from camcal.model import BoardGeometry  # noqa: E402
from camcal.synthetic import (  # noqa: E402
    apply_lens_distortion,
    project_points,
    random_board_poses,
    render_board_view,
)

BOARD = BoardGeometry(9, 6, 25.0)
SIZE = (1280, 720)
K = np.array([[800.0, 0.0, 640.0], [0.0, 800.0, 360.0], [0.0, 0.0, 1.0]])


def _nearest_errors(detected: np.ndarray, truth: np.ndarray) -> np.ndarray:
    # Corner ordering may start from either end of a symmetric board.
    d = detected.reshape(-1, 1, 2) - truth.reshape(1, -1, 2)
    return np.min(np.linalg.norm(d, axis=2), axis=1)


def test_detects_board_in_rendered_view() -> None:
    rvec, tvec = random_board_poses(BOARD, K, SIZE, 1, seed=3)[0]
    view = render_board_view(BOARD, K, SIZE, rvec, tvec)
    frame = cv2.cvtColor(view, cv2.COLOR_GRAY2BGR)

    detection = detect_chessboard(frame, BOARD)

    assert detection is not None
    obs = detection.observation
    assert obs.point_count == 54
    assert obs.image_points.shape == (54, 1, 2)
    assert obs.image_points.dtype == np.float32
    assert obs.frame_size == SIZE
    np.testing.assert_array_equal(obs.object_points, BOARD.object_points())

    truth = project_points(BOARD.object_points(), rvec, tvec, K, np.zeros(5))
    errors = _nearest_errors(obs.image_points, truth)
    print(f"max corner error: {errors.max():.3f}px")
    assert errors.max() < 0.5

    # Annotation goes to a copy.
    assert detection.annotated.shape == frame.shape
    assert not np.shares_memory(detection.annotated, frame)
    assert np.any(detection.annotated != frame)


def test_detects_board_in_distorted_grayscale_view() -> None:
    D = np.array([-0.3, 0.0, 0.0, 0.0, 0.0])
    rvec, tvec = random_board_poses(BOARD, K, SIZE, 1, seed=7)[0]
    view = apply_lens_distortion(render_board_view(BOARD, K, SIZE, rvec, tvec), K, D)

    detection = detect_chessboard(view, BOARD)

    assert detection is not None
    assert detection.annotated.ndim == 3
    truth = project_points(BOARD.object_points(), rvec, tvec, K, D)
    assert _nearest_errors(detection.observation.image_points, truth).max() < 1.0


def test_miss_returns_none() -> None:
    blank = np.full((480, 640, 3), 200, dtype=np.uint8)
    assert detect_chessboard(blank, BOARD) is None
    assert detect_chessboard(np.ascontiguousarray(blank[:, :, 0]), BOARD) is None
