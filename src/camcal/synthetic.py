"""
Synthetic chessboard data.

Provides functionality to:
- Render a clean chessboard image for a BoardGeometry
- Draw random board poses that keep the whole board in view
- Project board corners through a known camera (observations without images)
- Render perspective views of the board and apply lens distortion to them

Used by the self-test mode and the test suite; no camera hardware needed.
"""

from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from .model import BoardGeometry
from .state import Observation

DEFAULT_SQUARE_PX = 40
DEFAULT_MARGIN_PX = 40
DEFAULT_DEPTH_MM = (400.0, 600.0)
DEFAULT_MAX_ANGLE_DEG = 30.0
DEFAULT_MAX_RADIUS = 0.85
BORDER_PX = 10


def render_chessboard(
    board: BoardGeometry,
    square_px: int = DEFAULT_SQUARE_PX,
    margin_px: int = DEFAULT_MARGIN_PX,
) -> np.ndarray:
    """
    Render the board as a grayscale image.

    The board has (cols + 1) x (rows + 1) squares with a white margin; inner
    corner (i, j) is the pixel edge at (margin + (i + 1) * square_px,
    margin + (j + 1) * square_px).
    """
    squares_x = board.cols + 1
    squares_y = board.rows + 1
    width = squares_x * square_px + 2 * margin_px
    height = squares_y * square_px + 2 * margin_px
    img = np.full((height, width), 255, dtype=np.uint8)
    for j in range(squares_y):
        for i in range(squares_x):
            if (i + j) % 2 == 0:
                x0 = margin_px + i * square_px
                y0 = margin_px + j * square_px
                img[y0:y0 + square_px, x0:x0 + square_px] = 0
    return img


def _board_outline(board: BoardGeometry) -> np.ndarray:
    # Outer corners of the printed squares, board plane, millimetres.
    s = float(board.square_size_mm)
    x0, y0 = -s, -s
    x1, y1 = board.cols * s, board.rows * s
    return np.array([[x0, y0, 0], [x1, y0, 0], [x1, y1, 0], [x0, y1, 0]], dtype=np.float64)


def _board_center(board: BoardGeometry) -> np.ndarray:
    s = float(board.square_size_mm)
    return np.array([(board.cols - 1) * s / 2.0, (board.rows - 1) * s / 2.0, 0.0])


def random_board_poses(
    board: BoardGeometry,
    K: np.ndarray,
    image_size: Tuple[int, int],
    count: int,
    seed: int = 0,
    depth_mm: Tuple[float, float] = DEFAULT_DEPTH_MM,
    max_angle_deg: float = DEFAULT_MAX_ANGLE_DEG,
    max_radius: float = DEFAULT_MAX_RADIUS,
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Draw board poses whose full outline projects inside the image.

    Args:
        board: Board geometry
        K: Camera matrix used for the visibility check
        image_size: (width, height)
        count: Number of poses
        seed: Random seed
        depth_mm: Range of board-centre distances
        max_angle_deg: Tilt range around the x and y axes
        max_radius: Largest normalized image radius a corner may reach

    Returns:
        List of (rvec, tvec), each (3, 1) float64

    Raises:
        RuntimeError: If the constraints leave too few valid poses
    """
    rng = np.random.default_rng(seed)
    width, height = image_size
    K = np.asarray(K, dtype=np.float64)
    outline = _board_outline(board)
    center = _board_center(board)

    poses = []
    attempts = 0
    max_attempts = max(1, count * 500)
    while len(poses) < count and attempts < max_attempts:
        attempts += 1
        angles = [
            rng.uniform(-max_angle_deg, max_angle_deg),
            rng.uniform(-max_angle_deg, max_angle_deg),
            rng.uniform(-max_angle_deg / 2.0, max_angle_deg / 2.0),
        ]
        R = Rotation.from_euler("xyz", angles, degrees=True).as_matrix()
        z = rng.uniform(depth_mm[0], depth_mm[1])
        offset = rng.uniform(-0.3, 0.3, size=2) * z
        t = np.array([offset[0], offset[1], z]) - R @ center

        cam = outline @ R.T + t
        if np.any(cam[:, 2] <= 0):
            continue
        normalized = cam[:, :2] / cam[:, 2:3]
        if np.any(np.linalg.norm(normalized, axis=1) > max_radius):
            continue
        pixels = normalized @ K[:2, :2].T + K[:2, 2]
        if (
            np.any(pixels[:, 0] < BORDER_PX) or np.any(pixels[:, 0] > width - BORDER_PX)
            or np.any(pixels[:, 1] < BORDER_PX) or np.any(pixels[:, 1] > height - BORDER_PX)
        ):
            continue

        rvec = Rotation.from_matrix(R).as_rotvec().reshape(3, 1)
        poses.append((rvec, t.reshape(3, 1)))

    if len(poses) < count:
        raise RuntimeError(f"only {len(poses)} of {count} board poses fit the image")
    return poses


def project_points(
    object_points: np.ndarray,
    rvec: np.ndarray,
    tvec: np.ndarray,
    K: np.ndarray,
    D: np.ndarray,
    fisheye: bool = False,
) -> np.ndarray:
    """Project board points through a camera, returns (N, 1, 2) float64."""
    if fisheye:
        projected, _ = cv2.fisheye.projectPoints(
            object_points.reshape(1, -1, 3).astype(np.float64),
            rvec, tvec, K, np.asarray(D, dtype=np.float64).reshape(4, 1),
        )
    else:
        projected, _ = cv2.projectPoints(
            object_points.reshape(-1, 1, 3).astype(np.float64), rvec, tvec, K, D
        )
    return projected.reshape(-1, 1, 2)


def project_observations(
    board: BoardGeometry,
    K: np.ndarray,
    D: Sequence[float],
    image_size: Tuple[int, int],
    count: int,
    seed: int = 0,
    noise_px: float = 0.0,
    fisheye: bool = False,
) -> List[Observation]:
    """
    Observations of a known camera, as a detector would report them.

    Args:
        board: Board geometry
        K: Ground-truth camera matrix
        D: Ground-truth distortion coefficients
        image_size: (width, height)
        count: Number of views
        seed: Random seed for poses and noise
        noise_px: Standard deviation of Gaussian corner noise
        fisheye: Project with the fisheye model
    """
    K = np.asarray(K, dtype=np.float64)
    D = np.asarray(D, dtype=np.float64).reshape(-1, 1)
    rng = np.random.default_rng(seed + 1)
    object_points = board.object_points()

    observations = []
    for rvec, tvec in random_board_poses(board, K, image_size, count, seed=seed):
        image_points = project_points(object_points, rvec, tvec, K, D, fisheye)
        if noise_px > 0.0:
            image_points = image_points + rng.normal(0.0, noise_px, size=image_points.shape)
        observations.append(Observation(
            image_points=image_points.astype(np.float32),
            object_points=object_points,
            frame_size=(int(image_size[0]), int(image_size[1])),
        ))
    return observations


def render_board_view(
    board: BoardGeometry,
    K: np.ndarray,
    image_size: Tuple[int, int],
    rvec: np.ndarray,
    tvec: np.ndarray,
    board_img: Optional[np.ndarray] = None,
    square_px: int = DEFAULT_SQUARE_PX,
    margin_px: int = DEFAULT_MARGIN_PX,
) -> np.ndarray:
    """
    Render the board as seen by an ideal (distortion-free) pinhole camera.

    The plane-to-image homography is K [r1 r2 t] composed with the mapping
    from board-image pixels to board millimetres.
    """
    if board_img is None:
        board_img = render_chessboard(board, square_px, margin_px)
    s = float(board.square_size_mm)
    # Square edges fall between pixel centres, so corner (0, 0) sits at
    # margin + square - 0.5 in pixel-centre coordinates.
    origin = margin_px + square_px - 0.5
    px_to_mm = np.array([
        [s / square_px, 0.0, -origin * s / square_px],
        [0.0, s / square_px, -origin * s / square_px],
        [0.0, 0.0, 1.0],
    ])
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))
    plane = np.column_stack([R[:, 0], R[:, 1], np.asarray(tvec, dtype=np.float64).reshape(3)])
    H = np.asarray(K, dtype=np.float64) @ plane @ px_to_mm
    return cv2.warpPerspective(
        board_img, H, (int(image_size[0]), int(image_size[1])),
        flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=255,
    )


def distortion_maps(
    K: np.ndarray,
    D: Sequence[float],
    image_size: Tuple[int, int],
    fisheye: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Remap tables that turn an ideal view into a distorted one.

    Each distorted pixel samples the ideal image at its undistorted position.
    Pixels the lens model cannot produce (strong barrel distortion near the
    frame corners) sample outside the image and stay at the border value.
    """
    width, height = image_size
    K = np.asarray(K, dtype=np.float64)
    D = np.asarray(D, dtype=np.float64).reshape(-1, 1)
    xs, ys = np.meshgrid(np.arange(width, dtype=np.float32), np.arange(height, dtype=np.float32))
    grid = np.stack([xs.ravel(), ys.ravel()], axis=1).reshape(-1, 1, 2)
    if fisheye:
        normalized = cv2.fisheye.undistortPoints(grid, K, D)
        redistorted = cv2.fisheye.distortPoints(normalized, K, D)
    else:
        normalized = cv2.undistortPoints(grid, K, D)
        points = np.concatenate([normalized.reshape(-1, 2), np.ones((grid.shape[0], 1))], axis=1)
        zero = np.zeros((3, 1), dtype=np.float64)
        redistorted, _ = cv2.projectPoints(points, zero, zero, K, D)

    ideal = normalized.reshape(-1, 2).astype(np.float64) @ K[:2, :2].T + K[:2, 2]
    invalid = np.linalg.norm(redistorted.reshape(-1, 2) - grid.reshape(-1, 2), axis=1) > 0.5
    ideal[invalid] = -1.0
    ideal = ideal.reshape(height, width, 2).astype(np.float32)
    return ideal[..., 0].copy(), ideal[..., 1].copy()


def apply_lens_distortion(
    image: np.ndarray,
    K: np.ndarray,
    D: Sequence[float],
    fisheye: bool = False,
    maps: Optional[Tuple[np.ndarray, np.ndarray]] = None,
) -> np.ndarray:
    """Distort an ideal view with the given lens model."""
    h, w = image.shape[:2]
    if maps is None:
        maps = distortion_maps(K, D, (w, h), fisheye)
    return cv2.remap(
        image, maps[0], maps[1], interpolation=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT, borderValue=255,
    )
