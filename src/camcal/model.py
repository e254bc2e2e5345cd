"""
Camera model and calibration target definitions.

Provides:
- PinholeDistortion / FisheyeDistortion: the two distortion layouts
- CameraModel: immutable intrinsic matrix + distortion + image size
- BoardGeometry: chessboard inner-corner grid and square size
- JSON-ready dict codec for CameraModel
"""

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, Sequence, Tuple, Union

import numpy as np

SCHEMA_VERSION = "1.0"

# Placeholder focal length of the initial guess; never used for undistortion.
DEFAULT_FOCAL_PX = 1.0


def _coefficients(values: Sequence[float], count: int, layout: str) -> Tuple[float, ...]:
    flat = np.asarray(values, dtype=np.float64).reshape(-1)
    if flat.size != count:
        raise ValueError(f"{layout} distortion needs exactly {count} coefficients, got {flat.size}")
    if not np.all(np.isfinite(flat)):
        raise ValueError(f"{layout} distortion coefficients must be finite")
    return tuple(float(v) for v in flat)


@dataclass(frozen=True)
class PinholeDistortion:
    """Radial-tangential (rational) distortion: k1, k2, p1, p2, k3, k4, k5, k6."""
    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0
    k4: float = 0.0
    k5: float = 0.0
    k6: float = 0.0

    COUNT: ClassVar[int] = 8
    NAME: ClassVar[str] = "pinhole"

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "PinholeDistortion":
        return cls(*_coefficients(values, cls.COUNT, cls.NAME))

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, f.name) for f in fields(self)], dtype=np.float64).reshape(-1, 1)

    def to_fisheye(self) -> "FisheyeDistortion":
        return FisheyeDistortion(self.k1, self.k2, self.k3, self.k4)


@dataclass(frozen=True)
class FisheyeDistortion:
    """Equidistant fisheye distortion: k1, k2, k3, k4."""
    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0
    k4: float = 0.0

    COUNT: ClassVar[int] = 4
    NAME: ClassVar[str] = "fisheye"

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "FisheyeDistortion":
        return cls(*_coefficients(values, cls.COUNT, cls.NAME))

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, f.name) for f in fields(self)], dtype=np.float64).reshape(-1, 1)

    def to_pinhole(self) -> PinholeDistortion:
        return PinholeDistortion(k1=self.k1, k2=self.k2, k3=self.k3, k4=self.k4)


Distortion = Union[PinholeDistortion, FisheyeDistortion]


def distortion_layout(fisheye: bool):
    """Return the distortion class used for the given layout flag."""
    return FisheyeDistortion if fisheye else PinholeDistortion


@dataclass(frozen=True)
class BoardGeometry:
    """
    Chessboard calibration target.

    Attributes:
        cols: Inner corners per row
        rows: Inner corners per column
        square_size_mm: Physical side length of one square
    """
    cols: int
    rows: int
    square_size_mm: float

    def __post_init__(self):
        if int(self.cols) < 2 or int(self.rows) < 2:
            raise ValueError("board needs at least 2x2 inner corners")
        if not float(self.square_size_mm) > 0.0:
            raise ValueError("square_size_mm must be positive")

    @property
    def pattern_size(self) -> Tuple[int, int]:
        """(cols, rows) as expected by OpenCV."""
        return (int(self.cols), int(self.rows))

    @property
    def corner_count(self) -> int:
        return int(self.cols) * int(self.rows)

    def object_points(self) -> np.ndarray:
        """Board-plane corner coordinates in millimetres, shape (N, 1, 3)."""
        grid = np.zeros((self.corner_count, 3), np.float32)
        grid[:, :2] = np.mgrid[0:self.cols, 0:self.rows].T.reshape(-1, 2)
        grid *= np.float32(self.square_size_mm)
        return grid.reshape(-1, 1, 3)


@dataclass(frozen=True, eq=False)
class CameraModel:
    """
    Pinhole or fisheye camera model.

    The fisheye flag is not stored separately: it is the type of the
    distortion. Instances are never modified; updates build a new model.

    Attributes:
        intrinsic: 3x3 matrix [[fx, skew, cx], [0, fy, cy], [0, 0, scale]]
        distortion: PinholeDistortion (8) or FisheyeDistortion (4)
        image_size: (width, height) the model refers to
    """
    intrinsic: np.ndarray
    distortion: Distortion
    image_size: Tuple[int, int]

    def __post_init__(self):
        K = np.array(self.intrinsic, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"intrinsic matrix must be 3x3, got {K.shape}")
        if not np.all(np.isfinite(K)):
            raise ValueError("intrinsic matrix must be finite")
        K.setflags(write=False)
        object.__setattr__(self, "intrinsic", K)
        width, height = int(self.image_size[0]), int(self.image_size[1])
        if width <= 0 or height <= 0:
            raise ValueError(f"image size must be positive, got {width}x{height}")
        object.__setattr__(self, "image_size", (width, height))

    @classmethod
    def initial_guess(
        cls,
        frame_size: Tuple[int, int],
        fisheye: bool,
        focal_px: float = DEFAULT_FOCAL_PX,
    ) -> "CameraModel":
        """
        Starting model of a calibration session.

        Principal point at the frame centre, placeholder focal length,
        zero distortion.
        """
        width, height = frame_size
        K = np.array([
            [focal_px, 0.0, width / 2.0],
            [0.0, focal_px, height / 2.0],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)
        return cls(K, distortion_layout(fisheye)(), (width, height))

    @classmethod
    def from_values(
        cls,
        k_values: Sequence[float],
        dist_values: Sequence[float],
        fisheye: bool,
        image_size: Tuple[int, int],
    ) -> "CameraModel":
        """
        Build a model from raw user input.

        Args:
            k_values: 9 intrinsic matrix values, row major
            dist_values: 4 (fisheye) or 8 (pinhole) distortion coefficients
            fisheye: Distortion layout
            image_size: (width, height)

        Raises:
            ValueError: On a wrong number of values
        """
        flat = np.asarray(k_values, dtype=np.float64).reshape(-1)
        if flat.size != 9:
            raise ValueError(f"intrinsic matrix needs 9 values, got {flat.size}")
        distortion = distortion_layout(fisheye).from_array(dist_values)
        return cls(flat.reshape(3, 3), distortion, image_size)

    @property
    def fisheye(self) -> bool:
        return isinstance(self.distortion, FisheyeDistortion)

    @property
    def fx(self) -> float:
        return float(self.intrinsic[0, 0])

    @property
    def fy(self) -> float:
        return float(self.intrinsic[1, 1])

    @property
    def cx(self) -> float:
        return float(self.intrinsic[0, 2])

    @property
    def cy(self) -> float:
        return float(self.intrinsic[1, 2])

    @property
    def skew(self) -> float:
        return float(self.intrinsic[0, 1])

    @property
    def scale(self) -> float:
        return float(self.intrinsic[2, 2])

    @property
    def dist_coeffs(self) -> np.ndarray:
        """Active distortion vector, (4, 1) or (8, 1)."""
        return self.distortion.as_array()

    def with_fisheye(self, fisheye: bool) -> "CameraModel":
        """Return the model converted to the requested distortion layout."""
        if fisheye == self.fisheye:
            return self
        if fisheye:
            distortion: Distortion = self.distortion.to_fisheye()
        else:
            distortion = self.distortion.to_pinhole()
        return CameraModel(self.intrinsic, distortion, self.image_size)

    def scaled_intrinsic(self, frame_size: Tuple[int, int]) -> np.ndarray:
        """Intrinsic matrix rescaled to another frame size."""
        width, height = frame_size
        K = np.array(self.intrinsic, dtype=np.float64)
        if (width, height) == self.image_size:
            return K
        sx = float(width) / float(self.image_size[0])
        sy = float(height) / float(self.image_size[1])
        K[0, :] *= sx
        K[1, :] *= sy
        return K

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation, round-trips through from_dict()."""
        coeffs = self.dist_coeffs.reshape(-1)
        named = {f.name: float(v) for f, v in zip(fields(self.distortion), coeffs)}
        named["array"] = [float(v) for v in coeffs]
        return {
            "schema_version": SCHEMA_VERSION,
            "camera_model": self.distortion.NAME,
            "resolution": {
                "width": self.image_size[0],
                "height": self.image_size[1],
            },
            "camera_matrix": {
                "fx": self.fx,
                "fy": self.fy,
                "cx": self.cx,
                "cy": self.cy,
                "skew": self.skew,
                "scale": self.scale,
                "matrix": self.intrinsic.tolist(),
            },
            "distortion_coefficients": named,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraModel":
        """
        Rebuild a model from to_dict() output.

        Raises:
            ValueError: On unknown camera_model or malformed fields
        """
        kind = data.get("camera_model", PinholeDistortion.NAME)
        if kind not in (PinholeDistortion.NAME, FisheyeDistortion.NAME):
            raise ValueError(f"unknown camera_model: {kind!r}")
        fisheye = kind == FisheyeDistortion.NAME

        res = data.get("resolution")
        if not isinstance(res, dict) or "width" not in res or "height" not in res:
            raise ValueError("camera model needs resolution.width and resolution.height")
        image_size = (int(res["width"]), int(res["height"]))

        cam_matrix = data.get("camera_matrix", {})
        if "matrix" in cam_matrix:
            K = np.array(cam_matrix["matrix"], dtype=np.float64)
        else:
            K = np.array([
                [cam_matrix.get("fx", 1.0), cam_matrix.get("skew", 0.0), cam_matrix.get("cx", 0.0)],
                [0.0, cam_matrix.get("fy", 1.0), cam_matrix.get("cy", 0.0)],
                [0.0, 0.0, cam_matrix.get("scale", 1.0)],
            ], dtype=np.float64)

        layout = distortion_layout(fisheye)
        dist_data = data.get("distortion_coefficients", {})
        if "array" in dist_data:
            distortion = layout.from_array(dist_data["array"])
        else:
            distortion = layout(**{f.name: float(dist_data.get(f.name, 0.0)) for f in fields(layout)})

        return cls(K, distortion, image_size)

    def __repr__(self) -> str:
        return (
            f"CameraModel({self.distortion.NAME}, fx={self.fx:.3f}, fy={self.fy:.3f}, "
            f"cx={self.cx:.3f}, cy={self.cy:.3f}, dist={self.dist_coeffs.reshape(-1).round(5).tolist()}, "
            f"size={self.image_size[0]}x{self.image_size[1]})"
        )
