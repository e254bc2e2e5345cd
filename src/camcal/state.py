"""
Shared calibration state.

The two resources shared between the frame loop, detector workers and the
user override path:
- ObservationSet: append-only list of accepted board observations
- ModelCell: version-tagged CameraModel snapshot, swapped wholesale
"""

import threading
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .model import CameraModel

SOURCE_GUESS = "guess"
SOURCE_ESTIMATED = "estimated"
SOURCE_MANUAL = "manual"


@dataclass(frozen=True, eq=False)
class Observation:
    """One successful board detection."""
    image_points: np.ndarray  # (N, 1, 2) float32, pixels
    object_points: np.ndarray  # (N, 1, 3) float32, millimetres
    frame_size: Tuple[int, int]  # width, height

    @property
    def point_count(self) -> int:
        return int(self.image_points.shape[0])


class ObservationSet:
    """
    Thread-safe append-only observation store.

    Appends from concurrent detector workers are serialized by a lock, so
    every append is counted exactly once.
    """

    def __init__(self):
        self._observations: list = []
        self._lock = threading.Lock()

    def append(self, observation: Observation) -> int:
        """Append an observation and return the new count."""
        with self._lock:
            self._observations.append(observation)
            return len(self._observations)

    def snapshot(self) -> Tuple[Observation, ...]:
        """Ordered copy of the current observations."""
        with self._lock:
            return tuple(self._observations)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._observations)

    def __len__(self) -> int:
        return self.count


@dataclass(frozen=True)
class ModelSnapshot:
    """Immutable published state of the camera model."""
    version: int
    model: CameraModel
    source: str
    reprojection_error: Optional[float] = None

    @property
    def calibrated(self) -> bool:
        """True once the model came from a solve or a user override."""
        return self.source in (SOURCE_ESTIMATED, SOURCE_MANUAL)


class ModelCell:
    """
    Single-writer cell holding the current ModelSnapshot.

    Writers (estimator, manual override) go through replace(), which builds
    a new snapshot under the write lock and swaps the reference. Readers get
    whichever complete snapshot is current.
    """

    def __init__(self, initial: Optional[CameraModel] = None):
        self._write_lock = threading.Lock()
        self._version = 0
        self._snapshot: Optional[ModelSnapshot] = None
        if initial is not None:
            self.replace(initial, SOURCE_GUESS)

    def snapshot(self) -> Optional[ModelSnapshot]:
        return self._snapshot

    def replace(
        self,
        model: CameraModel,
        source: str,
        reprojection_error: Optional[float] = None,
    ) -> ModelSnapshot:
        """Publish a new model. Returns the new snapshot."""
        if source not in (SOURCE_GUESS, SOURCE_ESTIMATED, SOURCE_MANUAL):
            raise ValueError(f"unknown model source: {source!r}")
        with self._write_lock:
            self._version += 1
            snap = ModelSnapshot(
                version=self._version,
                model=model,
                source=source,
                reprojection_error=reprojection_error,
            )
            self._snapshot = snap
            return snap

    def clear(self) -> None:
        with self._write_lock:
            self._version += 1
            self._snapshot = None

    @property
    def version(self) -> int:
        snap = self._snapshot
        return snap.version if snap is not None else 0
