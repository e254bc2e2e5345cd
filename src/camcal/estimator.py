"""
Calibration estimator.

Owns the observation set and publishes camera models into the model cell.

Provides functionality to:
- Accumulate board observations from concurrent detector workers
- Re-solve the pinhole (calibrateCamera) or fisheye (fisheye.calibrate)
  model over all observations on a fixed cadence
- Seed each solve with the previous model when one exists (refining)
- Report RMS and per-view reprojection errors and their quality band
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .exceptions import EstimationFailureError
from .log import get_logger
from .model import BoardGeometry, CameraModel, FisheyeDistortion, PinholeDistortion
from .state import (
    SOURCE_ESTIMATED, SOURCE_GUESS, SOURCE_MANUAL,
    ModelCell, Observation, ObservationSet,
)

logger = get_logger(__name__)

DEFAULT_MIN_OBSERVATIONS = 5
DEFAULT_RECALIBRATE_EVERY = 1
SOLVER_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 100, 1e-6)

GOOD_ERROR_PX = 0.5
MARGINAL_ERROR_PX = 1.0

QUALITY_GOOD = "good"
QUALITY_MARGINAL = "marginal"
QUALITY_POOR = "poor"


def fisheye_flag(name: str) -> int:
    """
    Fisheye calibration flag by name.

    OpenCV 4.x defines these in cv2.fisheye; 5.x moved them to the top-level
    CALIB_* namespace.
    """
    value = getattr(cv2.fisheye, name, None)
    if value is None:
        value = getattr(cv2, name, None)
    if value is None:
        raise ValueError(f"OpenCV has no fisheye flag {name}")
    return int(value)


def quality_band(reprojection_error: float) -> str:
    """Presentation band of an RMS reprojection error (pixels)."""
    if reprojection_error <= GOOD_ERROR_PX:
        return QUALITY_GOOD
    if reprojection_error <= MARGINAL_ERROR_PX:
        return QUALITY_MARGINAL
    return QUALITY_POOR


@dataclass(frozen=True)
class RecalibrationResult:
    """Outcome of one successful calibration solve."""
    model: CameraModel
    reprojection_error: float
    refining: bool
    observation_count: int
    version: int
    per_view_errors: List[float] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def quality(self) -> str:
        return quality_band(self.reprojection_error)

    @property
    def intrinsic(self) -> np.ndarray:
        return self.model.intrinsic

    @property
    def dist_coeffs(self) -> np.ndarray:
        return self.model.dist_coeffs


def compute_per_view_errors(
    observations: Sequence[Observation],
    model: CameraModel,
    rvecs: Sequence[np.ndarray],
    tvecs: Sequence[np.ndarray],
) -> List[float]:
    """
    Per-view RMS reprojection errors.

    Args:
        observations: Observations in solve order
        model: Solved camera model
        rvecs: Per-view rotation vectors from the solve
        tvecs: Per-view translation vectors from the solve

    Returns:
        One RMS pixel error per view
    """
    errors = []
    K = model.intrinsic
    D = model.dist_coeffs
    for obs, rvec, tvec in zip(observations, rvecs, tvecs):
        if model.fisheye:
            projected, _ = cv2.fisheye.projectPoints(
                obs.object_points.reshape(1, -1, 3).astype(np.float64),
                np.asarray(rvec, dtype=np.float64).reshape(3, 1),
                np.asarray(tvec, dtype=np.float64).reshape(3, 1),
                K,
                D,
            )
        else:
            projected, _ = cv2.projectPoints(
                obs.object_points.astype(np.float64), rvec, tvec, K, D
            )
        diff = obs.image_points.reshape(-1, 2) - projected.reshape(-1, 2)
        errors.append(float(np.sqrt(np.mean(np.sum(diff * diff, axis=1)))))
    return errors


class CalibrationEstimator:
    """
    Incremental calibration over a growing observation set.

    add_observation() is called from detector workers. Solves are serialized
    by a calibration lock; a request that arrives while a solve is running
    marks the estimator dirty, and the running worker solves once more
    before releasing the lock.

    Usage:
        estimator = CalibrationEstimator(board, (1280, 720), fisheye=False)
        estimator.set_result_callback(on_new_params)
        estimator.add_observation(obs)   # from a worker thread
    """

    def __init__(
        self,
        board: BoardGeometry,
        frame_size: Tuple[int, int],
        fisheye: bool = False,
        model_cell: Optional[ModelCell] = None,
        observations: Optional[ObservationSet] = None,
        min_observations: int = DEFAULT_MIN_OBSERVATIONS,
        recalibrate_every: int = DEFAULT_RECALIBRATE_EVERY,
        rational_model: bool = False,
    ):
        """
        Args:
            board: Board geometry of this session
            frame_size: Configured (width, height)
            fisheye: Initial distortion layout
            model_cell: Cell to publish into (default: new cell with the
                initial guess)
            observations: Observation store (default: new empty set)
            min_observations: Observations needed before the first solve
            recalibrate_every: Solve on every N-th observation after that
            rational_model: Estimate k4..k6 of the pinhole layout
        """
        if min_observations < 1:
            raise ValueError("min_observations must be >= 1")
        if recalibrate_every < 1:
            raise ValueError("recalibrate_every must be >= 1")

        self.board = board
        self.frame_size = (int(frame_size[0]), int(frame_size[1]))
        self.min_observations = int(min_observations)
        self.recalibrate_every = int(recalibrate_every)
        self.rational_model = bool(rational_model)

        self._fisheye = bool(fisheye)
        self.model_cell = model_cell if model_cell is not None else ModelCell(
            CameraModel.initial_guess(self.frame_size, self._fisheye)
        )
        self.observations = observations if observations is not None else ObservationSet()

        self._calib_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending = False

        self._result_callback: Optional[Callable[[RecalibrationResult], None]] = None
        self._failure_callback: Optional[Callable[[EstimationFailureError], None]] = None

        self.solve_count = 0
        self.failure_count = 0

    def set_result_callback(self, callback: Callable[[RecalibrationResult], None]) -> None:
        """Set callback for newly published models."""
        self._result_callback = callback

    def set_failure_callback(self, callback: Callable[[EstimationFailureError], None]) -> None:
        """Set callback for failed solves triggered by add_observation()."""
        self._failure_callback = callback

    @property
    def fisheye(self) -> bool:
        return self._fisheye

    @property
    def cb_count(self) -> int:
        """Number of accepted board observations."""
        return self.observations.count

    def add_observation(self, observation: Observation) -> Optional[RecalibrationResult]:
        """
        Append an observation and recalibrate when the cadence is reached.

        Runs on the calling (worker) thread. Estimation failures are logged
        and reported through the failure callback, not raised.

        Returns:
            The result of a solve run by this call, or None
        """
        return self.recalibrate_if_due(self.append_observation(observation))

    def append_observation(self, observation: Observation) -> int:
        """Store an observation without solving. Returns the new count."""
        count = self.observations.append(observation)
        logger.debug("Observation %d added (%d corners)", count, observation.point_count)
        return count

    def recalibrate_if_due(self, count: int) -> Optional[RecalibrationResult]:
        """Solve if the observation count hit the recalibration cadence."""
        if count < self.min_observations:
            return None
        if (count - self.min_observations) % self.recalibrate_every != 0:
            return None

        return self._request_recalibration()

    def _request_recalibration(self) -> Optional[RecalibrationResult]:
        with self._pending_lock:
            self._pending = True

        result = None
        while True:
            if not self._calib_lock.acquire(blocking=False):
                # The running solve picks up the pending flag.
                return result
            try:
                drained = self._drain_pending_locked()
                if drained is not None:
                    result = drained
            finally:
                self._calib_lock.release()
            # A request may have arrived between the last check and the release.
            if not self._has_pending():
                return result

    def _drain_pending_locked(self) -> Optional[RecalibrationResult]:
        result = None
        while True:
            with self._pending_lock:
                if not self._pending:
                    return result
                self._pending = False
            try:
                result = self._recalibrate_locked()
            except EstimationFailureError as exc:
                logger.warning("Calibration solve failed: %s", exc)
                if self._failure_callback:
                    self._failure_callback(exc)

    def _has_pending(self) -> bool:
        with self._pending_lock:
            return self._pending

    def recalibrate(self) -> RecalibrationResult:
        """
        Solve over every observation collected so far.

        Blocks while another solve is running.

        Raises:
            EstimationFailureError: Too few observations, solver error or
                non-finite result. The published model is left untouched.
        """
        try:
            with self._calib_lock:
                # This solve covers every request made so far.
                with self._pending_lock:
                    self._pending = False
                try:
                    return self._recalibrate_locked()
                finally:
                    self._drain_pending_locked()
        finally:
            if self._has_pending():
                self._request_recalibration()

    def override_model(self, model: CameraModel) -> int:
        """
        Publish a user-supplied model, bypassing the solver.

        Switches the estimator to the model's distortion layout. A solve
        already in flight still publishes its own result afterwards.

        Returns:
            Version of the published snapshot
        """
        self._fisheye = model.fisheye
        snap = self.model_cell.replace(model, SOURCE_MANUAL)
        logger.info("Camera model overridden by user: %r", model)
        return snap.version

    def set_fisheye(self, fisheye: bool) -> Optional[int]:
        """
        Switch the distortion layout of the current model.

        A calibrated model is converted and republished as a manual
        override; an initial guess stays a guess in the new layout.

        Returns:
            Version of the published snapshot, or None if the cell is empty
        """
        fisheye = bool(fisheye)
        snap = self.model_cell.snapshot()
        if snap is None:
            self._fisheye = fisheye
            return None
        if snap.model.fisheye == fisheye and self._fisheye == fisheye:
            return snap.version

        model = snap.model.with_fisheye(fisheye)
        if snap.calibrated:
            return self.override_model(model)
        self._fisheye = fisheye
        return self.model_cell.replace(model, SOURCE_GUESS).version

    def _solve_set(self):
        """Observations measured at the newest frame size, and that size."""
        observations = self.observations.snapshot()
        if not observations:
            return observations, self.frame_size
        image_size = observations[-1].frame_size
        matching = tuple(obs for obs in observations if obs.frame_size == image_size)
        if len(matching) != len(observations):
            logger.debug(
                "Solving with %d of %d observations measured at %dx%d",
                len(matching), len(observations), image_size[0], image_size[1],
            )
        return matching, image_size

    def _recalibrate_locked(self) -> RecalibrationResult:
        observations, image_size = self._solve_set()
        count = len(observations)
        if count < self.min_observations:
            raise EstimationFailureError(
                f"need at least {self.min_observations} observations", count
            )

        fisheye = self._fisheye
        existing = self.model_cell.snapshot()
        refining = (
            existing is not None
            and existing.calibrated
            and existing.model.fisheye == fisheye
        )
        guess = existing.model if refining else None

        start = time.perf_counter()
        try:
            if fisheye:
                rms, K, D, rvecs, tvecs = self._solve_fisheye(observations, guess, image_size)
                distortion = FisheyeDistortion.from_array(np.asarray(D).reshape(-1)[:FisheyeDistortion.COUNT])
            else:
                rms, K, D, rvecs, tvecs = self._solve_pinhole(observations, guess, image_size)
                coeffs = np.zeros(PinholeDistortion.COUNT, dtype=np.float64)
                flat = np.asarray(D, dtype=np.float64).reshape(-1)[:PinholeDistortion.COUNT]
                coeffs[:flat.size] = flat
                distortion = PinholeDistortion.from_array(coeffs)
            model = CameraModel(K, distortion, image_size)
        except cv2.error as exc:
            self.failure_count += 1
            raise EstimationFailureError(f"solver error: {exc}", count) from exc
        except ValueError as exc:
            self.failure_count += 1
            raise EstimationFailureError(f"invalid solver input or output: {exc}", count) from exc

        if not np.isfinite(rms) or model.fx <= 0.0 or model.fy <= 0.0:
            self.failure_count += 1
            raise EstimationFailureError(f"degenerate solution (rms={rms})", count)

        per_view = compute_per_view_errors(observations, model, rvecs, tvecs)
        snap = self.model_cell.replace(model, SOURCE_ESTIMATED, float(rms))
        self.solve_count += 1

        result = RecalibrationResult(
            model=model,
            reprojection_error=float(rms),
            refining=refining,
            observation_count=count,
            version=snap.version,
            per_view_errors=per_view,
            duration_s=time.perf_counter() - start,
        )
        logger.info(
            "%s camera parameters from %d observations: rms=%.4f px (%s) in %.2fs",
            "Refined" if refining else "Estimated",
            count,
            result.reprojection_error,
            result.quality,
            result.duration_s,
        )
        if self._result_callback:
            self._result_callback(result)
        return result

    def _solve_pinhole(self, observations, guess: Optional[CameraModel], image_size: Tuple[int, int]):
        object_points = [obs.object_points.reshape(-1, 3) for obs in observations]
        image_points = [obs.image_points.reshape(-1, 1, 2) for obs in observations]

        flags = cv2.CALIB_RATIONAL_MODEL if self.rational_model else 0
        if guess is not None:
            K = guess.scaled_intrinsic(image_size)
            D = guess.dist_coeffs.copy()
            flags |= cv2.CALIB_USE_INTRINSIC_GUESS
        else:
            K = np.eye(3, dtype=np.float64)
            D = np.zeros((PinholeDistortion.COUNT, 1), dtype=np.float64)

        rms, K, D, rvecs, tvecs = cv2.calibrateCamera(
            object_points,
            image_points,
            image_size,
            K,
            D,
            flags=flags,
            criteria=SOLVER_CRITERIA,
        )
        return rms, K, D, rvecs, tvecs

    def _solve_fisheye(self, observations, guess: Optional[CameraModel], image_size: Tuple[int, int]):
        object_points = [obs.object_points.reshape(1, -1, 3).astype(np.float64) for obs in observations]
        image_points = [obs.image_points.reshape(1, -1, 2).astype(np.float64) for obs in observations]

        flags = fisheye_flag("CALIB_RECOMPUTE_EXTRINSIC") | fisheye_flag("CALIB_FIX_SKEW")
        if guess is not None:
            K = guess.scaled_intrinsic(image_size)
            D = guess.dist_coeffs.copy()
            flags |= fisheye_flag("CALIB_USE_INTRINSIC_GUESS")
        else:
            K = np.eye(3, dtype=np.float64)
            D = np.zeros((FisheyeDistortion.COUNT, 1), dtype=np.float64)

        rms, K, D, rvecs, tvecs = cv2.fisheye.calibrate(
            object_points,
            image_points,
            image_size,
            K,
            D,
            None,
            None,
            flags,
            SOLVER_CRITERIA,
        )
        return rms, K, D, rvecs, tvecs

    @property
    def current_snapshot(self):
        return self.model_cell.snapshot()

    def has_estimate(self) -> bool:
        snap = self.model_cell.snapshot()
        return snap is not None and snap.source != SOURCE_GUESS
