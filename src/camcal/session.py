"""
Calibration session.

Ties the frame source, sampler, detector pool, estimator and undistortion
engine together behind a headless API:

    session = CalibrationSession(SessionConfig(board_cols=9, board_rows=6))
    session.set_params_callback(on_params)
    if session.start_camera():
        session.start_calibration()
        ...
        session.stop_camera()

on_new_frame() is the real-time consumer. It never blocks on detection or
estimation: sampled frames are copied and handed to the bounded task pool,
and a full pool turns the sample into a skip.
"""

import enum
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .detector import detect_chessboard
from .estimator import (
    DEFAULT_MIN_OBSERVATIONS, DEFAULT_RECALIBRATE_EVERY,
    CalibrationEstimator, RecalibrationResult,
)
from .exceptions import EstimationFailureError, StreamStartError
from .gst import DEFAULT_DEVICE, DEFAULT_PORT, GstPipelineProcess, PipelineConfig
from .log import get_logger
from .metrics import SessionMetrics
from .model import BoardGeometry, CameraModel
from .pool import DEFAULT_MAX_WORKERS, TaskPool
from .recorder import SessionRecorder
from .state import ModelCell, ObservationSet
from .stream import FrameSource, OpenCVCaptureBackend, StreamState
from .undistort import DEFAULT_ALPHA, UndistortEngine

logger = get_logger(__name__)

DEFAULT_BOARD_COLS = 9
DEFAULT_BOARD_ROWS = 6
DEFAULT_SQUARE_SIZE_MM = 25.0
DEFAULT_FRAME_WIDTH = 1280
DEFAULT_FRAME_HEIGHT = 720
DEFAULT_FPS = 30


@dataclass
class SessionConfig:
    """Configuration of a calibration session."""
    board_cols: int = DEFAULT_BOARD_COLS
    board_rows: int = DEFAULT_BOARD_ROWS
    square_size_mm: float = DEFAULT_SQUARE_SIZE_MM
    fisheye: bool = False
    frame_width: int = DEFAULT_FRAME_WIDTH
    frame_height: int = DEFAULT_FRAME_HEIGHT
    fps: int = DEFAULT_FPS
    device: str = DEFAULT_DEVICE
    udp_port: int = DEFAULT_PORT
    pool_size: int = DEFAULT_MAX_WORKERS
    min_observations: int = DEFAULT_MIN_OBSERVATIONS
    recalibrate_every: int = DEFAULT_RECALIBRATE_EVERY
    alpha: float = DEFAULT_ALPHA
    rational_model: bool = False
    encoder: str = "x264"

    def __post_init__(self) -> None:
        # Raises ValueError on an invalid board.
        _ = self.board
        if self.frame_width <= 0 or self.frame_height <= 0:
            raise ValueError("frame size must be positive")
        if self.fps < 1:
            raise ValueError("fps must be >= 1")
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if self.min_observations < 1:
            raise ValueError("min_observations must be >= 1")
        if self.recalibrate_every < 1:
            raise ValueError("recalibrate_every must be >= 1")
        if not 0.0 <= self.alpha <= 1.0:
            raise ValueError("alpha must be in [0, 1]")

    @property
    def board(self) -> BoardGeometry:
        return BoardGeometry(int(self.board_cols), int(self.board_rows), float(self.square_size_mm))

    @property
    def frame_size(self) -> Tuple[int, int]:
        return (int(self.frame_width), int(self.frame_height))

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            device=self.device,
            width=self.frame_width,
            height=self.frame_height,
            fps=self.fps,
            port=self.udp_port,
            encoder=self.encoder,
        )


class CalibrationState(enum.Enum):
    IDLE = "idle"
    ARMED = "armed"


@dataclass(frozen=True, eq=False)
class FrameResult:
    """What the frame loop produced for one frame."""
    raw: np.ndarray
    rectified: Optional[np.ndarray]
    sampled: bool
    submitted: bool

    @property
    def display(self) -> np.ndarray:
        """Rectified frame, or the raw frame while no calibrated model exists."""
        return self.rectified if self.rectified is not None else self.raw


def default_source_factory(config: SessionConfig) -> FrameSource:
    return FrameSource(OpenCVCaptureBackend.udp(config.udp_port))


class CalibrationSession:
    """
    Live calibration session.

    Owns one estimator generation per camera start. Detector tasks carry the
    generation they were submitted in; tasks finishing after a stop or a
    disconnect still feed their own estimator, and solves they trigger still
    update its model, but no callback or record announces them.
    """

    def __init__(
        self,
        config: SessionConfig,
        source_factory: Optional[Callable[[SessionConfig], FrameSource]] = None,
        pipeline: Optional[GstPipelineProcess] = None,
        metrics: Optional[SessionMetrics] = None,
        recorder: Optional[SessionRecorder] = None,
    ):
        """
        Args:
            config: Session configuration
            source_factory: Builds the frame source on start_camera()
                (default: GStreamer UDP receiver on config.udp_port)
            pipeline: External capture pipeline started before the source
            metrics: Metrics collector (default: new SessionMetrics)
            recorder: Optional event recorder; events are written while it
                is recording
        """
        self.config = config
        self.board = config.board
        self._source_factory = source_factory or default_source_factory
        self.pipeline = pipeline
        self.metrics = metrics if metrics is not None else SessionMetrics()
        self.recorder = recorder

        self._lock = threading.Lock()
        self._state = CalibrationState.IDLE
        self._generation = 0
        self._frame_count = 0
        self._frame_size: Optional[Tuple[int, int]] = None
        self._stream_state = StreamState()
        self._source: Optional[FrameSource] = None
        self._running = False

        self._frame_callback: Optional[Callable[[FrameResult], None]] = None
        self._checkerboard_callback: Optional[Callable[[np.ndarray, int], None]] = None
        self._params_callback: Optional[Callable[[RecalibrationResult], None]] = None
        self._stream_callback: Optional[Callable[[StreamState], None]] = None
        self._frame_size_callback: Optional[Callable[[int, int], None]] = None

        self._reset_calibration()

    # Callbacks

    def set_frame_callback(self, callback: Callable[[FrameResult], None]) -> None:
        """Set callback for every processed frame."""
        self._frame_callback = callback

    def set_checkerboard_callback(self, callback: Callable[[np.ndarray, int], None]) -> None:
        """Set callback for detections: (annotated frame, board count)."""
        self._checkerboard_callback = callback

    def set_params_callback(self, callback: Callable[[RecalibrationResult], None]) -> None:
        """Set callback for newly estimated camera parameters."""
        self._params_callback = callback

    def set_stream_callback(self, callback: Callable[[StreamState], None]) -> None:
        """Set callback for connect/disconnect transitions."""
        self._stream_callback = callback

    def set_frame_size_callback(self, callback: Callable[[int, int], None]) -> None:
        """Set callback for frame-size changes (viewport refit)."""
        self._frame_size_callback = callback

    # State

    @property
    def camera_model(self) -> Optional[CameraModel]:
        snap = self.model_cell.snapshot()
        return snap.model if snap is not None else None

    @property
    def cb_count(self) -> int:
        return self.estimator.cb_count

    @property
    def stream_state(self) -> StreamState:
        return self._stream_state

    @property
    def state(self) -> CalibrationState:
        return self._state

    @property
    def armed(self) -> bool:
        return self._state is CalibrationState.ARMED

    @property
    def running(self) -> bool:
        return self._running

    @property
    def source(self) -> Optional[FrameSource]:
        return self._source

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight detector tasks."""
        return self.pool.wait_idle(timeout)

    def _reset_calibration(self) -> None:
        with self._lock:
            self._generation += 1
            self._frame_count = 0
            generation = self._generation

        cfg = self.config
        self.model_cell = ModelCell(CameraModel.initial_guess(cfg.frame_size, cfg.fisheye))
        self.observations = ObservationSet()
        self.estimator = CalibrationEstimator(
            self.board,
            cfg.frame_size,
            fisheye=cfg.fisheye,
            model_cell=self.model_cell,
            observations=self.observations,
            min_observations=cfg.min_observations,
            recalibrate_every=cfg.recalibrate_every,
            rational_model=cfg.rational_model,
        )
        self.estimator.set_result_callback(lambda result: self._on_recalibrated(result, generation))
        self.estimator.set_failure_callback(lambda error: self._on_estimation_failed(error, generation))
        self.undistorter = UndistortEngine(self.model_cell, alpha=cfg.alpha)
        self.pool = TaskPool(max_workers=cfg.pool_size)

    # Lifecycle

    def start_camera(self) -> bool:
        """
        Start the capture pipeline and the frame source.

        Returns:
            True on success; False if the pipeline or source failed to start
        """
        if self._running:
            self.stop_camera()

        self.pool.shutdown(wait=True)
        self._reset_calibration()

        if self.pipeline is not None:
            try:
                self.pipeline.start()
            except StreamStartError as exc:
                logger.error("Cannot start capture pipeline: %s", exc)
                return False

        source = self._source_factory(self.config)
        source.set_callbacks(
            on_frame=self.on_new_frame,
            on_connect=self._on_connected,
            on_disconnect=self._on_disconnected,
        )
        try:
            source.start()
        except (RuntimeError, OSError) as exc:
            logger.error("Cannot start frame source: %s", exc)
            if self.pipeline is not None:
                self.pipeline.stop()
            return False

        self._source = source
        self._running = True
        logger.info(
            "Camera started (%dx%d @ %d fps, board %dx%d, %s)",
            self.config.frame_width, self.config.frame_height, self.config.fps,
            self.board.cols, self.board.rows, "fisheye" if self.estimator.fisheye else "pinhole",
        )
        self._record("camera_started", {
            "frame_size": list(self.config.frame_size),
            "fps": self.config.fps,
            "fisheye": self.estimator.fisheye,
        })
        return True

    def stop_camera(self) -> None:
        """Disarm, stop the source, drain detector tasks and stop the pipeline."""
        self.stop_calibration()
        with self._lock:
            self._generation += 1

        source = self._source
        self._source = None
        if source is not None:
            source.stop()

        self.pool.shutdown(wait=True)
        if self.pipeline is not None:
            self.pipeline.stop()
        self.undistorter.release()

        was_running = self._running
        self._running = False
        self._set_stream_state(StreamState())
        if was_running:
            logger.info("Camera stopped (%d observations)", self.cb_count)
            self._record("camera_stopped", {"cb_count": self.cb_count})

    def start_calibration(self) -> None:
        with self._lock:
            if self._state is CalibrationState.ARMED:
                return
            self._state = CalibrationState.ARMED
        logger.info("Calibration armed")
        self._record("calibration_armed", {"cb_count": self.cb_count})

    def stop_calibration(self) -> None:
        with self._lock:
            if self._state is CalibrationState.IDLE:
                return
            self._state = CalibrationState.IDLE
        logger.info("Calibration disarmed")
        self._record("calibration_disarmed", {"cb_count": self.cb_count})

    # Frame loop

    def on_new_frame(self, frame: np.ndarray) -> FrameResult:
        """
        Process one frame on the real-time consumer thread.

        Returns:
            FrameResult with the rectified frame (None while uncalibrated)
            and whether a calibration sample was taken and submitted
        """
        h, w = frame.shape[:2]
        size = (int(w), int(h))
        if size != self._frame_size:
            previous = self._frame_size
            self._frame_size = size
            if previous is not None:
                logger.info("Frame size changed %dx%d -> %dx%d", previous[0], previous[1], w, h)
            if self._frame_size_callback:
                self._frame_size_callback(size[0], size[1])

        source = self._source
        buffer_fill = source.buffer_fill if source is not None else 0.0
        self.metrics.record_frame(buffer_fill)
        self._stream_state = StreamState(
            connected=self._stream_state.connected,
            buffer_fill=buffer_fill,
            frame_width=size[0],
            frame_height=size[1],
        )

        with self._lock:
            self._frame_count += 1
            sampled = (
                self._state is CalibrationState.ARMED
                and self._frame_count % max(int(self.config.fps), 1) == 0
            )
            generation = self._generation
        submitted = False
        if sampled:
            submitted = self.pool.submit(self._detect_task, frame.copy(), self.estimator, generation)
            self.metrics.record_sample(submitted)
            if not submitted:
                logger.debug("Detector pool full, sample skipped")

        rectified = self.undistorter.undistort(frame)
        result = FrameResult(raw=frame, rectified=rectified, sampled=sampled, submitted=submitted)
        if self._frame_callback:
            self._frame_callback(result)
        return result

    def _detect_task(self, frame: np.ndarray, estimator: CalibrationEstimator, generation: int) -> None:
        detection = detect_chessboard(frame, self.board)
        self.metrics.record_detection(detection is not None)
        if detection is None:
            return

        count = estimator.append_observation(detection.observation)
        if generation == self._generation:
            if self._checkerboard_callback:
                self._checkerboard_callback(detection.annotated, count)
            self._record("observation_added", {"cb_count": count})
        estimator.recalibrate_if_due(count)

    # Manual parameters

    def set_camera_params(
        self,
        k_values: Sequence[float],
        dist_values: Sequence[float],
        fisheye: bool,
        image_size: Optional[Tuple[int, int]] = None,
    ) -> int:
        """
        Override the camera model with user-supplied values.

        Args:
            k_values: 9 intrinsic matrix values, row major
            dist_values: 4 (fisheye) or 8 (pinhole) coefficients
            fisheye: Distortion layout of dist_values
            image_size: Frame size the intrinsics were measured at
                (default: size of the current model)

        Returns:
            Version of the published model

        Raises:
            ValueError: On malformed values (the current model is kept)
        """
        if image_size is None:
            current = self.camera_model
            image_size = current.image_size if current is not None else self.config.frame_size
        model = CameraModel.from_values(k_values, dist_values, fisheye, image_size)
        version = self.estimator.override_model(model)
        self._record("model_override", model.to_dict())
        return version

    def set_fisheye(self, fisheye: bool) -> Optional[int]:
        """Toggle the distortion layout of the current model."""
        version = self.estimator.set_fisheye(fisheye)
        logger.info("Distortion layout set to %s", "fisheye" if fisheye else "pinhole")
        return version

    def recalibrate(self) -> RecalibrationResult:
        """
        Explicit blocking solve over all observations.

        Raises EstimationFailureError. Once the camera has stopped the result
        is only returned, not passed to the params callback.
        """
        return self.estimator.recalibrate()

    # Internal notifications

    def _on_recalibrated(self, result: RecalibrationResult, generation: int) -> None:
        if generation != self._generation:
            logger.debug("Model v%d solved after the camera stopped, not announced", result.version)
            return
        self.metrics.record_calibration(result.reprojection_error, result.refining)
        self._record("recalibrated", {
            "version": result.version,
            "rms": result.reprojection_error,
            "quality": result.quality,
            "refining": result.refining,
            "observations": result.observation_count,
            "model": result.model.to_dict(),
        })
        if self._params_callback:
            self._params_callback(result)

    def _on_estimation_failed(self, error: EstimationFailureError, generation: int) -> None:
        if generation != self._generation:
            return
        self.metrics.record_calibration_failure()
        self._record("estimation_failed", {
            "reason": error.reason,
            "observations": error.observation_count,
        })

    def _on_connected(self) -> None:
        state = self._stream_state
        self._set_stream_state(StreamState(
            connected=True,
            buffer_fill=state.buffer_fill,
            frame_width=state.frame_width,
            frame_height=state.frame_height,
        ))
        self._record("stream_connected", {})

    def _on_disconnected(self, reason: str) -> None:
        """Stream lost: disarm and tear down in-flight detector work."""
        logger.warning("Camera disconnected: %s", reason)
        self.stop_calibration()
        with self._lock:
            self._generation += 1
        self.pool.shutdown(wait=True)
        self.undistorter.release()
        state = self._stream_state
        self._set_stream_state(StreamState(
            connected=False,
            buffer_fill=0.0,
            frame_width=state.frame_width,
            frame_height=state.frame_height,
        ))
        self._record("stream_disconnected", {"reason": reason})

    def _set_stream_state(self, state: StreamState) -> None:
        changed = state.connected != self._stream_state.connected
        self._stream_state = state
        if changed and self._stream_callback:
            self._stream_callback(state)

    def _record(self, event_type: str, data: dict) -> None:
        recorder = self.recorder
        if recorder is not None and recorder.is_recording:
            recorder.log_event(event_type, data)
