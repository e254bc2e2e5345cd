"""
camcal: live chessboard camera calibration and undistortion.

Modules:
- model: Camera model (pinhole / fisheye), board geometry, JSON codec
- state: Observation set and version-tagged model cell
- detector: Chessboard corner detection
- estimator: Incremental calibration solves
- undistort: Cached frame rectification
- pool: Bounded reject-on-full task pool
- stream: Frame backends and threaded frame source
- gst: External gst-launch capture pipeline
- session: Calibration session (frame loop, sampler, lifecycle)
- metrics: Session metrics collection
- recorder: JSONL session event recording
- synthetic: Synthetic chessboard views for self-test
"""

from .exceptions import (
    CamcalError, EstimationFailureError,
    StreamStartError, PriorProcessStuckError
)
from .model import (
    CameraModel, BoardGeometry,
    PinholeDistortion, FisheyeDistortion
)
from .state import (
    Observation, ObservationSet, ModelCell, ModelSnapshot,
    SOURCE_GUESS, SOURCE_ESTIMATED, SOURCE_MANUAL
)
from .detector import Detection, detect_chessboard
from .estimator import CalibrationEstimator, RecalibrationResult, quality_band
from .undistort import UndistortEngine
from .pool import TaskPool
from .stream import (
    StreamState, FrameSource, OpenCVCaptureBackend,
    SyntheticBoardBackend, udp_receive_pipeline
)
from .gst import PipelineConfig, GstPipelineProcess, build_launch_command
from .session import CalibrationSession, SessionConfig, CalibrationState, FrameResult
from .metrics import SessionMetrics, MetricsExporter
from .recorder import SessionRecorder, read_session_log
from .log import get_logger, setup_logger

__all__ = [
    # Errors
    "CamcalError",
    "EstimationFailureError",
    "StreamStartError",
    "PriorProcessStuckError",
    # Model
    "CameraModel",
    "BoardGeometry",
    "PinholeDistortion",
    "FisheyeDistortion",
    # State
    "Observation",
    "ObservationSet",
    "ModelCell",
    "ModelSnapshot",
    "SOURCE_GUESS",
    "SOURCE_ESTIMATED",
    "SOURCE_MANUAL",
    # Calibration
    "Detection",
    "detect_chessboard",
    "CalibrationEstimator",
    "RecalibrationResult",
    "quality_band",
    "UndistortEngine",
    "TaskPool",
    # Stream
    "StreamState",
    "FrameSource",
    "OpenCVCaptureBackend",
    "SyntheticBoardBackend",
    "udp_receive_pipeline",
    "PipelineConfig",
    "GstPipelineProcess",
    "build_launch_command",
    # Session
    "CalibrationSession",
    "SessionConfig",
    "CalibrationState",
    "FrameResult",
    # Metrics / recording
    "SessionMetrics",
    "MetricsExporter",
    "SessionRecorder",
    "read_session_log",
    # Logging
    "get_logger",
    "setup_logger",
]
