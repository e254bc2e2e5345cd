"""
camcal command line.

Live mode starts the gst-launch capture pipeline (or reads the device
directly with --no-pipeline), arms calibration and runs for --duration
seconds or until the stream ends. Self-test mode feeds synthetic distorted
chessboard views of a known camera through the same session.
"""

import argparse
import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np

from .estimator import DEFAULT_MIN_OBSERVATIONS, RecalibrationResult
from .gst import DEFAULT_DEVICE, DEFAULT_PORT, GstPipelineProcess
from .log import get_logger, setup_logger
from .model import CameraModel
from .recorder import SessionRecorder
from .session import (
    DEFAULT_BOARD_COLS, DEFAULT_BOARD_ROWS, DEFAULT_FPS, DEFAULT_FRAME_HEIGHT,
    DEFAULT_FRAME_WIDTH, DEFAULT_SQUARE_SIZE_MM, CalibrationSession, SessionConfig,
)
from .stream import FrameSource, OpenCVCaptureBackend, StreamState, SyntheticBoardBackend

logger = get_logger(__name__)

DEFAULT_DURATION_S = 60.0
DEFAULT_SELF_TEST_DURATION_S = 15.0
DEFAULT_SELF_TEST_FPS = 10
DEFAULT_SELF_TEST_VIEWS = 23
DEFAULT_SEED = 0
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Known camera of the self-test stream.
SELF_TEST_K = np.array([[800.0, 0.0, 640.0], [0.0, 800.0, 360.0], [0.0, 0.0, 1.0]])
SELF_TEST_K1 = -0.3
SELF_TEST_K1_TOLERANCE = 0.05


@dataclass
class CliConfig:
    """Configuration for the command line."""
    session: SessionConfig
    self_test: bool
    use_pipeline: bool
    duration_s: float
    output: Optional[str]
    load: Optional[str]
    record_dir: Optional[str]
    seed: int
    log_level: str
    log_file: Optional[str]


def parse_args(argv: Optional[List[str]] = None) -> CliConfig:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Live chessboard camera calibration and undistortion"
    )
    _ = parser.add_argument(
        "--device",
        default=DEFAULT_DEVICE,
        help=f"Capture device (default: {DEFAULT_DEVICE})",
    )
    _ = parser.add_argument(
        "--no-pipeline",
        action="store_true",
        help="Read the device with OpenCV instead of the gst-launch UDP pipeline",
    )
    _ = parser.add_argument(
        "--udp-port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Local UDP port of the pipeline stream (default: {DEFAULT_PORT})",
    )
    _ = parser.add_argument(
        "--encoder",
        choices=("x264", "omx"),
        default="x264",
        help="H264 encoder of the pipeline (default: x264)",
    )
    _ = parser.add_argument("--width", type=int, default=DEFAULT_FRAME_WIDTH, help="Frame width")
    _ = parser.add_argument("--height", type=int, default=DEFAULT_FRAME_HEIGHT, help="Frame height")
    _ = parser.add_argument(
        "--fps",
        type=int,
        default=None,
        help=f"Camera fps, also the sampling interval in frames (default: {DEFAULT_FPS}, "
             f"self-test {DEFAULT_SELF_TEST_FPS})",
    )
    _ = parser.add_argument("--cols", type=int, default=DEFAULT_BOARD_COLS, help="Board inner corners per row")
    _ = parser.add_argument("--rows", type=int, default=DEFAULT_BOARD_ROWS, help="Board inner corners per column")
    _ = parser.add_argument(
        "--square-mm",
        type=float,
        default=DEFAULT_SQUARE_SIZE_MM,
        help=f"Board square size in millimetres (default: {DEFAULT_SQUARE_SIZE_MM})",
    )
    _ = parser.add_argument("--fisheye", action="store_true", help="Use the fisheye lens model")
    _ = parser.add_argument("--rational", action="store_true", help="Estimate k4..k6 (pinhole only)")
    _ = parser.add_argument(
        "--min-observations",
        type=int,
        default=DEFAULT_MIN_OBSERVATIONS,
        help=f"Observations before the first solve (default: {DEFAULT_MIN_OBSERVATIONS})",
    )
    _ = parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help=f"Run time in seconds (default: {DEFAULT_DURATION_S}, self-test {DEFAULT_SELF_TEST_DURATION_S})",
    )
    _ = parser.add_argument("--self-test", action="store_true", help="Run with a synthetic distorted stream")
    _ = parser.add_argument("--seed", type=int, default=DEFAULT_SEED, help="Random seed for the self-test")
    _ = parser.add_argument("--output", default=None, help="Write the final camera model JSON here")
    _ = parser.add_argument("--load", default=None, help="Start from a camera model JSON file")
    _ = parser.add_argument("--record-dir", default=None, help="Record session events (JSONL) here")
    _ = parser.add_argument("--log-level", default="INFO", help="Console log level")
    _ = parser.add_argument("--log-file", default=None, help="Rotating debug log file")

    namespace = parser.parse_args(argv)

    self_test = bool(getattr(namespace, "self_test", False))
    fps = getattr(namespace, "fps", None)
    if fps is None:
        fps = DEFAULT_SELF_TEST_FPS if self_test else DEFAULT_FPS
    duration = getattr(namespace, "duration", None)
    if duration is None:
        duration = DEFAULT_SELF_TEST_DURATION_S if self_test else DEFAULT_DURATION_S
    log_level = str(getattr(namespace, "log_level", "INFO")).upper()

    # Post-parse validation
    if not isinstance(fps, int) or fps < 1:
        raise SystemExit("--fps must be an integer >= 1")
    if not isinstance(duration, (int, float)) or duration <= 0:
        raise SystemExit("--duration must be a positive number")
    if log_level not in LOG_LEVELS:
        raise SystemExit(f"--log-level must be one of {', '.join(LOG_LEVELS)}")
    if namespace.load is not None and not Path(namespace.load).is_file():
        raise SystemExit(f"--load file not found: {namespace.load}")
    if not self_test and not namespace.device:
        raise SystemExit("--device must be a non-empty string")

    try:
        session = SessionConfig(
            board_cols=namespace.cols,
            board_rows=namespace.rows,
            square_size_mm=namespace.square_mm,
            fisheye=bool(namespace.fisheye),
            frame_width=namespace.width,
            frame_height=namespace.height,
            fps=fps,
            device=namespace.device,
            udp_port=namespace.udp_port,
            min_observations=namespace.min_observations,
            rational_model=bool(namespace.rational),
            encoder=namespace.encoder,
        )
    except ValueError as exc:
        raise SystemExit(f"invalid configuration: {exc}") from exc
    if not (1 <= session.udp_port <= 65535):
        raise SystemExit("--udp-port must be in [1, 65535]")

    return CliConfig(
        session=session,
        self_test=self_test,
        use_pipeline=not namespace.no_pipeline,
        duration_s=float(duration),
        output=namespace.output,
        load=namespace.load,
        record_dir=namespace.record_dir,
        seed=int(namespace.seed),
        log_level=log_level,
        log_file=namespace.log_file,
    )


def load_model(path: str) -> CameraModel:
    """
    Read a camera model written by --output.

    Raises:
        SystemExit: If the file is not a valid camera model
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return CameraModel.from_dict(json.load(f))
    except (OSError, ValueError, TypeError) as exc:
        logger.error("Cannot load camera model from %s: %s", path, exc)
        raise SystemExit(f"--load invalid: {exc}") from exc


def build_output(session: CalibrationSession) -> dict:
    """Final model JSON with the session quality summary."""
    snap = session.model_cell.snapshot()
    output = snap.model.to_dict()
    output["source"] = snap.source
    output["rms_error"] = snap.reprojection_error
    output["quality"] = {
        "num_observations": session.cb_count,
        "metrics": session.metrics.get_summary()["calibration"],
    }
    return output


def _print_params(result: RecalibrationResult) -> None:
    model = result.model
    print(f"\n{'Refining existing' if result.refining else 'Estimating new'} camera parameters "
          f"({result.observation_count} observations)")
    print(f"  fx={model.fx:.3f} fy={model.fy:.3f} cx={model.cx:.3f} cy={model.cy:.3f}")
    print(f"  dist={[round(v, 5) for v in model.dist_coeffs.reshape(-1).tolist()]}")
    print(f"  RMS error: {result.reprojection_error:.4f} pixels ({result.quality})")


def run_session(
    session: CalibrationSession,
    duration_s: float,
    initial_model: Optional[CameraModel] = None,
) -> bool:
    """
    Start and arm a session, run it until timeout or end of stream.

    Args:
        session: Session to run
        duration_s: Upper bound on the run time
        initial_model: Model published as a manual override after start

    Returns:
        True if the session ends with a calibrated model
    """
    ended = threading.Event()

    def on_stream(state: StreamState) -> None:
        if not state.connected:
            ended.set()

    session.set_stream_callback(on_stream)
    session.set_params_callback(_print_params)
    session.set_checkerboard_callback(
        lambda _img, count: print(f"  chessboard found ({count} total)")
    )

    if not session.start_camera():
        return False
    if initial_model is not None:
        session.set_camera_params(
            initial_model.intrinsic.reshape(-1),
            initial_model.dist_coeffs.reshape(-1),
            initial_model.fisheye,
            image_size=initial_model.image_size,
        )
    session.start_calibration()

    start = time.time()
    try:
        while not ended.is_set() and time.time() - start < duration_s:
            ended.wait(0.5)
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        session.stop_camera()

    snap = session.model_cell.snapshot()
    return snap is not None and snap.calibrated


def _make_session(config: CliConfig, source_factory, pipeline=None) -> CalibrationSession:
    recorder = SessionRecorder(config.record_dir) if config.record_dir else None
    session = CalibrationSession(config.session, source_factory=source_factory, pipeline=pipeline, recorder=recorder)
    if recorder is not None:
        log_file = recorder.start_recording(metadata={
            "self_test": config.self_test,
            "board": [session.board.cols, session.board.rows, session.board.square_size_mm],
            "frame_size": list(config.session.frame_size),
            "fisheye": config.session.fisheye,
        })
        print(f"Recording session events to: {log_file}")
    return session


def _finish(config: CliConfig, session: CalibrationSession, calibrated: bool) -> None:
    if session.recorder is not None and session.recorder.is_recording:
        session.recorder.stop_recording()
    if calibrated and config.output:
        output_path = Path(config.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(build_output(session), indent=2) + "\n", encoding="utf-8")
        print(f"\nCamera model written to: {output_path}")


def run_self_test(config: CliConfig) -> int:
    """
    Calibrate from a synthetic distorted stream of a known camera.

    Returns:
        Exit code (0 when the recovered k1 is within tolerance)
    """
    cfg = config.session
    dist = [0.0] * (4 if cfg.fisheye else 5)
    dist[0] = SELF_TEST_K1
    K = SELF_TEST_K.copy()
    K[0, 2] = cfg.frame_width / 2.0
    K[1, 2] = cfg.frame_height / 2.0

    print("Running self-test mode...")
    print(f"  Board: {cfg.board_cols}x{cfg.board_rows} inner corners, {cfg.square_size_mm} mm")
    print(f"  Frame size: {cfg.frame_width}x{cfg.frame_height} @ {cfg.fps} fps")
    print(f"  Lens model: {'fisheye' if cfg.fisheye else 'pinhole'}, k1={SELF_TEST_K1}")
    print(f"  Random seed: {config.seed}")

    def source_factory(session_config: SessionConfig) -> FrameSource:
        backend = SyntheticBoardBackend(
            session_config.board, K, dist, session_config.frame_size,
            fisheye=session_config.fisheye,
            view_count=DEFAULT_SELF_TEST_VIEWS,
            seed=config.seed,
            fps=session_config.fps,
            max_frames=int(config.duration_s * session_config.fps),
        )
        return FrameSource(backend, max_read_failures=5)

    session = _make_session(config, source_factory)
    initial = load_model(config.load) if config.load else None
    calibrated = run_session(session, config.duration_s + 5.0, initial)
    _finish(config, session, calibrated)
    if not calibrated:
        print("\nSelf-test failed: no camera model estimated")
        return 1

    k1 = session.camera_model.distortion.k1
    print(f"\nRecovered k1={k1:.4f} (expected {SELF_TEST_K1}, tolerance {SELF_TEST_K1_TOLERANCE})")
    if abs(k1 - SELF_TEST_K1) > SELF_TEST_K1_TOLERANCE:
        print("Self-test failed: k1 out of tolerance")
        return 1
    print("Self-test passed")
    return 0


def run_live(config: CliConfig) -> int:
    """
    Calibrate from the live camera.

    Returns:
        Exit code (0 on a calibrated model)
    """
    cfg = config.session
    pipeline = None
    if config.use_pipeline:
        pipeline = GstPipelineProcess(cfg.pipeline_config())

        def source_factory(session_config: SessionConfig) -> FrameSource:
            return FrameSource(OpenCVCaptureBackend.udp(session_config.udp_port))
    else:
        def source_factory(session_config: SessionConfig) -> FrameSource:
            return FrameSource(OpenCVCaptureBackend(session_config.device))

    print("Running live calibration...")
    print(f"  Device: {cfg.device} ({'gst-launch pipeline' if pipeline else 'direct capture'})")
    print(f"  Board: {cfg.board_cols}x{cfg.board_rows} inner corners, {cfg.square_size_mm} mm")
    print(f"  Frame size: {cfg.frame_width}x{cfg.frame_height} @ {cfg.fps} fps")
    print(f"  Duration: {config.duration_s:.0f} s")

    session = _make_session(config, source_factory, pipeline)
    initial = load_model(config.load) if config.load else None
    calibrated = run_session(session, config.duration_s, initial)
    _finish(config, session, calibrated)
    if not calibrated:
        print("\nNo camera model estimated")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    config = parse_args(argv)
    setup_logger(getattr(logging, config.log_level), config.log_file)

    if config.self_test:
        return run_self_test(config)
    return run_live(config)


if __name__ == "__main__":
    raise SystemExit(main())
