"""
External GStreamer capture pipeline.

The camera is read by a gst-launch process that encodes H264 and streams it
over RTP/UDP to localhost, where stream.udp_receive_pipeline() picks it up.

Provides functionality to:
- Build the gst-launch argument list (desktop x264 or ARM omx encoder)
- Kill stale gst-launch instances before a new start
- Start the pipeline, confirm it survives start-up and drain its output
- Stop it with a bounded terminate/kill sequence
"""
from __future__ import annotations

import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .exceptions import PriorProcessStuckError, StreamStartError
from .log import get_logger

logger = get_logger(__name__)

DEFAULT_DEVICE = "/dev/video0"
DEFAULT_WIDTH = 1280
DEFAULT_HEIGHT = 720
DEFAULT_FPS = 30
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5000
DEFAULT_EXECUTABLE = "gst-launch-1.0"
DEFAULT_PROCESS_NAME = "gst-launch"
DEFAULT_KILL_ATTEMPTS = 10
DEFAULT_START_TIMEOUT_S = 10.0
DEFAULT_STARTUP_GRACE_S = 0.5
COMMAND_TIMEOUT_S = 1.0

ENCODERS = ("x264", "omx")


@dataclass
class PipelineConfig:
    device: str = DEFAULT_DEVICE
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    fps: int = DEFAULT_FPS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    encoder: str = "x264"
    executable: str = DEFAULT_EXECUTABLE

    def __post_init__(self) -> None:
        if self.encoder not in ENCODERS:
            raise ValueError(f"encoder must be one of {ENCODERS}, got {self.encoder!r}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("width and height must be positive")
        if self.fps <= 0:
            raise ValueError("fps must be positive")
        if not (1 <= int(self.port) <= 65535):
            raise ValueError("port must be in [1, 65535]")


def build_launch_command(config: PipelineConfig) -> list[str]:
    """gst-launch argument list streaming the camera as RTP/H264 over UDP."""
    raw_caps = f"video/x-raw,format=I420,width={config.width},height={config.height},framerate={config.fps}/1"
    cmd = [config.executable, "v4l2src", f"device={config.device}"]
    if config.encoder == "omx":
        cmd += [
            "do-timestamp=true", "!", raw_caps, "!", "nvvidconv", "!",
            f"video/x-raw(memory:NVMM),width={config.width},height={config.height}", "!",
            "omxh264enc", "insert-sps-pps=true",
        ]
    else:
        cmd += [
            "!", raw_caps, "!", "videoconvert", "!",
            "x264enc", "key-int-max=1", "tune=zerolatency", "bitrate=8000",
        ]
    cmd += [
        "!", "rtph264pay", "config-interval=1", "pt=96", "mtu=9000",
        "!", "queue",
        "!", "udpsink", f"host={config.host}", f"port={config.port}", "sync=false", "async=false",
        "-e",
    ]
    return cmd


class GstPipelineProcess:
    """
    Lifecycle of one gst-launch process.

    Usage:
        pipeline = GstPipelineProcess(PipelineConfig(device="/dev/video1"))
        pipeline.start()       # raises StreamStartError
        ...
        pipeline.stop()
    """

    def __init__(
        self,
        config: PipelineConfig,
        command: list[str] | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        process_name: str = DEFAULT_PROCESS_NAME,
        kill_attempts: int = DEFAULT_KILL_ATTEMPTS,
        start_timeout: float = DEFAULT_START_TIMEOUT_S,
        startup_grace: float = DEFAULT_STARTUP_GRACE_S,
        check_device: bool = True,
    ):
        """
        Args:
            config: Pipeline parameters
            command: Explicit argument list (default: build_launch_command(config))
            runner: Used for pkill/pgrep
            popen: Used to launch the pipeline
            process_name: Name matched by pkill/pgrep
            kill_attempts: pkill/pgrep rounds before giving up
            start_timeout: Upper bound on the start-up check
            startup_grace: Time the process must survive after launch
            check_device: Require the capture device node to exist
        """
        self.config = config
        self.command = list(command) if command is not None else build_launch_command(config)
        self._runner = runner
        self._popen = popen
        self.process_name = process_name
        self.kill_attempts = max(1, int(kill_attempts))
        self.start_timeout = float(start_timeout)
        self.startup_grace = float(startup_grace)
        self.check_device = check_device

        self._lock = threading.Lock()
        self._proc: subprocess.Popen | None = None
        self._drain_thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        proc = self._proc
        return proc is not None and proc.poll() is None

    @property
    def pid(self) -> int | None:
        proc = self._proc
        return proc.pid if proc is not None else None

    def kill_existing(self) -> int:
        """
        Kill leftover pipeline processes.

        Returns:
            Number of pkill/pgrep rounds used

        Raises:
            PriorProcessStuckError: If instances survive every round
        """
        for attempt in range(1, self.kill_attempts + 1):
            try:
                self._runner(["pkill", self.process_name], capture_output=True, timeout=COMMAND_TIMEOUT_S, check=False)
                result = self._runner(
                    ["pgrep", self.process_name],
                    capture_output=True, text=True, timeout=COMMAND_TIMEOUT_S, check=False,
                )
            except FileNotFoundError:
                logger.warning("pkill/pgrep not available, skipping stale %s cleanup", self.process_name)
                return 0
            except subprocess.TimeoutExpired:
                logger.debug("pkill/pgrep timed out (attempt %d)", attempt)
                continue

            if not (result.stdout or "").strip():
                if attempt > 1:
                    logger.info("Stale %s processes killed after %d attempts", self.process_name, attempt)
                return attempt

        logger.error("Cannot kill active %s process(es)", self.process_name)
        raise PriorProcessStuckError(self.process_name, self.kill_attempts)

    def start(self) -> None:
        """
        Launch the pipeline.

        Raises:
            PriorProcessStuckError: Stale instances could not be killed
            StreamStartError: Missing device, launch failure or early exit
        """
        with self._lock:
            if self._proc is not None and self._proc.poll() is None:
                raise StreamStartError("pipeline already running")

            if not self.config.device:
                raise StreamStartError("no capture device configured")
            if self.check_device and not Path(self.config.device).exists():
                raise StreamStartError(f"capture device not found: {self.config.device}")

            self.kill_existing()

            logger.info("Starting pipeline: %s", " ".join(self.command))
            try:
                proc = self._popen(
                    self.command,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except OSError as exc:
                raise StreamStartError(f"cannot launch {self.command[0]}: {exc}") from exc

            try:
                code = proc.wait(timeout=min(self.startup_grace, self.start_timeout))
            except subprocess.TimeoutExpired:
                code = None
            if code is not None:
                output = proc.stdout.read() if proc.stdout is not None else ""
                raise StreamStartError(f"pipeline exited during start-up with code {code}: {output.strip()[:500]}")

            self._proc = proc
            self._drain_thread = threading.Thread(
                target=self._drain_output, args=(proc,), name="camcal-gst-output", daemon=True
            )
            self._drain_thread.start()

    def stop(self, timeout: float = 2.0) -> int | None:
        """Terminate the pipeline, killing it if it ignores the request. Returns the exit code."""
        with self._lock:
            proc = self._proc
            self._proc = None
            thread = self._drain_thread
            self._drain_thread = None

        if proc is None:
            return None

        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Pipeline did not exit within %.1fs, killing", timeout)
                proc.kill()
                proc.wait(timeout=timeout)

        if thread is not None:
            thread.join(timeout=1.0)
        logger.info("Pipeline stopped (code %s)", proc.returncode)
        return proc.returncode

    def _drain_output(self, proc: subprocess.Popen) -> None:
        stream = proc.stdout
        if stream is None:
            return
        for line in stream:
            line = line.rstrip()
            if line:
                logger.debug("gst: %s", line)
