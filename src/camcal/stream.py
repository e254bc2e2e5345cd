"""
Frame sources.

Provides:
- StreamState: immutable connection/buffer status of the live stream
- FrameBackend protocol and two backends (OpenCV capture, synthetic board)
- FrameSource: producer thread filling a bounded buffer, dispatcher thread
  handing frames to the real-time consumer
"""
from __future__ import annotations

import collections
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

import cv2
import numpy as np

from .log import get_logger
from .model import BoardGeometry
from .synthetic import apply_lens_distortion, distortion_maps, random_board_poses, render_board_view, render_chessboard

logger = get_logger(__name__)

DEFAULT_BUFFER_SIZE = 8
DEFAULT_MAX_READ_FAILURES = 30
DEFAULT_UDP_PORT = 5000


@dataclass(frozen=True)
class StreamState:
    connected: bool = False
    buffer_fill: float = 0.0
    frame_width: int = 0
    frame_height: int = 0

    @property
    def frame_size(self) -> tuple[int, int]:
        return (self.frame_width, self.frame_height)


class FrameBackend(Protocol):
    def open(self) -> None: ...

    def read(self) -> np.ndarray | None: ...

    def close(self) -> None: ...


class BackendOpenError(RuntimeError):
    pass


def udp_receive_pipeline(port: int = DEFAULT_UDP_PORT) -> str:
    """GStreamer appsink pipeline receiving the RTP/H264 stream of gst.py."""
    return (
        f"udpsrc port={int(port)} "
        "caps=\"application/x-rtp, media=(string)video, clock-rate=(int)90000, "
        "encoding-name=(string)H264, payload=(int)96\" "
        "! rtph264depay ! decodebin ! videoconvert "
        "! appsink sync=false drop=true max-buffers=1"
    )


class OpenCVCaptureBackend:
    """cv2.VideoCapture over a device index, file, URL or GStreamer pipeline."""

    def __init__(self, source: int | str, api_preference: int = cv2.CAP_ANY):
        self._source = source
        self._api_preference = int(api_preference)
        self._cap: cv2.VideoCapture | None = None

    @classmethod
    def udp(cls, port: int = DEFAULT_UDP_PORT) -> "OpenCVCaptureBackend":
        return cls(udp_receive_pipeline(port), cv2.CAP_GSTREAMER)

    def open(self) -> None:
        cap = cv2.VideoCapture(self._source, self._api_preference)
        if not cap.isOpened():
            cap.release()
            raise BackendOpenError(f"cannot open video source {self._source!r}")
        self._cap = cap

    def read(self) -> np.ndarray | None:
        cap = self._cap
        if cap is None:
            return None
        ok, frame = cap.read()
        if not ok or frame is None:
            return None
        return frame

    def close(self) -> None:
        cap = self._cap
        self._cap = None
        if cap is not None:
            cap.release()


class SyntheticBoardBackend:
    """
    Distorted chessboard views of a known camera.

    Cycles through `view_count` random board poses. Returns None once
    `max_frames` frames were delivered, which ends the stream.
    """

    def __init__(
        self,
        board: BoardGeometry,
        K: np.ndarray,
        D: Sequence[float],
        image_size: tuple[int, int],
        fisheye: bool = False,
        view_count: int = 20,
        seed: int = 0,
        fps: float = 0.0,
        max_frames: int | None = None,
    ):
        self._board = board
        self._K = np.asarray(K, dtype=np.float64)
        self._D = np.asarray(D, dtype=np.float64).reshape(-1)
        self._image_size = (int(image_size[0]), int(image_size[1]))
        self._fisheye = fisheye
        self._view_count = int(view_count)
        self._seed = int(seed)
        self._fps = float(fps)
        self._max_frames = max_frames

        self._views: list[np.ndarray] = []
        self._frame_index = 0
        self._next_tick = 0.0

    @property
    def frame_index(self) -> int:
        return self._frame_index

    def open(self) -> None:
        board_img = render_chessboard(self._board)
        maps = distortion_maps(self._K, self._D, self._image_size, self._fisheye)
        poses = random_board_poses(
            self._board, self._K, self._image_size, self._view_count, seed=self._seed
        )
        self._views = []
        for rvec, tvec in poses:
            ideal = render_board_view(self._board, self._K, self._image_size, rvec, tvec, board_img)
            distorted = apply_lens_distortion(ideal, self._K, self._D, self._fisheye, maps)
            self._views.append(cv2.cvtColor(distorted, cv2.COLOR_GRAY2BGR))
        self._frame_index = 0
        self._next_tick = time.perf_counter()

    def read(self) -> np.ndarray | None:
        if not self._views:
            return None
        if self._max_frames is not None and self._frame_index >= self._max_frames:
            return None

        if self._fps > 0.0:
            self._next_tick += 1.0 / self._fps
            wait_s = self._next_tick - time.perf_counter()
            if wait_s > 0:
                time.sleep(wait_s)
            else:
                self._next_tick = time.perf_counter()

        frame = self._views[self._frame_index % len(self._views)]
        self._frame_index += 1
        return frame.copy()

    def close(self) -> None:
        self._views = []


class FrameSource:
    """
    Threaded frame source.

    The producer thread reads the backend into a bounded buffer (dropping the
    oldest frame when full) and never waits on the consumer. The dispatcher
    thread delivers buffered frames to the new-frame callback one at a time.

    Usage:
        source = FrameSource(OpenCVCaptureBackend.udp(5000))
        source.set_frame_callback(session.on_new_frame)
        source.start()
    """

    def __init__(
        self,
        backend: FrameBackend,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        max_read_failures: int = DEFAULT_MAX_READ_FAILURES,
        retry_interval_s: float = 0.01,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self._backend = backend
        self._buffer_size = int(buffer_size)
        self._max_read_failures = max(1, int(max_read_failures))
        self._retry_interval_s = float(retry_interval_s)

        self._lock = threading.Lock()
        self._buffer: collections.deque = collections.deque(maxlen=self._buffer_size)
        self._available = threading.Condition(self._lock)
        self._stop_event = threading.Event()
        self._producer: threading.Thread | None = None
        self._dispatcher: threading.Thread | None = None

        self._connected = False
        self._producer_done = False
        self._disconnect_sent = False
        self._stop_reason = "end of stream"
        self.frames_read = 0
        self.frames_dropped = 0

        self._frame_callback: Callable[[np.ndarray], object] | None = None
        self._connect_callback: Callable[[], None] | None = None
        self._disconnect_callback: Callable[[str], None] | None = None

    def set_frame_callback(self, callback: Callable[[np.ndarray], object]) -> None:
        self._frame_callback = callback

    def set_connect_callback(self, callback: Callable[[], None]) -> None:
        self._connect_callback = callback

    def set_disconnect_callback(self, callback: Callable[[str], None]) -> None:
        self._disconnect_callback = callback

    def set_callbacks(
        self,
        on_frame: Callable[[np.ndarray], object] | None = None,
        on_connect: Callable[[], None] | None = None,
        on_disconnect: Callable[[str], None] | None = None,
    ) -> None:
        if on_frame is not None:
            self._frame_callback = on_frame
        if on_connect is not None:
            self._connect_callback = on_connect
        if on_disconnect is not None:
            self._disconnect_callback = on_disconnect

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def buffer_fill(self) -> float:
        with self._lock:
            return len(self._buffer) / float(self._buffer_size)

    @property
    def running(self) -> bool:
        thread = self._dispatcher
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        """Open the backend and start both threads. Backend errors propagate."""
        with self._lock:
            if self._producer is not None and self._producer.is_alive():
                raise RuntimeError("frame source already running")
            self._stop_event.clear()
            self._buffer.clear()
            self._producer_done = False
            self._disconnect_sent = False
            self._connected = False

        self._backend.open()
        self._producer = threading.Thread(target=self._produce, name="camcal-producer", daemon=True)
        self._dispatcher = threading.Thread(target=self._dispatch, name="camcal-dispatcher", daemon=True)
        self._producer.start()
        self._dispatcher.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        with self._available:
            self._available.notify_all()
        current = threading.current_thread()
        for thread in (self._producer, self._dispatcher):
            if thread is not None and thread is not current:
                thread.join(timeout=timeout)
        self._producer = None
        self._dispatcher = None
        self._backend.close()
        with self._lock:
            self._buffer.clear()
        self._connected = False

    def join(self, timeout: float | None = None) -> None:
        """Wait for the dispatcher to finish (end of stream or stop)."""
        thread = self._dispatcher
        if thread is not None:
            thread.join(timeout=timeout)

    def _produce(self) -> None:
        failures = 0
        reason = "end of stream"
        while not self._stop_event.is_set():
            try:
                frame = self._backend.read()
            except Exception as exc:
                logger.exception("Frame backend failed")
                reason = f"backend error: {exc}"
                break

            if frame is None:
                failures += 1
                if failures >= self._max_read_failures:
                    reason = f"{failures} consecutive failed reads"
                    break
                self._stop_event.wait(self._retry_interval_s)
                continue

            failures = 0
            with self._available:
                if len(self._buffer) == self._buffer.maxlen:
                    self.frames_dropped += 1
                self._buffer.append(frame)
                self.frames_read += 1
                self._available.notify()

        with self._available:
            self._producer_done = True
            self._stop_reason = reason
            self._available.notify_all()

    def _dispatch(self) -> None:
        while True:
            with self._available:
                while not self._buffer and not self._producer_done and not self._stop_event.is_set():
                    self._available.wait(0.1)
                if self._stop_event.is_set():
                    return
                if not self._buffer:
                    reason = self._stop_reason
                    break
                frame = self._buffer.popleft()

            if not self._connected:
                self._connected = True
                logger.info("Stream connected (%dx%d)", frame.shape[1], frame.shape[0])
                if self._connect_callback:
                    self._connect_callback()

            if self._frame_callback:
                try:
                    self._frame_callback(frame)
                except Exception:
                    logger.exception("Frame callback failed")

        self._connected = False
        logger.warning("Stream disconnected: %s", reason)
        if self._disconnect_callback and not self._disconnect_sent:
            self._disconnect_sent = True
            self._disconnect_callback(reason)
