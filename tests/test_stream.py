import sys
import threading
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camcal.model import BoardGeometry  # noqa: E402
from camcal.stream import BackendOpenError, FrameSource, StreamState, SyntheticBoardBackend  # noqa: E402


class ListBackend:
    """Returns the given frames, then None forever."""

    def __init__(self, frames, fail_after=None):
        self.frames = list(frames)
        self.fail_after = fail_after
        self.reads = 0
        self.opened = False
        self.closed = False

    def open(self) -> None:
        self.opened = True

    def read(self):
        self.reads += 1
        if self.fail_after is not None and self.reads > self.fail_after:
            raise OSError("device unplugged")
        if self.frames:
            return self.frames.pop(0)
        return None

    def close(self) -> None:
        self.closed = True


class UnopenableBackend(ListBackend):
    def open(self) -> None:
        raise BackendOpenError("cannot open video source 'nowhere'")


def _frames(n: int):
    return [np.full((4, 6, 3), i, dtype=np.uint8) for i in range(n)]


def _run(source: FrameSource, timeout: float = 5.0):
    delivered = []
    events = []
    done = threading.Event()

    def on_disconnect(reason: str) -> None:
        events.append(("disconnect", reason))
        done.set()

    source.set_callbacks(
        on_frame=lambda f: delivered.append(int(f[0, 0, 0])),
        on_connect=lambda: events.append(("connect", None)),
        on_disconnect=on_disconnect,
    )
    source.start()
    assert done.wait(timeout)
    source.join(timeout)
    return delivered, events


def test_delivers_frames_then_disconnects_on_read_failures() -> None:
    backend = ListBackend(_frames(5))
    source = FrameSource(backend, buffer_size=8, max_read_failures=3, retry_interval_s=0.001)

    delivered, events = _run(source)

    assert delivered == [0, 1, 2, 3, 4]
    assert events[0] == ("connect", None)
    assert events[-1][0] == "disconnect"
    assert "3 consecutive failed reads" in events[-1][1]
    assert not source.connected
    source.stop()
    assert backend.closed


def test_backend_exception_disconnects() -> None:
    source = FrameSource(ListBackend(_frames(3), fail_after=3), max_read_failures=100)

    delivered, events = _run(source)

    assert delivered == [0, 1, 2]
    assert "device unplugged" in events[-1][1]
    source.stop()


def test_slow_consumer_drops_oldest_frames() -> None:
    gate = threading.Event()
    delivered = []
    first = threading.Event()

    def on_frame(frame) -> None:
        delivered.append(int(frame[0, 0, 0]))
        first.set()
        gate.wait(5.0)

    backend = ListBackend(_frames(20))
    source = FrameSource(backend, buffer_size=4, max_read_failures=1000, retry_interval_s=0.001)
    source.set_frame_callback(on_frame)
    source.start()
    assert first.wait(5.0)

    # The producer keeps reading while the consumer is blocked.
    for _ in range(500):
        if source.frames_read == 20:
            break
        threading.Event().wait(0.01)
    assert source.frames_read == 20
    assert source.buffer_fill >= 0.75
    gate.set()
    source.stop()

    # One frame went to the consumer, four stayed buffered.
    assert len(delivered) >= 1
    assert source.frames_dropped in (15, 16)


def test_open_failure_propagates() -> None:
    source = FrameSource(UnopenableBackend([]))
    with pytest.raises(BackendOpenError):
        source.start()
    assert not source.running


def test_synthetic_backend_cycles_views_and_ends() -> None:
    board = BoardGeometry(7, 5, 30.0)
    K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
    backend = SyntheticBoardBackend(board, K, [-0.2, 0, 0, 0, 0], (640, 480), view_count=3, max_frames=5)
    backend.open()

    frames = [backend.read() for _ in range(6)]

    assert all(f.shape == (480, 640, 3) for f in frames[:5])
    assert frames[5] is None
    np.testing.assert_array_equal(frames[0], frames[3])
    assert backend.frame_index == 5
    backend.close()


def test_stream_state_defaults() -> None:
    state = StreamState()
    assert not state.connected
    assert state.frame_size == (0, 0)
