import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camcal.exceptions import PriorProcessStuckError, StreamStartError  # noqa: E402
from camcal.gst import GstPipelineProcess, PipelineConfig, build_launch_command  # noqa: E402
from camcal.stream import udp_receive_pipeline  # noqa: E402


class FakeRunner:
    """Stands in for subprocess.run; pgrep reports pids for the first N rounds."""

    def __init__(self, busy_rounds: int):
        self.busy_rounds = busy_rounds
        self.calls: list[list[str]] = []

    def __call__(self, args, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append(list(args))
        if args[0] == "pgrep":
            pgrep_calls = sum(1 for c in self.calls if c[0] == "pgrep")
            out = "1234\n" if pgrep_calls <= self.busy_rounds else ""
            return subprocess.CompletedProcess(args, 0 if out else 1, stdout=out, stderr="")
        return subprocess.CompletedProcess(args, 0, stdout=b"", stderr=b"")


def test_x264_command() -> None:
    cmd = build_launch_command(PipelineConfig(device="/dev/video2", width=640, height=480, fps=15))

    assert cmd[0] == "gst-launch-1.0"
    assert "device=/dev/video2" in cmd
    assert "video/x-raw,format=I420,width=640,height=480,framerate=15/1" in cmd
    assert "x264enc" in cmd and "tune=zerolatency" in cmd
    assert "omxh264enc" not in cmd
    assert "host=127.0.0.1" in cmd and "port=5000" in cmd
    assert cmd[-1] == "-e"


def test_omx_command() -> None:
    cmd = build_launch_command(PipelineConfig(encoder="omx", port=5600))

    assert "nvvidconv" in cmd
    assert "omxh264enc" in cmd
    assert "video/x-raw(memory:NVMM),width=1280,height=720" in cmd
    assert "x264enc" not in cmd
    assert "port=5600" in cmd


def test_receiver_pipeline_matches_port() -> None:
    pipeline = udp_receive_pipeline(5600)
    assert pipeline.startswith("udpsrc port=5600 ")
    assert "rtph264depay" in pipeline
    assert pipeline.endswith("appsink sync=false drop=true max-buffers=1")


def test_invalid_config() -> None:
    with pytest.raises(ValueError):
        PipelineConfig(encoder="vp8")
    with pytest.raises(ValueError):
        PipelineConfig(fps=0)
    with pytest.raises(ValueError):
        PipelineConfig(port=70000)


def test_kill_existing_retries_until_clear() -> None:
    runner = FakeRunner(busy_rounds=2)
    proc = GstPipelineProcess(PipelineConfig(), runner=runner)

    assert proc.kill_existing() == 3
    assert runner.calls[0] == ["pkill", "gst-launch"]
    assert runner.calls[1] == ["pgrep", "gst-launch"]
    assert len(runner.calls) == 6


def test_kill_existing_gives_up_after_ten_attempts() -> None:
    runner = FakeRunner(busy_rounds=100)
    proc = GstPipelineProcess(PipelineConfig(), runner=runner)

    with pytest.raises(PriorProcessStuckError) as excinfo:
        proc.kill_existing()

    assert excinfo.value.attempts == 10
    assert isinstance(excinfo.value, StreamStartError)
    assert len(runner.calls) == 20


def test_stuck_process_prevents_launch() -> None:
    launched = []
    proc = GstPipelineProcess(
        PipelineConfig(),
        runner=FakeRunner(busy_rounds=100),
        popen=lambda *a, **k: launched.append(a),
        check_device=False,
    )
    with pytest.raises(PriorProcessStuckError):
        proc.start()
    assert launched == []


def test_missing_device() -> None:
    launched = []
    proc = GstPipelineProcess(
        PipelineConfig(device="/dev/does-not-exist-camcal"),
        runner=FakeRunner(0),
        popen=lambda *a, **k: launched.append(a),
    )
    with pytest.raises(StreamStartError, match="not found"):
        proc.start()
    assert launched == []


def test_launch_failure() -> None:
    proc = GstPipelineProcess(
        PipelineConfig(),
        command=["/nonexistent/gst-launch-camcal"],
        runner=FakeRunner(0),
        check_device=False,
    )
    with pytest.raises(StreamStartError, match="cannot launch"):
        proc.start()
    assert not proc.is_running


def test_early_exit_is_start_error() -> None:
    proc = GstPipelineProcess(
        PipelineConfig(),
        command=[sys.executable, "-c", "import sys; print('no such element'); sys.exit(3)"],
        runner=FakeRunner(0),
        check_device=False,
        startup_grace=5.0,
    )
    with pytest.raises(StreamStartError, match="code 3"):
        proc.start()
    assert not proc.is_running


def test_start_and_stop_running_process() -> None:
    proc = GstPipelineProcess(
        PipelineConfig(),
        command=[sys.executable, "-c", "import time; print('running', flush=True); time.sleep(30)"],
        runner=FakeRunner(0),
        check_device=False,
        startup_grace=0.3,
    )
    proc.start()
    assert proc.is_running
    assert proc.pid is not None

    with pytest.raises(StreamStartError):
        proc.start()

    code = proc.stop(timeout=5.0)
    assert code is not None
    assert not proc.is_running
    assert proc.stop() is None


@pytest.mark.skipif(sys.platform == "win32", reason="needs SIGTERM")
def test_stop_kills_process_ignoring_terminate() -> None:
    script = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    proc = GstPipelineProcess(
        PipelineConfig(),
        command=[sys.executable, "-c", script],
        runner=FakeRunner(0),
        check_device=False,
        startup_grace=1.0,
    )
    proc.start()

    code = proc.stop(timeout=0.5)
    assert code == -9
    assert not proc.is_running
