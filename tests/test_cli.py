import json
import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camcal import cli  # noqa: E402
from camcal.model import CameraModel  # noqa: E402
from camcal.session import CalibrationSession  # noqa: E402
from camcal.state import SOURCE_MANUAL  # noqa: E402


def test_parse_defaults() -> None:
    config = cli.parse_args([])

    assert not config.self_test
    assert config.use_pipeline
    assert config.duration_s == cli.DEFAULT_DURATION_S
    assert config.session.fps == 30
    assert config.session.board_cols == 9
    assert config.session.board_rows == 6
    assert config.session.frame_size == (1280, 720)
    assert config.session.encoder == "x264"
    assert config.log_level == "INFO"


def test_self_test_defaults_and_overrides() -> None:
    config = cli.parse_args(["--self-test", "--fisheye", "--log-level", "debug"])
    assert config.self_test
    assert config.session.fps == cli.DEFAULT_SELF_TEST_FPS
    assert config.duration_s == cli.DEFAULT_SELF_TEST_DURATION_S
    assert config.session.fisheye
    assert config.log_level == "DEBUG"

    config = cli.parse_args(["--self-test", "--fps", "5", "--duration", "3", "--cols", "7", "--rows", "5"])
    assert config.session.fps == 5
    assert config.duration_s == 3.0
    assert (config.session.board_cols, config.session.board_rows) == (7, 5)


@pytest.mark.parametrize(
    "argv",
    [
        ["--fps", "0"],
        ["--duration", "-1"],
        ["--log-level", "LOUD"],
        ["--udp-port", "70000"],
        ["--cols", "1"],
        ["--device", ""],
        ["--load", "/nonexistent/camcal-model.json"],
    ],
)
def test_invalid_arguments_exit(argv) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(argv)


def test_load_model_round_trip(tmp_path) -> None:
    session = CalibrationSession(cli.parse_args([]).session)
    session.set_camera_params(
        [800.0, 0.0, 640.0, 0.0, 805.0, 360.0, 0.0, 0.0, 1.0], [-0.3, 0.1, 0, 0, 0, 0, 0, 0], False
    )
    output = cli.build_output(session)
    session.pool.shutdown()

    assert output["source"] == SOURCE_MANUAL
    assert output["rms_error"] is None
    assert output["quality"]["num_observations"] == 0

    path = tmp_path / "model.json"
    path.write_text(json.dumps(output), encoding="utf-8")
    model = cli.load_model(str(path))

    assert isinstance(model, CameraModel)
    assert model.fy == pytest.approx(805.0)
    assert model.distortion.k2 == pytest.approx(0.1)
    np.testing.assert_allclose(model.intrinsic, session.camera_model.intrinsic)


def test_load_model_rejects_garbage(tmp_path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(SystemExit):
        cli.load_model(str(path))

    path.write_text(json.dumps({"camera_model": "orthographic"}), encoding="utf-8")
    with pytest.raises(SystemExit):
        cli.load_model(str(path))

    path.write_text(json.dumps({"camera_model": "pinhole", "camera_matrix": {"fx": 800.0}}), encoding="utf-8")
    with pytest.raises(SystemExit):
        cli.load_model(str(path))


def test_live_run_without_camera_fails_cleanly(capsys) -> None:
    code = cli.main(["--no-pipeline", "--device", "/dev/camcal-missing-device", "--duration", "1"])
    assert code == 1
    assert "No camera model estimated" in capsys.readouterr().out
