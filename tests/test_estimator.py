import sys
import threading
import time
from pathlib import Path

import cv2
import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camcal import estimator as estimator_module  # noqa: E402
from camcal.estimator import CalibrationEstimator, fisheye_flag, quality_band  # noqa: E402
from camcal.exceptions import EstimationFailureError  # noqa: E402
from camcal.model import BoardGeometry, CameraModel  # noqa: E402
from camcal.state import SOURCE_ESTIMATED, SOURCE_GUESS, SOURCE_MANUAL  # noqa: E402
from camcal.synthetic import project_observations  # noqa: E402

BOARD = BoardGeometry(9, 6, 25.0)
SIZE = (1280, 720)
K = np.array([[800.0, 0.0, 640.0], [0.0, 800.0, 360.0], [0.0, 0.0, 1.0]])
D = [-0.3, 0.0, 0.0, 0.0, 0.0]


@pytest.fixture(scope="module")
def observations():
    return project_observations(BOARD, K, D, SIZE, count=30, seed=1, noise_px=0.1)


def test_recovers_known_radial_distortion(observations) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, fisheye=False)
    for obs in observations:
        estimator.observations.append(obs)

    result = estimator.recalibrate()
    model = result.model
    print(f"rms={result.reprojection_error:.4f} {model!r}")

    assert not result.refining
    assert result.observation_count == 30
    assert result.reprojection_error < 1.0
    assert model.distortion.k1 == pytest.approx(-0.3, abs=0.05)
    assert model.fx == pytest.approx(800.0, rel=0.02)
    assert model.fy == pytest.approx(800.0, rel=0.02)
    assert model.cx == pytest.approx(640.0, abs=10.0)
    assert model.cy == pytest.approx(360.0, abs=10.0)
    assert model.dist_coeffs.shape == (8, 1)
    assert len(result.per_view_errors) == 30
    assert max(result.per_view_errors) < 1.0

    snap = estimator.model_cell.snapshot()
    assert snap.source == SOURCE_ESTIMATED
    assert snap.version == result.version
    assert snap.reprojection_error == pytest.approx(result.reprojection_error)


def test_cadence_and_refining(observations) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, min_observations=5, recalibrate_every=2)
    results = []
    estimator.set_result_callback(results.append)

    returned = [estimator.add_observation(obs) for obs in observations[:9]]

    # Solves at 5, 7 and 9 observations.
    assert [r is not None for r in returned] == [False] * 4 + [True, False, True, False, True]
    assert [r.observation_count for r in results] == [5, 7, 9]
    assert [r.refining for r in results] == [False, True, True]
    assert estimator.cb_count == 9
    assert results[-1].version > results[0].version


def test_too_few_observations_keeps_previous_model(observations) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, min_observations=5)
    for obs in observations[:3]:
        assert estimator.add_observation(obs) is None

    before = estimator.model_cell.snapshot()
    with pytest.raises(EstimationFailureError) as excinfo:
        estimator.recalibrate()

    assert excinfo.value.observation_count == 3
    assert estimator.model_cell.snapshot() is before
    assert before.source == SOURCE_GUESS


def test_solver_error_is_reported_not_raised(observations, monkeypatch) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, min_observations=5)
    failures = []
    estimator.set_failure_callback(failures.append)
    for obs in observations[:4]:
        estimator.add_observation(obs)
    before = estimator.model_cell.snapshot()

    def broken(*args, **kwargs):
        raise cv2.error("solver blew up")

    monkeypatch.setattr(cv2, "calibrateCamera", broken)

    assert estimator.add_observation(observations[4]) is None
    assert len(failures) == 1
    assert isinstance(failures[0], EstimationFailureError)
    assert failures[0].observation_count == 5
    assert estimator.failure_count == 1
    assert estimator.model_cell.snapshot() is before

    with pytest.raises(EstimationFailureError):
        estimator.recalibrate()


def test_fisheye_solve() -> None:
    fisheye_d = [0.05, 0.01, 0.0, 0.0]
    obs = project_observations(BOARD, K, fisheye_d, SIZE, count=20, seed=2, fisheye=True)
    estimator = CalibrationEstimator(BOARD, SIZE, fisheye=True)
    for o in obs:
        estimator.observations.append(o)

    result = estimator.recalibrate()

    assert result.model.fisheye
    assert result.model.dist_coeffs.shape == (4, 1)
    assert result.reprojection_error < 1.0
    assert result.model.fx == pytest.approx(800.0, rel=0.05)


def test_override_switches_layout_without_observation(observations) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, fisheye=False)
    estimator.add_observation(observations[0])

    manual = CameraModel.from_values(K.reshape(-1), [0.1, 0.0, 0.0, 0.0], True, SIZE)
    version = estimator.override_model(manual)

    snap = estimator.model_cell.snapshot()
    assert snap.version == version
    assert snap.source == SOURCE_MANUAL
    assert snap.model is manual
    assert estimator.fisheye
    assert estimator.cb_count == 1


def test_set_fisheye_on_guess_and_on_calibrated_model() -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, fisheye=False)

    estimator.set_fisheye(True)
    snap = estimator.model_cell.snapshot()
    assert snap.source == SOURCE_GUESS
    assert snap.model.fisheye
    assert estimator.fisheye

    manual = CameraModel.from_values(K.reshape(-1), [0.1, 0.2, 0.3, 0.4], True, SIZE)
    estimator.override_model(manual)
    estimator.set_fisheye(False)
    snap = estimator.model_cell.snapshot()
    assert snap.source == SOURCE_MANUAL
    assert not snap.model.fisheye
    np.testing.assert_allclose(snap.model.dist_coeffs.reshape(-1), [0.1, 0.2, 0, 0, 0.3, 0.4, 0, 0])


def test_concurrent_requests_are_coalesced(observations) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, min_observations=5)
    for obs in observations[:4]:
        estimator.add_observation(obs)

    active = []
    overlaps = []
    lock = threading.Lock()
    original = estimator._solve_pinhole

    def slow_solve(*args):
        with lock:
            active.append(1)
            if len(active) > 1:
                overlaps.append(len(active))
        try:
            time.sleep(0.05)
            return original(*args)
        finally:
            with lock:
                active.pop()

    estimator._solve_pinhole = slow_solve
    results = []
    estimator.set_result_callback(results.append)

    threads = [threading.Thread(target=estimator.add_observation, args=(obs,)) for obs in observations[4:16]]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert 1 <= len(results) <= 12
    # The last published solve saw every observation.
    assert results[-1].observation_count == 16
    assert estimator.model_cell.snapshot().version == results[-1].version


def test_solves_at_observed_frame_size() -> None:
    # Configured for 640x480, the camera delivers 1280x720.
    obs = project_observations(BOARD, K, D, SIZE, count=15, seed=3, noise_px=0.1)
    estimator = CalibrationEstimator(BOARD, (640, 480), fisheye=False)
    for o in obs:
        estimator.observations.append(o)

    result = estimator.recalibrate()

    assert result.model.image_size == SIZE
    assert result.model.cx == pytest.approx(640.0, abs=10.0)
    assert result.model.cy == pytest.approx(360.0, abs=10.0)
    assert result.model.fx == pytest.approx(800.0, rel=0.02)


def test_solve_skips_observations_of_an_older_frame_size() -> None:
    small_k = np.array([[400.0, 0.0, 320.0], [0.0, 400.0, 240.0], [0.0, 0.0, 1.0]])
    old = project_observations(BOARD, small_k, D, (640, 480), count=6, seed=4)
    new = project_observations(BOARD, K, D, SIZE, count=15, seed=5, noise_px=0.1)
    estimator = CalibrationEstimator(BOARD, SIZE, min_observations=10)
    for o in old + new:
        estimator.observations.append(o)

    result = estimator.recalibrate()

    assert result.observation_count == 15
    assert result.model.image_size == SIZE
    assert result.model.fx == pytest.approx(800.0, rel=0.02)


def test_count_is_published_before_the_solve(observations) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, min_observations=3)
    counts = [estimator.append_observation(obs) for obs in observations[:3]]

    assert counts == [1, 2, 3]
    assert estimator.recalibrate_if_due(2) is None
    result = estimator.recalibrate_if_due(counts[-1])
    assert result is not None
    assert result.observation_count == 3


def test_fisheye_flag_falls_back_to_top_level_namespace(monkeypatch) -> None:
    monkeypatch.delattr(cv2.fisheye, "CALIB_FIX_SKEW", raising=False)
    monkeypatch.setattr(cv2, "CALIB_FIX_SKEW", 8, raising=False)
    assert fisheye_flag("CALIB_FIX_SKEW") == 8

    monkeypatch.delattr(cv2, "CALIB_FIX_SKEW")
    with pytest.raises(ValueError):
        fisheye_flag("CALIB_FIX_SKEW")


def test_missing_fisheye_flag_is_an_estimation_failure(monkeypatch) -> None:
    obs = project_observations(BOARD, K, [0.05, 0.01, 0.0, 0.0], SIZE, count=6, seed=2, fisheye=True)
    estimator = CalibrationEstimator(BOARD, SIZE, fisheye=True, min_observations=5)
    for o in obs:
        estimator.observations.append(o)

    def no_flags(name):
        raise ValueError(f"OpenCV has no fisheye flag {name}")

    monkeypatch.setattr(estimator_module, "fisheye_flag", no_flags)

    with pytest.raises(EstimationFailureError):
        estimator.recalibrate()
    assert estimator.failure_count == 1
    assert estimator.model_cell.snapshot().source == SOURCE_GUESS


def test_request_during_explicit_recalibrate_is_not_dropped(observations) -> None:
    estimator = CalibrationEstimator(BOARD, SIZE, min_observations=5)
    for obs in observations[:5]:
        estimator.observations.append(obs)

    started = threading.Event()
    gate = threading.Event()
    original = estimator._solve_pinhole

    def gated_solve(*args):
        if not started.is_set():
            started.set()
            assert gate.wait(timeout=5.0)
        return original(*args)

    estimator._solve_pinhole = gated_solve
    results = []
    estimator.set_result_callback(results.append)

    explicit = threading.Thread(target=estimator.recalibrate)
    explicit.start()
    assert started.wait(timeout=5.0)

    # The solver is busy, so this request is left pending.
    assert estimator.add_observation(observations[5]) is None
    gate.set()
    explicit.join(timeout=10.0)

    assert not explicit.is_alive()
    assert [r.observation_count for r in results] == [5, 6]
    assert estimator.model_cell.snapshot().version == results[-1].version


@pytest.mark.parametrize(
    "error,band",
    [(0.1, "good"), (0.5, "good"), (0.51, "marginal"), (1.0, "marginal"), (1.01, "poor"), (5.0, "poor")],
)
def test_quality_band(error: float, band: str) -> None:
    assert quality_band(error) == band
