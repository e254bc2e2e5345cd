import sys
import threading
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camcal.pool import TaskPool  # noqa: E402


def test_full_pool_rejects_without_blocking() -> None:
    pool = TaskPool(max_workers=3)
    release = threading.Event()
    started = threading.Semaphore(0)

    def task() -> None:
        started.release()
        release.wait(5.0)

    t0 = time.perf_counter()
    accepted = [pool.submit(task) for _ in range(5)]
    elapsed = time.perf_counter() - t0

    assert accepted == [True, True, True, False, False]
    assert elapsed < 0.5
    for _ in range(3):
        assert started.acquire(timeout=2.0)
    assert pool.active_count == 3
    assert pool.accepted == 3
    assert pool.rejected == 2

    release.set()
    assert pool.wait_idle(timeout=5.0)
    assert pool.active_count == 0
    assert pool.completed == 3

    # Slots are free again.
    assert pool.submit(task)
    assert pool.wait_idle(timeout=5.0)
    pool.shutdown()


def test_task_exception_is_counted_not_raised() -> None:
    pool = TaskPool(max_workers=2)

    def boom() -> None:
        raise RuntimeError("detector crashed")

    assert pool.submit(boom)
    assert pool.wait_idle(timeout=5.0)
    assert pool.failed == 1
    assert pool.completed == 0
    assert pool.active_count == 0
    pool.shutdown()


def test_arguments_are_passed() -> None:
    pool = TaskPool()
    seen = []
    assert pool.submit(lambda a, b=0: seen.append((a, b)), 1, b=2)
    assert pool.wait_idle(timeout=5.0)
    assert seen == [(1, 2)]
    pool.shutdown()


def test_shutdown_waits_and_closes() -> None:
    pool = TaskPool(max_workers=3)
    done = []

    def slow() -> None:
        time.sleep(0.1)
        done.append(1)

    assert pool.submit(slow)
    pool.shutdown(wait=True)

    assert done == [1]
    assert pool.closed
    assert not pool.submit(slow)
    assert pool.rejected == 1


def test_invalid_size() -> None:
    with pytest.raises(ValueError):
        TaskPool(max_workers=0)
