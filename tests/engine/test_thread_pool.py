from __future__ import annotations

import threading
import time

from priorart_engine.engine import ThreadPoolManager
from priorart_engine.engine.thread_pool import MAX_VARIANT_WORKERS


def test_thread_pool_manager_isolates_executors() -> None:
    manager = ThreadPoolManager(default_workers=2)
    default_a = manager.get()
    default_b = manager.get()
    assert default_a is default_b

    pool_runs = manager.get("runs", max_workers=1)
    assert manager.get("runs") is pool_runs
    assert manager.get("details") is not pool_runs

    manager.shutdown(wait=True)


def test_worker_count_is_capped() -> None:
    manager = ThreadPoolManager(default_workers=10)
    assert manager.default_workers == MAX_VARIANT_WORKERS
    manager.shutdown(wait=True)


def test_run_settled_keeps_order_and_captures_errors() -> None:
    manager = ThreadPoolManager(default_workers=3)

    def work(value: int) -> int:
        time.sleep(0.01 * (3 - value))
        if value == 2:
            raise ValueError("bad item")
        return value * 10

    settled = manager.run_settled(work, [0, 1, 2])
    manager.shutdown(wait=True)

    assert [item.item for item in settled] == [0, 1, 2]
    assert [item.result for item in settled[:2]] == [0, 10]
    assert not settled[2].ok
    assert isinstance(settled[2].error, ValueError)


def test_run_settled_bounds_concurrency() -> None:
    manager = ThreadPoolManager(default_workers=2)
    active = 0
    peak = 0
    lock = threading.Lock()

    def work(_: int) -> None:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1

    manager.run_settled(work, range(6))
    manager.shutdown(wait=True)
    assert peak <= 2
