from __future__ import annotations

import random
import threading
import time

import pytest

from priorart_engine.engine import DETAIL_ENDPOINT, SEARCH_ENDPOINT, RateLimiter
from priorart_engine.errors import RateLimitTimeout


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


def test_first_call_is_immediate_and_next_waits_for_interval(fake_clock) -> None:
    clock = fake_clock
    clock.advance(100.0)
    limiter = RateLimiter(min_interval=5.0, clock=clock)

    assert limiter.acquire(SEARCH_ENDPOINT) == 100.0
    assert limiter.acquire(SEARCH_ENDPOINT) == 105.0
    assert limiter.last_reserved(SEARCH_ENDPOINT) == 105.0


def test_endpoints_do_not_block_each_other(fake_clock) -> None:
    clock = fake_clock
    limiter = RateLimiter(min_interval=5.0, clock=clock)

    assert limiter.acquire(SEARCH_ENDPOINT) == 0.0
    assert limiter.acquire(DETAIL_ENDPOINT) == 0.0


def test_per_endpoint_interval_override(fake_clock) -> None:
    clock = fake_clock
    limiter = RateLimiter(min_interval=5.0, clock=clock, intervals={DETAIL_ENDPOINT: 1.0})

    limiter.acquire(DETAIL_ENDPOINT)
    assert limiter.acquire(DETAIL_ENDPOINT) == 1.0


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_concurrent_callers_are_spaced_by_interval(seed: int, fake_clock) -> None:
    rng = random.Random(seed)
    callers = rng.randint(4, 9)
    interval = rng.choice([0.5, 2.0, 5.0])
    clock = fake_clock
    limiter = RateLimiter(min_interval=interval, clock=clock)
    reserved: list[float] = []
    lock = threading.Lock()

    def _call() -> None:
        stamp = limiter.acquire(SEARCH_ENDPOINT)
        with lock:
            reserved.append(stamp)

    threads = [threading.Thread(target=_call) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(reserved) == callers
    ordered = sorted(reserved)
    gaps = [later - earlier for earlier, later in zip(ordered, ordered[1:])]
    assert all(gap >= interval - 1e-9 for gap in gaps)


def test_waiters_are_served_in_arrival_order(manual_clock) -> None:
    clock = manual_clock
    limiter = RateLimiter(min_interval=5.0, clock=clock)
    limiter.acquire(SEARCH_ENDPOINT)
    served: list[str] = []

    def _call(name: str) -> None:
        limiter.acquire(SEARCH_ENDPOINT)
        served.append(name)

    threads = []
    for index, name in enumerate(("first", "second", "third"), start=1):
        thread = threading.Thread(target=_call, args=(name,))
        thread.start()
        threads.append(thread)
        _wait_until(lambda index=index: limiter.pending(SEARCH_ENDPOINT) == index)

    for count in (1, 2, 3):
        clock.advance(5.0)
        _wait_until(lambda count=count: len(served) == count)

    for thread in threads:
        thread.join(timeout=5)
    assert served == ["first", "second", "third"]


def test_timeout_raises_and_releases_queue_position(fake_clock) -> None:
    clock = fake_clock
    limiter = RateLimiter(min_interval=5.0, clock=clock)
    limiter.acquire(SEARCH_ENDPOINT)

    with pytest.raises(RateLimitTimeout) as excinfo:
        limiter.acquire(SEARCH_ENDPOINT, timeout=1.0)

    assert excinfo.value.endpoint == SEARCH_ENDPOINT
    assert limiter.pending(SEARCH_ENDPOINT) == 0
    # The abandoned wait neither reserved a slot nor delays the next caller
    assert limiter.last_reserved(SEARCH_ENDPOINT) == 0.0
    assert limiter.acquire(SEARCH_ENDPOINT) == 5.0


def test_negative_interval_rejected() -> None:
    with pytest.raises(ValueError):
        RateLimiter(min_interval=-1)
