import queue
import threading

import pytest

from boothworker.core.workers import TokenBucket, WorkerPool


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_token_bucket_spends_burst_then_refills():
    clock = FakeClock()
    bucket = TokenBucket(rate=2.0, burst=3, clock=clock)

    assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]
    clock.now += 0.5
    assert bucket.try_acquire() is True
    assert bucket.try_acquire() is False


def test_token_bucket_never_banks_more_than_burst():
    clock = FakeClock()
    bucket = TokenBucket(rate=10.0, burst=2, clock=clock)
    clock.now += 60
    assert [bucket.try_acquire() for _ in range(3)] == [True, True, False]


def test_token_bucket_acquire_times_out():
    clock = FakeClock()
    bucket = TokenBucket(rate=1.0, burst=1, clock=clock)
    assert bucket.acquire(timeout=0) is True
    assert bucket.acquire(timeout=0) is False


@pytest.mark.parametrize("rate, burst", [(0, 1), (1, 0), (-1, 5)])
def test_token_bucket_rejects_non_positive_settings(rate, burst):
    with pytest.raises(ValueError):
        TokenBucket(rate=rate, burst=burst)


def test_pool_returns_results_through_futures():
    pool = WorkerPool(size=2, queue_size=4)
    try:
        futures = [pool.submit(pow, n, 2) for n in range(5)]
        assert [future.result(timeout=5) for future in futures] == [0, 1, 4, 9, 16]
    finally:
        pool.shutdown()


def test_pool_reports_task_errors():
    def boom():
        raise RuntimeError("provider down")

    pool = WorkerPool(size=1, queue_size=1)
    try:
        future = pool.submit(boom)
        with pytest.raises(RuntimeError, match="provider down"):
            future.result(timeout=5)
        assert pool.submit(lambda: "still running").result(timeout=5) == "still running"
    finally:
        pool.shutdown()


def test_pool_applies_backpressure_when_queue_is_full():
    started = threading.Event()
    release = threading.Event()

    def blocker():
        started.set()
        release.wait(5)
        return "done"

    pool = WorkerPool(size=1, queue_size=1)
    try:
        first = pool.submit(blocker)
        assert started.wait(5)
        pool.submit(lambda: "queued")
        with pytest.raises(queue.Full):
            pool.submit(lambda: "overflow", timeout=0.05)
        release.set()
        assert first.result(timeout=5) == "done"
    finally:
        release.set()
        pool.shutdown()


def test_pool_waits_for_rate_limiter_tokens():
    clock = FakeClock()
    limiter = TokenBucket(rate=1000.0, burst=1, clock=clock)
    pool = WorkerPool(size=1, queue_size=2, limiter=limiter)
    try:
        assert pool.submit(lambda: 1).result(timeout=5) == 1
        assert limiter.try_acquire() is False
    finally:
        pool.shutdown()


def test_shutdown_rejects_new_work():
    pool = WorkerPool(size=1, queue_size=1)
    pool.shutdown()
    with pytest.raises(RuntimeError):
        pool.submit(lambda: None)
