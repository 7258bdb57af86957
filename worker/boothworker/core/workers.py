"""Bounded worker pool with a shared token-bucket rate limiter."""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class TokenBucket:
    """Thread-safe token bucket: ``rate`` tokens per second, at most ``burst`` banked."""

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = time.monotonic) -> None:
        if rate <= 0 or burst <= 0:
            raise ValueError("rate and burst must be positive")
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Block until a token is available; False if ``timeout`` elapses first."""
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return True
                wait = (1 - self._tokens) / self.rate
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            time.sleep(wait)


class WorkerPool:
    """N threads pulling from a bounded queue.

    ``submit`` blocks while the queue is full, which is the backpressure on
    producers. Every task waits for a token from the shared limiter before it
    runs and reports through a :class:`concurrent.futures.Future`.
    """

    def __init__(self, size: int, queue_size: int, limiter: Optional[TokenBucket] = None, name: str = "worker") -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self._limiter = limiter
        self._closed = False
        self._threads: List[threading.Thread] = []
        for index in range(size):
            thread = threading.Thread(target=self._loop, name=f"{name}-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                future, fn, args, kwargs = item
                if not future.set_running_or_notify_cancel():
                    continue
                if self._limiter is not None:
                    self._limiter.acquire()
                try:
                    future.set_result(fn(*args, **kwargs))
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Worker task %s failed: %s", getattr(fn, "__name__", fn), exc)
                    future.set_exception(exc)
            finally:
                self._queue.task_done()

    def submit(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> Future:
        if self._closed:
            raise RuntimeError("worker pool is shut down")
        future: Future = Future()
        self._queue.put((future, fn, args, kwargs), timeout=timeout)
        return future

    def join(self) -> None:
        """Wait until every queued task has run."""
        self._queue.join()

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        for _ in self._threads:
            self._queue.put(_STOP)
        if wait:
            for thread in self._threads:
                thread.join()
