"""Rate-limited, deduplicating work queue and its worker pool.

Semantics follow the Kubernetes controller workqueue:

- A key added while it is already waiting is coalesced into one item.
- A key is never handed to two workers at once; adding it while it is
  being processed marks it dirty and it is re-queued on ``done()``.
- ``add_rate_limited()`` delays a key by an exponential per-key backoff;
  ``forget()`` clears that backoff after a success.

Usage::

    queue = RateLimitedQueue(ExponentialRateLimiter())
    worker = Worker("cluster", reconcile, queue)
    worker.run(workers=1, stop_event=stop)
    queue.add_rate_limited(key)
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

logger = logging.getLogger(__name__)


class DropKeyError(Exception):
    """Raised by a reconcile function for keys that must not be retried."""


class ExponentialRateLimiter:
    """Per-key exponential backoff: base * 2^failures, capped at max_delay."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0 or max_delay <= 0:
            raise ValueError("delays must be positive")
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._lock = threading.Lock()
        self._failures: dict[Hashable, int] = {}

    def when(self, key: Hashable) -> float:
        """Record a failure for *key* and return how long to wait."""
        with self._lock:
            exp = self._failures.get(key, 0)
            self._failures[key] = exp + 1
        # 2**exp overflows float for very large exp; cap first.
        if exp > 64:
            return self._max_delay
        return min(self._base_delay * (2 ** exp), self._max_delay)

    def num_requeues(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._failures.pop(key, None)


class RateLimitedQueue:
    """Thread-safe deduplicating queue with delayed adds."""

    def __init__(
        self,
        rate_limiter: ExponentialRateLimiter | None = None,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter or ExponentialRateLimiter()
        self._clock = _clock or time.monotonic
        self._cond = threading.Condition(threading.Lock())
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Add *key* once *delay* seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._ready_at.get(key)
            # Keep only the earliest pending time for a key.
            if current is not None and current <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> None:
        self.add_after(key, self._rate_limiter.when(key))

    def forget(self, key: Hashable) -> None:
        self._rate_limiter.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self._rate_limiter.num_requeues(key)

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until a key is ready.

        Returns ``(key, shutdown)``. ``key`` is None when the queue shut
        down or *timeout* elapsed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key, False
                if self._shutting_down:
                    return None, True

                wait = self._next_ready_in_locked()
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None, False
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Hashable) -> None:
        """Mark *key* finished; re-queue it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # --- Private ---

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, key = heapq.heappop(self._waiting)
            if self._ready_at.get(key) != ready_at:
                continue  # superseded by an earlier add_after
            del self._ready_at[key]
            self._add_locked(key)

    def _next_ready_in_locked(self) -> float | None:
        if not self._waiting:
            return None
        return max(self._waiting[0][0] - self._clock(), 0.001)


class Worker:
    """Pool of threads draining a queue into a reconcile function.

    A reconcile that returns normally forgets the key's backoff.  One that
    raises DropKeyError drops the key.  Any other exception re-queues the
    key with backoff, until ``max_retries`` requeues (0 = unbounded).
    """

    def __init__(
        self,
        name: str,
        reconcile: Callable[[Hashable], None],
        queue: RateLimitedQueue | None = None,
        max_retries: int = 0,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._name = name
        self._reconcile = reconcile
        self._queue = queue or RateLimitedQueue()
        self._max_retries = max_retries
        self._threads: list[threading.Thread] = []

    @property
    def queue(self) -> RateLimitedQueue:
        return self._queue

    def add(self, key: Hashable) -> None:
        self._queue.add(key)

    def add_rate_limited(self, key: Hashable) -> None:
        self._queue.add_rate_limited(key)

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Start *workers* threads; they exit once *stop_event* is set."""
        if workers < 1:
            raise ValueError("workers must be >= 1")
        for i in range(workers):
            t = threading.Thread(
                target=self._run_worker, name=f"{self._name}-worker-{i}", daemon=True,
            )
            t.start()
            self._threads.append(t)

        def _shutdown_on_stop() -> None:
            stop_event.wait()
            self._queue.shut_down()

        t = threading.Thread(
            target=_shutdown_on_stop, name=f"{self._name}-stopper", daemon=True,
        )
        t.start()
        self._threads.append(t)
        logger.info("Worker %s started with %d threads", self._name, workers)

    def join(self, timeout: float | None = None) -> None:
        for t in self._threads:
            t.join(timeout)

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Handle one key. Returns False once the queue has shut down."""
        key, shutdown = self._queue.get(timeout=timeout)
        if shutdown:
            return False
        if key is None:
            return True

        try:
            self._reconcile(key)
        except DropKeyError as exc:
            logger.error("Worker %s dropping key %s: %s", self._name, key, exc)
            self._queue.forget(key)
        except Exception as exc:
            requeues = self._queue.num_requeues(key)
            if self._max_retries and requeues >= self._max_retries:
                logger.error(
                    "Worker %s giving up on key %s after %d retries: %s",
                    self._name, key, requeues, exc,
                )
                self._queue.forget(key)
            else:
                logger.warning(
                    "Worker %s reconcile of %s failed, requeueing: %s",
                    self._name, key, exc,
                )
                self._queue.add_rate_limited(key)
        else:
            self._queue.forget(key)
        finally:
            self._queue.done(key)
        return True

    def _run_worker(self) -> None:
        while self.process_next_item():
            pass
