"""Tests for the rate-limited work queue and worker pool.

Covers:
- Exponential backoff
- Deduplication while waiting and while processing
- Delayed adds (driven by a mock clock)
- Worker success / retry / drop / give-up paths
- Shutdown
"""

from __future__ import annotations

import threading

import pytest

from cluster_fleet.sync.queue import (
    DropKeyError,
    ExponentialRateLimiter,
    RateLimitedQueue,
    Worker,
)

# --- Mock clock for deterministic tests ---


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


@pytest.fixture()
def clock() -> MockClock:
    return MockClock()


@pytest.fixture()
def queue(clock: MockClock) -> RateLimitedQueue:
    return RateLimitedQueue(ExponentialRateLimiter(base_delay=1.0, max_delay=8.0), _clock=clock)


# --- ExponentialRateLimiter ---


class TestExponentialRateLimiter:
    def test_default_delays_double(self):
        rl = ExponentialRateLimiter()
        assert rl.when("k") == pytest.approx(0.005)
        assert rl.when("k") == pytest.approx(0.01)
        assert rl.when("k") == pytest.approx(0.02)
        assert rl.num_requeues("k") == 3

    def test_capped_at_max(self):
        rl = ExponentialRateLimiter(base_delay=1.0, max_delay=8.0)
        delays = [rl.when("k") for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]

    def test_huge_failure_count_does_not_overflow(self):
        rl = ExponentialRateLimiter()
        for _ in range(70):
            delay = rl.when("k")
        assert delay == 1000.0

    def test_forget_resets(self):
        rl = ExponentialRateLimiter()
        rl.when("k")
        rl.when("k")
        rl.forget("k")
        assert rl.num_requeues("k") == 0
        assert rl.when("k") == pytest.approx(0.005)

    def test_keys_independent(self):
        rl = ExponentialRateLimiter()
        rl.when("a")
        rl.when("a")
        assert rl.num_requeues("b") == 0

    def test_rejects_non_positive(self):
        with pytest.raises(ValueError):
            ExponentialRateLimiter(base_delay=0)


# --- RateLimitedQueue ---


class TestRateLimitedQueue:
    def test_add_and_get(self, queue: RateLimitedQueue):
        queue.add("a")
        assert queue.get(timeout=0) == ("a", False)

    def test_get_times_out_when_empty(self, queue: RateLimitedQueue):
        assert queue.get(timeout=0) == (None, False)

    def test_duplicate_adds_coalesce(self, queue: RateLimitedQueue):
        queue.add("a")
        queue.add("a")
        queue.add("b")
        assert len(queue) == 2

    def test_key_not_handed_out_twice(self, queue: RateLimitedQueue):
        queue.add("a")
        key, _ = queue.get(timeout=0)
        queue.add("a")
        # still processing: the re-add is parked
        assert len(queue) == 0
        assert queue.get(timeout=0) == (None, False)
        queue.done(key)
        assert queue.get(timeout=0) == ("a", False)

    def test_done_without_readd_does_not_requeue(self, queue: RateLimitedQueue):
        queue.add("a")
        key, _ = queue.get(timeout=0)
        queue.done(key)
        assert len(queue) == 0

    def test_add_after_waits_for_clock(self, queue: RateLimitedQueue, clock: MockClock):
        queue.add_after("a", 5.0)
        assert queue.get(timeout=0) == (None, False)
        clock.advance(4.9)
        assert queue.get(timeout=0) == (None, False)
        clock.advance(0.1)
        assert queue.get(timeout=0) == ("a", False)

    def test_add_after_keeps_earliest(self, queue: RateLimitedQueue, clock: MockClock):
        queue.add_after("a", 5.0)
        queue.add_after("a", 1.0)
        queue.add_after("a", 3.0)
        clock.advance(1.0)
        assert queue.get(timeout=0) == ("a", False)
        queue.done("a")
        clock.advance(10.0)
        assert queue.get(timeout=0) == (None, False)

    def test_add_after_non_positive_is_immediate(self, queue: RateLimitedQueue):
        queue.add_after("a", 0)
        assert queue.get(timeout=0) == ("a", False)

    def test_add_rate_limited_uses_backoff(self, queue: RateLimitedQueue, clock: MockClock):
        queue.add_rate_limited("a")
        assert queue.num_requeues("a") == 1
        clock.advance(1.0)
        key, _ = queue.get(timeout=0)
        queue.done(key)
        queue.add_rate_limited("a")
        clock.advance(1.0)
        assert queue.get(timeout=0) == (None, False)
        clock.advance(1.0)
        assert queue.get(timeout=0) == ("a", False)

    def test_forget(self, queue: RateLimitedQueue):
        queue.add_rate_limited("a")
        queue.forget("a")
        assert queue.num_requeues("a") == 0

    def test_shut_down(self, queue: RateLimitedQueue):
        queue.shut_down()
        assert queue.shutting_down is True
        assert queue.get(timeout=0) == (None, True)
        queue.add("a")
        assert len(queue) == 0

    def test_shut_down_drains_queued_keys_first(self, queue: RateLimitedQueue):
        queue.add("a")
        queue.shut_down()
        assert queue.get(timeout=0) == ("a", False)
        assert queue.get(timeout=0) == (None, True)

    def test_shut_down_wakes_blocked_getter(self):
        q = RateLimitedQueue()
        result: list = []
        t = threading.Thread(target=lambda: result.append(q.get()))
        t.start()
        q.shut_down()
        t.join(5)
        assert result == [(None, True)]


# --- Worker ---


class TestWorker:
    def test_success_forgets_backoff(self, queue: RateLimitedQueue, clock: MockClock):
        seen: list[str] = []
        worker = Worker("test", seen.append, queue)
        queue.add_rate_limited("a")
        clock.advance(1.0)
        assert worker.process_next_item(timeout=0) is True
        assert seen == ["a"]
        assert queue.num_requeues("a") == 0

    def test_failure_requeues_with_backoff(self, queue: RateLimitedQueue, clock: MockClock):
        calls: list[str] = []

        def reconcile(key):
            calls.append(key)
            raise RuntimeError("not yet")

        worker = Worker("test", reconcile, queue)
        queue.add("a")
        worker.process_next_item(timeout=0)
        assert queue.num_requeues("a") == 1
        # not ready until the backoff elapses
        assert worker.process_next_item(timeout=0) is True
        assert calls == ["a"]
        clock.advance(1.0)
        worker.process_next_item(timeout=0)
        assert calls == ["a", "a"]
        assert queue.num_requeues("a") == 2

    def test_drop_key_is_not_retried(self, queue: RateLimitedQueue, clock: MockClock):
        def reconcile(key):
            raise DropKeyError("bad key")

        worker = Worker("test", reconcile, queue)
        queue.add("a")
        worker.process_next_item(timeout=0)
        assert queue.num_requeues("a") == 0
        clock.advance(100.0)
        assert queue.get(timeout=0) == (None, False)

    def test_gives_up_after_max_retries(self, queue: RateLimitedQueue, clock: MockClock):
        calls: list[str] = []

        def reconcile(key):
            calls.append(key)
            raise RuntimeError("still broken")

        worker = Worker("test", reconcile, queue, max_retries=2)
        queue.add("a")
        for _ in range(5):
            worker.process_next_item(timeout=0)
            clock.advance(10.0)
        assert calls == ["a", "a", "a"]
        assert queue.num_requeues("a") == 0

    def test_process_returns_false_on_shutdown(self, queue: RateLimitedQueue):
        worker = Worker("test", lambda key: None, queue)
        queue.shut_down()
        assert worker.process_next_item(timeout=0) is False

    def test_run_processes_until_stopped(self):
        processed = threading.Event()
        seen: list[str] = []

        def reconcile(key):
            seen.append(key)
            processed.set()

        worker = Worker("test", reconcile)
        stop = threading.Event()
        worker.run(workers=2, stop_event=stop)
        worker.add("a")
        assert processed.wait(5)
        stop.set()
        worker.join(5)
        assert seen == ["a"]
        assert worker.queue.shutting_down is True

    def test_rejects_bad_arguments(self):
        with pytest.raises(ValueError):
            Worker("test", lambda key: None, max_retries=-1)
        with pytest.raises(ValueError):
            Worker("test", lambda key: None).run(0, threading.Event())
