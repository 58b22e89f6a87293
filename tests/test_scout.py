"""Tests for the per-cluster health scout."""

from __future__ import annotations

import threading
import time

import pytest

from cluster_fleet.scout.scout import HealthScout, Scout, ScoutHandle
from conftest import FakeClusterClient


class Recorder:
    """Collects health callbacks and lets tests wait for them."""

    def __init__(self) -> None:
        self.changes: list[tuple[str, bool]] = []
        self._cond = threading.Condition()

    def __call__(self, name: str, down: bool) -> None:
        with self._cond:
            self.changes.append((name, down))
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.changes) >= count, timeout)


class TestHealthScout:
    def test_is_a_scout(self):
        assert isinstance(HealthScout(), Scout)

    def test_rejects_bad_settings(self):
        with pytest.raises(ValueError):
            HealthScout(interval=0)
        with pytest.raises(ValueError):
            HealthScout(failure_threshold=0)

    def test_healthy_cluster_reports_nothing(self):
        client = FakeClusterClient()
        rec = Recorder()
        handle = HealthScout(interval=0.01).start("a", client, rec)
        time.sleep(0.1)
        handle.stop(timeout=2)
        assert rec.changes == []
        assert "ping" in client.call_names()

    def test_down_after_threshold_then_recovers(self):
        client = FakeClusterClient()
        client.fail_ping = ConnectionError("refused")
        rec = Recorder()
        handle = HealthScout(interval=0.01, failure_threshold=2).start("a", client, rec)
        try:
            assert rec.wait_for(1)
            assert rec.changes == [("a", True)]
            assert client.call_names().count("ping") >= 2

            client.fail_ping = None
            assert rec.wait_for(2)
            assert rec.changes == [("a", True), ("a", False)]
        finally:
            handle.stop(timeout=2)

    def test_probe_timeout_passed_to_client(self):
        client = FakeClusterClient()
        handle = HealthScout(interval=0.01, probe_timeout=1.5).start("a", client, Recorder())
        time.sleep(0.05)
        handle.stop(timeout=2)
        assert ("ping", 1.5) in client.calls

    def test_stop(self):
        handle = HealthScout(interval=0.01).start("a", FakeClusterClient(), Recorder())
        assert handle.name == "a"
        assert handle.stopped is False
        handle.stop(timeout=2)
        assert handle.stopped is True


class TestScoutHandle:
    def test_stop_without_thread(self):
        handle = ScoutHandle("a", threading.Event())
        handle.stop(timeout=1)
        assert handle.stopped is True
