"""Tests for MaintenanceScheduler."""
import logging
import threading

import pytest

from nathguard.services.security_gateway import MaintenanceScheduler


class TestRunOnce:

    def test_runs_every_job(self):
        scheduler = MaintenanceScheduler([("a", lambda: 3), ("b", lambda: 0)])

        assert scheduler.run_once() == {"a": 3, "b": 0}

    def test_failure_does_not_stop_other_jobs(self, caplog):
        def broken():
            raise ConnectionError("database down")

        scheduler = MaintenanceScheduler([("broken", broken), ("ok", lambda: 1)])

        with caplog.at_level(logging.ERROR):
            results = scheduler.run_once()

        assert results == {"broken": None, "ok": 1}
        assert "MAINTENANCE_JOB_FAILED" in caplog.text

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            MaintenanceScheduler([], interval_seconds=0)


class TestBackgroundThread:

    def test_runs_on_interval_until_stopped(self):
        ran = threading.Event()
        calls = []

        def job():
            calls.append(1)
            if len(calls) >= 2:
                ran.set()
            return 0

        scheduler = MaintenanceScheduler([("job", job)], interval_seconds=0.01)
        scheduler.start()
        assert ran.wait(5)
        scheduler.stop(timeout=5)

        assert scheduler.running is False
        count = len(calls)
        ran.clear()
        assert not ran.wait(0.05)
        assert len(calls) == count

    def test_run_on_start(self):
        ran = threading.Event()
        scheduler = MaintenanceScheduler(
            [("job", lambda: ran.set() or 0)],
            interval_seconds=3600,
            run_on_start=True,
        )

        scheduler.start()
        assert ran.wait(5)
        scheduler.stop(timeout=5)

    def test_stop_wakes_sleeping_thread(self):
        scheduler = MaintenanceScheduler([("job", lambda: 0)], interval_seconds=3600)
        scheduler.start()

        scheduler.stop(timeout=5)

        assert scheduler.running is False

    def test_start_is_idempotent(self):
        scheduler = MaintenanceScheduler([("job", lambda: 0)], interval_seconds=3600)
        scheduler.start()
        thread = scheduler._thread

        scheduler.start()

        assert scheduler._thread is thread
        scheduler.stop(timeout=5)
