"""Tests for storage deadline enforcement."""
import threading

import pytest

from nathguard.shared.database import StorageTimeoutError
from nathguard.shared.utils.timeouts import run_with_timeout


class TestRunWithTimeout:

    def test_returns_result(self):
        assert run_with_timeout(lambda a, b: a + b, 1.0, 2, 3) == 5

    def test_none_timeout_runs_inline(self):
        caller = threading.current_thread()
        seen = []

        run_with_timeout(lambda: seen.append(threading.current_thread()), None)

        assert seen == [caller]

    def test_propagates_exceptions(self):
        def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            run_with_timeout(broken, 1.0)

    def test_raises_storage_timeout(self):
        release = threading.Event()

        with pytest.raises(StorageTimeoutError):
            run_with_timeout(release.wait, 0.05, 5, operation="slow_query")

        release.set()
