"""Tests for QuotaGuard - sliding windows, blocks and fail-open."""
import logging
import threading
from unittest.mock import MagicMock

import pytest

from nathguard.shared.utils import KeyedLocks, configure_pii_salt
from nathguard.services.quota_service import (
    InMemoryRateLimitStore,
    QuotaGuard,
    QuotaPolicy,
    retry_after_message,
)

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return QuotaGuard(clock=clock)


def _exhaust(guard, user_id="user-1", endpoint="chat:message", count=20):
    return [guard.check(user_id, endpoint) for _ in range(count)]


class TestSlidingWindow:

    def test_first_request_allowed(self, guard):
        result = guard.check("user-1", "chat:message")

        assert result.allowed is True
        assert result.remaining == 19
        assert result.reset_at == T0 + 3600
        assert result.retry_after_seconds is None

    def test_remaining_counts_down(self, guard):
        results = _exhaust(guard)

        assert [r.remaining for r in results] == list(range(19, -1, -1))
        assert all(r.allowed for r in results)

    def test_reset_at_follows_oldest_request(self, guard, clock):
        guard.check("user-1", "chat:message")
        clock.advance(600)

        result = guard.check("user-1", "chat:message")

        assert result.reset_at == T0 + 3600

    def test_old_requests_leave_the_window(self, guard, clock):
        guard.check("user-1", "chat:message")
        clock.advance(1800)
        guard.check("user-1", "chat:message")
        clock.advance(1801)

        result = guard.check("user-1", "chat:message")

        assert result.remaining == 18
        assert result.reset_at == T0 + 1800 + 3600

    def test_unknown_endpoint_uses_general_policy(self, guard):
        result = guard.check("user-1", "something:new")

        assert result.remaining == 199


class TestBlocking:

    def test_request_over_limit_starts_block(self, guard):
        _exhaust(guard)

        result = guard.check("user-1", "chat:message")

        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after_seconds == 1800
        assert result.reset_at == T0 + 1800

    def test_active_block_reports_time_left(self, guard, clock):
        _exhaust(guard, count=21)
        clock.advance(100.5)

        result = guard.check("user-1", "chat:message")

        assert result.allowed is False
        assert result.retry_after_seconds == 1700

    def test_block_does_not_touch_window(self, guard, clock):
        _exhaust(guard, count=21)
        version = guard.store.get("user-1", "chat:message").version
        clock.advance(60)

        guard.check("user-1", "chat:message")

        record = guard.store.get("user-1", "chat:message")
        assert record.version == version
        assert len(record.requests) == 20

    def test_allowed_again_after_window_and_block(self, guard, clock):
        _exhaust(guard, count=21)
        clock.advance(3601)

        result = guard.check("user-1", "chat:message")

        assert result.allowed is True
        assert result.remaining == 19

    def test_login_policy(self, guard):
        results = [guard.check("user-1", "auth:login") for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert results[-1].retry_after_seconds == 3600

    def test_users_are_independent(self, guard):
        _exhaust(guard, count=21)

        assert guard.check("user-2", "chat:message").allowed is True
        assert guard.check("user-1", "api:general").allowed is True


class TestConcurrency:

    def test_same_key_never_admits_past_limit(self, clock):
        guard = QuotaGuard(clock=clock)
        barrier = threading.Barrier(40)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            result = guard.check("user-1", "chat:message")
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(40)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.allowed) == 20
        assert len(guard._locks) == 0

    def test_conflicting_writer_is_retried(self, clock):
        store = InMemoryRateLimitStore()
        original = store.compare_and_set
        calls = {"n": 0}

        def flaky_cas(record, expected_version):
            calls["n"] += 1
            if calls["n"] == 1:
                return False
            return original(record, expected_version)

        store.compare_and_set = flaky_cas
        guard = QuotaGuard(store=store, clock=clock)

        result = guard.check("user-1", "chat:message")

        assert result.allowed is True
        assert result.remaining == 19
        assert calls["n"] == 2


class TestFailOpen:

    def test_storage_error_admits_request(self, clock, caplog):
        store = MagicMock()
        store.get.side_effect = ConnectionError("database down")
        guard = QuotaGuard(store=store, clock=clock)

        with caplog.at_level(logging.WARNING):
            result = guard.check("user-1", "chat:message")

        assert result.allowed is True
        assert result.remaining == 20
        assert result.reset_at == T0 + 60
        assert "QUOTA_CHECK_FAILED_OPEN" in caplog.text
        assert "user-1" not in caplog.text

    def test_conflict_exhaustion_admits_request(self, clock):
        store = MagicMock()
        store.get.return_value = None
        store.compare_and_set.return_value = False
        guard = QuotaGuard(store=store, clock=clock, max_cas_retries=3)

        result = guard.check("user-1", "chat:message")

        assert result.allowed is True
        assert store.compare_and_set.call_count == 3

    def test_invalid_retry_count(self):
        with pytest.raises(ValueError):
            QuotaGuard(max_cas_retries=0)


class TestOperatorOperations:

    def test_injected_empty_store_is_kept(self, clock):
        store = InMemoryRateLimitStore()

        guard = QuotaGuard(store=store, clock=clock)
        guard.check("user-1", "chat:message")

        assert guard.store is store
        assert store.get("user-1", "chat:message") is not None

    def test_clear_lifts_block(self, guard):
        _exhaust(guard, count=21)

        removed = guard.clear("user-1", "chat:message")

        assert removed == 1
        assert guard.check("user-1", "chat:message").allowed is True

    def test_clear_all_endpoints(self, guard):
        guard.check("user-1", "chat:message")
        guard.check("user-1", "auth:login")
        guard.check("user-2", "auth:login")

        assert guard.clear("user-1") == 2
        assert guard.stats("user-2")[0].requests_in_window == 1

    def test_stats_is_read_only(self, guard, clock):
        guard.check("user-1", "chat:message")
        _exhaust(guard, endpoint="auth:login", count=6)
        version = guard.store.get("user-1", "chat:message").version

        usage = {u.endpoint: u for u in guard.stats("user-1")}

        assert usage["chat:message"].requests_in_window == 1
        assert usage["chat:message"].max_requests == 20
        assert usage["chat:message"].blocked is False
        assert usage["auth:login"].blocked is True
        assert usage["auth:login"].blocked_until == T0 + 3600
        assert guard.store.get("user-1", "chat:message").version == version

    def test_is_user_blocked(self, guard):
        assert guard.is_user_blocked("user-1") is False

        _exhaust(guard, endpoint="auth:login", count=6)

        assert guard.is_user_blocked("user-1") is True

    def test_track_does_not_enforce(self, guard):
        for _ in range(25):
            guard.track("user-1", "auth:login")

        assert guard.stats("user-1")[0].requests_in_window == 25

    def test_cleanup_removes_stale_records(self, clock):
        policies = [
            QuotaPolicy("api:general", max_requests=200, window_seconds=3600, block_seconds=600),
            QuotaPolicy("long:block", max_requests=1, window_seconds=60, block_seconds=3 * 86400),
        ]
        guard = QuotaGuard(policies=policies, clock=clock)
        guard.check("idle", "api:general")
        guard.check("blocked", "long:block")
        guard.check("blocked", "long:block")
        clock.advance(86400 + 1)
        guard.check("active", "api:general")

        removed = guard.cleanup()

        assert removed == 1
        assert guard.stats("idle") == []
        assert len(guard.stats("active")) == 1
        assert guard.is_user_blocked("blocked") is True


class TestHeaders:

    def test_allowed_headers(self, guard):
        result = guard.check("user-1", "chat:message")

        headers = guard.rate_limit_headers(result, "chat:message")

        assert headers == {
            "X-RateLimit-Limit": "20",
            "X-RateLimit-Remaining": "19",
            "X-RateLimit-Reset": str(int(T0 + 3600)),
        }

    def test_denied_headers_include_retry_after(self, guard):
        _exhaust(guard, count=20)
        result = guard.check("user-1", "chat:message")

        headers = guard.rate_limit_headers(result, "chat:message")

        assert headers["Retry-After"] == "1800"

    @pytest.mark.parametrize("seconds,expected", [
        (30, "1 minuto."),
        (1800, "30 minutos."),
        (61, "2 minutos."),
    ])
    def test_retry_after_message(self, seconds, expected):
        assert retry_after_message(seconds).endswith(expected)


class TestPolicies:

    def test_default_policy_required(self):
        with pytest.raises(ValueError, match="api:general"):
            QuotaGuard(policies=[QuotaPolicy("chat:message", 20, 3600, 1800)])

    def test_duplicate_policy_rejected(self):
        policy = QuotaPolicy("api:general", 200, 3600, 600)
        with pytest.raises(ValueError, match="Duplicate"):
            QuotaGuard(policies=[policy, policy])

    @pytest.mark.parametrize("kwargs", [
        {"max_requests": 0, "window_seconds": 60, "block_seconds": 60},
        {"max_requests": 1, "window_seconds": 0, "block_seconds": 60},
        {"max_requests": 1, "window_seconds": 60, "block_seconds": -1},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ValueError):
            QuotaPolicy("x", **kwargs)


class TestKeyedLocks:

    def test_lock_released_after_use(self):
        locks = KeyedLocks()

        with locks.hold("a"):
            assert len(locks) == 1

        assert len(locks) == 0

    def test_lock_released_on_error(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")

        assert len(locks) == 0
