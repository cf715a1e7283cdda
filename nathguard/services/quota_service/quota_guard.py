"""Quota guard - sliding window rate limiting per (user, endpoint).

Algorithm per check:
1. Load the record and drop timestamps outside the window
2. Active block: deny without touching the window
3. Full window: start a block and deny
4. Otherwise append now, persist, allow

Updates to one key are linearizable: a per-key lock serializes threads in
this process and a version compare-and-set at the store catches writers in
other processes. Storage failures fail open: availability of the support
channel wins over strict enforcement.
"""
import logging
import math
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from nathguard.shared.database import ConflictError
from nathguard.shared.models import EndpointUsage, RateLimitRecord, RateLimitResult
from nathguard.shared.utils import KeyedLocks, hash_pii
from .config import (
    DEFAULT_ENDPOINT,
    DEFAULT_POLICIES,
    STALE_RECORD_SECONDS,
    QuotaPolicy,
    build_policy_table,
)
from .store import InMemoryRateLimitStore, RateLimitStore

logger = logging.getLogger(__name__)

# Result window reported when a check fails open
FAIL_OPEN_RESET_SECONDS = 60


class QuotaGuard:
    """Per-user, per-endpoint sliding window limiter."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        policies: Iterable[QuotaPolicy] = DEFAULT_POLICIES,
        clock: Callable[[], float] = time.time,
        max_cas_retries: int = 5,
    ):
        """Initialize guard.

        Args:
            store: Record store; in-memory when omitted
            policies: Endpoint policies, must include api:general
            clock: Epoch seconds source, injectable for tests
            max_cas_retries: Version conflicts tolerated per check before
                failing open
        """
        if max_cas_retries < 1:
            raise ValueError("max_cas_retries must be >= 1")

        self.store = store if store is not None else InMemoryRateLimitStore()
        self.policies: Mapping[str, QuotaPolicy] = build_policy_table(policies)
        self.max_cas_retries = max_cas_retries
        self._clock = clock
        self._locks = KeyedLocks()

        logger.info(
            "QUOTA_GUARD_INITIALIZED",
            extra={
                "store": type(self.store).__name__,
                "endpoints": sorted(self.policies),
            }
        )

    def policy_for(self, endpoint: str) -> QuotaPolicy:
        return self.policies.get(endpoint) or self.policies[DEFAULT_ENDPOINT]

    def check(self, user_id: str, endpoint: str) -> RateLimitResult:
        """Count one request against the user's quota.

        Returns:
            RateLimitResult. Never raises; storage failures admit the request.
        """
        policy = self.policy_for(endpoint)
        user_hash = hash_pii(user_id)

        try:
            with self._locks.hold((user_id, endpoint)):
                result = self._check_locked(user_id, endpoint, policy)
        except Exception as e:
            logger.warning(
                "QUOTA_CHECK_FAILED_OPEN",
                extra={
                    "user_hash": user_hash,
                    "endpoint": endpoint,
                    "error_type": type(e).__name__,
                    "error": str(e),
                }
            )
            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests,
                reset_at=self._clock() + FAIL_OPEN_RESET_SECONDS,
            )

        if not result.allowed:
            logger.info(
                "QUOTA_CHECK_DENIED",
                extra={
                    "user_hash": user_hash,
                    "endpoint": endpoint,
                    "retry_after_seconds": result.retry_after_seconds,
                }
            )
        return result

    def _check_locked(
        self,
        user_id: str,
        endpoint: str,
        policy: QuotaPolicy,
    ) -> RateLimitResult:
        for _ in range(self.max_cas_retries):
            now = self._clock()
            current = self.store.get(user_id, endpoint)
            expected_version = current.version if current else 0
            record = (current or RateLimitRecord(user_id=user_id, endpoint=endpoint))
            record = record.pruned(now - policy.window_seconds)

            if record.is_blocked(now):
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=record.blocked_until,
                    retry_after_seconds=math.ceil(record.blocked_until - now),
                )

            if len(record.requests) >= policy.max_requests:
                blocked_until = now + policy.block_seconds
                if not self.store.compare_and_set(
                    replace(record, blocked_until=blocked_until), expected_version
                ):
                    continue
                logger.warning(
                    "QUOTA_BLOCK_STARTED",
                    extra={
                        "user_hash": hash_pii(user_id),
                        "endpoint": endpoint,
                        "block_seconds": policy.block_seconds,
                    }
                )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=blocked_until,
                    retry_after_seconds=policy.block_seconds,
                )

            updated = replace(record, requests=record.requests + (now,), blocked_until=None)
            if not self.store.compare_and_set(updated, expected_version):
                continue

            return RateLimitResult(
                allowed=True,
                remaining=policy.max_requests - len(updated.requests),
                reset_at=updated.requests[0] + policy.window_seconds,
            )

        raise ConflictError(
            f"rate limit record kept changing after {self.max_cas_retries} attempts"
        )

    def track(self, user_id: str, endpoint: str) -> None:
        """Record a request without enforcing the limit. Best effort."""
        policy = self.policy_for(endpoint)
        try:
            with self._locks.hold((user_id, endpoint)):
                for _ in range(self.max_cas_retries):
                    now = self._clock()
                    current = self.store.get(user_id, endpoint)
                    record = current or RateLimitRecord(user_id=user_id, endpoint=endpoint)
                    record = record.pruned(now - policy.window_seconds)
                    updated = replace(record, requests=record.requests + (now,))
                    if self.store.compare_and_set(updated, current.version if current else 0):
                        return
        except Exception as e:
            logger.warning(
                "QUOTA_TRACK_FAILED",
                extra={"endpoint": endpoint, "error_type": type(e).__name__}
            )

    def clear(self, user_id: str, endpoint: Optional[str] = None) -> int:
        """Operator override: drop the user's windows and blocks."""
        removed = self.store.delete(user_id, endpoint)
        logger.info(
            "QUOTA_CLEARED",
            extra={
                "user_hash": hash_pii(user_id),
                "endpoint": endpoint or "*",
                "records": removed,
            }
        )
        return removed

    def stats(self, user_id: str) -> List[EndpointUsage]:
        """Current occupancy of every tracked endpoint. Read-only."""
        now = self._clock()
        records: Dict[str, RateLimitRecord] = {
            r.endpoint: r for r in self.store.list_for_user(user_id)
        }

        usage = []
        for endpoint in sorted(records):
            policy = self.policy_for(endpoint)
            record = records[endpoint].pruned(now - policy.window_seconds)
            blocked = record.is_blocked(now)
            usage.append(EndpointUsage(
                endpoint=endpoint,
                requests_in_window=len(record.requests),
                max_requests=policy.max_requests,
                blocked=blocked,
                blocked_until=record.blocked_until if blocked else None,
            ))
        return usage

    def is_user_blocked(self, user_id: str) -> bool:
        return any(u.blocked for u in self.stats(user_id))

    def cleanup(self) -> int:
        """Evict records whose newest request is older than 24h."""
        now = self._clock()
        removed = self.store.delete_stale(now - STALE_RECORD_SECONDS, now)
        logger.info("QUOTA_CLEANUP_COMPLETED", extra={"records_removed": removed})
        return removed

    def rate_limit_headers(self, result: RateLimitResult, endpoint: str) -> Dict[str, str]:
        """HTTP headers describing a quota decision (RFC 6585 style)."""
        headers = {
            "X-RateLimit-Limit": str(self.policy_for(endpoint).max_requests),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(math.ceil(result.reset_at)),
        }
        if result.retry_after_seconds is not None:
            headers["Retry-After"] = str(result.retry_after_seconds)
        return headers


def retry_after_message(seconds: int) -> str:
    """User-facing text for a denied request."""
    minutes = max(1, math.ceil(seconds / 60))
    unit = "minuto" if minutes == 1 else "minutos"
    return (
        "Você atingiu o limite de mensagens por enquanto. "
        f"Tente novamente em {minutes} {unit}."
    )
