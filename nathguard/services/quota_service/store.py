"""Rate limit record stores.

All writes are compare-and-set on the record version: a write succeeds
only if the stored version still equals the version the caller read
(0 meaning "no record"). The stored record carries expected_version + 1.

- InMemoryRateLimitStore: bounded process-local map
- PostgresRateLimitStore: rate_limits table, optimistic version column
- TieredRateLimitStore: durable primary with timeout, in-memory fallback
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional

from nathguard.shared.cache import BoundedTTLCache
from nathguard.shared.database import BaseRepository, ConnectionManager
from nathguard.shared.models import RateLimitRecord
from nathguard.shared.utils import run_with_timeout

logger = logging.getLogger(__name__)


class RateLimitStore(ABC):
    """Storage contract used by QuotaGuard."""

    @abstractmethod
    def get(self, user_id: str, endpoint: str) -> Optional[RateLimitRecord]:
        pass

    @abstractmethod
    def compare_and_set(self, record: RateLimitRecord, expected_version: int) -> bool:
        """Write record if the stored version equals expected_version."""
        pass

    @abstractmethod
    def delete(self, user_id: str, endpoint: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[RateLimitRecord]:
        pass

    @abstractmethod
    def delete_stale(self, newest_before: float, now: float) -> int:
        """Remove records with no request after newest_before and no active block."""
        pass

    def health_check(self) -> bool:
        return True


def _is_stale(record: RateLimitRecord, newest_before: float, now: float) -> bool:
    newest = record.newest
    return (newest is None or newest < newest_before) and not record.is_blocked(now)


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store on a bounded LRU cache.

    Entries untouched for ttl_seconds expire on their own; cleanup() is
    still needed to drop records that are refreshed but stale.
    """

    def __init__(
        self,
        max_entries: int = 100_000,
        ttl_seconds: Optional[float] = 2 * 24 * 60 * 60,
    ):
        self._cache: BoundedTTLCache = BoundedTTLCache(
            max_entries=max_entries,
            ttl_seconds=ttl_seconds,
            name="rate_limits",
        )
        # get + set must be atomic for compare-and-set
        self._write_lock = threading.Lock()

    def get(self, user_id: str, endpoint: str) -> Optional[RateLimitRecord]:
        return self._cache.get((user_id, endpoint))

    def compare_and_set(self, record: RateLimitRecord, expected_version: int) -> bool:
        with self._write_lock:
            current = self._cache.get(record.key)
            current_version = current.version if current else 0
            if current_version != expected_version:
                return False
            self._cache.set(record.key, replace(record, version=expected_version + 1))
            return True

    def delete(self, user_id: str, endpoint: Optional[str] = None) -> int:
        with self._write_lock:
            if endpoint is not None:
                return 1 if self._cache.pop((user_id, endpoint)) is not None else 0
            return self._cache.remove_where(lambda key, _: key[0] == user_id)

    def list_for_user(self, user_id: str) -> List[RateLimitRecord]:
        return [record for key, record in self._cache.items() if key[0] == user_id]

    def delete_stale(self, newest_before: float, now: float) -> int:
        with self._write_lock:
            removed = self._cache.purge_expired()
            removed += self._cache.remove_where(
                lambda _, record: _is_stale(record, newest_before, now)
            )
            return removed

    def __len__(self) -> int:
        return len(self._cache)


class PostgresRateLimitStore(BaseRepository[RateLimitRecord], RateLimitStore):
    """rate_limits table with optimistic concurrency on version."""

    columns = ("user_id", "endpoint", "requests", "blocked_until", "version")

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "rate_limits")

    def _row_to_entity(self, row: tuple) -> RateLimitRecord:
        user_id, endpoint, requests, blocked_until, version = row
        return RateLimitRecord(
            user_id=user_id,
            endpoint=endpoint,
            requests=tuple(float(ts) for ts in (requests or ())),
            blocked_until=float(blocked_until) if blocked_until is not None else None,
            version=int(version),
        )

    def _entity_to_params(self, entity: RateLimitRecord) -> Dict[str, Any]:
        return {
            "user_id": entity.user_id,
            "endpoint": entity.endpoint,
            "requests": list(entity.requests),
            "blocked_until": entity.blocked_until,
            "version": entity.version,
        }

    def get(self, user_id: str, endpoint: str) -> Optional[RateLimitRecord]:
        rows = self.find_where("user_id = %s AND endpoint = %s", (user_id, endpoint))
        return rows[0] if rows else None

    def compare_and_set(self, record: RateLimitRecord, expected_version: int) -> bool:
        if expected_version == 0:
            query = """
                INSERT INTO rate_limits (user_id, endpoint, requests, blocked_until, version)
                VALUES (%s, %s, %s, %s, 1)
                ON CONFLICT (user_id, endpoint) DO NOTHING
            """
            params = (
                record.user_id,
                record.endpoint,
                list(record.requests),
                record.blocked_until,
            )
        else:
            query = """
                UPDATE rate_limits
                SET requests = %s, blocked_until = %s,
                    version = version + 1, updated_at = now()
                WHERE user_id = %s AND endpoint = %s AND version = %s
            """
            params = (
                list(record.requests),
                record.blocked_until,
                record.user_id,
                record.endpoint,
                expected_version,
            )

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                conn.commit()
                return cur.rowcount == 1

    def delete(self, user_id: str, endpoint: Optional[str] = None) -> int:
        query = "DELETE FROM rate_limits WHERE user_id = %s"
        params: tuple = (user_id,)
        if endpoint is not None:
            query += " AND endpoint = %s"
            params = (user_id, endpoint)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                conn.commit()
                return cur.rowcount

    def list_for_user(self, user_id: str) -> List[RateLimitRecord]:
        return self.find_where("user_id = %s", (user_id,), order_by="endpoint")

    def delete_stale(self, newest_before: float, now: float) -> int:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM rate_limits
                    WHERE (cardinality(requests) = 0
                           OR requests[array_upper(requests, 1)] < %s)
                      AND (blocked_until IS NULL OR blocked_until <= %s)
                    """,
                    (newest_before, now)
                )
                conn.commit()
                return cur.rowcount

    def health_check(self) -> bool:
        return bool(self.connection_manager.health_check().get("healthy", False))


class TieredRateLimitStore(RateLimitStore):
    """Durable primary with a process-local fallback tier.

    Every primary call runs under timeout_seconds. When the primary fails
    the call is served by the fallback and a warning is logged, so quota
    keeps being enforced per process during a database outage.
    """

    def __init__(
        self,
        primary: RateLimitStore,
        fallback: Optional[RateLimitStore] = None,
        timeout_seconds: Optional[float] = 0.5,
    ):
        self.primary = primary
        self.fallback = fallback if fallback is not None else InMemoryRateLimitStore()
        self.timeout_seconds = timeout_seconds
        self._degraded = False

    @property
    def degraded(self) -> bool:
        """True while the last primary call failed."""
        return self._degraded

    def _call(self, operation: str, *args: Any) -> Any:
        try:
            result = run_with_timeout(
                getattr(self.primary, operation),
                self.timeout_seconds,
                *args,
                operation=f"rate_limits.{operation}",
            )
        except Exception as e:
            if not self._degraded:
                logger.warning(
                    "RATE_LIMIT_PRIMARY_UNAVAILABLE",
                    extra={"operation": operation, "error_type": type(e).__name__}
                )
            self._degraded = True
            return getattr(self.fallback, operation)(*args)

        if self._degraded:
            logger.info("RATE_LIMIT_PRIMARY_RECOVERED", extra={"operation": operation})
            self._degraded = False
        return result

    def get(self, user_id: str, endpoint: str) -> Optional[RateLimitRecord]:
        return self._call("get", user_id, endpoint)

    def compare_and_set(self, record: RateLimitRecord, expected_version: int) -> bool:
        return self._call("compare_and_set", record, expected_version)

    def delete(self, user_id: str, endpoint: Optional[str] = None) -> int:
        removed = self._call("delete", user_id, endpoint)
        # Overrides must also clear anything recorded while degraded
        return removed + self.fallback.delete(user_id, endpoint)

    def list_for_user(self, user_id: str) -> List[RateLimitRecord]:
        return self._call("list_for_user", user_id)

    def delete_stale(self, newest_before: float, now: float) -> int:
        removed = self._call("delete_stale", newest_before, now)
        return removed + self.fallback.delete_stale(newest_before, now)

    def health_check(self) -> bool:
        try:
            return bool(run_with_timeout(
                self.primary.health_check,
                self.timeout_seconds,
                operation="rate_limits.health_check",
            ))
        except Exception as e:
            logger.warning(
                "RATE_LIMIT_HEALTH_CHECK_FAILED",
                extra={"error_type": type(e).__name__}
            )
            return False
