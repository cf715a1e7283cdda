"""Health checks for the security layer.

Each check reports pass, warn or fail with its latency. Any fail makes the
layer unhealthy; any warn without a fail makes it degraded. Checks run
under a deadline so a hung dependency cannot stall a readiness check.
They run on their own small pool, apart from the shared storage pool their
storage calls use.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from nathguard.shared.database import ConnectionManager, StorageTimeoutError
from nathguard.shared.utils import is_pii_salt_configured
from nathguard.services.audit_service import AuditLogger
from nathguard.services.quota_service import QuotaGuard
from nathguard.services.vault_service import KeyVault

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TIMEOUT_SECONDS = 5.0
HEALTH_WORKERS = 5


class CheckStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class OverallStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthCheckResult:
    name: str
    status: CheckStatus
    message: str
    latency_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass(frozen=True)
class SecurityHealthReport:
    status: OverallStatus
    checks: Tuple[HealthCheckResult, ...]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "checks": [c.to_dict() for c in self.checks],
        }


def overall_status(checks: List[HealthCheckResult]) -> OverallStatus:
    statuses = {c.status for c in checks}
    if CheckStatus.FAIL in statuses:
        return OverallStatus.UNHEALTHY
    if CheckStatus.WARN in statuses:
        return OverallStatus.DEGRADED
    return OverallStatus.HEALTHY


Outcome = Tuple[CheckStatus, str]


class HealthChecker:
    """Runs the five security health checks."""

    def __init__(
        self,
        quota: QuotaGuard,
        vault: KeyVault,
        audit: AuditLogger,
        connection_manager: Optional[ConnectionManager] = None,
        ai_api_key: Optional[str] = None,
        timeout_seconds: float = DEFAULT_CHECK_TIMEOUT_SECONDS,
    ):
        self.quota = quota
        self.vault = vault
        self.audit = audit
        self.connection_manager = connection_manager
        self.ai_api_key = ai_api_key
        self.timeout_seconds = timeout_seconds
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    def run(self) -> SecurityHealthReport:
        checks = [
            self._timed("database_connection", self._check_database, CheckStatus.FAIL),
            self._timed("encryption_service", self._check_encryption, CheckStatus.FAIL),
            self._timed("rate_limiter", self._check_rate_limiter, CheckStatus.WARN),
            self._timed("audit_logger", self._check_audit_logger, CheckStatus.WARN),
            self._timed("ai_credential", self._check_ai_credential, CheckStatus.FAIL),
        ]
        report = SecurityHealthReport(status=overall_status(checks), checks=tuple(checks))

        if report.status is not OverallStatus.HEALTHY:
            logger.warning(
                "SECURITY_HEALTH_DEGRADED",
                extra={
                    "status": report.status.value,
                    "failing": [c.name for c in checks if c.status is not CheckStatus.PASS],
                }
            )
        return report

    def _timed(
        self,
        name: str,
        check: Callable[[], Outcome],
        on_error: CheckStatus,
    ) -> HealthCheckResult:
        start = time.perf_counter()
        try:
            status, message = self._run_check(name, check)
        except Exception as e:
            status, message = on_error, f"{type(e).__name__}: {e}"
        return HealthCheckResult(
            name=name,
            status=status,
            message=message,
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    def _run_check(self, name: str, check: Callable[[], Outcome]) -> Outcome:
        future = self._get_pool().submit(check)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "HEALTH_CHECK_TIMED_OUT",
                extra={"check": name, "timeout_seconds": self.timeout_seconds}
            )
            raise StorageTimeoutError(f"health.{name} exceeded {self.timeout_seconds}s")

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=HEALTH_WORKERS,
                    thread_name_prefix="nathguard-health",
                )
            return self._pool

    def close(self) -> None:
        """Stop the health check pool. A later run() starts a new one."""
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=False)
                self._pool = None

    def _check_database(self) -> Outcome:
        if self.connection_manager is None:
            return CheckStatus.WARN, "No database configured; using in-memory stores"
        result = self.connection_manager.health_check()
        if result.get("healthy"):
            return CheckStatus.PASS, "Database connection successful"
        return CheckStatus.FAIL, str(result.get("error") or result.get("status"))

    def _check_encryption(self) -> Outcome:
        if not is_pii_salt_configured():
            return CheckStatus.FAIL, "PII hash salt not configured"
        if len(self.vault.hash_message("health")) != 64:
            return CheckStatus.FAIL, "Hash generation failed"
        if not self.vault.enabled:
            return CheckStatus.WARN, "Encryption disabled; payloads pass through"
        if not self.vault.health_check():
            return CheckStatus.FAIL, "Master key or key store unavailable"
        return CheckStatus.PASS, "Encryption service operational"

    def _check_rate_limiter(self) -> Outcome:
        store = self.quota.store
        if not store.health_check():
            return CheckStatus.WARN, "Rate limit store unavailable; enforcing per process"
        if getattr(store, "degraded", False):
            return CheckStatus.WARN, "Rate limit store recovering"
        return CheckStatus.PASS, "Rate limiter operational"

    def _check_audit_logger(self) -> Outcome:
        if not self.audit.repository.health_check():
            return CheckStatus.WARN, "Audit store unavailable; entries buffered"
        if not self.audit.running:
            return CheckStatus.WARN, "Audit flusher not running"
        if self.audit.dropped_count:
            return CheckStatus.WARN, f"{self.audit.dropped_count} audit entries dropped"
        return CheckStatus.PASS, "Audit logger operational"

    def _check_ai_credential(self) -> Outcome:
        if not self.ai_api_key:
            return CheckStatus.FAIL, "AI service API key not configured"
        if not self.ai_api_key.startswith("sk-"):
            return CheckStatus.FAIL, "Invalid AI service API key format"
        return CheckStatus.PASS, "AI service API key configured"
