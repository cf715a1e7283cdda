"""Audit logger - buffered, PII-free audit trail.

log() never raises and never blocks on storage for longer than one batch
insert. Every metadata payload goes through PIIRedactor.redact_structured
before it is buffered, so no raw user text can reach audit_logs.

Buffering:
- entries accumulate in a deque guarded by a short lock
- a full batch wakes the background flusher (or flushes inline when the
  flusher is not running); the flusher also runs every flush_interval
- a failed batch goes back to the front of the buffer, and automatic
  flushes back off exponentially until a flush succeeds
- past max_buffer_size the oldest entries are dropped and counted
"""
import csv
import io
import json
import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from nathguard.shared.models import (
    AuditActionType,
    AuditFlag,
    AuditLogEntry,
    AuditStats,
)
from nathguard.shared.utils import hash_pii, run_with_timeout
from nathguard.services.pii_service import PIIRedactor
from .audit_repository import AuditRepository, InMemoryAuditRepository
from .config import CSV_COLUMNS, RISK_FLAG_SCORE, AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Batches audit entries into an AuditRepository."""

    def __init__(
        self,
        repository: Optional[AuditRepository] = None,
        redactor: Optional[PIIRedactor] = None,
        config: Optional[AuditConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize audit logger.

        Args:
            repository: Audit storage; in-memory when omitted
            redactor: PII redactor applied to metadata and error messages
            config: Batching and retention settings
            clock: UTC datetime source, injectable for tests
        """
        self.repository = repository if repository is not None else InMemoryAuditRepository()
        self.redactor = redactor if redactor is not None else PIIRedactor()
        self.config = config if config is not None else AuditConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._buffer: Deque[AuditLogEntry] = deque()
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped = 0
        self._failures = 0
        self._retry_at = 0.0

        logger.info(
            "AUDIT_LOGGER_INITIALIZED",
            extra={
                "repository": type(self.repository).__name__,
                "batch_size": self.config.batch_size,
                "flush_interval_seconds": self.config.flush_interval_seconds,
            }
        )

    @property
    def dropped_count(self) -> int:
        """Entries lost to the buffer cap since start-up."""
        return self._dropped

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def log(
        self,
        action_type: AuditActionType,
        user_id: str,
        endpoint: str,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        latency_ms: Optional[float] = None,
        flags: Iterable[AuditFlag] = (),
    ) -> None:
        """Queue an audit entry. Never raises."""
        try:
            entry = AuditLogEntry(
                id=str(uuid.uuid4()),
                timestamp=self._clock(),
                user_id=user_id,
                action_type=action_type,
                endpoint=endpoint,
                metadata=self._prepare_metadata(metadata),
                ip_address=ip_address,
                user_agent=user_agent,
                success=success,
                error_message=self.redactor.sanitize(error_message) if error_message else None,
                latency_ms=latency_ms,
                flags=tuple(dict.fromkeys(flags)),
            )
            self._enqueue(entry)
        except Exception as e:
            logger.error(
                "AUDIT_LOG_FAILED",
                extra={
                    "action_type": getattr(action_type, "value", str(action_type)),
                    "error_type": type(e).__name__,
                }
            )

    def _prepare_metadata(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        # Coerce to JSON types first so str() of unknown objects is redacted too
        plain = json.loads(json.dumps(metadata or {}, default=str, ensure_ascii=False))
        redacted = self.redactor.redact_structured(plain)
        if not isinstance(redacted, dict):
            redacted = {"value": redacted}

        encoded = json.dumps(redacted, ensure_ascii=False)
        size = len(encoded.encode("utf-8"))
        if size > self.config.max_metadata_bytes:
            logger.warning("AUDIT_METADATA_TRUNCATED", extra={"size": size})
            return {"truncated": True, "size": size}

        # Store exactly what the JSONB column would hold
        return json.loads(encoded)

    def _trim_locked(self) -> int:
        overflow = len(self._buffer) - self.config.max_buffer_size
        for _ in range(max(overflow, 0)):
            self._buffer.popleft()
        if overflow > 0:
            self._dropped += overflow
        return max(overflow, 0)

    def _enqueue(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._buffer.append(entry)
            dropped = self._trim_locked()
            size = len(self._buffer)

        if dropped:
            self._report_drop(dropped)

        if size >= self.config.batch_size and not self.backing_off:
            if self.running:
                self._wake.set()
            else:
                self.flush()

    @property
    def backing_off(self) -> bool:
        """True while automatic flushes wait out a storage failure."""
        return time.monotonic() < self._retry_at

    def _record_failure(self) -> float:
        self._failures += 1
        backoff = min(
            self.config.flush_interval_seconds * 2 ** min(self._failures - 1, 16),
            self.config.max_retry_backoff_seconds,
        )
        self._retry_at = time.monotonic() + backoff
        return backoff

    def _report_drop(self, dropped: int) -> None:
        logger.critical(
            "AUDIT_ENTRIES_DROPPED",
            extra={"dropped": dropped, "dropped_total": self._dropped}
        )

    def flush(self) -> int:
        """Write buffered entries in batches until empty or storage fails.

        Returns:
            Number of entries written
        """
        written = 0
        with self._flush_lock:
            while True:
                with self._lock:
                    if not self._buffer:
                        break
                    count = min(self.config.batch_size, len(self._buffer))
                    batch = [self._buffer.popleft() for _ in range(count)]

                try:
                    run_with_timeout(
                        self.repository.insert_batch,
                        self.config.storage_timeout_seconds,
                        batch,
                        operation="audit_flush",
                    )
                except Exception as e:
                    with self._lock:
                        self._buffer.extendleft(reversed(batch))
                        dropped = self._trim_locked()
                        pending = len(self._buffer)
                    backoff = self._record_failure()
                    logger.error(
                        "AUDIT_FLUSH_FAILED",
                        extra={
                            "batch_size": len(batch),
                            "pending": pending,
                            "error_type": type(e).__name__,
                            "retry_in_seconds": backoff,
                        }
                    )
                    if dropped:
                        self._report_drop(dropped)
                    break

                written += len(batch)
                self._failures = 0
                self._retry_at = 0.0

        if written:
            logger.debug("AUDIT_FLUSH_COMPLETED", extra={"entries": written})
        return written

    # ------------------------------------------------------------------
    # Background flusher
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background flusher thread."""
        if self.running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="nathguard-audit-flusher",
            daemon=True,
        )
        self._thread.start()
        logger.info("AUDIT_FLUSHER_STARTED")

    def _run(self) -> None:
        while not self._stopping.is_set():
            wait = max(self.config.flush_interval_seconds, self._retry_at - time.monotonic())
            self._wake.wait(wait)
            self._wake.clear()
            if self.backing_off and not self._stopping.is_set():
                continue
            self.flush()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the flusher and drain the buffer."""
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

        self.flush()
        remaining = self.pending
        if remaining:
            logger.critical("AUDIT_ENTRIES_UNFLUSHED", extra={"pending": remaining})
        logger.info("AUDIT_FLUSHER_STOPPED", extra={"dropped_total": self._dropped})

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_logs(
        self,
        user_id: str,
        action_type: Optional[AuditActionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Stored entries for a user, newest first. Empty on storage error."""
        try:
            return run_with_timeout(
                self.repository.query,
                self.config.storage_timeout_seconds,
                user_id,
                action_type=action_type,
                start=start,
                end=end,
                limit=limit,
                operation="audit_query",
            )
        except Exception as e:
            logger.error(
                "AUDIT_QUERY_FAILED",
                extra={"user_hash": hash_pii(user_id), "error_type": type(e).__name__}
            )
            return []

    def get_stats(self, user_id: str, start: datetime, end: datetime) -> AuditStats:
        """Aggregate a user's audit trail over [start, end].

        Raises:
            RepositoryError: If storage is unavailable
        """
        try:
            entries = run_with_timeout(
                self.repository.query,
                self.config.storage_timeout_seconds,
                user_id,
                start=start,
                end=end,
                limit=None,
                operation="audit_stats",
            )
        except Exception as e:
            logger.error(
                "AUDIT_STATS_FAILED",
                extra={"user_hash": hash_pii(user_id), "error_type": type(e).__name__}
            )
            raise

        by_type: Dict[str, int] = {}
        latencies = []
        for entry in entries:
            by_type[entry.action_type.value] = by_type.get(entry.action_type.value, 0) + 1
            if entry.latency_ms is not None:
                latencies.append(entry.latency_ms)

        return AuditStats(
            total_actions=len(entries),
            actions_by_type=by_type,
            flagged_actions=sum(1 for e in entries if e.flags),
            failed_actions=sum(1 for e in entries if not e.success),
            average_latency_ms=sum(latencies) / len(latencies) if latencies else 0.0,
        )

    def cleanup_old_logs(self) -> int:
        """Delete entries older than the retention window."""
        cutoff = self._clock() - timedelta(days=self.config.retention_days)
        try:
            removed = run_with_timeout(
                self.repository.delete_before,
                self.config.storage_timeout_seconds,
                cutoff,
                operation="audit_cleanup",
            )
        except Exception as e:
            logger.error("AUDIT_CLEANUP_FAILED", extra={"error_type": type(e).__name__})
            return 0

        logger.info(
            "AUDIT_CLEANUP_COMPLETED",
            extra={"entries_removed": removed, "retention_days": self.config.retention_days}
        )
        return removed

    def export_for_compliance(self, user_id: str, format: str = "json") -> str:
        """Render a user's audit trail for a data access request.

        Args:
            user_id: Data subject
            format: "json" (full entries) or "csv" (summary columns)

        Raises:
            ValueError: For an unknown format
        """
        if format not in ("json", "csv"):
            raise ValueError(f"Unsupported export format: {format}")

        self.flush()
        entries = self.get_logs(user_id, limit=self.config.export_limit)

        logger.info(
            "AUDIT_EXPORT_GENERATED",
            extra={"user_hash": hash_pii(user_id), "format": format, "entries": len(entries)}
        )

        if format == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2, ensure_ascii=False)

        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for entry in entries:
            writer.writerow([
                entry.timestamp.isoformat(),
                entry.action_type.value,
                entry.endpoint,
                "true" if entry.success else "false",
                ";".join(f.value for f in entry.flags),
            ])
        return out.getvalue().rstrip("\n")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def log_login(self, user_id: str, success: bool, metadata=None, **context) -> None:
        self.log(
            AuditActionType.USER_LOGIN, user_id, "auth:login",
            metadata, success=success, **context,
        )

    def log_logout(self, user_id: str, metadata=None, **context) -> None:
        self.log(AuditActionType.USER_LOGOUT, user_id, "auth:logout", metadata, **context)

    def log_chat_message(
        self,
        user_id: str,
        conversation_id: str,
        message_length: int,
        risk_score: Optional[int] = None,
        pii_detected: bool = False,
        latency_ms: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **context,
    ) -> None:
        """Record a chat message by its shape only; the text is never passed."""
        flags = []
        if pii_detected:
            flags.append(AuditFlag.PII_DETECTED)
        if risk_score is not None and risk_score >= RISK_FLAG_SCORE:
            flags.append(AuditFlag.RISK_DETECTED)

        self.log(
            AuditActionType.CHAT_MESSAGE,
            user_id,
            "chat:message",
            {
                **(metadata or {}),
                "conversation_id": conversation_id,
                "message_length": message_length,
                "risk_score": risk_score,
                "pii_detected": pii_detected,
            },
            latency_ms=latency_ms,
            flags=flags,
            **context,
        )

    def log_content_blocked(self, user_id: str, reason: str, metadata=None, **context) -> None:
        self.log(
            AuditActionType.CONTENT_BLOCKED,
            user_id,
            "content:validation",
            {**(metadata or {}), "block_reason": reason},
            flags=[AuditFlag.CONTENT_BLOCKED],
            **context,
        )

    def log_risk_detected(
        self,
        user_id: str,
        risk_level: str,
        risk_score: int,
        metadata=None,
        **context,
    ) -> None:
        self.log(
            AuditActionType.RISK_DETECTED,
            user_id,
            "risk:detection",
            {**(metadata or {}), "risk_level": risk_level, "risk_score": risk_score},
            flags=[AuditFlag.RISK_DETECTED],
            **context,
        )

    def log_rate_limit_hit(self, user_id: str, endpoint: str, metadata=None, **context) -> None:
        self.log(
            AuditActionType.RATE_LIMIT_HIT,
            user_id,
            endpoint,
            metadata,
            success=False,
            flags=[AuditFlag.RATE_LIMITED],
            **context,
        )

    def log_data_export(self, user_id: str, export_type: str, metadata=None, **context) -> None:
        self.log(
            AuditActionType.DATA_EXPORT,
            user_id,
            "data:export",
            {**(metadata or {}), "export_type": export_type},
            **context,
        )

    def log_data_delete(self, user_id: str, deletion_type: str, metadata=None, **context) -> None:
        self.log(
            AuditActionType.DATA_DELETE,
            user_id,
            "data:delete",
            {**(metadata or {}), "deletion_type": deletion_type},
            **context,
        )

    def log_key_rotation(self, user_id: str, old_key_id: str, new_key_id: str) -> None:
        self.log(
            AuditActionType.ENCRYPTION_KEY_ROTATION,
            user_id,
            "vault:rotate",
            {"old_key_id": old_key_id, "new_key_id": new_key_id},
        )
