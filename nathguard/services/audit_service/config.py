"""Audit logger configuration."""
import os
from dataclasses import dataclass

# Chat messages at or above this risk score carry the RISK_DETECTED flag
RISK_FLAG_SCORE = 70

CSV_COLUMNS = ("timestamp", "action_type", "endpoint", "success", "flags")


@dataclass(frozen=True)
class AuditConfig:
    batch_size: int = 100
    flush_interval_seconds: float = 5.0
    max_buffer_size: int = 10_000
    max_metadata_bytes: int = 10_000
    retention_days: int = 90
    export_limit: int = 10_000
    storage_timeout_seconds: float = 5.0
    max_retry_backoff_seconds: float = 60.0

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_buffer_size < self.batch_size:
            raise ValueError("max_buffer_size must be >= batch_size")
        if self.flush_interval_seconds <= 0:
            raise ValueError("flush_interval_seconds must be positive")
        if self.retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        if self.storage_timeout_seconds <= 0:
            raise ValueError("storage_timeout_seconds must be positive")
        if self.max_retry_backoff_seconds <= 0:
            raise ValueError("max_retry_backoff_seconds must be positive")

    @classmethod
    def from_env(cls) -> "AuditConfig":
        """Create config from environment variables.

        Environment variables:
            AUDIT_BATCH_SIZE: Entries per flush (default 100)
            AUDIT_FLUSH_INTERVAL_MS: Timer flush period (default 5000)
            AUDIT_MAX_BUFFER_SIZE: Hard cap on buffered entries (default 10000)
            AUDIT_RETENTION_DAYS: Retention window (default 90)
            AUDIT_MAX_RETRY_BACKOFF_MS: Cap on flush retry backoff (default 60000)
        """
        return cls(
            batch_size=int(os.getenv("AUDIT_BATCH_SIZE", "100")),
            flush_interval_seconds=int(os.getenv("AUDIT_FLUSH_INTERVAL_MS", "5000")) / 1000,
            max_buffer_size=int(os.getenv("AUDIT_MAX_BUFFER_SIZE", "10000")),
            retention_days=int(os.getenv("AUDIT_RETENTION_DAYS", "90")),
            max_retry_backoff_seconds=int(os.getenv("AUDIT_MAX_RETRY_BACKOFF_MS", "60000")) / 1000,
        )
