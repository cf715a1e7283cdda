"""Audit Service - buffered, PII-free audit trail."""
from .audit_logger import AuditLogger
from .audit_repository import (
    AuditRepository,
    InMemoryAuditRepository,
    PostgresAuditRepository,
)
from .config import AuditConfig

__all__ = [
    "AuditConfig",
    "AuditLogger",
    "AuditRepository",
    "InMemoryAuditRepository",
    "PostgresAuditRepository",
]
