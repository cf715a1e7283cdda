"""Shared utilities for the nathguard security layer."""
from .pii import (
    hash_pii,
    hash_text_for_audit,
    configure_pii_salt,
    is_pii_salt_configured,
)
from .locks import KeyedLocks
from .timeouts import run_with_timeout, shutdown_executor

__all__ = [
    "hash_pii",
    "hash_text_for_audit",
    "configure_pii_salt",
    "is_pii_salt_configured",
    "KeyedLocks",
    "run_with_timeout",
    "shutdown_executor",
]
