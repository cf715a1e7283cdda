"""Quota Service - per-user, per-endpoint rate limiting."""
from .config import DEFAULT_POLICIES, QuotaPolicy
from .quota_guard import QuotaGuard, retry_after_message
from .store import (
    InMemoryRateLimitStore,
    PostgresRateLimitStore,
    RateLimitStore,
    TieredRateLimitStore,
)

__all__ = [
    "DEFAULT_POLICIES",
    "InMemoryRateLimitStore",
    "PostgresRateLimitStore",
    "QuotaGuard",
    "QuotaPolicy",
    "RateLimitStore",
    "TieredRateLimitStore",
    "retry_after_message",
]
