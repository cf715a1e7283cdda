"""Per-endpoint quota policies.

Unknown endpoints fall back to api:general, the most conservative
general-purpose limit.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping

HOUR = 60 * 60
DAY = 24 * HOUR

DEFAULT_ENDPOINT = "api:general"


@dataclass(frozen=True)
class QuotaPolicy:
    """Sliding window limit for one endpoint class."""
    endpoint: str
    max_requests: int
    window_seconds: int
    block_seconds: int

    def __post_init__(self):
        if self.max_requests < 1:
            raise ValueError(f"{self.endpoint}: max_requests must be >= 1")
        if self.window_seconds <= 0 or self.block_seconds < 0:
            raise ValueError(f"{self.endpoint}: invalid window or block duration")


DEFAULT_POLICIES = (
    QuotaPolicy("chat:message", max_requests=20, window_seconds=HOUR, block_seconds=30 * 60),
    QuotaPolicy("content:curation", max_requests=100, window_seconds=HOUR, block_seconds=15 * 60),
    QuotaPolicy("voice:interaction", max_requests=15, window_seconds=HOUR, block_seconds=30 * 60),
    QuotaPolicy("auth:login", max_requests=5, window_seconds=15 * 60, block_seconds=HOUR),
    QuotaPolicy("api:general", max_requests=200, window_seconds=HOUR, block_seconds=10 * 60),
    QuotaPolicy("data:export", max_requests=3, window_seconds=DAY, block_seconds=DAY),
    QuotaPolicy("onboarding:complete", max_requests=5, window_seconds=DAY, block_seconds=HOUR),
)

# Records whose newest request is older than this are swept by cleanup()
STALE_RECORD_SECONDS = DAY


def build_policy_table(
    policies: Iterable[QuotaPolicy] = DEFAULT_POLICIES,
) -> Mapping[str, QuotaPolicy]:
    table: Dict[str, QuotaPolicy] = {}
    for policy in policies:
        if policy.endpoint in table:
            raise ValueError(f"Duplicate quota policy for {policy.endpoint}")
        table[policy.endpoint] = policy
    if DEFAULT_ENDPOINT not in table:
        raise ValueError(f"A policy for {DEFAULT_ENDPOINT} is required")
    return table
