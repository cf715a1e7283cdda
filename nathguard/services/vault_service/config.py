"""Key vault configuration."""
import os
from dataclasses import dataclass

ALGORITHM = "aes-256-gcm"
KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class VaultConfig:
    """Encryption-at-rest settings.

    enabled=False turns every encrypt into a flagged pass-through; used in
    local development where no master key is configured.
    """
    enabled: bool = True
    key_max_age_days: int = 90
    cache_max_entries: int = 10_000
    cache_ttl_seconds: float = 15 * 60
    storage_timeout_seconds: float = 2.0

    def __post_init__(self):
        if self.key_max_age_days < 1:
            raise ValueError("key_max_age_days must be >= 1")
        if self.storage_timeout_seconds <= 0:
            raise ValueError("storage_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create config from environment variables.

        Environment variables:
            ENABLE_ENCRYPTION: "false" disables encryption (default true)
            KEY_MAX_AGE_DAYS: Rotation age (default 90)
            STORAGE_TIMEOUT_MS: Deadline for key storage calls (default 2000)
        """
        return cls(
            enabled=os.getenv("ENABLE_ENCRYPTION", "true").lower() != "false",
            key_max_age_days=int(os.getenv("KEY_MAX_AGE_DAYS", "90")),
            storage_timeout_seconds=int(os.getenv("STORAGE_TIMEOUT_MS", "2000")) / 1000,
        )
