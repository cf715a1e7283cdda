"""Vault Service - per-user encryption keys and encryption at rest."""
from .config import VaultConfig
from .key_repository import InMemoryKeyRepository, KeyRepository, PostgresKeyRepository
from .key_vault import KeyVault
from .master_key import (
    DecryptionError,
    KeyRevokedError,
    KmsMasterKey,
    LocalMasterKey,
    MasterKeyProvider,
    VaultError,
)

__all__ = [
    "DecryptionError",
    "InMemoryKeyRepository",
    "KeyRepository",
    "KeyRevokedError",
    "KeyVault",
    "KmsMasterKey",
    "LocalMasterKey",
    "MasterKeyProvider",
    "PostgresKeyRepository",
    "VaultConfig",
    "VaultError",
]
