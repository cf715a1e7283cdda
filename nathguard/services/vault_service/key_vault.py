"""Key vault - per-user data keys and AES-256-GCM encryption at rest.

Every user gets one ACTIVE data key, created lazily on first encrypt.
Data keys are stored wrapped by the master key and unwrapped only in this
process; the unwrapped cipher objects live in a bounded TTL cache.

Failure policy:
- revoked user: encrypt raises KeyRevokedError, decrypt returns failure
- storage or master key unavailable during encrypt: pass-through payload
  with key_id "none" and a warning; callers check key_id
- decrypt never raises
"""
import base64
import hmac
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from nathguard.shared.cache import BoundedTTLCache
from nathguard.shared.database import DuplicateError
from nathguard.shared.models import (
    PASSTHROUGH_KEY_ID,
    DecryptionResult,
    EncryptedPayload,
    KeyStatus,
    UserEncryptionKey,
)
from nathguard.shared.utils import KeyedLocks, hash_pii, hash_text_for_audit, run_with_timeout
from .config import ALGORITHM, IV_BYTES, TAG_BYTES, VaultConfig
from .key_repository import InMemoryKeyRepository, KeyRepository
from .master_key import (
    DecryptionError,
    KeyRevokedError,
    MasterKeyProvider,
    VaultError,
)

logger = logging.getLogger(__name__)

CachedKey = Tuple[UserEncryptionKey, Optional[AESGCM]]


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class KeyVault:
    """Per-user key lifecycle and authenticated encryption."""

    def __init__(
        self,
        repository: Optional[KeyRepository] = None,
        master_key: Optional[MasterKeyProvider] = None,
        config: Optional[VaultConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_rotate: Optional[Callable[[str, str, str], None]] = None,
    ):
        """Initialize vault.

        Args:
            repository: Wrapped key storage; in-memory when omitted
            master_key: Wrapping key. Without one the vault runs in
                pass-through mode.
            config: Vault settings
            clock: UTC datetime source, injectable for tests
            on_rotate: Called with (user_id, old_key_id, new_key_id) after
                each rotation
        """
        self.config = config if config is not None else VaultConfig()
        self.repository = repository if repository is not None else InMemoryKeyRepository()
        self.master_key = master_key
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._on_rotate = on_rotate
        self._locks = KeyedLocks()

        # user_id -> (active key, cipher)
        self._by_user: BoundedTTLCache[str, CachedKey] = BoundedTTLCache(
            self.config.cache_max_entries,
            self.config.cache_ttl_seconds,
            name="vault_user_keys",
        )
        # key_id -> (key, cipher), for decrypting older ciphertexts
        self._by_key_id: BoundedTTLCache[str, CachedKey] = BoundedTTLCache(
            self.config.cache_max_entries,
            self.config.cache_ttl_seconds,
            name="vault_key_ids",
        )

        if self.enabled:
            logger.info(
                "KEY_VAULT_INITIALIZED",
                extra={
                    "master_key": self.master_key.name,
                    "repository": type(self.repository).__name__,
                    "key_max_age_days": self.config.key_max_age_days,
                }
            )
        else:
            logger.warning(
                "KEY_VAULT_PASSTHROUGH_MODE",
                extra={
                    "encryption_enabled": self.config.enabled,
                    "master_key_configured": self.master_key is not None,
                }
            )

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.master_key is not None

    def _storage(self, func, *args, operation: str):
        return run_with_timeout(
            func,
            self.config.storage_timeout_seconds,
            *args,
            operation=operation,
        )

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise VaultError("Encryption is not configured")

    def _unwrap(self, record: UserEncryptionKey) -> AESGCM:
        raw = self._storage(
            self.master_key.unwrap,
            record.encrypted_key,
            record.key_id,
            operation="unwrap_key",
        )
        return AESGCM(raw)

    def _new_key(self, user_id: str) -> CachedKey:
        raw = AESGCM.generate_key(bit_length=256)
        # Prefix keeps key ids from matching the PII phone and CPF patterns
        key_id = f"key_{uuid.uuid4().hex}"
        wrapped = self._storage(self.master_key.wrap, raw, key_id, operation="wrap_key")
        record = UserEncryptionKey(
            user_id=user_id,
            key_id=key_id,
            encrypted_key=wrapped,
            created_at=self._clock(),
            algorithm=ALGORITHM,
        )
        return record, AESGCM(raw)

    def _remember(self, entry: CachedKey) -> None:
        record = entry[0]
        if record.status is KeyStatus.ACTIVE:
            self._by_user.set(record.user_id, entry)
        self._by_key_id.set(record.key_id, entry)

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    def generate_key(self, user_id: str) -> UserEncryptionKey:
        """Provision the user's ACTIVE key, or return the existing one.

        Raises:
            KeyRevokedError: If the user's keys were revoked
            VaultError: If encryption is not configured
        """
        self._require_enabled()
        with self._locks.hold(user_id):
            return self._load_or_create_locked(user_id)[0]

    def _load_or_create_locked(self, user_id: str) -> CachedKey:
        current = self._storage(self.repository.get_active, user_id, operation="get_active_key")
        if current is not None:
            entry = (current, self._unwrap(current))
            self._remember(entry)
            return entry

        if self._storage(self.repository.is_revoked, user_id, operation="is_revoked"):
            raise KeyRevokedError("User keys have been revoked")

        entry = self._new_key(user_id)
        try:
            self._storage(self.repository.insert, entry[0], operation="insert_key")
        except DuplicateError:
            # Another process provisioned first
            current = self._storage(
                self.repository.get_active, user_id, operation="get_active_key"
            )
            if current is None:
                raise
            entry = (current, self._unwrap(current))
        else:
            logger.info(
                "ENCRYPTION_KEY_GENERATED",
                extra={"user_hash": hash_pii(user_id), "key_id": entry[0].key_id}
            )

        self._remember(entry)
        return entry

    def _active_entry(self, user_id: str) -> CachedKey:
        cached = self._by_user.get(user_id)
        if cached is not None:
            return cached
        with self._locks.hold(user_id):
            cached = self._by_user.get(user_id)
            if cached is not None:
                return cached
            return self._load_or_create_locked(user_id)

    def rotate(self, user_id: str) -> UserEncryptionKey:
        """Deprecate the ACTIVE key and activate a new one.

        Stored ciphertexts are not re-encrypted; they stay decryptable
        through their key_id.

        Raises:
            KeyRevokedError: If the user's keys were revoked
            ConflictError: If another writer rotated the key concurrently
        """
        self._require_enabled()
        with self._locks.hold(user_id):
            current = self._storage(
                self.repository.get_active, user_id, operation="get_active_key"
            )
            if current is None:
                return self._load_or_create_locked(user_id)[0]

            now = self._clock()
            entry = self._new_key(user_id)
            self._storage(
                self.repository.rotate,
                current.key_id,
                entry[0],
                now,
                operation="rotate_key",
            )

            self._by_key_id.pop(current.key_id)
            self._remember(entry)

        logger.info(
            "ENCRYPTION_KEY_ROTATED",
            extra={
                "user_hash": hash_pii(user_id),
                "old_key_id": current.key_id,
                "new_key_id": entry[0].key_id,
            }
        )
        if self._on_rotate is not None:
            try:
                self._on_rotate(user_id, current.key_id, entry[0].key_id)
            except Exception as e:
                logger.warning(
                    "ROTATION_LISTENER_FAILED",
                    extra={"user_hash": hash_pii(user_id), "error_type": type(e).__name__}
                )
        return entry[0]

    def revoke(self, user_id: str) -> int:
        """Revoke every key of the user. Terminal.

        Returns:
            Number of keys that changed status
        """
        with self._locks.hold(user_id):
            changed = self._storage(
                self.repository.revoke_user, user_id, operation="revoke_keys"
            )
            self._by_user.pop(user_id)
            self._by_key_id.remove_where(lambda _, entry: entry[0].user_id == user_id)

        logger.warning(
            "ENCRYPTION_KEYS_REVOKED",
            extra={"user_hash": hash_pii(user_id), "keys_revoked": changed}
        )
        return changed

    def _is_stale(self, record: UserEncryptionKey, now: datetime) -> bool:
        return now - record.last_rotation > timedelta(days=self.config.key_max_age_days)

    def needs_rotation(self, user_id: str) -> bool:
        current = self._lookup_active(user_id)
        if current is None:
            return False
        return self._is_stale(current, self._clock())

    def has_active_key(self, user_id: str) -> bool:
        return self._lookup_active(user_id) is not None

    def _lookup_active(self, user_id: str) -> Optional[UserEncryptionKey]:
        # Status checks report False when storage is unavailable
        try:
            return self._storage(self.repository.get_active, user_id, operation="get_active_key")
        except Exception as e:
            logger.warning(
                "KEY_STATUS_CHECK_FAILED",
                extra={
                    "user_hash": hash_pii(user_id),
                    "error_type": type(e).__name__,
                }
            )
            return None

    def rotate_keys_needing_rotation(self) -> int:
        """Rotate every ACTIVE key older than key_max_age_days.

        Failures are logged per user and do not stop the sweep.
        """
        if not self.enabled:
            return 0

        now = self._clock()
        active = self._storage(self.repository.list_active, operation="list_active_keys")
        rotated = 0
        for record in active:
            if not self._is_stale(record, now):
                continue
            try:
                self.rotate(record.user_id)
                rotated += 1
            except Exception as e:
                logger.error(
                    "ENCRYPTION_KEY_ROTATION_FAILED",
                    extra={
                        "user_hash": hash_pii(record.user_id),
                        "key_id": record.key_id,
                        "error_type": type(e).__name__,
                    }
                )

        logger.info(
            "ENCRYPTION_KEY_ROTATION_SWEEP_COMPLETED",
            extra={"keys_checked": len(active), "keys_rotated": rotated}
        )
        return rotated

    def clear_cache(self) -> None:
        self._by_user.clear()
        self._by_key_id.clear()

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, user_id: str, plaintext: str) -> EncryptedPayload:
        """Encrypt plaintext under the user's ACTIVE key.

        A fresh 96-bit IV is drawn for every call. The key_id is bound as
        associated data.

        Raises:
            KeyRevokedError: If the user's keys were revoked
        """
        if not self.enabled:
            return EncryptedPayload.passthrough(plaintext)

        try:
            record, cipher = self._active_entry(user_id)
        except KeyRevokedError:
            logger.warning(
                "ENCRYPTION_REJECTED_REVOKED",
                extra={"user_hash": hash_pii(user_id)}
            )
            raise
        except Exception as e:
            logger.warning(
                "ENCRYPTION_FAILED_PASSTHROUGH",
                extra={
                    "user_hash": hash_pii(user_id),
                    "error_type": type(e).__name__,
                }
            )
            return EncryptedPayload.passthrough(plaintext)

        iv = os.urandom(IV_BYTES)
        sealed = cipher.encrypt(iv, plaintext.encode("utf-8"), record.key_id.encode("utf-8"))
        return EncryptedPayload(
            ciphertext=_b64(sealed[:-TAG_BYTES]),
            iv=_b64(iv),
            auth_tag=_b64(sealed[-TAG_BYTES:]),
            key_id=record.key_id,
            algorithm=ALGORITHM,
        )

    def _entry_for_key(self, key_id: str) -> CachedKey:
        cached = self._by_key_id.get(key_id)
        if cached is not None:
            return cached

        record = self._storage(self.repository.get_by_id, key_id, operation="get_key")
        if record is None:
            raise DecryptionError(f"Unknown key {key_id}")
        if record.status is KeyStatus.REVOKED:
            return record, None

        entry = (record, self._unwrap(record))
        self._by_key_id.set(key_id, entry)
        return entry

    def decrypt(
        self,
        user_id: str,
        ciphertext: str,
        iv: str,
        key_id: str,
        auth_tag: Optional[str] = None,
    ) -> DecryptionResult:
        """Decrypt a payload produced by encrypt().

        auth_tag may be omitted when it is appended to ciphertext. A
        pass-through key_id returns the ciphertext unchanged.
        """
        if key_id == PASSTHROUGH_KEY_ID:
            return DecryptionResult(success=True, plaintext=ciphertext)
        if not self.enabled:
            return DecryptionResult(success=False, error="Encryption is not configured")

        try:
            record, cipher = self._entry_for_key(key_id)
            if record.user_id != user_id:
                raise DecryptionError("Key does not belong to user")
            if record.status is KeyStatus.REVOKED or cipher is None:
                raise KeyRevokedError(f"Key {key_id} has been revoked")

            sealed = base64.b64decode(ciphertext)
            if auth_tag:
                sealed += base64.b64decode(auth_tag)
            plaintext = cipher.decrypt(
                base64.b64decode(iv), sealed, key_id.encode("utf-8")
            )
            return DecryptionResult(success=True, plaintext=plaintext.decode("utf-8"))

        except (InvalidTag, VaultError) as e:
            error = "Authentication failed" if isinstance(e, InvalidTag) else str(e)
            logger.warning(
                "DECRYPTION_FAILED",
                extra={
                    "user_hash": hash_pii(user_id),
                    "key_id": key_id,
                    "error_type": type(e).__name__,
                }
            )
            return DecryptionResult(success=False, error=error)
        except Exception as e:
            logger.error(
                "DECRYPTION_ERROR",
                extra={
                    "user_hash": hash_pii(user_id),
                    "key_id": key_id,
                    "error_type": type(e).__name__,
                    "error": str(e),
                }
            )
            return DecryptionResult(success=False, error=type(e).__name__)

    def decrypt_payload(self, user_id: str, payload: EncryptedPayload) -> DecryptionResult:
        return self.decrypt(
            user_id,
            payload.ciphertext,
            payload.iv,
            payload.key_id,
            payload.auth_tag,
        )

    # ------------------------------------------------------------------
    # Integrity helpers
    # ------------------------------------------------------------------

    @staticmethod
    def hash_message(text: str) -> str:
        """SHA-256 hex digest of text."""
        return hash_text_for_audit(text)

    @classmethod
    def verify_message_integrity(cls, text: str, expected_hash: str) -> bool:
        return hmac.compare_digest(cls.hash_message(text), expected_hash)

    def health_check(self) -> bool:
        """Master key round trip plus storage reachability."""
        if not self.enabled:
            return False
        return bool(
            self._storage(self.master_key.health_check, operation="master_key_health")
            and self._storage(self.repository.health_check, operation="key_store_health")
        )
