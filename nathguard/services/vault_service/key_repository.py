"""Storage for wrapped per-user encryption keys.

Invariants every implementation keeps:
- at most one ACTIVE key per user
- rotate() demotes the old key and inserts the new one atomically
- REVOKED is terminal
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from nathguard.shared.database import (
    BaseRepository,
    ConflictError,
    ConnectionManager,
    DuplicateError,
)
from nathguard.shared.models import KeyStatus, UserEncryptionKey

logger = logging.getLogger(__name__)


class KeyRepository(ABC):
    """Storage contract used by KeyVault."""

    @abstractmethod
    def get_active(self, user_id: str) -> Optional[UserEncryptionKey]:
        pass

    @abstractmethod
    def get_by_id(self, key_id: str) -> Optional[UserEncryptionKey]:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[UserEncryptionKey]:
        pass

    @abstractmethod
    def list_active(self) -> List[UserEncryptionKey]:
        pass

    @abstractmethod
    def insert(self, key: UserEncryptionKey) -> UserEncryptionKey:
        """Insert a new key.

        Raises:
            DuplicateError: If the user already has an active key
        """
        pass

    @abstractmethod
    def rotate(
        self,
        old_key_id: str,
        new_key: UserEncryptionKey,
        rotated_at: datetime,
    ) -> UserEncryptionKey:
        """Demote old_key_id to DEPRECATED and insert new_key, atomically.

        Raises:
            ConflictError: If old_key_id is no longer the active key
        """
        pass

    @abstractmethod
    def revoke_user(self, user_id: str) -> int:
        """Mark every key of the user REVOKED. Returns keys changed."""
        pass

    def is_revoked(self, user_id: str) -> bool:
        return any(k.status is KeyStatus.REVOKED for k in self.list_for_user(user_id))

    def health_check(self) -> bool:
        return True


class InMemoryKeyRepository(KeyRepository):
    """Process-local key storage for development and tests."""

    def __init__(self):
        self._keys: Dict[str, UserEncryptionKey] = {}
        self._lock = threading.Lock()

    def _active_locked(self, user_id: str) -> Optional[UserEncryptionKey]:
        for key in self._keys.values():
            if key.user_id == user_id and key.status is KeyStatus.ACTIVE:
                return key
        return None

    def get_active(self, user_id: str) -> Optional[UserEncryptionKey]:
        with self._lock:
            return self._active_locked(user_id)

    def get_by_id(self, key_id: str) -> Optional[UserEncryptionKey]:
        with self._lock:
            return self._keys.get(key_id)

    def list_for_user(self, user_id: str) -> List[UserEncryptionKey]:
        with self._lock:
            return sorted(
                (k for k in self._keys.values() if k.user_id == user_id),
                key=lambda k: k.created_at,
            )

    def list_active(self) -> List[UserEncryptionKey]:
        with self._lock:
            return [k for k in self._keys.values() if k.status is KeyStatus.ACTIVE]

    def insert(self, key: UserEncryptionKey) -> UserEncryptionKey:
        with self._lock:
            if key.key_id in self._keys:
                raise DuplicateError(f"Key {key.key_id} already exists")
            if key.status is KeyStatus.ACTIVE and self._active_locked(key.user_id):
                raise DuplicateError("User already has an active key")
            self._keys[key.key_id] = key
            return key

    def rotate(
        self,
        old_key_id: str,
        new_key: UserEncryptionKey,
        rotated_at: datetime,
    ) -> UserEncryptionKey:
        with self._lock:
            old = self._keys.get(old_key_id)
            if old is None or old.status is not KeyStatus.ACTIVE:
                raise ConflictError(f"Key {old_key_id} is not active")
            self._keys[old_key_id] = old.with_status(KeyStatus.DEPRECATED, rotated_at)
            self._keys[new_key.key_id] = new_key
            return new_key

    def revoke_user(self, user_id: str) -> int:
        with self._lock:
            changed = 0
            for key_id, key in list(self._keys.items()):
                if key.user_id == user_id and key.status is not KeyStatus.REVOKED:
                    self._keys[key_id] = key.with_status(KeyStatus.REVOKED)
                    changed += 1
            return changed


class PostgresKeyRepository(BaseRepository[UserEncryptionKey], KeyRepository):
    """encryption_keys table.

    The partial unique index on (user_id) WHERE status = 'active' enforces
    one active key per user across processes.
    """

    columns = (
        "key_id",
        "user_id",
        "encrypted_key",
        "algorithm",
        "status",
        "created_at",
        "rotated_at",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "encryption_keys", id_column="key_id")

    def _row_to_entity(self, row: tuple) -> UserEncryptionKey:
        key_id, user_id, encrypted_key, algorithm, status, created_at, rotated_at = row
        return UserEncryptionKey(
            user_id=user_id,
            key_id=key_id,
            encrypted_key=encrypted_key,
            created_at=created_at,
            algorithm=algorithm,
            status=KeyStatus(status),
            rotated_at=rotated_at,
        )

    def _entity_to_params(self, entity: UserEncryptionKey) -> Dict[str, Any]:
        return {
            "key_id": entity.key_id,
            "user_id": entity.user_id,
            "encrypted_key": entity.encrypted_key,
            "algorithm": entity.algorithm,
            "status": entity.status.value,
            "created_at": entity.created_at,
            "rotated_at": entity.rotated_at,
        }

    def get_active(self, user_id: str) -> Optional[UserEncryptionKey]:
        rows = self.find_where(
            "user_id = %s AND status = %s",
            (user_id, KeyStatus.ACTIVE.value),
            limit=1,
        )
        return rows[0] if rows else None

    def get_by_id(self, key_id: str) -> Optional[UserEncryptionKey]:
        return self.find_by_id(key_id)

    def list_for_user(self, user_id: str) -> List[UserEncryptionKey]:
        return self.find_where("user_id = %s", (user_id,), order_by="created_at")

    def list_active(self) -> List[UserEncryptionKey]:
        return self.find_where("status = %s", (KeyStatus.ACTIVE.value,))

    def is_revoked(self, user_id: str) -> bool:
        rows = self.find_where(
            "user_id = %s AND status = %s",
            (user_id, KeyStatus.REVOKED.value),
            limit=1,
        )
        return bool(rows)

    def _insert_sql(self) -> str:
        return (
            f"INSERT INTO {self.table_name} ({self._select_list}) "
            f"VALUES ({', '.join(['%s'] * len(self.columns))}) "
            "ON CONFLICT DO NOTHING"
        )

    def insert(self, key: UserEncryptionKey) -> UserEncryptionKey:
        params = self._entity_to_params(key)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(self._insert_sql(), [params[c] for c in self.columns])
                if cur.rowcount != 1:
                    conn.rollback()
                    raise DuplicateError("User already has an active key")
                conn.commit()
        return key

    def rotate(
        self,
        old_key_id: str,
        new_key: UserEncryptionKey,
        rotated_at: datetime,
    ) -> UserEncryptionKey:
        params = self._entity_to_params(new_key)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self.table_name} SET status = %s, rotated_at = %s "
                    "WHERE key_id = %s AND status = %s",
                    (KeyStatus.DEPRECATED.value, rotated_at, old_key_id, KeyStatus.ACTIVE.value)
                )
                if cur.rowcount != 1:
                    conn.rollback()
                    raise ConflictError(f"Key {old_key_id} is not active")

                cur.execute(self._insert_sql(), [params[c] for c in self.columns])
                if cur.rowcount != 1:
                    conn.rollback()
                    raise ConflictError("Concurrent rotation inserted another active key")
                conn.commit()
        return new_key

    def revoke_user(self, user_id: str) -> int:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self.table_name} SET status = %s "
                    "WHERE user_id = %s AND status <> %s",
                    (KeyStatus.REVOKED.value, user_id, KeyStatus.REVOKED.value)
                )
                conn.commit()
                return cur.rowcount

    def health_check(self) -> bool:
        return bool(self.connection_manager.health_check().get("healthy", False))
