"""Tests for master key providers and key repositories."""
import base64
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from nathguard.shared.database import ConflictError, DuplicateError
from nathguard.shared.models import KeyStatus, UserEncryptionKey
from nathguard.services.vault_service import (
    DecryptionError,
    InMemoryKeyRepository,
    KmsMasterKey,
    LocalMasterKey,
    PostgresKeyRepository,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _key(key_id="k1", user_id="user-1", status=KeyStatus.ACTIVE):
    return UserEncryptionKey(
        user_id=user_id,
        key_id=key_id,
        encrypted_key="d3JhcHBlZA==",
        created_at=NOW,
        status=status,
    )


def _recording_manager():
    cursor = MagicMock()
    cursor.__enter__.return_value = cursor
    conn = MagicMock()
    conn.cursor.return_value = cursor
    manager = MagicMock()
    manager.get_connection.return_value.__enter__.return_value = conn
    return manager, conn, cursor


class TestLocalMasterKey:

    def test_wrap_unwrap(self):
        master = LocalMasterKey.generate()
        data_key = b"k" * 32

        wrapped = master.wrap(data_key, "key-1")

        assert base64.b64decode(wrapped) != data_key
        assert master.unwrap(wrapped, "key-1") == data_key

    def test_wrapped_key_bound_to_key_id(self):
        master = LocalMasterKey.generate()
        wrapped = master.wrap(b"k" * 32, "key-1")

        with pytest.raises(DecryptionError):
            master.unwrap(wrapped, "key-2")

    def test_other_master_key_cannot_unwrap(self):
        wrapped = LocalMasterKey.generate().wrap(b"k" * 32, "key-1")

        with pytest.raises(DecryptionError):
            LocalMasterKey.generate().unwrap(wrapped, "key-1")

    def test_rejects_short_key(self):
        with pytest.raises(ValueError):
            LocalMasterKey(b"short")

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MASTER_KEY", base64.b64encode(b"m" * 32).decode("ascii"))

        assert LocalMasterKey.from_env().health_check() is True

    @pytest.mark.parametrize("value", ["", "not-base64!!"])
    def test_from_env_invalid(self, monkeypatch, value):
        monkeypatch.setenv("MASTER_KEY", value)

        with pytest.raises(ValueError):
            LocalMasterKey.from_env()


class TestKmsMasterKey:

    def test_wrap_sends_encryption_context(self):
        client = MagicMock()
        client.encrypt.return_value = {"CiphertextBlob": b"blob"}
        master = KmsMasterKey("alias/nathguard", client=client)

        wrapped = master.wrap(b"k" * 32, "key-1")

        assert wrapped == base64.b64encode(b"blob").decode("ascii")
        kwargs = client.encrypt.call_args.kwargs
        assert kwargs["KeyId"] == "alias/nathguard"
        assert kwargs["EncryptionContext"] == {
            "purpose": "nathguard-user-key",
            "key_id": "key-1",
        }

    def test_unwrap(self):
        client = MagicMock()
        client.decrypt.return_value = {"Plaintext": b"k" * 32}
        master = KmsMasterKey("alias/nathguard", client=client)

        assert master.unwrap(base64.b64encode(b"blob").decode("ascii"), "key-1") == b"k" * 32
        assert client.decrypt.call_args.kwargs["CiphertextBlob"] == b"blob"

    def test_invalid_ciphertext(self):
        class InvalidCiphertextException(Exception):
            pass

        client = MagicMock()
        client.exceptions.InvalidCiphertextException = InvalidCiphertextException
        client.decrypt.side_effect = InvalidCiphertextException("bad")
        master = KmsMasterKey("alias/nathguard", client=client)

        with pytest.raises(DecryptionError):
            master.unwrap(base64.b64encode(b"blob").decode("ascii"), "key-1")

    def test_requires_key_id(self):
        with pytest.raises(ValueError):
            KmsMasterKey("")


class TestInMemoryKeyRepository:

    def test_one_active_key_per_user(self):
        repo = InMemoryKeyRepository()
        repo.insert(_key("k1"))

        with pytest.raises(DuplicateError):
            repo.insert(_key("k2"))

        assert repo.get_active("user-1").key_id == "k1"

    def test_rotate_swaps_active_key(self):
        repo = InMemoryKeyRepository()
        repo.insert(_key("k1"))

        repo.rotate("k1", _key("k2"), NOW)

        assert repo.get_active("user-1").key_id == "k2"
        assert repo.get_by_id("k1").status is KeyStatus.DEPRECATED
        assert repo.get_by_id("k1").rotated_at == NOW

    def test_rotate_stale_key_conflicts(self):
        repo = InMemoryKeyRepository()
        repo.insert(_key("k1"))
        repo.rotate("k1", _key("k2"), NOW)

        with pytest.raises(ConflictError):
            repo.rotate("k1", _key("k3"), NOW)

        assert repo.get_by_id("k3") is None

    def test_revoke_user(self):
        repo = InMemoryKeyRepository()
        repo.insert(_key("k1"))
        repo.insert(_key("k9", user_id="user-2"))

        assert repo.revoke_user("user-1") == 1
        assert repo.revoke_user("user-1") == 0
        assert repo.is_revoked("user-1") is True
        assert repo.is_revoked("user-2") is False
        assert [k.key_id for k in repo.list_active()] == ["k9"]


class TestPostgresKeyRepository:

    def test_insert_conflict_is_duplicate(self):
        manager, conn, cursor = _recording_manager()
        cursor.rowcount = 0
        repo = PostgresKeyRepository(manager)

        with pytest.raises(DuplicateError):
            repo.insert(_key())

        sql = cursor.execute.call_args.args[0]
        assert "ON CONFLICT DO NOTHING" in sql
        conn.rollback.assert_called_once()

    def test_rotate_in_one_transaction(self):
        manager, conn, cursor = _recording_manager()
        cursor.rowcount = 1
        repo = PostgresKeyRepository(manager)

        repo.rotate("k1", _key("k2"), NOW)

        update_sql, update_params = cursor.execute.call_args_list[0].args
        assert update_sql.startswith("UPDATE encryption_keys SET status")
        assert update_params == ("deprecated", NOW, "k1", "active")
        assert cursor.execute.call_args_list[1].args[0].startswith("INSERT INTO encryption_keys")
        conn.commit.assert_called_once()

    def test_rotate_conflict_rolls_back(self):
        manager, conn, cursor = _recording_manager()
        cursor.rowcount = 0
        repo = PostgresKeyRepository(manager)

        with pytest.raises(ConflictError):
            repo.rotate("k1", _key("k2"), NOW)

        assert cursor.execute.call_count == 1
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_row_mapping(self):
        manager, _, cursor = _recording_manager()
        cursor.fetchall.return_value = [
            ("k1", "user-1", "d3JhcHBlZA==", "aes-256-gcm", "active", NOW, None),
        ]
        repo = PostgresKeyRepository(manager)

        key = repo.get_active("user-1")

        assert key == _key()
        assert cursor.execute.call_args.args[1] == ("user-1", "active", 1)
