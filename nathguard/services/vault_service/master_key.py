"""Master key providers that wrap per-user data keys.

Data keys are stored wrapped; only the master key can unwrap them. The
key_id of the data key is bound to the wrapping (AES-GCM associated data
locally, KMS encryption context in AWS) so a wrapped key cannot be
swapped onto another key record.
"""
import base64
import binascii
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import IV_BYTES, KEY_BYTES

logger = logging.getLogger(__name__)


class VaultError(Exception):
    """Base exception for key vault errors."""
    pass


class KeyRevokedError(VaultError):
    """The user's keys were revoked; no new key will be provisioned."""
    pass


class DecryptionError(VaultError):
    """Ciphertext or wrapped key failed authentication."""
    pass


class MasterKeyProvider(ABC):
    """Wraps and unwraps data keys."""

    name: str = "master_key"

    @abstractmethod
    def wrap(self, key: bytes, key_id: str) -> str:
        """Return the base64 wrapped form of key."""
        pass

    @abstractmethod
    def unwrap(self, wrapped: str, key_id: str) -> bytes:
        """Recover a data key.

        Raises:
            DecryptionError: If the wrapped key does not authenticate
        """
        pass

    def health_check(self) -> bool:
        """Round-trip a throwaway key."""
        sample = os.urandom(KEY_BYTES)
        return self.unwrap(self.wrap(sample, "health-check"), "health-check") == sample


class LocalMasterKey(MasterKeyProvider):
    """AES-256-GCM master key held in process memory.

    Suitable for single-region deployments where the key is injected
    through the environment; use KmsMasterKey where KMS is available.
    """

    name = "local"

    def __init__(self, master_key: bytes):
        if len(master_key) != KEY_BYTES:
            raise ValueError(f"Master key must be {KEY_BYTES} bytes")
        self._aead = AESGCM(master_key)

    @classmethod
    def from_env(cls, var: str = "MASTER_KEY") -> "LocalMasterKey":
        """Load a base64 master key from the environment.

        Raises:
            ValueError: If the variable is missing or not a valid key
        """
        encoded = os.getenv(var)
        if not encoded:
            raise ValueError(f"{var} is not set")
        try:
            return cls(base64.b64decode(encoded, validate=True))
        except binascii.Error as e:
            raise ValueError(f"{var} is not valid base64") from e

    @classmethod
    def generate(cls) -> "LocalMasterKey":
        """Fresh random master key, for development and tests."""
        return cls(AESGCM.generate_key(bit_length=256))

    def wrap(self, key: bytes, key_id: str) -> str:
        nonce = os.urandom(IV_BYTES)
        sealed = self._aead.encrypt(nonce, key, key_id.encode("utf-8"))
        return base64.b64encode(nonce + sealed).decode("ascii")

    def unwrap(self, wrapped: str, key_id: str) -> bytes:
        raw = base64.b64decode(wrapped)
        nonce, sealed = raw[:IV_BYTES], raw[IV_BYTES:]
        try:
            return self._aead.decrypt(nonce, sealed, key_id.encode("utf-8"))
        except InvalidTag as e:
            raise DecryptionError(f"Wrapped key {key_id} failed authentication") from e


class KmsMasterKey(MasterKeyProvider):
    """AWS KMS customer master key.

    Each wrap/unwrap is one KMS round trip; callers cache unwrapped keys.
    """

    name = "kms"

    def __init__(
        self,
        kms_key_id: str,
        region: Optional[str] = None,
        client=None,
    ):
        """Initialize provider.

        Args:
            kms_key_id: KMS key id, ARN or alias
            region: AWS region (defaults to AWS_REGION env var)
            client: Preconfigured boto3 KMS client
        """
        if not kms_key_id:
            raise ValueError("kms_key_id is required")
        self.kms_key_id = kms_key_id
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kms_client = client

        logger.info(
            "KMS_MASTER_KEY_CONFIGURED",
            extra={"region": self.region}
        )

    @property
    def kms_client(self):
        """Lazy initialization of KMS client."""
        if self._kms_client is None:
            import boto3
            self._kms_client = boto3.client("kms", region_name=self.region)
        return self._kms_client

    @staticmethod
    def _context(key_id: str) -> dict:
        return {"purpose": "nathguard-user-key", "key_id": key_id}

    def wrap(self, key: bytes, key_id: str) -> str:
        response = self.kms_client.encrypt(
            KeyId=self.kms_key_id,
            Plaintext=key,
            EncryptionContext=self._context(key_id),
        )
        return base64.b64encode(response["CiphertextBlob"]).decode("ascii")

    def unwrap(self, wrapped: str, key_id: str) -> bytes:
        try:
            response = self.kms_client.decrypt(
                KeyId=self.kms_key_id,
                CiphertextBlob=base64.b64decode(wrapped),
                EncryptionContext=self._context(key_id),
            )
        except self.kms_client.exceptions.InvalidCiphertextException as e:
            raise DecryptionError(f"Wrapped key {key_id} failed authentication") from e
        return response["Plaintext"]
