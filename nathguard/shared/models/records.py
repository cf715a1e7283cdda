"""Stateful records owned by the security layer.

Rate limit windows, user encryption keys and audit entries. Callers only
ever receive read-only projections of these.
"""
import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# Marker used when a field could not be encrypted and was passed through.
PASSTHROUGH_KEY_ID = "none"


@dataclass(frozen=True)
class SecurityContext:
    """Request context supplied by the caller on every contract call."""
    user_id: str
    endpoint: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id is required")
        if not self.endpoint:
            raise ValueError("endpoint is required")


@dataclass(frozen=True)
class RateLimitRecord:
    """Sliding window state for one (user, endpoint) pair.

    Timestamps are epoch seconds, oldest first. version increments on every
    successful write and backs compare-and-set in durable stores.
    """
    user_id: str
    endpoint: str
    requests: Tuple[float, ...] = ()
    blocked_until: Optional[float] = None
    version: int = 0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.user_id, self.endpoint)

    @property
    def newest(self) -> Optional[float]:
        return self.requests[-1] if self.requests else None

    def pruned(self, window_start: float) -> "RateLimitRecord":
        """Drop timestamps at or before window_start."""
        valid = tuple(ts for ts in self.requests if ts > window_start)
        return RateLimitRecord(
            user_id=self.user_id,
            endpoint=self.endpoint,
            requests=valid,
            blocked_until=self.blocked_until,
            version=self.version,
        )

    def is_blocked(self, now: float) -> bool:
        return self.blocked_until is not None and self.blocked_until > now


@dataclass(frozen=True)
class RateLimitResult:
    """Quota decision returned to callers."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after_seconds: Optional[int] = None

    def __post_init__(self):
        if self.remaining < 0:
            raise ValueError(f"remaining must be >= 0, got {self.remaining}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "retry_after_seconds": self.retry_after_seconds,
        }


@dataclass(frozen=True)
class EndpointUsage:
    """Read-only occupancy of one tracked endpoint."""
    endpoint: str
    requests_in_window: int
    max_requests: int
    blocked: bool
    blocked_until: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "requests_in_window": self.requests_in_window,
            "max_requests": self.max_requests,
            "blocked": self.blocked,
            "blocked_until": self.blocked_until,
        }


class KeyStatus(Enum):
    """Key lifecycle. REVOKED is terminal."""
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    REVOKED = "revoked"


@dataclass(frozen=True)
class UserEncryptionKey:
    """Per-user data key, stored wrapped by the master key.

    encrypted_key is the base64 wrapped key material; the raw key never
    leaves process memory.
    """
    user_id: str
    key_id: str
    encrypted_key: str
    created_at: datetime
    algorithm: str = "aes-256-gcm"
    status: KeyStatus = KeyStatus.ACTIVE
    rotated_at: Optional[datetime] = None

    @property
    def last_rotation(self) -> datetime:
        return self.rotated_at or self.created_at

    def with_status(
        self,
        status: KeyStatus,
        rotated_at: Optional[datetime] = None,
    ) -> "UserEncryptionKey":
        return UserEncryptionKey(
            user_id=self.user_id,
            key_id=self.key_id,
            encrypted_key=self.encrypted_key,
            created_at=self.created_at,
            algorithm=self.algorithm,
            status=status,
            rotated_at=rotated_at or self.rotated_at,
        )


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext envelope handed back to callers for persistence.

    All binary fields are base64. A key_id of "none" marks a pass-through
    payload whose ciphertext is the plaintext.
    """
    ciphertext: str
    iv: str
    auth_tag: str
    key_id: str
    algorithm: str = "aes-256-gcm"

    @property
    def is_passthrough(self) -> bool:
        return self.key_id == PASSTHROUGH_KEY_ID

    @classmethod
    def passthrough(cls, plaintext: str) -> "EncryptedPayload":
        return cls(
            ciphertext=plaintext,
            iv="",
            auth_tag="",
            key_id=PASSTHROUGH_KEY_ID,
            algorithm="none",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "auth_tag": self.auth_tag,
            "key_id": self.key_id,
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedPayload":
        return cls(
            ciphertext=data["ciphertext"],
            iv=data.get("iv", ""),
            auth_tag=data.get("auth_tag", ""),
            key_id=data["key_id"],
            algorithm=data.get("algorithm", "aes-256-gcm"),
        )

    def raw_parts(self) -> Tuple[bytes, bytes, bytes]:
        """Decode (ciphertext, iv, tag) from base64."""
        return (
            base64.b64decode(self.ciphertext),
            base64.b64decode(self.iv),
            base64.b64decode(self.auth_tag),
        )


@dataclass(frozen=True)
class DecryptionResult:
    success: bool
    plaintext: Optional[str] = None
    error: Optional[str] = None


class AuditActionType(Enum):
    """Auditable actions."""
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_REGISTER = "user_register"
    CHAT_MESSAGE = "chat_message"
    CHAT_RESPONSE = "chat_response"
    VOICE_INTERACTION = "voice_interaction"
    CONTENT_FLAGGED = "content_flagged"
    CONTENT_BLOCKED = "content_blocked"
    RISK_DETECTED = "risk_detected"
    DATA_ACCESS = "data_access"
    DATA_EXPORT = "data_export"
    DATA_DELETE = "data_delete"
    RATE_LIMIT_HIT = "rate_limit_hit"
    SECURITY_ALERT = "security_alert"
    ENCRYPTION_KEY_ROTATION = "encryption_key_rotation"


class AuditFlag(Enum):
    PII_DETECTED = "pii_detected"
    RISK_DETECTED = "risk_detected"
    CONTENT_BLOCKED = "content_blocked"
    RATE_LIMITED = "rate_limited"
    ENCRYPTION_FAILED = "encryption_failed"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


@dataclass(frozen=True)
class AuditLogEntry:
    """Append-only audit record.

    metadata has already been through PII redaction when the entry is
    built; nothing else in this record may carry free text from users.
    """
    id: str
    timestamp: datetime
    user_id: str
    action_type: AuditActionType
    endpoint: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    error_message: Optional[str] = None
    latency_ms: Optional[float] = None
    flags: Tuple[AuditFlag, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "action_type": self.action_type.value,
            "endpoint": self.endpoint,
            "metadata": self.metadata,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "success": self.success,
            "error_message": self.error_message,
            "latency_ms": self.latency_ms,
            "flags": [f.value for f in self.flags],
        }


@dataclass(frozen=True)
class AuditStats:
    """Aggregate view over a user's audit trail."""
    total_actions: int
    actions_by_type: Dict[str, int]
    flagged_actions: int
    failed_actions: int
    average_latency_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_actions": self.total_actions,
            "actions_by_type": dict(self.actions_by_type),
            "flagged_actions": self.flagged_actions,
            "failed_actions": self.failed_actions,
            "average_latency_ms": round(self.average_latency_ms, 2),
        }
