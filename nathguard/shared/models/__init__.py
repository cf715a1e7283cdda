"""Shared domain models for the nathguard security layer."""
from .detection import (
    PIIType,
    PIIPosition,
    PIIDetectionResult,
    ViolationType,
    Severity,
    ContentViolation,
    ContentValidationResult,
    RiskSignalType,
    RiskLevel,
    UrgencyLevel,
    RecommendedAction,
    RiskSignal,
    RiskAnalysisResult,
    RiskTrend,
    RiskHistoryResult,
    SafetyResponse,
    ScreeningResult,
)
from .records import (
    PASSTHROUGH_KEY_ID,
    SecurityContext,
    RateLimitRecord,
    RateLimitResult,
    EndpointUsage,
    KeyStatus,
    UserEncryptionKey,
    EncryptedPayload,
    DecryptionResult,
    AuditActionType,
    AuditFlag,
    AuditLogEntry,
    AuditStats,
)

__all__ = [
    "PIIType",
    "PIIPosition",
    "PIIDetectionResult",
    "ViolationType",
    "Severity",
    "ContentViolation",
    "ContentValidationResult",
    "RiskSignalType",
    "RiskLevel",
    "UrgencyLevel",
    "RecommendedAction",
    "RiskSignal",
    "RiskAnalysisResult",
    "RiskTrend",
    "RiskHistoryResult",
    "SafetyResponse",
    "ScreeningResult",
    "PASSTHROUGH_KEY_ID",
    "SecurityContext",
    "RateLimitRecord",
    "RateLimitResult",
    "EndpointUsage",
    "KeyStatus",
    "UserEncryptionKey",
    "EncryptedPayload",
    "DecryptionResult",
    "AuditActionType",
    "AuditFlag",
    "AuditLogEntry",
    "AuditStats",
]
