"""Detection result models shared by the PII, content and risk layers.

All results are immutable. Detectors build them once and hand them to
callers; nothing downstream mutates a result.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


class PIIType(Enum):
    """Categories of personal data recognised by the redactor."""
    NATIONAL_ID = "national_id"             # CPF
    PHONE = "phone"
    EMAIL = "email"
    GOV_ID = "gov_id"                       # RG
    HEALTH_CARD_NUMBER = "health_card"      # CNS (Cartão Nacional de Saúde)
    BIRTH_DATE = "birth_date"
    CREDIT_CARD = "credit_card"
    ADDRESS = "address"
    FULL_NAME = "full_name"


@dataclass(frozen=True)
class PIIPosition:
    """A single PII match located in the original text."""
    type: PIIType
    start: int
    end: int
    raw_value: str
    replacement: str

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        data = {
            "type": self.type.value,
            "start": self.start,
            "end": self.end,
            "replacement": self.replacement,
        }
        if include_raw:
            data["raw_value"] = self.raw_value
        return data


@dataclass(frozen=True)
class PIIDetectionResult:
    """Outcome of a PII scan.

    raw_value entries only live in memory; to_dict() omits them unless
    explicitly asked, so serialised results are safe to persist.
    """
    has_pii: bool
    types: FrozenSet[PIIType]
    positions: Tuple[PIIPosition, ...]
    sanitized_text: str

    def __post_init__(self):
        if self.has_pii != bool(self.positions):
            raise ValueError("has_pii must reflect whether any position was found")

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        return {
            "has_pii": self.has_pii,
            "types": sorted(t.value for t in self.types),
            "positions": [p.to_dict(include_raw) for p in self.positions],
            "sanitized_text": self.sanitized_text,
        }


class ViolationType(Enum):
    """Community rule categories."""
    SPAM = "spam"
    COMMERCIAL = "commercial"
    HATE_SPEECH = "hate_speech"
    HARASSMENT = "harassment"
    INAPPROPRIATE = "inappropriate"


class Severity(Enum):
    """Violation severity. Ordered: LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def blocks(self) -> bool:
        """High and Critical violations block the message."""
        return self.rank >= _SEVERITY_RANK[Severity.HIGH]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


@dataclass(frozen=True)
class ContentViolation:
    """One community-rule violation."""
    type: ViolationType
    severity: Severity
    description: str
    matched_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "matched_text": self.matched_text,
        }


@dataclass(frozen=True)
class ContentValidationResult:
    """Outcome of a content policy check.

    allowed is False iff at least one violation is High or Critical.
    """
    allowed: bool
    confidence: float
    violations: Tuple[ContentViolation, ...] = ()
    suggestions: Tuple[str, ...] = ()

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")
        blocking = any(v.severity.blocks for v in self.violations)
        if self.allowed == blocking:
            raise ValueError("allowed must be False exactly when a High/Critical violation exists")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "confidence": round(self.confidence, 3),
            "violations": [v.to_dict() for v in self.violations],
            "suggestions": list(self.suggestions),
        }


class RiskSignalType(Enum):
    """Crisis signal categories."""
    SELF_HARM = "self_harm"
    SUICIDE_IDEATION = "suicide_ideation"
    PANIC_ATTACK = "panic_attack"
    SEVERE_DEPRESSION = "severe_depression"
    POSTPARTUM_PSYCHOSIS = "postpartum_psychosis"
    ABUSE_REPORT = "abuse_report"
    VIOLENCE_THREAT = "violence_threat"


class RiskLevel(Enum):
    """Risk ladder derived from the 0-100 score."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.NONE: 0,
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class UrgencyLevel(Enum):
    """How fast a human has to look at the conversation."""
    ROUTINE = "routine"
    ELEVATED = "elevated"
    URGENT = "urgent"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {
    UrgencyLevel.ROUTINE: 0,
    UrgencyLevel.ELEVATED: 1,
    UrgencyLevel.URGENT: 2,
    UrgencyLevel.EMERGENCY: 3,
}


class RecommendedAction(Enum):
    NONE = "none"
    MONITOR = "monitor"
    FLAG_FOR_REVIEW = "flag_for_review"
    ESCALATE_TO_MODERATOR = "escalate_to_moderator"
    EMERGENCY_CONTACT = "emergency_contact"


@dataclass(frozen=True)
class RiskSignal:
    """A fired crisis detector.

    confidence is advisory and does not feed the score.
    """
    type: RiskSignalType
    indicator: str
    confidence: float
    context: str

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "indicator": self.indicator,
            "confidence": self.confidence,
            "context": self.context,
        }


@dataclass(frozen=True)
class RiskAnalysisResult:
    """Outcome of crisis detection on one message."""
    level: RiskLevel
    score: int
    signals: Tuple[RiskSignal, ...]
    urgency: UrgencyLevel
    recommended_action: RecommendedAction
    needs_human_review: bool

    def __post_init__(self):
        if not 0 <= self.score <= 100:
            raise ValueError(f"Risk score must be 0-100, got {self.score}")
        expected_review = (
            self.level.rank >= RiskLevel.HIGH.rank
            or self.urgency.rank >= UrgencyLevel.URGENT.rank
        )
        if self.needs_human_review != expected_review:
            raise ValueError("needs_human_review must follow level and urgency")

    @property
    def signal_types(self) -> FrozenSet[RiskSignalType]:
        return frozenset(s.type for s in self.signals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "score": self.score,
            "signals": [s.to_dict() for s in self.signals],
            "urgency": self.urgency.value,
            "recommended_action": self.recommended_action.value,
            "needs_human_review": self.needs_human_review,
        }


class RiskTrend(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    WORSENING = "worsening"


@dataclass(frozen=True)
class RiskHistoryResult:
    """Recency-weighted view over a conversation."""
    cumulative_score: int
    trend: RiskTrend
    alerts: Tuple[str, ...] = ()
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cumulative_score": self.cumulative_score,
            "trend": self.trend.value,
            "alerts": list(self.alerts),
            "message_count": self.message_count,
        }


@dataclass(frozen=True)
class SafetyResponse:
    """User-facing text attached to a risk result."""
    message: str
    resources: Tuple[str, ...] = ()
    blocks_interaction: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "resources": list(self.resources),
            "blocks_interaction": self.blocks_interaction,
        }


@dataclass(frozen=True)
class ScreeningResult:
    """Combined PII, content and risk outcome for one message."""
    pii: PIIDetectionResult
    content: ContentValidationResult
    risk: RiskAnalysisResult
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pii": self.pii.to_dict(),
            "content": self.content.to_dict(),
            "risk": self.risk.to_dict(),
            "latency_ms": round(self.latency_ms, 2),
        }
