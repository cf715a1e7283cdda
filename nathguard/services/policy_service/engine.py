"""Content policy engine - community rules for the support chat.

Six independent detectors each return at most one violation. The engine
concatenates them, derives confidence from the worst severity and blocks
only on High/Critical. It is pure apart from the caller-supplied history
and never raises for any input.
"""
import logging
import re
from typing import Callable, List, Optional, Sequence, Tuple

from nathguard.shared.models import (
    ContentValidationResult,
    ContentViolation,
    Severity,
    ViolationType,
)
from .config import (
    CENSORED,
    CONTACT_PATTERNS,
    HARASSMENT_RULE,
    HATE_SPEECH_RULE,
    INAPPROPRIATE_RULES,
    MEDICAL_TERMS_WHITELIST,
    SEVERITY_CONFIDENCE,
    SOLICITATION_PATTERNS,
    SPAM_KEYWORDS,
    SUGGESTIONS,
    URL_PATTERNS,
    PatternRule,
    PolicyConfig,
)

logger = logging.getLogger(__name__)

_WHATSAPP_CONTACT = re.compile(r"\b(?:whatsapp|wpp|zap)\s*:?\s*\d+", re.IGNORECASE)
_TRAILING_PUNCTUATION = ".!?)]}'\""

Detector = Callable[[str, Sequence[str]], Optional[ContentViolation]]


class ContentPolicyEngine:
    """Validates messages against community rules."""

    def __init__(self, config: Optional[PolicyConfig] = None):
        self.config = config if config is not None else PolicyConfig()
        self._repeated_char = re.compile(
            r"(.)\1{%d,}" % (self.config.repeated_char_run - 1)
        )
        self._detectors: Tuple[Detector, ...] = (
            self._detect_spam,
            self._detect_commercial,
            self._detect_hate_speech,
            self._detect_harassment,
            self._detect_inappropriate,
            self._check_length,
        )

        logger.info(
            "CONTENT_POLICY_INITIALIZED",
            extra={
                "detectors": len(self._detectors),
                "max_length": self.config.max_length,
            }
        )

    def validate(
        self,
        text: str,
        history: Optional[Sequence[str]] = None,
    ) -> ContentValidationResult:
        """Validate a message.

        Args:
            text: Original message text
            history: The user's recent messages, oldest first

        Returns:
            ContentValidationResult; allowed is False iff a High/Critical
            violation was found
        """
        message = text if isinstance(text, str) else ""
        recent = tuple(h for h in (history or ()) if isinstance(h, str))
        recent = recent[-self.config.history_window:]

        violations = [
            violation
            for violation in (detector(message, recent) for detector in self._detectors)
            if violation is not None
        ]

        return build_result(violations)

    def is_medical_language_only(self, text: str) -> bool:
        """True when the message uses allow-listed clinical vocabulary.

        Advisory: callers may use it to soften Low/Medium inappropriate
        findings in health conversations.
        """
        lowered = (text or "").lower()
        return any(term in lowered for term in MEDICAL_TERMS_WHITELIST)

    def soften_for_medical_context(
        self,
        result: ContentValidationResult,
        text: str,
    ) -> ContentValidationResult:
        """Drop Low/Medium inappropriate violations from clinical messages."""
        if not self.is_medical_language_only(text):
            return result

        kept = [
            v for v in result.violations
            if not (v.type is ViolationType.INAPPROPRIATE and not v.severity.blocks)
        ]
        if len(kept) == len(result.violations):
            return result

        logger.info(
            "CONTENT_POLICY_SOFTENED",
            extra={"dropped": len(result.violations) - len(kept)}
        )
        return build_result(kept)

    def sanitize_message(self, text: str) -> str:
        """Replace links and messaging-app contacts, keeping the rest."""
        sanitized = text or ""
        for pattern in URL_PATTERNS:
            sanitized = pattern.sub("[link removido]", sanitized)
        return _WHATSAPP_CONTACT.sub("[contato removido]", sanitized)

    def _detect_spam(self, text: str, history: Sequence[str]) -> Optional[ContentViolation]:
        lowered = text.lower()

        keywords = sorted(k for k in SPAM_KEYWORDS if k in lowered)
        if keywords:
            return ContentViolation(
                type=ViolationType.SPAM,
                severity=Severity.MEDIUM,
                description="Mensagem contém linguagem comercial/spam",
                matched_text=", ".join(keywords),
            )

        if lowered and history:
            repeats = sum(1 for previous in history if previous.lower() == lowered)
            if repeats >= self.config.repeat_threshold:
                return ContentViolation(
                    type=ViolationType.SPAM,
                    severity=Severity.HIGH,
                    description="Mensagem repetida múltiplas vezes",
                )

        if self._repeated_char.search(text):
            return ContentViolation(
                type=ViolationType.SPAM,
                severity=Severity.LOW,
                description="Mensagem contém caracteres repetidos excessivamente",
            )

        if len(text) > self.config.caps_min_length:
            caps = sum(1 for ch in text if ch.isupper())
            if caps / len(text) > self.config.caps_ratio:
                return ContentViolation(
                    type=ViolationType.SPAM,
                    severity=Severity.LOW,
                    description="Uso excessivo de maiúsculas",
                )

        return None

    def _detect_commercial(self, text: str, history: Sequence[str]) -> Optional[ContentViolation]:
        solicitations = _find_all(SOLICITATION_PATTERNS, text)
        contacts = _find_all(CONTACT_PATTERNS, text)
        urls = [u.rstrip(_TRAILING_PUNCTUATION) for u in _find_all(URL_PATTERNS, text)]

        matches = solicitations + contacts + urls
        if not matches:
            return None

        if solicitations and (urls or contacts):
            severity = Severity.HIGH
            description = "Mensagem oferece produtos ou serviços com link ou contato externo"
        elif urls and not solicitations:
            severity = Severity.MEDIUM
            description = "Mensagem contém links externos"
        else:
            severity = Severity.MEDIUM
            description = "Mensagem contém conteúdo comercial não autorizado"

        return ContentViolation(
            type=ViolationType.COMMERCIAL,
            severity=severity,
            description=description,
            matched_text=", ".join(matches),
        )

    def _detect_hate_speech(self, text: str, history: Sequence[str]) -> Optional[ContentViolation]:
        return _apply_rule(HATE_SPEECH_RULE, text)

    def _detect_harassment(self, text: str, history: Sequence[str]) -> Optional[ContentViolation]:
        return _apply_rule(HARASSMENT_RULE, text)

    def _detect_inappropriate(self, text: str, history: Sequence[str]) -> Optional[ContentViolation]:
        for rule in INAPPROPRIATE_RULES:
            violation = _apply_rule(rule, text)
            if violation is not None:
                return violation
        return None

    def _check_length(self, text: str, history: Sequence[str]) -> Optional[ContentViolation]:
        if len(text.strip()) < self.config.min_length:
            return ContentViolation(
                type=ViolationType.INAPPROPRIATE,
                severity=Severity.LOW,
                description="Mensagem vazia" if not text.strip() else "Mensagem muito curta",
            )

        if len(text) > self.config.max_length:
            return ContentViolation(
                type=ViolationType.SPAM,
                severity=Severity.MEDIUM,
                description=f"Mensagem muito longa (máximo {self.config.max_length} caracteres)",
            )

        return None


def build_result(violations: List[ContentViolation]) -> ContentValidationResult:
    """Assemble a validation result from a list of violations."""
    if not violations:
        return ContentValidationResult(allowed=True, confidence=1.0)

    suggestions: List[str] = []
    for violation in violations:
        suggestion = SUGGESTIONS[violation.type]
        if suggestion not in suggestions:
            suggestions.append(suggestion)

    return ContentValidationResult(
        allowed=not any(v.severity.blocks for v in violations),
        confidence=max(SEVERITY_CONFIDENCE[v.severity] for v in violations),
        violations=tuple(violations),
        suggestions=tuple(suggestions),
    )


def _find_all(patterns, text: str) -> List[str]:
    found: List[str] = []
    for pattern in patterns:
        found.extend(m.group(0).strip() for m in pattern.finditer(text))
    return found


def _apply_rule(rule: PatternRule, text: str) -> Optional[ContentViolation]:
    matches = _find_all(rule.patterns, text)
    if not matches:
        return None
    return ContentViolation(
        type=rule.type,
        severity=rule.severity,
        description=rule.description,
        matched_text=CENSORED if rule.censor else ", ".join(matches),
    )
