"""PII redactor - strips personal data before anything is stored or logged.

Pure and deterministic: no I/O, no shared mutable state, never raises for
any string input. Runs on every inbound message and on every audit
metadata payload.
"""
import logging
from typing import Any, Dict, List, Match, Optional, Pattern, Tuple

from nathguard.shared.models import PIIDetectionResult, PIIPosition, PIIType
from .config import FULL_NAME_PATTERN, PIIRedactorConfig, PHONE_PATTERN
from .validators import digits_only

logger = logging.getLogger(__name__)


class PIIRedactor:
    """Detects and replaces Brazilian personal data in free text.

    Matches are collected on the original text, rule by rule, in table
    order. Positions always refer to the original text, and the sanitized
    text replaces each claimed span with its category token.
    """

    def __init__(self, config: Optional[PIIRedactorConfig] = None):
        self.config = config if config is not None else PIIRedactorConfig()
        self._rules = self.config.active_rules

        logger.info(
            "PII_REDACTOR_INITIALIZED",
            extra={
                "rule_count": len(self._rules),
                "enabled_types": sorted(t.value for t in self.config.enabled_types),
            }
        )

    def detect(self, text: str) -> PIIDetectionResult:
        """Scan text for PII.

        Args:
            text: Raw message text

        Returns:
            PIIDetectionResult with positions in the original text and the
            sanitized text
        """
        if not isinstance(text, str) or not text:
            return PIIDetectionResult(
                has_pii=False,
                types=frozenset(),
                positions=(),
                sanitized_text=text if isinstance(text, str) else "",
            )

        claimed: List[Tuple[int, int]] = []
        positions: List[PIIPosition] = []

        for rule in self._rules:
            for match in rule.pattern.finditer(text):
                if rule.type is PIIType.FULL_NAME:
                    spans = self._name_spans(rule.pattern, text, match, claimed)
                elif _overlaps(match.start(), match.end(), claimed):
                    continue
                else:
                    spans = [match.span()]

                for start, end in spans:
                    value = text[start:end]
                    if rule.validator is not None and not rule.validator(value):
                        continue
                    claimed.append((start, end))
                    positions.append(PIIPosition(
                        type=rule.type,
                        start=start,
                        end=end,
                        raw_value=value,
                        replacement=rule.replacement,
                    ))

        positions.sort(key=lambda p: p.start)
        sanitized = _apply_replacements(text, positions)

        return PIIDetectionResult(
            has_pii=bool(positions),
            types=frozenset(p.type for p in positions),
            positions=tuple(positions),
            sanitized_text=sanitized,
        )

    def sanitize(self, text: str) -> str:
        """Return text with every PII span replaced. Idempotent."""
        return self.detect(text).sanitized_text

    def is_safe_to_store(self, text: str) -> bool:
        return not self.detect(text).has_pii

    def redact_structured(self, value: Any) -> Any:
        """Recursively sanitize a JSON-like structure, keys included.

        Numbers whose digits form PII (an int CPF, a phone number) are
        replaced by the sanitized string. Booleans and None pass through.
        Tuples and sets come back as lists so the result is JSON-ready.
        """
        if isinstance(value, str):
            return self.sanitize(value)
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, (int, float)):
            result = self.detect(str(value))
            return result.sanitized_text if result.has_pii else value
        if isinstance(value, dict):
            return {
                self._redact_key(key): self.redact_structured(item)
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self.redact_structured(item) for item in value]
        return value

    def _redact_key(self, key: Any) -> Any:
        if isinstance(key, str):
            return self.sanitize(key)
        redacted = self.redact_structured(key)
        return redacted if isinstance(redacted, str) else key

    def detect_names(self, text: str) -> List[str]:
        """Capitalised multi-word sequences that look like personal names."""
        text = text or ""
        return [
            text[start:end]
            for match in FULL_NAME_PATTERN.finditer(text)
            for start, end in self._name_spans(FULL_NAME_PATTERN, text, match, [])
        ]

    def contains_email(self, text: str) -> bool:
        return PIIType.EMAIL in self.detect(text).types

    def contains_address(self, text: str) -> bool:
        return PIIType.ADDRESS in self.detect(text).types

    def contains_phone(self, text: str) -> bool:
        """True if a phone-shaped match has 10 to 13 digits (DDD included)."""
        for match in PHONE_PATTERN.finditer(text or ""):
            if 10 <= len(digits_only(match.group(0))) <= 13:
                return True
        return False

    def extract_metadata(self, text: str) -> Dict[str, Any]:
        """PII-free descriptors of a message, safe for audit metadata."""
        result = self.detect(text)
        return {
            "length": len(text or ""),
            "word_count": len((text or "").split()),
            "has_pii": result.has_pii,
            "pii_types": sorted(t.value for t in result.types),
        }

    def _name_spans(
        self,
        pattern: Pattern,
        text: str,
        match: Match,
        claimed: List[Tuple[int, int]],
    ) -> List[Tuple[int, int]]:
        """Name spans inside a candidate match.

        Words already claimed by another rule and allow-listed phrases are
        cut out; what remains is re-matched, so "Bom Dia Maria Silva"
        still yields "Maria Silva".
        """
        start, end = match.span()
        value = match.group(0)
        blocked = [(s, e) for s, e in claimed if s < end and start < e]
        for phrase in self.config.name_false_positives:
            offset = value.find(phrase)
            while offset != -1:
                stop = offset + len(phrase)
                if _is_whole_words(value, offset, stop):
                    blocked.append((start + offset, start + stop))
                offset = value.find(phrase, stop)
        if not blocked:
            return [(start, end)]

        spans: List[Tuple[int, int]] = []
        cursor = start
        for b_start, b_end in sorted(blocked) + [(end, end)]:
            if b_start > cursor:
                fragment = text[cursor:b_start]
                spans.extend(
                    (cursor + m.start(), cursor + m.end()) for m in pattern.finditer(fragment)
                )
            cursor = max(cursor, b_end)
        return spans


def mask_partial(value: str, pii_type: PIIType) -> str:
    """Mask a value while keeping enough of it for a human to recognise.

    ma***@example.com, (11) *****-4321, ***.456.***-09; anything else keeps
    its first two characters.
    """
    if pii_type is PIIType.EMAIL:
        local, sep, domain = value.partition("@")
        if not sep or not domain:
            return "***@***.com"
        return f"{local[:2]}***@{domain}"

    if pii_type is PIIType.PHONE:
        digits = digits_only(value)
        hidden = "*****" if len(digits) == 11 else "****"
        return f"({digits[:2]}) {hidden}-{digits[-4:]}"

    if pii_type is PIIType.NATIONAL_ID:
        digits = digits_only(value)
        return f"***.{digits[3:6]}.***-{digits[-2:]}"

    return value[:2] + "*" * max(len(value) - 2, 0)


def _is_whole_words(value: str, start: int, end: int) -> bool:
    before = value[start - 1] if start > 0 else " "
    after = value[end] if end < len(value) else " "
    return not before.isalnum() and not after.isalnum()


def _overlaps(start: int, end: int, spans: List[Tuple[int, int]]) -> bool:
    return any(start < s_end and s_start < end for s_start, s_end in spans)


def _apply_replacements(text: str, positions: List[PIIPosition]) -> str:
    parts: List[str] = []
    cursor = 0
    for pos in positions:
        parts.append(text[cursor:pos.start])
        parts.append(pos.replacement)
        cursor = pos.end
    parts.append(text[cursor:])
    return "".join(parts)
