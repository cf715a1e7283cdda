"""PII rule table for Brazilian personal data.

Rules are applied in order. A span claimed by an earlier rule is never
re-claimed by a later one, so the more specific formats (e-mail, card
numbers, CPF) come before the looser digit runs (phone, RG).

Replacement tokens are lower-case and digit-free: no token can ever match
a rule, which keeps sanitisation idempotent.
"""
import re
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Optional, Pattern, Tuple

from nathguard.shared.models import PIIType
from .validators import is_valid_cpf


@dataclass(frozen=True)
class PIIRule:
    """One matcher in the redaction table."""
    type: PIIType
    pattern: Pattern
    replacement: str
    validator: Optional[Callable[[str], bool]] = None


REPLACEMENTS = {
    PIIType.NATIONAL_ID: "[cpf removido]",
    PIIType.PHONE: "[telefone removido]",
    PIIType.EMAIL: "[e-mail removido]",
    PIIType.GOV_ID: "[rg removido]",
    PIIType.HEALTH_CARD_NUMBER: "[cartão sus removido]",
    PIIType.BIRTH_DATE: "[data removida]",
    PIIType.CREDIT_CARD: "[cartão removido]",
    PIIType.ADDRESS: "[endereço removido]",
    PIIType.FULL_NAME: "[nome removido]",
}

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
CREDIT_CARD_PATTERN = re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b")
HEALTH_CARD_PATTERN = re.compile(r"\b\d{3}\s?\d{4}\s?\d{4}\s?\d{4}\b")
CPF_PATTERN = re.compile(r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b")
BIRTH_DATE_PATTERN = re.compile(
    r"\b(?:0[1-9]|[12]\d|3[01])[/-](?:0[1-9]|1[0-2])[/-](?:19|20)\d{2}\b"
)
PHONE_PATTERN = re.compile(
    r"(?<!\w)(?:\+55\s?)?(?:\(?\d{2}\)?\s?)?\d{4,5}[-\s]?\d{4}(?!\d)"
)
RG_PATTERN = re.compile(r"\b\d{1,2}\.?\d{3}\.?\d{3}-?[0-9xX]\b")
STREET_PATTERN = re.compile(
    r"\b(?:rua|av\.|avenida|travessa|alameda|praça|rodovia|estrada)\s+"
    r"[a-zà-ÿ.\s]{2,60}?,?\s*(?:n[º°o]\.?\s*)?\d+",
    re.IGNORECASE,
)
POSTAL_CODE_PATTERN = re.compile(r"\b\d{5}-\d{3}\b")
FULL_NAME_PATTERN = re.compile(
    r"\b[A-ZÀ-Ý][a-zà-ÿ]+(?:\s+(?:(?:da|de|do|das|dos)\s+)?[A-ZÀ-Ý][a-zà-ÿ]+)+\b"
)

# Capitalised phrases that are not personal names
NAME_FALSE_POSITIVES: FrozenSet[str] = frozenset({
    "Nossa Senhora",
    "Meu Deus",
    "Jesus Cristo",
    "Deus Pai",
    "Espírito Santo",
    "São Paulo",
    "Rio de Janeiro",
    "Rio Janeiro",
    "Belo Horizonte",
    "Porto Alegre",
    "Santa Catarina",
    "Minas Gerais",
    "Bom Dia",
    "Boa Tarde",
    "Boa Noite",
    "Feliz Natal",
    "Dia das Mães",
    "Sistema Único",
    "Cartão Nacional",
})

DEFAULT_RULES: Tuple[PIIRule, ...] = (
    PIIRule(PIIType.EMAIL, EMAIL_PATTERN, REPLACEMENTS[PIIType.EMAIL]),
    PIIRule(PIIType.CREDIT_CARD, CREDIT_CARD_PATTERN, REPLACEMENTS[PIIType.CREDIT_CARD]),
    PIIRule(PIIType.HEALTH_CARD_NUMBER, HEALTH_CARD_PATTERN, REPLACEMENTS[PIIType.HEALTH_CARD_NUMBER]),
    PIIRule(PIIType.NATIONAL_ID, CPF_PATTERN, REPLACEMENTS[PIIType.NATIONAL_ID], is_valid_cpf),
    PIIRule(PIIType.BIRTH_DATE, BIRTH_DATE_PATTERN, REPLACEMENTS[PIIType.BIRTH_DATE]),
    PIIRule(PIIType.PHONE, PHONE_PATTERN, REPLACEMENTS[PIIType.PHONE]),
    PIIRule(PIIType.GOV_ID, RG_PATTERN, REPLACEMENTS[PIIType.GOV_ID]),
    PIIRule(PIIType.ADDRESS, STREET_PATTERN, REPLACEMENTS[PIIType.ADDRESS]),
    PIIRule(PIIType.ADDRESS, POSTAL_CODE_PATTERN, REPLACEMENTS[PIIType.ADDRESS]),
    PIIRule(PIIType.FULL_NAME, FULL_NAME_PATTERN, REPLACEMENTS[PIIType.FULL_NAME]),
)


@dataclass(frozen=True)
class PIIRedactorConfig:
    """Redactor behaviour.

    enabled_types restricts the rule table; by default every category runs.
    """
    rules: Tuple[PIIRule, ...] = DEFAULT_RULES
    enabled_types: FrozenSet[PIIType] = field(default_factory=lambda: frozenset(PIIType))
    name_false_positives: FrozenSet[str] = NAME_FALSE_POSITIVES

    def __post_init__(self):
        for rule in self.rules:
            if any(rule.pattern.search(token) for token in REPLACEMENTS.values()):
                raise ValueError(f"Rule for {rule.type.value} matches a replacement token")

    @property
    def active_rules(self) -> Tuple[PIIRule, ...]:
        return tuple(r for r in self.rules if r.type in self.enabled_types)
