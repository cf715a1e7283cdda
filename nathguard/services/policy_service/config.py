"""Community rule tables for the content policy engine.

Rules are data: adding a pattern or a keyword does not touch engine code.
Patterns are matched case-insensitively against the original message.
"""
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Pattern, Tuple

from nathguard.shared.models import Severity, ViolationType


@dataclass(frozen=True)
class PatternRule:
    """A regex rule that yields one violation when any pattern matches.

    censor replaces matched_text with a placeholder so offensive terms are
    not echoed back into logs or responses.
    """
    type: ViolationType
    severity: Severity
    description: str
    patterns: Tuple[Pattern, ...]
    censor: bool = False


@dataclass(frozen=True)
class PolicyConfig:
    """Thresholds for the structural checks."""
    min_length: int = 2
    max_length: int = 5000
    repeat_threshold: int = 3
    history_window: int = 50
    repeated_char_run: int = 11
    caps_ratio: float = 0.7
    caps_min_length: int = 20

    def __post_init__(self):
        if self.min_length < 0 or self.max_length <= self.min_length:
            raise ValueError("Length bounds must satisfy 0 <= min_length < max_length")
        if not 0.0 < self.caps_ratio <= 1.0:
            raise ValueError("caps_ratio must be in (0, 1]")
        if self.repeat_threshold < 1 or self.repeated_char_run < 2:
            raise ValueError("Repetition thresholds too small")


def _compile(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


SPAM_KEYWORDS: FrozenSet[str] = frozenset({
    "compre agora",
    "clique aqui",
    "promoção",
    "desconto imperdível",
    "ganhe dinheiro",
    "trabalhe em casa",
    "renda extra",
    "venda",
    "oferta exclusiva",
    "cadastre-se",
})

# Selling or buying language
SOLICITATION_PATTERNS = _compile(
    r"\b(?:vendo|vendemos|compre|encomendas?)\b",
)

# Off-platform contact handles
CONTACT_PATTERNS = _compile(
    r"\b(?:whatsapp|wpp|zap)\s*:?\s*\d[\d\s-]*",
    r"\b(?:site|link)\b",
)

URL_PATTERNS = _compile(
    r"https?://[^\s,;]+",
    r"\bwww\.[^\s,;]+",
)

HATE_SPEECH_RULE = PatternRule(
    type=ViolationType.HATE_SPEECH,
    severity=Severity.HIGH,
    description="Mensagem contém linguagem ofensiva ou discriminatória",
    patterns=_compile(
        r"\b(?:vagabund[ao]|piranha|put[ao])\b",
        r"\b(?:burr[ao]|idiota|imbecil)\b",
    ),
    censor=True,
)

HARASSMENT_RULE = PatternRule(
    type=ViolationType.HARASSMENT,
    severity=Severity.HIGH,
    description="Mensagem contém linguagem de assédio ou intimidação",
    patterns=_compile(
        r"você é uma?\s+(?:burr[ao]|idiota|incompetente)",
        r"vou te\s+(?:processar|denunciar|destruir)",
        r"cala a?\s*boca",
        r"ninguém (?:gosta|quer) (?:de )?você",
    ),
    censor=True,
)

INAPPROPRIATE_RULES: Tuple[PatternRule, ...] = (
    PatternRule(
        type=ViolationType.INAPPROPRIATE,
        severity=Severity.HIGH,
        description="Mensagem contém conteúdo sexual explícito",
        patterns=_compile(r"\b(?:pornô|porn[oô]?|xxx|sexo explícito)\b"),
        censor=True,
    ),
    PatternRule(
        type=ViolationType.INAPPROPRIATE,
        severity=Severity.MEDIUM,
        description="Mensagem contém pedido de conteúdo íntimo",
        patterns=_compile(r"\bnudes?\b", r"\bmanda(?:r)? foto (?:nua|pelada)\b"),
        censor=True,
    ),
)

# Clinical vocabulary that must not be treated as inappropriate
MEDICAL_TERMS_WHITELIST: FrozenSet[str] = frozenset({
    "sangramento",
    "corrimento",
    "contrações",
    "dor",
    "cesariana",
    "parto",
    "amamentação",
    "mama",
    "seio",
    "mamilo",
    "vagina",
    "vulva",
    "útero",
    "colo do útero",
    "episiotomia",
    "períneo",
    "relação sexual",
    "libido",
})

SEVERITY_CONFIDENCE: Dict[Severity, float] = {
    Severity.LOW: 0.3,
    Severity.MEDIUM: 0.6,
    Severity.HIGH: 0.9,
    Severity.CRITICAL: 1.0,
}

SUGGESTIONS: Dict[ViolationType, str] = {
    ViolationType.SPAM: "Evite repetir mensagens ou usar linguagem comercial.",
    ViolationType.COMMERCIAL: "Links e conteúdo comercial não são permitidos neste espaço.",
    ViolationType.HATE_SPEECH: (
        "Por favor, use linguagem respeitosa. Nossa comunidade preza pelo respeito mútuo."
    ),
    ViolationType.HARASSMENT: "Comportamento agressivo não é tolerado. Seja gentil com todos.",
    ViolationType.INAPPROPRIATE: (
        "Por favor, mantenha o conteúdo apropriado para o contexto de saúde materna."
    ),
}

CENSORED = "[censurado]"
