"""Risk detection rules, scoring weights and emergency resources.

Keyword sets are matched after normalization (see text_normalizer), so
they are written with accents for readability. Each rule is one row in
RISK_RULES; adding a phrase never requires touching detector code.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Tuple

from nathguard.shared.models import RiskLevel, RiskSignalType


@dataclass(frozen=True)
class RiskRule:
    """A keyword detector for one crisis category.

    min_hits is the number of distinct keywords required before the rule
    fires. Single-symptom mentions of panic or low mood are too common in
    postpartum conversations to act on.
    """
    type: RiskSignalType
    indicator: str
    confidence: float
    keywords: FrozenSet[str]
    min_hits: int = 1

    def __post_init__(self):
        if self.min_hits < 1:
            raise ValueError("min_hits must be at least 1")
        if not self.keywords:
            raise ValueError(f"Rule {self.type.value} has no keywords")


SELF_HARM_KEYWORDS: FrozenSet[str] = frozenset({
    "me matar",
    "suicídio",
    "acabar com tudo",
    "não aguento mais",
    "quero morrer",
    "tirar minha vida",
    "me cortar",
    "machucar a mim",
})

SUICIDE_IDEATION_KEYWORDS: FrozenSet[str] = frozenset({
    "sem saída",
    "melhor morta",
    "mundo sem mim",
    "despedir de todos",
    "carta de despedida",
    "plano de suicídio",
    "quero desaparecer",
    "queria sumir",
    "dormir para sempre",
})

PANIC_KEYWORDS: FrozenSet[str] = frozenset({
    "não consigo respirar",
    "coração acelerado",
    "vou desmaiar",
    "tudo escurecendo",
    "perder controle",
    "ataque de pânico",
    "terror",
    "desespero",
})

SEVERE_DEPRESSION_KEYWORDS: FrozenSet[str] = frozenset({
    "sem esperança",
    "vazio por dentro",
    "não sinto nada",
    "peso imenso",
    "tudo escuro",
    "sem sentido",
    "abandonada",
})

# Specific to the postpartum period
POSTPARTUM_PSYCHOSIS_KEYWORDS: FrozenSet[str] = frozenset({
    "machucar o bebê",
    "vozes mandando",
    "não reconheço meu bebê",
    "sou uma ameaça",
    "não sou a mãe",
    "perigo para o bebê",
})

ABUSE_KEYWORDS: FrozenSet[str] = frozenset({
    "ele me bate",
    "sofro violência",
    "me agride",
    "abuso físico",
    "abuso sexual",
    "estupro",
    "ameaça de morte",
})

VIOLENCE_THREAT_KEYWORDS: FrozenSet[str] = frozenset({
    "vou matar ele",
    "vou matar ela",
    "vou machucar alguém",
    "vou acabar com ele",
})

RISK_RULES: Tuple[RiskRule, ...] = (
    RiskRule(
        type=RiskSignalType.SELF_HARM,
        indicator="Menção explícita de autoagressão",
        confidence=0.9,
        keywords=SELF_HARM_KEYWORDS,
    ),
    RiskRule(
        type=RiskSignalType.SUICIDE_IDEATION,
        indicator="Ideação suicida detectada",
        confidence=0.95,
        keywords=SUICIDE_IDEATION_KEYWORDS,
    ),
    RiskRule(
        type=RiskSignalType.PANIC_ATTACK,
        indicator="Sintomas de ataque de pânico",
        confidence=0.8,
        keywords=PANIC_KEYWORDS,
        min_hits=2,
    ),
    RiskRule(
        type=RiskSignalType.SEVERE_DEPRESSION,
        indicator="Sinais de depressão severa",
        confidence=0.75,
        keywords=SEVERE_DEPRESSION_KEYWORDS,
        min_hits=2,
    ),
    RiskRule(
        type=RiskSignalType.POSTPARTUM_PSYCHOSIS,
        indicator="Possível psicose pós-parto",
        confidence=0.9,
        keywords=POSTPARTUM_PSYCHOSIS_KEYWORDS,
    ),
    RiskRule(
        type=RiskSignalType.ABUSE_REPORT,
        indicator="Relato de violência ou abuso",
        confidence=0.85,
        keywords=ABUSE_KEYWORDS,
    ),
    RiskRule(
        type=RiskSignalType.VIOLENCE_THREAT,
        indicator="Ameaça de violência contra terceiros",
        confidence=0.85,
        keywords=VIOLENCE_THREAT_KEYWORDS,
    ),
)


def _default_weights() -> Dict[RiskSignalType, int]:
    return {
        RiskSignalType.SUICIDE_IDEATION: 95,
        RiskSignalType.POSTPARTUM_PSYCHOSIS: 95,
        RiskSignalType.SELF_HARM: 90,
        RiskSignalType.ABUSE_REPORT: 85,
        RiskSignalType.VIOLENCE_THREAT: 85,
        RiskSignalType.SEVERE_DEPRESSION: 75,
        RiskSignalType.PANIC_ATTACK: 70,
    }


@dataclass(frozen=True)
class RiskScoringConfig:
    """Weights per signal and the score → level ladder.

    thresholds are the lower bounds of Low, Medium, High and Critical;
    anything below the first is None.
    """
    weights: Dict[RiskSignalType, int] = field(default_factory=_default_weights)
    thresholds: Tuple[int, int, int, int] = (20, 40, 60, 80)

    def __post_init__(self):
        missing = set(RiskSignalType) - set(self.weights)
        if missing:
            raise ValueError(
                f"Missing weights for: {sorted(t.value for t in missing)}"
            )
        if any(w < 0 or w > 100 for w in self.weights.values()):
            raise ValueError("Weights must be between 0 and 100")
        if len(self.thresholds) != 4:
            raise ValueError("Exactly four thresholds are required")
        bounds = (0,) + tuple(self.thresholds) + (101,)
        if any(lo >= hi for lo, hi in zip(bounds, bounds[1:])):
            raise ValueError(
                f"Thresholds must be strictly increasing within 1-100, got {self.thresholds}"
            )

    def level_for(self, score: int) -> RiskLevel:
        low, medium, high, critical = self.thresholds
        if score >= critical:
            return RiskLevel.CRITICAL
        if score >= high:
            return RiskLevel.HIGH
        if score >= medium:
            return RiskLevel.MEDIUM
        if score >= low:
            return RiskLevel.LOW
        return RiskLevel.NONE


# Crisis lines in Brazil, all available 24/7
EMERGENCY_RESOURCES: Tuple[Tuple[str, str], ...] = (
    ("CVV (Centro de Valorização da Vida)", "188"),
    ("SAMU", "192"),
    ("Polícia Militar", "190"),
    ("Central de Atendimento à Mulher", "180"),
)

EMERGENCY_MESSAGE = (
    "⚠️ ATENÇÃO: Detectei que você pode estar em uma situação de emergência.\n\n"
    "Por favor, busque ajuda imediata:\n\n"
    "📞 CVV (Centro de Valorização da Vida): 188 - Disponível 24h\n"
    "📞 SAMU: 192\n"
    "📞 Polícia Militar: 190\n"
    "📞 Central de Atendimento à Mulher: 180\n\n"
    "Você não está sozinha. Profissionais qualificados podem te ajudar agora."
)

URGENT_MESSAGE = (
    "Percebo que você está passando por um momento muito difícil.\n\n"
    "É importante que você converse com um profissional de saúde o quanto antes. "
    "Aqui estão alguns recursos:\n\n"
    "📞 CVV: 188 (24h)\n"
    "📞 SAMU: 192\n\n"
    "Nossa equipe de moderação será notificada para oferecer suporte adicional."
)

HIGH_RISK_MESSAGE = (
    "Entendo que você está enfrentando desafios. É importante cuidar da sua saúde mental.\n\n"
    "Se precisar de apoio imediato:\n"
    "📞 CVV: 188 (24h)\n\n"
    "Estou aqui para conversar, mas recomendo também buscar um profissional de saúde."
)

# analyze_history
CUMULATIVE_ALERT_SCORE = 70
TREND_DELTA = 10
