"""Crisis and mental-health risk detection for maternal support chats.

Keyword rules over normalized text produce signals; signal weights are
summed into a 0-100 score, the score maps to a level, and urgency is
escalated by signal type independently of the score. The detector is
pure and never raises for any input.

Signal confidence is advisory: only which rules fired feeds the score.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from nathguard.shared.models import (
    RecommendedAction,
    RiskAnalysisResult,
    RiskHistoryResult,
    RiskLevel,
    RiskSignal,
    RiskSignalType,
    RiskTrend,
    SafetyResponse,
    SecurityContext,
    UrgencyLevel,
)
from nathguard.shared.utils import hash_pii
from .config import (
    CUMULATIVE_ALERT_SCORE,
    EMERGENCY_MESSAGE,
    EMERGENCY_RESOURCES,
    HIGH_RISK_MESSAGE,
    RISK_RULES,
    TREND_DELTA,
    URGENT_MESSAGE,
    RiskRule,
    RiskScoringConfig,
)
from .text_normalizer import TextNormalizer

logger = logging.getLogger(__name__)

# Signals that force Emergency regardless of score
EMERGENCY_SIGNALS = frozenset({
    RiskSignalType.SUICIDE_IDEATION,
    RiskSignalType.POSTPARTUM_PSYCHOSIS,
})

# Signals that force at least Urgent
URGENT_SIGNALS = frozenset({
    RiskSignalType.SELF_HARM,
    RiskSignalType.VIOLENCE_THREAT,
    RiskSignalType.ABUSE_REPORT,
})

_LEVEL_URGENCY = {
    RiskLevel.CRITICAL: UrgencyLevel.EMERGENCY,
    RiskLevel.HIGH: UrgencyLevel.URGENT,
    RiskLevel.MEDIUM: UrgencyLevel.ELEVATED,
}


class RiskDetector:
    """Keyword-based crisis detector.

    Rules are matched against normalized text so accents, case and
    simple obfuscation do not hide crisis language.
    """

    def __init__(
        self,
        config: Optional[RiskScoringConfig] = None,
        rules: Sequence[RiskRule] = RISK_RULES,
    ):
        self.config = config if config is not None else RiskScoringConfig()
        self._normalizer = TextNormalizer()
        # Keywords go through the same normalization as messages
        self._rules: Tuple[Tuple[RiskRule, Tuple[str, ...]], ...] = tuple(
            (rule, tuple(sorted({self._normalizer.normalize(k) for k in rule.keywords})))
            for rule in rules
        )

        logger.info(
            "RISK_DETECTOR_INITIALIZED",
            extra={
                "rules": len(self._rules),
                "keywords": sum(len(k) for _, k in self._rules),
                "thresholds": list(self.config.thresholds),
            }
        )

    def analyze(self, text: str) -> RiskAnalysisResult:
        """Analyze one message.

        Args:
            text: Original message text (never stored or logged)

        Returns:
            RiskAnalysisResult with level, score, signals, urgency and
            recommended action
        """
        normalized = self._normalizer.normalize(text)
        if not normalized.strip():
            return _empty_result()

        signals = [
            signal
            for signal in (self._apply_rule(rule, keywords, normalized)
                           for rule, keywords in self._rules)
            if signal is not None
        ]

        total = sum(self.config.weights[s.type] for s in signals)
        score = max(0, min(100, total))
        level = self.config.level_for(score)
        urgency = determine_urgency(signals, level)
        action = determine_action(level, urgency)
        needs_review = (
            level.rank >= RiskLevel.HIGH.rank
            or urgency.rank >= UrgencyLevel.URGENT.rank
        )

        result = RiskAnalysisResult(
            level=level,
            score=score,
            signals=tuple(signals),
            urgency=urgency,
            recommended_action=action,
            needs_human_review=needs_review,
        )

        if signals:
            log = logger.critical if urgency is UrgencyLevel.EMERGENCY else logger.warning
            log(
                "RISK_SIGNALS_DETECTED",
                extra={
                    "level": level.value,
                    "score": score,
                    "urgency": urgency.value,
                    "signal_types": sorted(s.type.value for s in signals),
                }
            )

        return result

    def analyze_history(self, messages: Iterable[str]) -> RiskHistoryResult:
        """Recency-weighted risk over a conversation, oldest message first.

        The i-th message (0-based) has weight i + 1. Trend compares the
        latest score against the mean of the two before it.
        """
        analyses = [self.analyze(m) for m in messages]
        if not analyses:
            return RiskHistoryResult(cumulative_score=0, trend=RiskTrend.STABLE)

        weighted = sum(a.score * (i + 1) for i, a in enumerate(analyses))
        total_weight = len(analyses) * (len(analyses) + 1) // 2
        cumulative = round(weighted / total_weight)

        trend = RiskTrend.STABLE
        if len(analyses) >= 3:
            previous = (analyses[-3].score + analyses[-2].score) / 2
            latest = analyses[-1].score
            if latest > previous + TREND_DELTA:
                trend = RiskTrend.WORSENING
            elif latest < previous - TREND_DELTA:
                trend = RiskTrend.IMPROVING

        alerts: List[str] = []
        if cumulative >= CUMULATIVE_ALERT_SCORE:
            alerts.append("Risco cumulativo alto detectado")
        if trend is RiskTrend.WORSENING:
            alerts.append("Sinais de deterioração detectados")
        if any(a.urgency is UrgencyLevel.EMERGENCY for a in analyses):
            alerts.append("Sinais críticos detectados em mensagens recentes")

        return RiskHistoryResult(
            cumulative_score=cumulative,
            trend=trend,
            alerts=tuple(alerts),
            message_count=len(analyses),
        )

    def _apply_rule(
        self,
        rule: RiskRule,
        keywords: Tuple[str, ...],
        normalized: str,
    ) -> Optional[RiskSignal]:
        hits = [k for k in keywords if k in normalized]
        if len(hits) < rule.min_hits:
            return None
        noun = "menção" if len(hits) == 1 else "menções"
        return RiskSignal(
            type=rule.type,
            indicator=rule.indicator,
            confidence=rule.confidence,
            context=f"Detectadas {len(hits)} {noun}",
        )


def determine_urgency(signals: Sequence[RiskSignal], level: RiskLevel) -> UrgencyLevel:
    """Urgency from signal types first, then from the level."""
    types = {s.type for s in signals}
    if types & EMERGENCY_SIGNALS:
        return UrgencyLevel.EMERGENCY

    from_level = _LEVEL_URGENCY.get(level, UrgencyLevel.ROUTINE)
    if types & URGENT_SIGNALS and from_level.rank < UrgencyLevel.URGENT.rank:
        return UrgencyLevel.URGENT
    return from_level


def determine_action(level: RiskLevel, urgency: UrgencyLevel) -> RecommendedAction:
    if urgency is UrgencyLevel.EMERGENCY:
        return RecommendedAction.EMERGENCY_CONTACT
    if urgency is UrgencyLevel.URGENT:
        return RecommendedAction.ESCALATE_TO_MODERATOR
    if level is RiskLevel.HIGH:
        return RecommendedAction.FLAG_FOR_REVIEW
    if level is RiskLevel.MEDIUM:
        return RecommendedAction.MONITOR
    return RecommendedAction.NONE


def compose_safety_response(result: RiskAnalysisResult) -> SafetyResponse:
    """User-facing text for a risk result.

    Only Emergency blocks the conversation; the returned message is empty
    when nothing needs to be said.
    """
    resources = tuple(f"{name}: {phone}" for name, phone in EMERGENCY_RESOURCES)

    if result.urgency is UrgencyLevel.EMERGENCY:
        return SafetyResponse(
            message=EMERGENCY_MESSAGE,
            resources=resources,
            blocks_interaction=True,
        )
    if result.urgency is UrgencyLevel.URGENT:
        return SafetyResponse(message=URGENT_MESSAGE, resources=resources)
    if result.level is RiskLevel.HIGH:
        return SafetyResponse(message=HIGH_RISK_MESSAGE, resources=resources)
    return SafetyResponse(message="", resources=resources)


def requires_immediate_intervention(result: RiskAnalysisResult) -> bool:
    return (
        result.urgency is UrgencyLevel.EMERGENCY
        or result.recommended_action is RecommendedAction.EMERGENCY_CONTACT
        or bool(result.signal_types & EMERGENCY_SIGNALS)
    )


def build_moderator_report(
    result: RiskAnalysisResult,
    context: Optional[SecurityContext] = None,
    now: Optional[datetime] = None,
) -> str:
    """Plain-text risk report for the moderation queue.

    Contains no message text. The user is identified by hashed id only.
    """
    generated_at = (now or datetime.now(timezone.utc)).isoformat()
    lines = [
        "=== RELATÓRIO DE RISCO ===",
        f"Data: {generated_at}",
        f"Nível: {result.level.value} (Score: {result.score}/100)",
        f"Urgência: {result.urgency.value}",
        f"Ação Recomendada: {result.recommended_action.value}",
        f"Revisão Humana: {'SIM' if result.needs_human_review else 'NÃO'}",
        "",
        "Sinais Detectados:",
    ]
    if result.signals:
        lines.extend(
            f"- {s.type.value}: {s.indicator} (Confiança: {round(s.confidence * 100)}%)"
            for s in result.signals
        )
    else:
        lines.append("- nenhum")

    if context is not None:
        lines.extend([
            "",
            "Contexto:",
            f"- Usuária: {hash_pii(context.user_id)}",
            f"- Endpoint: {context.endpoint}",
        ])

    lines.extend(["", "========================="])
    return "\n".join(lines)


def _empty_result() -> RiskAnalysisResult:
    return RiskAnalysisResult(
        level=RiskLevel.NONE,
        score=0,
        signals=(),
        urgency=UrgencyLevel.ROUTINE,
        recommended_action=RecommendedAction.NONE,
        needs_human_review=False,
    )
