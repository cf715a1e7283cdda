"""Safety Service - crisis and mental-health risk detection.

Runs on every inbound message alongside the content policy. An Emergency
result replaces the conversation with crisis resources.
"""
from .config import RiskRule, RiskScoringConfig
from .risk_detector import (
    RiskDetector,
    build_moderator_report,
    compose_safety_response,
    requires_immediate_intervention,
)
from .text_normalizer import TextNormalizer

__all__ = [
    "RiskDetector",
    "RiskRule",
    "RiskScoringConfig",
    "TextNormalizer",
    "build_moderator_report",
    "compose_safety_response",
    "requires_immediate_intervention",
]
