"""Policy Service - community rules for the maternal support chat."""
from .config import PatternRule, PolicyConfig
from .engine import ContentPolicyEngine, build_result

__all__ = ["ContentPolicyEngine", "PatternRule", "PolicyConfig", "build_result"]
