"""Security Gateway - composition root of the nathguard security layer.

Wires the PII, policy, safety, quota, vault and audit services together
and exposes them to the chat service as one set of contracts.
"""
from .gateway import (
    DecisionReason,
    MessageDecision,
    SecurityGateway,
    create_gateway,
)
from .handler import create_app
from .health import CheckStatus, HealthChecker, HealthCheckResult, OverallStatus, SecurityHealthReport
from .scheduler import MaintenanceScheduler
from .settings import (
    EnvironmentValidationResult,
    GatewaySettings,
    ValidationIssue,
    generate_environment_report,
    validate_environment,
    validate_or_raise,
)

__all__ = [
    "CheckStatus",
    "DecisionReason",
    "EnvironmentValidationResult",
    "GatewaySettings",
    "HealthCheckResult",
    "HealthChecker",
    "MaintenanceScheduler",
    "MessageDecision",
    "OverallStatus",
    "SecurityGateway",
    "SecurityHealthReport",
    "ValidationIssue",
    "create_app",
    "create_gateway",
    "generate_environment_report",
    "validate_environment",
    "validate_or_raise",
]
