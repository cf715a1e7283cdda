"""Security gateway - the single entry point of the security layer.

Composes the PII redactor, content policy, risk detector, quota guard,
key vault and audit logger behind the contracts the chat service calls:

    check_quota      -> RateLimitResult
    screen_message   -> ScreeningResult (pii, content, risk)
    record_audit     -> None, never raises
    protect/reveal   -> per-user encryption at rest
    process_message  -> the whole inbound pipeline as one MessageDecision

Infrastructure failures never block a conversation: every component fails
open with a warning, and process_message itself fails open with a
SECURITY_ALERT audit entry.
"""
import base64
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Sequence

from nathguard.shared.database import ConnectionManager, ensure_schema
from nathguard.shared.models import (
    AuditActionType,
    AuditFlag,
    DecryptionResult,
    EncryptedPayload,
    RateLimitResult,
    RiskLevel,
    SafetyResponse,
    ScreeningResult,
    SecurityContext,
    UrgencyLevel,
)
from nathguard.shared.utils import configure_pii_salt, hash_pii, shutdown_executor
from nathguard.services.audit_service import (
    AuditLogger,
    InMemoryAuditRepository,
    PostgresAuditRepository,
)
from nathguard.services.pii_service import PIIRedactor
from nathguard.services.policy_service import ContentPolicyEngine
from nathguard.services.quota_service import (
    InMemoryRateLimitStore,
    PostgresRateLimitStore,
    QuotaGuard,
    TieredRateLimitStore,
    retry_after_message,
)
from nathguard.services.safety_service import (
    RiskDetector,
    compose_safety_response,
    requires_immediate_intervention,
)
from nathguard.services.vault_service import (
    InMemoryKeyRepository,
    KeyVault,
    KmsMasterKey,
    LocalMasterKey,
    MasterKeyProvider,
    PostgresKeyRepository,
)
from .health import HealthChecker, SecurityHealthReport
from .scheduler import MaintenanceScheduler
from .settings import GatewaySettings

logger = logging.getLogger(__name__)

CONTENT_BLOCKED_MESSAGE = (
    "Sua mensagem não foi enviada porque não segue as regras da comunidade."
)

DEFAULT_CONVERSATION_ID = "unknown"


class DecisionReason(Enum):
    RATE_LIMITED = "rate_limited"
    INTERVENTION_REQUIRED = "intervention_required"
    CONTENT_BLOCKED = "content_blocked"
    SECURITY_CHECK_FAILED = "security_check_failed"


@dataclass(frozen=True)
class MessageDecision:
    """Outcome of process_message.

    user_message is the only text meant for the user: a retry-after
    notice, coaching text, or crisis resources. sanitized_text is what may
    be forwarded to the AI service and stored.
    """
    allowed: bool
    reason: Optional[DecisionReason] = None
    user_message: Optional[str] = None
    sanitized_text: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None
    screening: Optional[ScreeningResult] = None
    safety: Optional[SafetyResponse] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "user_message": self.user_message,
            "sanitized_text": self.sanitized_text,
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
            "screening": self.screening.to_dict() if self.screening else None,
            "safety": self.safety.to_dict() if self.safety else None,
        }


def _context_kwargs(context: SecurityContext) -> Dict[str, Optional[str]]:
    return {"ip_address": context.ip_address, "user_agent": context.user_agent}


def _needs_risk_audit(screening: ScreeningResult) -> bool:
    risk = screening.risk
    return (
        risk.level.rank >= RiskLevel.HIGH.rank
        or risk.urgency.rank >= UrgencyLevel.URGENT.rank
    )


class SecurityGateway:
    """Security contracts over explicitly injected components."""

    def __init__(
        self,
        redactor: Optional[PIIRedactor] = None,
        policy: Optional[ContentPolicyEngine] = None,
        risk: Optional[RiskDetector] = None,
        quota: Optional[QuotaGuard] = None,
        vault: Optional[KeyVault] = None,
        audit: Optional[AuditLogger] = None,
        connection_manager: Optional[ConnectionManager] = None,
        ai_api_key: Optional[str] = None,
        maintenance_interval_seconds: float = 24 * 60 * 60,
    ):
        self.redactor = redactor if redactor is not None else PIIRedactor()
        self.policy = policy if policy is not None else ContentPolicyEngine()
        self.risk = risk if risk is not None else RiskDetector()
        self.quota = quota if quota is not None else QuotaGuard()
        self.audit = audit if audit is not None else AuditLogger(redactor=self.redactor)
        if vault is None:
            vault = KeyVault(on_rotate=self.audit.log_key_rotation)
        self.vault = vault
        self.connection_manager = connection_manager

        self.health = HealthChecker(
            quota=self.quota,
            vault=self.vault,
            audit=self.audit,
            connection_manager=connection_manager,
            ai_api_key=ai_api_key,
        )
        self.scheduler = MaintenanceScheduler(
            jobs=(
                ("cleanup_old_rate_limit_records", self.cleanup_old_rate_limit_records),
                ("cleanup_old_audit_logs", self.cleanup_old_audit_logs),
                ("rotate_keys_needing_rotation", self.rotate_keys_needing_rotation),
            ),
            interval_seconds=maintenance_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def check_quota(self, context: SecurityContext) -> RateLimitResult:
        """Count the request against the user's quota. Denials are audited."""
        result = self.quota.check(context.user_id, context.endpoint)
        if not result.allowed:
            self.audit.log_rate_limit_hit(
                context.user_id,
                context.endpoint,
                {"retry_after_seconds": result.retry_after_seconds},
                **_context_kwargs(context),
            )
        return result

    def screen_message(
        self,
        text: str,
        history: Optional[Sequence[str]] = None,
    ) -> ScreeningResult:
        """Run PII, content policy and risk detection on the original text."""
        start = time.perf_counter()
        pii = self.redactor.detect(text)
        content = self.policy.soften_for_medical_context(
            self.policy.validate(text, history), text
        )
        risk = self.risk.analyze(text)
        return ScreeningResult(
            pii=pii,
            content=content,
            risk=risk,
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    def record_audit(
        self,
        action_type: AuditActionType,
        context: SecurityContext,
        metadata: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        latency_ms: Optional[float] = None,
        flags: Iterable[AuditFlag] = (),
    ) -> None:
        self.audit.log(
            action_type,
            context.user_id,
            context.endpoint,
            metadata,
            success=success,
            error_message=error_message,
            latency_ms=latency_ms,
            flags=flags,
            **_context_kwargs(context),
        )

    def protect(self, user_id: str, plaintext: str) -> EncryptedPayload:
        """Encrypt a value for storage.

        A pass-through payload from an enabled vault means encryption
        failed; it is audited with the ENCRYPTION_FAILED flag.

        Raises:
            KeyRevokedError: If the user's keys were revoked
        """
        payload = self.vault.encrypt(user_id, plaintext)
        if self.vault.enabled and payload.is_passthrough:
            self.audit.log(
                AuditActionType.SECURITY_ALERT,
                user_id,
                "vault:encrypt",
                {"stored_unencrypted": True},
                success=False,
                flags=[AuditFlag.ENCRYPTION_FAILED],
            )
        return payload

    def reveal(self, user_id: str, payload: EncryptedPayload) -> DecryptionResult:
        """Decrypt a stored value. Every attempt is audited as data access."""
        result = self.vault.decrypt_payload(user_id, payload)
        self.audit.log(
            AuditActionType.DATA_ACCESS,
            user_id,
            "vault:decrypt",
            {"key_id": payload.key_id},
            success=result.success,
            error_message=result.error,
        )
        return result

    def process_message(
        self,
        context: SecurityContext,
        text: str,
        history: Optional[Sequence[str]] = None,
        conversation_id: Optional[str] = None,
    ) -> MessageDecision:
        """Full inbound pipeline: quota, screening, intervention, policy.

        Crisis handling takes precedence over content policy.
        """
        start = time.perf_counter()
        ctx = _context_kwargs(context)
        try:
            rate = self.check_quota(context)
            if not rate.allowed:
                return MessageDecision(
                    allowed=False,
                    reason=DecisionReason.RATE_LIMITED,
                    user_message=retry_after_message(rate.retry_after_seconds or 0),
                    rate_limit=rate,
                )

            screening = self.screen_message(text, history)
            risk = screening.risk
            safety = compose_safety_response(risk)
            metadata: Dict[str, Any] = {}

            if history:
                trajectory = self.risk.analyze_history([*history, text])
                metadata["risk_trend"] = trajectory.trend.value
                metadata["cumulative_risk_score"] = trajectory.cumulative_score
                if trajectory.alerts:
                    logger.warning(
                        "RISK_HISTORY_ALERT",
                        extra={
                            "user_hash": hash_pii(context.user_id),
                            "cumulative_score": trajectory.cumulative_score,
                            "trend": trajectory.trend.value,
                        }
                    )

            if _needs_risk_audit(screening):
                self.audit.log_risk_detected(
                    context.user_id,
                    risk.level.value,
                    risk.score,
                    {
                        "urgency": risk.urgency.value,
                        "signals": len(risk.signals),
                        "recommended_action": risk.recommended_action.value,
                    },
                    **ctx,
                )

            if requires_immediate_intervention(risk):
                logger.critical(
                    "IMMEDIATE_INTERVENTION_REQUIRED",
                    extra={
                        "user_hash": hash_pii(context.user_id),
                        "risk_score": risk.score,
                        "signal_types": sorted(t.value for t in risk.signal_types),
                    }
                )
                decision = MessageDecision(
                    allowed=False,
                    reason=DecisionReason.INTERVENTION_REQUIRED,
                    user_message=safety.message,
                    rate_limit=rate,
                    screening=screening,
                    safety=safety,
                )
            elif not screening.content.allowed:
                blocking = [v for v in screening.content.violations if v.severity.blocks]
                self.audit.log_content_blocked(
                    context.user_id,
                    ", ".join(v.description for v in blocking),
                    {"violations": [v.type.value for v in blocking]},
                    **ctx,
                )
                decision = MessageDecision(
                    allowed=False,
                    reason=DecisionReason.CONTENT_BLOCKED,
                    user_message=" ".join(
                        (CONTENT_BLOCKED_MESSAGE,) + screening.content.suggestions
                    ),
                    rate_limit=rate,
                    screening=screening,
                )
            else:
                decision = MessageDecision(
                    allowed=True,
                    user_message=safety.message or None,
                    sanitized_text=self.policy.sanitize_message(screening.pii.sanitized_text),
                    rate_limit=rate,
                    screening=screening,
                    safety=safety if safety.message else None,
                )

            self.audit.log_chat_message(
                context.user_id,
                conversation_id or DEFAULT_CONVERSATION_ID,
                len(text),
                risk_score=risk.score,
                pii_detected=screening.pii.has_pii,
                latency_ms=(time.perf_counter() - start) * 1000,
                metadata={
                    **metadata,
                    "allowed": decision.allowed,
                    "reason": decision.reason.value if decision.reason else None,
                },
                **ctx,
            )
            return decision

        except Exception as e:
            logger.error(
                "SECURITY_PIPELINE_FAILED",
                extra={
                    "user_hash": hash_pii(context.user_id),
                    "endpoint": context.endpoint,
                    "error_type": type(e).__name__,
                    "action": "ALLOWING_REQUEST",
                }
            )
            self.audit.log(
                AuditActionType.SECURITY_ALERT,
                context.user_id,
                context.endpoint,
                {"error_type": type(e).__name__},
                success=False,
                error_message=str(e),
                flags=[AuditFlag.SUSPICIOUS_ACTIVITY],
                **ctx,
            )
            return MessageDecision(allowed=True, reason=DecisionReason.SECURITY_CHECK_FAILED)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_old_rate_limit_records(self) -> int:
        return self.quota.cleanup()

    def cleanup_old_audit_logs(self) -> int:
        return self.audit.cleanup_old_logs()

    def rotate_keys_needing_rotation(self) -> int:
        return self.vault.rotate_keys_needing_rotation()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def health_check(self) -> SecurityHealthReport:
        return self.health.run()

    def is_ready(self) -> bool:
        if self.connection_manager is None:
            return True
        return bool(self.connection_manager.health_check().get("healthy"))

    def start(self) -> None:
        """Start the audit flusher and the maintenance scheduler."""
        self.audit.start()
        self.scheduler.start()
        logger.info("SECURITY_GATEWAY_STARTED", extra={"encryption_enabled": self.vault.enabled})

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        """Drain-then-stop every background task and release storage."""
        self.scheduler.stop(timeout)
        self.audit.stop(timeout)
        self.health.close()
        if self.connection_manager is not None:
            self.connection_manager.close()
        shutdown_executor(wait=True)
        logger.info("SECURITY_GATEWAY_STOPPED")


def _build_master_key(settings: GatewaySettings) -> Optional[MasterKeyProvider]:
    if settings.kms_key_id:
        return KmsMasterKey(settings.kms_key_id, region=settings.aws_region)
    if settings.master_key:
        return LocalMasterKey(base64.b64decode(settings.master_key, validate=True))
    return None


def create_gateway(settings: Optional[GatewaySettings] = None) -> SecurityGateway:
    """Build a fully wired gateway. The single initialisation point.

    With a database configured, every store is PostgreSQL-backed and the
    schema is created if missing; otherwise in-memory stores are used.

    Raises:
        ValueError: If the PII salt or the master key is invalid
    """
    settings = settings or GatewaySettings.from_env()
    configure_pii_salt(settings.pii_salt)

    redactor = PIIRedactor()
    connection_manager = None

    if settings.database is not None:
        connection_manager = ConnectionManager(settings.database)
        connection_manager.initialize()
        ensure_schema(connection_manager)
        quota_store = TieredRateLimitStore(
            PostgresRateLimitStore(connection_manager),
            InMemoryRateLimitStore(),
        )
        key_repository = PostgresKeyRepository(connection_manager)
        audit_repository = PostgresAuditRepository(connection_manager)
    else:
        logger.warning(
            "GATEWAY_IN_MEMORY_STORES",
            extra={"app_env": settings.app_env}
        )
        quota_store = InMemoryRateLimitStore()
        key_repository = InMemoryKeyRepository()
        audit_repository = InMemoryAuditRepository()

    audit = AuditLogger(repository=audit_repository, redactor=redactor, config=settings.audit)
    vault = KeyVault(
        repository=key_repository,
        master_key=_build_master_key(settings),
        config=settings.vault,
        on_rotate=audit.log_key_rotation,
    )

    gateway = SecurityGateway(
        redactor=redactor,
        quota=QuotaGuard(store=quota_store),
        vault=vault,
        audit=audit,
        connection_manager=connection_manager,
        ai_api_key=settings.openai_api_key,
        maintenance_interval_seconds=settings.maintenance_interval_seconds,
    )

    logger.info(
        "SECURITY_GATEWAY_CREATED",
        extra={
            "app_env": settings.app_env,
            "database": settings.database is not None,
            "encryption_enabled": vault.enabled,
        }
    )
    return gateway
