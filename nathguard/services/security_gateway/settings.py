"""Gateway settings and start-up environment validation.

Settings are read once at start-up. validate_environment() never raises;
validate_or_raise() is the start-up guard used by the HTTP entry point.
"""
import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from nathguard.shared.database import DatabaseConfig
from nathguard.shared.utils.pii import MIN_SALT_LENGTH
from nathguard.services.audit_service import AuditConfig
from nathguard.services.vault_service import VaultConfig
from nathguard.services.vault_service.config import KEY_BYTES

logger = logging.getLogger(__name__)

REQUIRED_ENV_VARS = ("PII_HASH_SALT",)

OPTIONAL_ENV_VARS = (
    "DB_HOST",
    "OPENAI_API_KEY",
    "MASTER_KEY",
    "KMS_KEY_ID",
    "LOG_LEVEL",
    "ENABLE_ENCRYPTION",
)

PRODUCTION = "production"


@dataclass(frozen=True)
class ValidationIssue:
    variable: str
    message: str


@dataclass(frozen=True)
class EnvironmentValidationResult:
    valid: bool
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = ()
    missing_vars: Tuple[str, ...] = ()


def _format_error(name: str, value: str) -> Optional[str]:
    if name == "PII_HASH_SALT" and len(value) < MIN_SALT_LENGTH:
        return f"Must be at least {MIN_SALT_LENGTH} characters"
    if name == "OPENAI_API_KEY" and not value.startswith("sk-"):
        return 'Must start with "sk-"'
    if name == "MASTER_KEY":
        try:
            decoded = base64.b64decode(value, validate=True)
        except binascii.Error:
            return "Must be base64"
        if len(decoded) != KEY_BYTES:
            return f"Must decode to {KEY_BYTES} bytes"
    if name == "DB_PORT" and not value.isdigit():
        return "Must be an integer"
    return None


def validate_environment(environ: Optional[Mapping[str, str]] = None) -> EnvironmentValidationResult:
    """Check required variables, value formats and production settings.

    Args:
        environ: Variables to validate (defaults to os.environ)
    """
    env = os.environ if environ is None else environ
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []
    missing: List[str] = []

    for name in REQUIRED_ENV_VARS:
        if not env.get(name):
            missing.append(name)
            errors.append(ValidationIssue(name, "Required variable is not set"))

    for name in OPTIONAL_ENV_VARS:
        if not env.get(name):
            warnings.append(ValidationIssue(name, f"Consider setting {name} for full functionality"))

    for name in REQUIRED_ENV_VARS + OPTIONAL_ENV_VARS + ("DB_PORT",):
        value = env.get(name)
        if value:
            problem = _format_error(name, value)
            if problem:
                errors.append(ValidationIssue(name, problem))

    if env.get("APP_ENV", "development") == PRODUCTION:
        if env.get("ENABLE_ENCRYPTION", "true").lower() == "false":
            warnings.append(ValidationIssue(
                "ENABLE_ENCRYPTION", "Enable encryption in production for LGPD compliance"
            ))
        if not env.get("MASTER_KEY") and not env.get("KMS_KEY_ID"):
            warnings.append(ValidationIssue(
                "MASTER_KEY", "No master key configured; messages are stored unencrypted"
            ))
        if env.get("LOG_LEVEL", "").lower() == "debug":
            warnings.append(ValidationIssue("LOG_LEVEL", 'Do not use "debug" in production'))
        if env.get("DB_SSL_MODE", "").lower() == "disable":
            warnings.append(ValidationIssue("DB_SSL_MODE", "Use TLS for database connections in production"))

    return EnvironmentValidationResult(
        valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        missing_vars=tuple(missing),
    )


def generate_environment_report(result: Optional[EnvironmentValidationResult] = None) -> str:
    """Plain-text rendering of a validation result. Never contains values."""
    result = result or validate_environment()
    lines = [
        "=== NATHGUARD ENVIRONMENT REPORT ===",
        "",
        f"Status: {'VALID' if result.valid else 'INVALID'}",
    ]
    if result.errors:
        lines.extend(["", "ERRORS:"])
        lines.extend(f"  x {e.variable}: {e.message}" for e in result.errors)
    if result.warnings:
        lines.extend(["", "WARNINGS:"])
        lines.extend(f"  ! {w.variable}: {w.message}" for w in result.warnings)
    if result.missing_vars:
        lines.extend(["", "MISSING VARIABLES:"])
        lines.extend(f"  - {name}" for name in result.missing_vars)
    lines.extend(["", "===================================="])
    return "\n".join(lines)


def validate_or_raise(environ: Optional[Mapping[str, str]] = None) -> EnvironmentValidationResult:
    """Validate the environment, raising RuntimeError when it is invalid."""
    result = validate_environment(environ)
    if not result.valid:
        logger.error(
            "ENVIRONMENT_VALIDATION_FAILED",
            extra={
                "errors": [e.variable for e in result.errors],
                "missing_vars": list(result.missing_vars),
            }
        )
        raise RuntimeError(
            "Environment validation failed:\n" + generate_environment_report(result)
        )
    if result.warnings:
        logger.warning(
            "ENVIRONMENT_VALIDATION_WARNINGS",
            extra={"warnings": [w.variable for w in result.warnings]}
        )
    return result


@dataclass(frozen=True)
class GatewaySettings:
    """Everything create_gateway() needs, resolved from the environment."""
    pii_salt: str = field(repr=False)
    database: Optional[DatabaseConfig] = None
    vault: VaultConfig = field(default_factory=VaultConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    master_key: Optional[str] = field(default=None, repr=False)
    kms_key_id: Optional[str] = None
    aws_region: str = "us-east-1"
    openai_api_key: Optional[str] = field(default=None, repr=False)
    log_level: str = "INFO"
    app_env: str = "development"
    maintenance_interval_seconds: float = 24 * 60 * 60

    @property
    def is_production(self) -> bool:
        return self.app_env == PRODUCTION

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        """Create settings from environment variables.

        Environment variables:
            PII_HASH_SALT: Salt for hashed identifiers (required)
            DB_SECRET_ARN: Secrets Manager ARN with database credentials
            DB_HOST: Database host; in-memory stores when neither is set
            MASTER_KEY: Base64 AES-256 master key
            KMS_KEY_ID: KMS key wrapping user keys, preferred over MASTER_KEY
            AWS_REGION: Region for KMS and Secrets Manager (default us-east-1)
            OPENAI_API_KEY: Credential of the downstream AI service
            LOG_LEVEL: Logging level (default INFO)
            APP_ENV: development or production (default development)
        """
        region = os.getenv("AWS_REGION", "us-east-1")

        database = None
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            database = DatabaseConfig.from_secrets_manager(secret_arn, region=region)
        elif os.getenv("DB_HOST"):
            database = DatabaseConfig.from_env()

        return cls(
            pii_salt=os.getenv("PII_HASH_SALT", ""),
            database=database,
            vault=VaultConfig.from_env(),
            audit=AuditConfig.from_env(),
            master_key=os.getenv("MASTER_KEY") or None,
            kms_key_id=os.getenv("KMS_KEY_ID") or None,
            aws_region=region,
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            app_env=os.getenv("APP_ENV", "development"),
        )
