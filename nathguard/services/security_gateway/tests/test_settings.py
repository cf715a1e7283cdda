"""Tests for gateway settings and environment validation."""
import base64
from unittest.mock import MagicMock, patch

import pytest

from nathguard.services.security_gateway import (
    GatewaySettings,
    generate_environment_report,
    validate_environment,
    validate_or_raise,
)

SALT = "test_salt_that_is_at_least_32_characters_long"
MASTER_KEY = base64.b64encode(b"m" * 32).decode("ascii")


def _issues(items):
    return {issue.variable for issue in items}


class TestValidateEnvironment:

    def test_complete_environment_is_valid(self):
        result = validate_environment({
            "PII_HASH_SALT": SALT,
            "DB_HOST": "db.internal",
            "OPENAI_API_KEY": "sk-abc",
            "MASTER_KEY": MASTER_KEY,
            "KMS_KEY_ID": "alias/nathguard",
            "LOG_LEVEL": "info",
            "ENABLE_ENCRYPTION": "true",
        })

        assert result.valid is True
        assert result.errors == ()
        assert result.warnings == ()

    def test_missing_salt(self):
        result = validate_environment({})

        assert result.valid is False
        assert result.missing_vars == ("PII_HASH_SALT",)
        assert "OPENAI_API_KEY" in _issues(result.warnings)

    @pytest.mark.parametrize("name,value", [
        ("PII_HASH_SALT", "too_short"),
        ("OPENAI_API_KEY", "pk-abc"),
        ("MASTER_KEY", "not base64!"),
        ("MASTER_KEY", base64.b64encode(b"short").decode("ascii")),
        ("DB_PORT", "five"),
    ])
    def test_format_errors(self, name, value):
        env = {"PII_HASH_SALT": SALT, name: value}

        result = validate_environment(env)

        assert result.valid is False
        assert name in _issues(result.errors)

    def test_production_warnings(self):
        result = validate_environment({
            "PII_HASH_SALT": SALT,
            "APP_ENV": "production",
            "ENABLE_ENCRYPTION": "false",
            "LOG_LEVEL": "debug",
            "DB_SSL_MODE": "disable",
        })

        assert result.valid is True
        warned = [w for w in result.warnings if "production" in w.message or "unencrypted" in w.message]
        assert {w.variable for w in warned} == {
            "ENABLE_ENCRYPTION", "MASTER_KEY", "LOG_LEVEL", "DB_SSL_MODE",
        }

    def test_development_skips_production_warnings(self):
        result = validate_environment({"PII_HASH_SALT": SALT, "LOG_LEVEL": "debug"})

        assert all("production" not in w.message for w in result.warnings)


class TestReport:

    def test_report_lists_sections_without_values(self):
        result = validate_environment({"OPENAI_API_KEY": "pk-secret-value"})

        report = generate_environment_report(result)

        assert "Status: INVALID" in report
        assert "ERRORS:" in report
        assert "MISSING VARIABLES:" in report
        assert "  - PII_HASH_SALT" in report
        assert "pk-secret-value" not in report

    def test_validate_or_raise(self):
        with pytest.raises(RuntimeError, match="Environment validation failed"):
            validate_or_raise({})

        assert validate_or_raise({"PII_HASH_SALT": SALT}).valid is True


class TestGatewaySettings:

    def test_from_env_without_database(self, monkeypatch):
        monkeypatch.setenv("PII_HASH_SALT", SALT)
        monkeypatch.setenv("LOG_LEVEL", "warning")
        monkeypatch.setenv("KEY_MAX_AGE_DAYS", "30")
        monkeypatch.delenv("DB_HOST", raising=False)
        monkeypatch.delenv("DB_SECRET_ARN", raising=False)
        monkeypatch.delenv("MASTER_KEY", raising=False)

        settings = GatewaySettings.from_env()

        assert settings.pii_salt == SALT
        assert settings.database is None
        assert settings.master_key is None
        assert settings.log_level == "WARNING"
        assert settings.vault.key_max_age_days == 30
        assert settings.is_production is False

    def test_from_env_with_database_host(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("DB_PORT", "6543")
        monkeypatch.delenv("DB_SECRET_ARN", raising=False)

        settings = GatewaySettings.from_env()

        assert settings.database.host == "db.internal"
        assert settings.database.port == 6543

    def test_from_env_with_secrets_manager(self, monkeypatch):
        monkeypatch.setenv("DB_SECRET_ARN", "arn:aws:secretsmanager:sa-east-1:1:secret:db")
        monkeypatch.setenv("AWS_REGION", "sa-east-1")
        client = MagicMock()
        client.get_secret_value.return_value = {
            "SecretString": '{"host": "rds.internal", "username": "app", "password": "pw"}'
        }

        with patch("boto3.client", return_value=client) as factory:
            settings = GatewaySettings.from_env()

        factory.assert_called_once_with("secretsmanager", region_name="sa-east-1")
        assert settings.database.host == "rds.internal"
        assert settings.database.username == "app"

    def test_secrets_are_not_in_repr(self):
        settings = GatewaySettings(pii_salt=SALT, master_key=MASTER_KEY, openai_api_key="sk-abc")

        assert MASTER_KEY not in repr(settings)
        assert "sk-abc" not in repr(settings)
