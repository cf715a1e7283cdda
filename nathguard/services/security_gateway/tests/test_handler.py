"""Tests for the security gateway HTTP handler."""
import json
import logging
from unittest.mock import MagicMock

import pytest

from nathguard.shared.utils import configure_pii_salt, hash_text_for_audit, shutdown_executor
from nathguard.services.audit_service import AuditLogger, InMemoryAuditRepository
from nathguard.services.quota_service import QuotaGuard, QuotaPolicy
from nathguard.services.security_gateway import SecurityGateway, create_app
from nathguard.shared.models import AuditActionType
from nathguard.services.vault_service import KeyVault, LocalMasterKey


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture(autouse=True, scope="module")
def shutdown_storage_pool():
    yield
    shutdown_executor(wait=False)


@pytest.fixture
def audit_repo():
    return InMemoryAuditRepository()


@pytest.fixture
def gateway(audit_repo):
    return SecurityGateway(
        quota=QuotaGuard(policies=(
            QuotaPolicy("chat:message", max_requests=1, window_seconds=3600, block_seconds=120),
            QuotaPolicy("api:general", max_requests=200, window_seconds=3600, block_seconds=600),
        )),
        vault=KeyVault(master_key=LocalMasterKey.generate()),
        audit=AuditLogger(repository=audit_repo),
        ai_api_key="sk-test",
    )


@pytest.fixture
def client(gateway):
    app = create_app(gateway)
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


class TestHealthEndpoint:

    def test_degraded_is_still_200(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["service"] == "nathguard"
        assert data["status"] == "degraded"
        assert len(data["checks"]) == 5

    def test_unhealthy_returns_503(self, client, gateway):
        gateway.health.ai_api_key = None

        response = client.get("/health")

        assert response.status_code == 503
        assert json.loads(response.data)["status"] == "unhealthy"


class TestReadyEndpoint:

    def test_ready_without_database(self, client):
        response = client.get("/ready")

        assert response.status_code == 200
        assert json.loads(response.data)["status"] == "ready"

    def test_not_ready_when_database_down(self, client, gateway):
        gateway.connection_manager = MagicMock()
        gateway.connection_manager.health_check.return_value = {"healthy": False}

        response = client.get("/ready")

        assert response.status_code == 503


class TestScreenEndpoint:

    def test_allowed_message(self, client):
        response = client.post("/screen", json={
            "user_id": "user-1",
            "message": "meu email é maria@example.com",
            "conversation_id": "conv-1",
        })

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["allowed"] is True
        assert data["sanitized_text"] == "meu email é [e-mail removido]"
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_emergency_message(self, client):
        response = client.post("/screen", json={
            "user_id": "user-1",
            "message": "não aguento mais, quero desaparecer",
        })

        data = json.loads(response.data)
        assert response.status_code == 200
        assert data["allowed"] is False
        assert data["reason"] == "intervention_required"
        assert data["safety"]["blocks_interaction"] is True
        assert data["safety"]["resources"]

    def test_rate_limited_returns_429(self, client):
        client.post("/screen", json={"user_id": "user-1", "message": "primeira"})

        response = client.post("/screen", json={"user_id": "user-1", "message": "segunda"})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "120"
        assert json.loads(response.data)["reason"] == "rate_limited"

    @pytest.mark.parametrize("body,error", [
        (None, "Request body required"),
        ({"user_id": "user-1"}, "Missing required field: message"),
        ({"user_id": "user-1", "message": "oi", "history": "oi"}, "history must be a list"),
        ({"message": "oi tudo bem"}, "user_id is required"),
    ])
    def test_invalid_requests(self, client, body, error):
        response = client.post("/screen", json=body)

        assert response.status_code == 400
        assert json.loads(response.data)["error"] == error

    def test_passes_request_context(self, client, audit_repo, gateway):
        client.post(
            "/screen",
            json={"user_id": "user-1", "message": "bom dia"},
            headers={"User-Agent": "app/1.0"},
        )
        gateway.audit.flush()

        entry = audit_repo.query("user-1", action_type=AuditActionType.CHAT_MESSAGE)[0]
        assert entry.user_agent == "app/1.0"
        assert entry.ip_address == "127.0.0.1"

    def test_request_log_carries_fingerprint_not_text(self, client, caplog):
        with caplog.at_level(logging.INFO):
            client.post("/screen", json={"user_id": "user-1", "message": "bom dia"})

        record = next(r for r in caplog.records if r.getMessage() == "SCREEN_REQUESTED")
        assert record.message_hash == hash_text_for_audit("bom dia")
        assert record.message_length == 7
        assert "bom dia" not in caplog.text


class TestQuotaEndpoint:

    def test_allowed_then_denied(self, client):
        body = {"user_id": "user-1", "endpoint": "chat:message"}

        first = client.post("/quota/check", json=body)
        second = client.post("/quota/check", json=body)

        assert first.status_code == 200
        assert json.loads(first.data)["remaining"] == 0
        assert second.status_code == 429
        assert json.loads(second.data)["retry_after_seconds"] == 120

    def test_missing_endpoint(self, client):
        response = client.post("/quota/check", json={"user_id": "user-1"})

        assert response.status_code == 400


class TestAuditExportEndpoint:

    def test_json_export_is_audited(self, client, gateway, audit_repo):
        gateway.audit.log_login("user-1", success=True)

        response = client.get("/audit/export/user-1")

        assert response.status_code == 200
        assert response.mimetype == "application/json"
        exported = json.loads(response.data)
        assert [e["action_type"] for e in exported] == ["user_login"]

        gateway.audit.flush()
        assert audit_repo.query("user-1", action_type=AuditActionType.DATA_EXPORT)

    def test_csv_export(self, client, gateway):
        gateway.audit.log_login("user-1", success=False)

        response = client.get("/audit/export/user-1?format=csv")

        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert response.data.decode("utf-8").splitlines()[0] == (
            "timestamp,action_type,endpoint,success,flags"
        )

    def test_unknown_format(self, client):
        response = client.get("/audit/export/user-1?format=xml")

        assert response.status_code == 400
