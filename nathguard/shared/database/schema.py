"""DDL for the tables owned by the security layer.

rate_limits      one row per (user_id, endpoint) sliding window
encryption_keys  wrapped per-user data keys, at most one active per user
audit_logs       append-only, PII-free audit trail
"""
import logging

from .connection import ConnectionManager

logger = logging.getLogger(__name__)


RATE_LIMITS_DDL = """
CREATE TABLE IF NOT EXISTS rate_limits (
    user_id        TEXT NOT NULL,
    endpoint       TEXT NOT NULL,
    requests       DOUBLE PRECISION[] NOT NULL DEFAULT '{}',
    blocked_until  DOUBLE PRECISION,
    version        BIGINT NOT NULL DEFAULT 1,
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, endpoint)
);
"""

ENCRYPTION_KEYS_DDL = """
CREATE TABLE IF NOT EXISTS encryption_keys (
    key_id         TEXT PRIMARY KEY,
    user_id        TEXT NOT NULL,
    encrypted_key  TEXT NOT NULL,
    algorithm      TEXT NOT NULL,
    status         TEXT NOT NULL CHECK (status IN ('active', 'deprecated', 'revoked')),
    created_at     TIMESTAMPTZ NOT NULL,
    rotated_at     TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS encryption_keys_one_active
    ON encryption_keys (user_id) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS encryption_keys_user ON encryption_keys (user_id);
"""

AUDIT_LOGS_DDL = """
CREATE TABLE IF NOT EXISTS audit_logs (
    id             TEXT PRIMARY KEY,
    timestamp      TIMESTAMPTZ NOT NULL,
    user_id        TEXT NOT NULL,
    action_type    TEXT NOT NULL,
    endpoint       TEXT NOT NULL,
    metadata       JSONB NOT NULL DEFAULT '{}',
    ip_address     TEXT,
    user_agent     TEXT,
    success        BOOLEAN NOT NULL,
    error_message  TEXT,
    latency_ms     DOUBLE PRECISION,
    flags          TEXT[] NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS audit_logs_user_time ON audit_logs (user_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS audit_logs_time ON audit_logs (timestamp);
"""

ALL_DDL = (RATE_LIMITS_DDL, ENCRYPTION_KEYS_DDL, AUDIT_LOGS_DDL)


def ensure_schema(connection_manager: ConnectionManager) -> None:
    """Create the security tables if they do not exist."""
    with connection_manager.get_connection() as conn:
        with conn.cursor() as cur:
            for ddl in ALL_DDL:
                cur.execute(ddl)
        conn.commit()

    logger.info("SCHEMA_ENSURED", extra={"tables": 3})
