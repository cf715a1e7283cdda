"""Audit repository - append-only storage for audit entries.

PostgreSQL keeps entries in the audit_logs table; batches are inserted in
one transaction. Inserts are idempotent on the entry id so a batch that is
retried after a timeout does not duplicate rows.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from nathguard.shared.database import BaseRepository, ConnectionManager
from nathguard.shared.models import AuditActionType, AuditFlag, AuditLogEntry

logger = logging.getLogger(__name__)


class AuditRepository(ABC):
    """Storage contract used by AuditLogger."""

    @abstractmethod
    def insert_batch(self, entries: Sequence[AuditLogEntry]) -> int:
        """Store entries atomically. Returns the number of new rows."""
        pass

    @abstractmethod
    def query(
        self,
        user_id: str,
        action_type: Optional[AuditActionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> List[AuditLogEntry]:
        """Entries for a user, newest first."""
        pass

    @abstractmethod
    def delete_before(self, cutoff: datetime) -> int:
        pass

    def health_check(self) -> bool:
        return True


class InMemoryAuditRepository(AuditRepository):
    """Process-local audit storage for development and tests."""

    def __init__(self):
        self._entries: Dict[str, AuditLogEntry] = {}
        self._lock = threading.Lock()

    def insert_batch(self, entries: Sequence[AuditLogEntry]) -> int:
        with self._lock:
            new = [e for e in entries if e.id not in self._entries]
            for entry in new:
                self._entries[entry.id] = entry
            return len(new)

    def query(
        self,
        user_id: str,
        action_type: Optional[AuditActionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> List[AuditLogEntry]:
        with self._lock:
            results = [e for e in self._entries.values() if e.user_id == user_id]

        if action_type:
            results = [e for e in results if e.action_type == action_type]
        if start:
            results = [e for e in results if e.timestamp >= start]
        if end:
            results = [e for e in results if e.timestamp <= end]

        results = sorted(results, key=lambda e: e.timestamp, reverse=True)
        return results if limit is None else results[:limit]

    def delete_before(self, cutoff: datetime) -> int:
        with self._lock:
            old = [k for k, e in self._entries.items() if e.timestamp < cutoff]
            for key in old:
                del self._entries[key]
            return len(old)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PostgresAuditRepository(BaseRepository[AuditLogEntry], AuditRepository):
    """audit_logs table."""

    columns = (
        "id",
        "timestamp",
        "user_id",
        "action_type",
        "endpoint",
        "metadata",
        "ip_address",
        "user_agent",
        "success",
        "error_message",
        "latency_ms",
        "flags",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "audit_logs", id_column="id")

    def _row_to_entity(self, row: tuple) -> AuditLogEntry:
        metadata = row[5]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return AuditLogEntry(
            id=row[0],
            timestamp=row[1],
            user_id=row[2],
            action_type=AuditActionType(row[3]),
            endpoint=row[4],
            metadata=metadata or {},
            ip_address=row[6],
            user_agent=row[7],
            success=row[8],
            error_message=row[9],
            latency_ms=row[10],
            flags=tuple(AuditFlag(f) for f in (row[11] or ())),
        )

    def _entity_to_params(self, entity: AuditLogEntry) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "timestamp": entity.timestamp,
            "user_id": entity.user_id,
            "action_type": entity.action_type.value,
            "endpoint": entity.endpoint,
            "metadata": json.dumps(entity.metadata),
            "ip_address": entity.ip_address,
            "user_agent": entity.user_agent,
            "success": entity.success,
            "error_message": entity.error_message,
            "latency_ms": entity.latency_ms,
            "flags": [f.value for f in entity.flags],
        }

    def insert_batch(self, entries: Sequence[AuditLogEntry]) -> int:
        if not entries:
            return 0

        query = (
            f"INSERT INTO {self.table_name} ({self._select_list}) "
            f"VALUES ({', '.join(['%s'] * len(self.columns))}) "
            "ON CONFLICT (id) DO NOTHING"
        )
        rows = []
        for entry in entries:
            params = self._entity_to_params(entry)
            rows.append([params[c] for c in self.columns])

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.executemany(query, rows)
                conn.commit()

        logger.debug("AUDIT_BATCH_STORED", extra={"entries": len(rows)})
        return len(rows)

    def query(
        self,
        user_id: str,
        action_type: Optional[AuditActionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = 100,
    ) -> List[AuditLogEntry]:
        where = "user_id = %s"
        params: List[Any] = [user_id]

        if action_type:
            where += " AND action_type = %s"
            params.append(action_type.value)
        if start:
            where += " AND timestamp >= %s"
            params.append(start)
        if end:
            where += " AND timestamp <= %s"
            params.append(end)

        return self.find_where(where, tuple(params), order_by="timestamp DESC", limit=limit)

    def delete_before(self, cutoff: datetime) -> int:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.table_name} WHERE timestamp < %s",
                    (cutoff,)
                )
                conn.commit()
                return cur.rowcount

    def health_check(self) -> bool:
        return bool(self.connection_manager.health_check().get("healthy", False))
