"""
Dead-letter store.

Holds every work item that exhausted its retries, with its full error
history and last payload, until it is replayed.
"""

import threading
from abc import ABC, abstractmethod

from fhir_rag_ingestion.core.models import DeadLetterRecord
from fhir_rag_ingestion.core.models.work_item import utcnow

from .connection import DatabaseConnectionPool, transient_db_errors


class DeadLetterStore(ABC):
    """Abstract dead-letter store, keyed by (tenant_id, correlation_id)."""

    @abstractmethod
    def save(self, record: DeadLetterRecord) -> None:
        """Store `record`, replacing an earlier dead letter of the same item."""

    @abstractmethod
    def get(self, tenant_id: str, correlation_id: str) -> DeadLetterRecord | None:
        """Dead letter of one item, None if the tenant has none."""

    @abstractmethod
    def list(
        self,
        tenant_id: str,
        batch_id: str | None = None,
        include_replayed: bool = False,
        limit: int | None = None,
    ) -> list[DeadLetterRecord]:
        """Dead letters of a tenant, oldest first."""

    @abstractmethod
    def mark_replayed(self, tenant_id: str, correlation_id: str) -> None:
        """Record that a dead letter was handed back to the pipeline."""


class InMemoryDeadLetterStore(DeadLetterStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], DeadLetterRecord] = {}

    def save(self, record: DeadLetterRecord) -> None:
        with self._lock:
            key = (record.tenant_id, record.correlation_id)
            self._records.pop(key, None)
            self._records[key] = record.model_copy(update={"replayed_at": None})

    def get(self, tenant_id: str, correlation_id: str) -> DeadLetterRecord | None:
        with self._lock:
            return self._records.get((tenant_id, correlation_id))

    def list(
        self,
        tenant_id: str,
        batch_id: str | None = None,
        include_replayed: bool = False,
        limit: int | None = None,
    ) -> list[DeadLetterRecord]:
        with self._lock:
            records = [
                r for (tenant, _), r in self._records.items()
                if tenant == tenant_id
                and (batch_id is None or r.batch_id == batch_id)
                and (include_replayed or r.replayed_at is None)
            ]
        records.sort(key=lambda r: r.dead_lettered_at)
        return records[:limit] if limit is not None else records

    def mark_replayed(self, tenant_id: str, correlation_id: str) -> None:
        with self._lock:
            key = (tenant_id, correlation_id)
            if key in self._records:
                self._records[key] = self._records[key].model_copy(update={"replayed_at": utcnow()})


class PostgresDeadLetterStore(DeadLetterStore):
    """
    Dead letters stored in the dead_letter table as JSONB documents.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def save(self, record: DeadLetterRecord) -> None:
        query = """
            INSERT INTO dead_letter (
                tenant_id, correlation_id, batch_id, failed_stage,
                attempt, record, dead_lettered_at, replayed_at
            )
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, NULL)
            ON CONFLICT (tenant_id, correlation_id) DO UPDATE SET
                failed_stage = EXCLUDED.failed_stage,
                attempt = EXCLUDED.attempt,
                record = EXCLUDED.record,
                dead_lettered_at = EXCLUDED.dead_lettered_at,
                replayed_at = NULL
        """
        with transient_db_errors("dead-letter save"):
            self.pool.execute_command(
                query,
                (
                    record.tenant_id,
                    record.correlation_id,
                    record.batch_id,
                    record.failed_stage.value,
                    record.attempt,
                    record.model_dump_json(),
                    record.dead_lettered_at,
                ),
            )

    def get(self, tenant_id: str, correlation_id: str) -> DeadLetterRecord | None:
        rows = self.pool.execute_query(
            "SELECT record, replayed_at FROM dead_letter WHERE tenant_id = %s AND correlation_id = %s",
            (tenant_id, correlation_id),
        )
        return self._to_record(rows[0]) if rows else None

    def list(
        self,
        tenant_id: str,
        batch_id: str | None = None,
        include_replayed: bool = False,
        limit: int | None = None,
    ) -> list[DeadLetterRecord]:
        query = "SELECT record, replayed_at FROM dead_letter WHERE tenant_id = %s"
        params: list = [tenant_id]
        if batch_id is not None:
            query += " AND batch_id = %s"
            params.append(batch_id)
        if not include_replayed:
            query += " AND replayed_at IS NULL"
        query += " ORDER BY dead_lettered_at"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with transient_db_errors("dead-letter list"):
            rows = self.pool.execute_query(query, tuple(params))
        return [self._to_record(r) for r in rows]

    def mark_replayed(self, tenant_id: str, correlation_id: str) -> None:
        with transient_db_errors("dead-letter mark replayed"):
            self.pool.execute_command(
                "UPDATE dead_letter SET replayed_at = now() WHERE tenant_id = %s AND correlation_id = %s",
                (tenant_id, correlation_id),
            )

    def _to_record(self, row: dict) -> DeadLetterRecord:
        record = DeadLetterRecord.model_validate(row["record"])
        return record.model_copy(update={"replayed_at": row["replayed_at"]})
