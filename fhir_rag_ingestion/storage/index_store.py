"""
Searchable metadata index.

Entries are partitioned by tenant: upserts and queries always take the
tenant id, and one tenant's query never sees another tenant's entries.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any

from .connection import DatabaseConnectionPool, transient_db_errors


class IndexStore(ABC):
    """Abstract key-value index store."""

    @abstractmethod
    def upsert(self, key: str, tenant_id: str, attributes: dict[str, Any]) -> None:
        """
        Insert or replace the index entry `key` in the tenant's partition.

        Raises:
            TransientError: If the index is unavailable
        """

    @abstractmethod
    def query(self, tenant_id: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """
        Entries of `tenant_id` whose attributes contain every filter pair.

        Returns:
            List of {"key": ..., "attributes": {...}} dictionaries
        """


class InMemoryIndexStore(IndexStore):
    """Dictionary-backed index for local runs and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._partitions: dict[str, dict[str, dict[str, Any]]] = {}
        self.upsert_count = 0

    def upsert(self, key: str, tenant_id: str, attributes: dict[str, Any]) -> None:
        with self._lock:
            self._partitions.setdefault(tenant_id, {})[key] = dict(attributes)
            self.upsert_count += 1

    def query(self, tenant_id: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        filters = filters or {}
        with self._lock:
            partition = dict(self._partitions.get(tenant_id, {}))
        return [
            {"key": key, "attributes": dict(attrs)}
            for key, attrs in sorted(partition.items())
            if all(attrs.get(k) == v for k, v in filters.items())
        ]


class PostgresIndexStore(IndexStore):
    """
    Index backed by the index_entry table, primary key (tenant_id, entry_key).
    """

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def upsert(self, key: str, tenant_id: str, attributes: dict[str, Any]) -> None:
        query = """
            INSERT INTO index_entry (tenant_id, entry_key, attributes, updated_at)
            VALUES (%s, %s, %s::jsonb, now())
            ON CONFLICT (tenant_id, entry_key) DO UPDATE SET
                attributes = EXCLUDED.attributes,
                updated_at = EXCLUDED.updated_at
        """
        with transient_db_errors("index upsert"):
            self.pool.execute_command(query, (tenant_id, key, json.dumps(attributes, default=str)))

    def query(self, tenant_id: str, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT entry_key, attributes
            FROM index_entry
            WHERE tenant_id = %s AND attributes @> %s::jsonb
            ORDER BY entry_key
        """
        with transient_db_errors("index query"):
            rows = self.pool.execute_query(query, (tenant_id, json.dumps(filters or {})))
        return [{"key": r["entry_key"], "attributes": r["attributes"]} for r in rows]
