"""
Durable blob storage for enriched resources.

Writes use overwrite semantics keyed by (tenant, batch, resource), so a
retried write of the same work item is idempotent.
"""

import hashlib
import threading
from abc import ABC, abstractmethod

from .connection import DatabaseConnectionPool, transient_db_errors


def storage_key(tenant_id: str, batch_id: str, resource_type: str, resource_id: str) -> str:
    """Blob key of a resource. The tenant is always the first path segment."""
    return f"{tenant_id}/{batch_id}/{resource_type}/{resource_id}"


class BlobStore(ABC):
    """Abstract durable store."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """
        Write `data` under `key`, replacing any previous value.

        Raises:
            TransientError: If the store is unavailable
        """

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        """Read the value stored under `key`, or None."""


class InMemoryBlobStore(BlobStore):
    """Dictionary-backed store for local runs and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._objects: dict[str, bytes] = {}
        self.put_count = 0

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._objects[key] = bytes(data)
            self.put_count += 1

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._objects.get(key)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)


class PostgresBlobStore(BlobStore):
    """
    Blob store backed by the blob_object table.

    Implementation uses INSERT ... ON CONFLICT to ensure idempotency.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def put(self, key: str, data: bytes) -> None:
        query = """
            INSERT INTO blob_object (object_key, data, size_bytes, checksum, written_at)
            VALUES (%s, %s, %s, %s, now())
            ON CONFLICT (object_key) DO UPDATE SET
                data = EXCLUDED.data,
                size_bytes = EXCLUDED.size_bytes,
                checksum = EXCLUDED.checksum,
                written_at = EXCLUDED.written_at
        """
        with transient_db_errors("blob put"):
            self.pool.execute_command(query, (key, data, len(data), self._checksum(data)))

    def get(self, key: str) -> bytes | None:
        with transient_db_errors("blob get"):
            rows = self.pool.execute_query("SELECT data FROM blob_object WHERE object_key = %s", (key,))
        return bytes(rows[0]["data"]) if rows else None

    def _checksum(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()
