"""
Storage layer: connection pool, schema, blob and index stores, state
tracker and dead-letter store.
"""

from .blob_store import BlobStore, InMemoryBlobStore, PostgresBlobStore, storage_key
from .connection import DatabaseConnectionPool, transient_db_errors
from .dead_letters import DeadLetterStore, InMemoryDeadLetterStore, PostgresDeadLetterStore
from .index_store import IndexStore, InMemoryIndexStore, PostgresIndexStore
from .schema import TABLES, ensure_schema
from .state_tracker import (
    InMemoryStateTracker,
    PostgresStateTracker,
    StateTracker,
    TransitionResult,
)

__all__ = [
    "DatabaseConnectionPool",
    "transient_db_errors",
    "ensure_schema",
    "TABLES",
    "BlobStore",
    "InMemoryBlobStore",
    "PostgresBlobStore",
    "storage_key",
    "IndexStore",
    "InMemoryIndexStore",
    "PostgresIndexStore",
    "StateTracker",
    "InMemoryStateTracker",
    "PostgresStateTracker",
    "TransitionResult",
    "DeadLetterStore",
    "InMemoryDeadLetterStore",
    "PostgresDeadLetterStore",
]
