"""
Persistence stage handler.

Writes the enriched payload to the blob store, then upserts the searchable
index entry. The blob write is recorded on the item as soon as it succeeds,
so a retry after an index failure resumes at the index update.
"""

from typing import Any

from fhir_rag_ingestion.core.errors import TenantIsolationError
from fhir_rag_ingestion.core.models import WorkItem
from fhir_rag_ingestion.core.timeouts import call_with_timeout
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.storage.blob_store import storage_key

from .context import HandlerContext

logger = get_logger(__name__)

INDEXED_METADATA = ("quality_score", "flagged_for_review", "embedding_refs", "enrichment_model")


def index_attributes(item: WorkItem, key: str) -> dict[str, Any]:
    attributes: dict[str, Any] = {
        "tenant_id": item.tenant_id,
        "batch_id": item.batch_id,
        "resource_type": item.resource_type,
        "resource_id": item.resource_id,
        "correlation_id": item.correlation_id,
        "blob_key": key,
    }
    for name in INDEXED_METADATA:
        if item.metadata.get(name) is not None:
            attributes[name] = item.metadata[name]
    return attributes


def persist_item(item: WorkItem, ctx: HandlerContext) -> WorkItem:
    """
    Persist one work item.

    Mutates `item.metadata` in place: "blob_written" is set once the blob
    write succeeds, so the caller's copy carries it into a retry even when
    the index update fails afterwards.

    Raises:
        TransientError: Blob or index store unavailable, or timed out
        TenantIsolationError: The storage key is outside the tenant's partition
    """
    key = storage_key(item.tenant_id, item.batch_id, item.resource_type, item.resource_id)
    if not key.startswith(f"{item.tenant_id}/") or key.count("/") != 3:
        raise TenantIsolationError(f"Storage key {key!r} escapes tenant partition", tenant_id=item.tenant_id)

    if item.metadata.get("blob_written"):
        logger.info("Blob already written, resuming at index update", extra=item.log_context())
    else:
        call_with_timeout(ctx.blob_store.put, ctx.operation_timeout, key, item.payload)
        item.metadata["blob_written"] = True
        item.metadata["blob_key"] = key

    call_with_timeout(ctx.index_store.upsert, ctx.operation_timeout, key, item.tenant_id, index_attributes(item, key))
    item.metadata["indexed"] = True
    return item
