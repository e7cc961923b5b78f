"""
Enrichment stage handler.

Calls the enrichment capability with the item's payload and tenant-scoped
context and records the quality score and embedding reference on the item.
Low-quality items are flagged for review, never rejected.
"""

from fhir_rag_ingestion.core.models import WorkItem
from fhir_rag_ingestion.core.models.work_item import utcnow
from fhir_rag_ingestion.core.timeouts import call_with_timeout
from fhir_rag_ingestion.observability import metrics
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.storage.blob_store import storage_key

from .context import HandlerContext

logger = get_logger(__name__)


def enrich_item(item: WorkItem, ctx: HandlerContext) -> WorkItem:
    """
    Enrich one work item.

    Args:
        item: Item claimed in stage Enriching
        ctx: Capabilities and settings of the running worker

    Returns:
        Copy of the item with the enriched payload and metadata

    Raises:
        TransientError: Retryable capability failure or timeout
        PermanentError: The capability rejected the payload
    """
    context = {
        "tenant_id": item.tenant_id,
        "batch_id": item.batch_id,
        "resource_type": item.resource_type,
        "resource_id": item.resource_id,
        "correlation_id": item.correlation_id,
    }
    result = call_with_timeout(ctx.enrichment.enrich, ctx.operation_timeout, item.tenant_id, item.payload, context)

    flagged = result.quality_score < ctx.quality_threshold
    metadata = dict(item.metadata)
    metadata["quality_score"] = result.quality_score
    metadata["flagged_for_review"] = flagged
    metadata["enriched_at"] = utcnow().isoformat()
    if result.model:
        metadata["enrichment_model"] = result.model
    if result.embedding:
        # JSON pointer into the stored blob
        key = storage_key(item.tenant_id, item.batch_id, item.resource_type, item.resource_id)
        metadata["embedding_refs"] = f"{key}#/enrichment/embedding"
        metadata["embedding_dim"] = len(result.embedding)

    metrics.observe_histogram(metrics.quality_score, result.quality_score)
    if flagged:
        metrics.increment_counter(metrics.flagged_for_review_total)
        logger.info(
            f"Quality score {result.quality_score:.2f} below threshold {ctx.quality_threshold}, flagged for review",
            extra=item.log_context(),
        )

    return item.model_copy(update={"payload": result.payload, "metadata": metadata})
