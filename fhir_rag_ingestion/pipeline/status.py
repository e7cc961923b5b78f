"""
Batch progress queries and settlement.
"""

from typing import Any

from fhir_rag_ingestion.observability import metrics
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.storage.state_tracker import StateTracker
from fhir_rag_ingestion.utils.validation import validate_batch_id, validate_tenant_id

logger = get_logger(__name__)


def batch_progress(tracker: StateTracker, tenant_id: str, batch_id: str) -> dict[str, Any]:
    """
    Progress of a batch as seen by operators.

    Returns:
        Dictionary with stage, processed_count, total_resources, errored_count

    Raises:
        BatchNotFoundError: If the tenant has no such batch
    """
    tenant_id = validate_tenant_id(tenant_id)
    batch_id = validate_batch_id(batch_id)
    return tracker.get_batch_status(tenant_id, batch_id).progress()


def batch_details(tracker: StateTracker, tenant_id: str, batch_id: str) -> dict[str, Any]:
    """Progress plus recovered count, cancellation flag, per-stage item counts and errors."""
    batch = tracker.get_batch_status(validate_tenant_id(tenant_id), validate_batch_id(batch_id))
    return {
        **batch.progress(),
        "batch_id": batch.batch_id,
        "tenant_id": batch.tenant_id,
        "recovered_count": batch.recovered_count,
        "cancel_requested": batch.cancel_requested,
        "items_by_stage": tracker.stage_counts(batch.tenant_id, batch.batch_id),
        "errors": batch.errors,
        "created_at": batch.created_at.isoformat(),
        "updated_at": batch.updated_at.isoformat(),
    }


def settle(tracker: StateTracker, tenant_id: str, batch_id: str) -> bool:
    """
    Finalize the batch if every record reached a terminal outcome.

    Safe to call after every terminal item outcome; only one caller settles.
    """
    if not tracker.settle_batch(tenant_id, batch_id):
        return False
    batch = tracker.get_batch_status(tenant_id, batch_id)
    metrics.record_batch_settled(batch.stage.value, batch.total_resources)
    logger.info(
        f"Batch settled as {batch.stage.value}: "
        f"{batch.processed_count}/{batch.total_resources} processed, {batch.errored_count} errored",
        extra={"tenant_id": tenant_id, "batch_id": batch_id},
    )
    return True
