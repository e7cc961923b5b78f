"""
Dead-letter replay.

Hands dead-lettered items back to the pipeline through the Failed -> retry
path, at the entry point of the stage they failed in. The item keeps its
attempt count and error history; its per-stage retry budget starts over.
"""

from typing import Iterable

from fhir_rag_ingestion.core.errors import DispatchError, TenantIsolationError
from fhir_rag_ingestion.core.models import DeadLetterRecord, DispatchOutcome, Stage
from fhir_rag_ingestion.observability.logger import get_logger, log_operation
from fhir_rag_ingestion.pipeline.dispatcher import Dispatcher
from fhir_rag_ingestion.storage.dead_letters import DeadLetterStore
from fhir_rag_ingestion.storage.state_tracker import StateTracker
from fhir_rag_ingestion.utils.validation import validate_batch_id, validate_limit, validate_tenant_id

logger = get_logger(__name__)


class DeadLetterReplayer:
    """
    Lists and replays dead letters of one tenant.
    """

    def __init__(self, tracker: StateTracker, dead_letters: DeadLetterStore, dispatcher: Dispatcher):
        self.tracker = tracker
        self.dead_letters = dead_letters
        self.dispatcher = dispatcher

    def list_pending(self, tenant_id: str, batch_id: str | None = None, limit: int = 100) -> list[DeadLetterRecord]:
        """Dead letters not yet replayed, oldest first."""
        tenant_id = validate_tenant_id(tenant_id)
        if batch_id is not None:
            batch_id = validate_batch_id(batch_id)
        return self.dead_letters.list(tenant_id, batch_id=batch_id, limit=validate_limit(limit))

    def replay(
        self,
        tenant_id: str,
        batch_id: str | None = None,
        correlation_ids: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> dict[str, int]:
        """
        Replay dead letters.

        Args:
            tenant_id: Tenant whose dead letters are replayed
            batch_id: Only replay dead letters of this batch
            correlation_ids: Only replay these items
            limit: Maximum number of items to replay

        Returns:
            Counts of replayed, skipped and failed items
        """
        tenant_id = validate_tenant_id(tenant_id)
        if batch_id is not None:
            batch_id = validate_batch_id(batch_id)
        if limit is not None:
            limit = validate_limit(limit)

        records = self._select(tenant_id, batch_id, correlation_ids, limit)
        summary = {"replayed": 0, "skipped": 0, "failed": 0}

        with log_operation("Dead-letter replay", logger=logger, tenant_id=tenant_id, batch_id=batch_id):
            for record in records:
                summary[self._replay_one(tenant_id, record)] += 1

        logger.info(f"Replay finished: {summary}", extra={"tenant_id": tenant_id, "batch_id": batch_id})
        return summary

    def _select(
        self,
        tenant_id: str,
        batch_id: str | None,
        correlation_ids: Iterable[str] | None,
        limit: int | None,
    ) -> list[DeadLetterRecord]:
        if correlation_ids is None:
            return self.dead_letters.list(tenant_id, batch_id=batch_id, limit=limit)

        records = []
        for correlation_id in correlation_ids:
            record = self.dead_letters.get(tenant_id, correlation_id)
            if record is None or record.replayed_at is not None:
                logger.warning(
                    "No pending dead letter for correlation id",
                    extra={"tenant_id": tenant_id, "correlation_id": correlation_id},
                )
                continue
            if batch_id is None or record.batch_id == batch_id:
                records.append(record)
        return records[:limit] if limit is not None else records

    def _replay_one(self, tenant_id: str, record: DeadLetterRecord) -> str:
        if record.tenant_id != tenant_id or record.item.tenant_id != tenant_id:
            raise TenantIsolationError(
                f"Dead letter {record.correlation_id} belongs to another tenant",
                tenant_id=tenant_id,
                correlation_id=record.correlation_id,
            )

        log_extra = {**record.item.log_context(), "failed_stage": record.failed_stage.value}
        if self.tracker.is_cancelled(tenant_id, record.batch_id):
            logger.info("Batch cancelled, dead letter not replayed", extra=log_extra)
            return "skipped"

        result = self.tracker.record_transition(
            record.correlation_id,
            Stage.DEAD_LETTERED,
            Stage.FAILED,
            tenant_id=tenant_id,
            replay=True,
            reason="replay",
        )
        if not result.accepted:
            logger.info(f"Dead letter not replayed: {result.reason}", extra=log_extra)
            return "skipped"

        item = record.item.with_stage(
            Stage.FAILED,
            stage_attempt=0,
            last_active_stage=record.failed_stage,
            metadata={**record.item.metadata, "replayed": True},
        )
        self.dead_letters.mark_replayed(tenant_id, record.correlation_id)

        try:
            outcome = self.dispatcher.retry(item, delay=0.0)
        except DispatchError as e:
            logger.error(f"Replay dispatch failed: {e}", extra=log_extra)
            return "failed"

        if outcome != DispatchOutcome.DISPATCHED:
            return "skipped"
        logger.info("Dead letter replayed", extra=log_extra)
        return "replayed"
