"""
Bulk ingest orchestration.

Coordinates the flow: chunk -> register -> dispatch to enrichment, one
record at a time, then settles the batch once chunking has finished.
"""

import uuid
from collections import Counter
from pathlib import Path
from typing import BinaryIO, Iterable, TextIO

from fhir_rag_ingestion.chunking.chunker import Chunker
from fhir_rag_ingestion.core.config import PipelineConfig
from fhir_rag_ingestion.core.errors import BatchNotFoundError, DispatchError
from fhir_rag_ingestion.core.models import BatchRecord, Stage
from fhir_rag_ingestion.observability.logger import get_logger, log_operation
from fhir_rag_ingestion.pipeline.dispatcher import Dispatcher
from fhir_rag_ingestion.pipeline.status import settle
from fhir_rag_ingestion.storage.state_tracker import StateTracker
from fhir_rag_ingestion.utils.validation import validate_batch_id, validate_tenant_id

logger = get_logger(__name__)


class BulkIngestPipeline:
    """
    Accepts bulk exports and feeds their records into the pipeline.

    Flow:
    1. Create the BatchRecord (stage Chunking)
    2. Split the export into work items, rejecting malformed records
    3. Dispatch each work item to the enrichment topic as it is read
    4. Record total_resources and move the batch to Processing
    """

    def __init__(
        self,
        tracker: StateTracker,
        dispatcher: Dispatcher,
        config: PipelineConfig | None = None,
    ):
        """
        Initialize the ingest pipeline.

        Args:
            tracker: State tracker
            dispatcher: Dispatcher publishing to the stage topics
            config: Pipeline configuration
        """
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.config = config or PipelineConfig()
        self.chunker = Chunker(
            tracker,
            retry_policy=self.config.retry_policy("chunking"),
            max_record_bytes=self.config.max_record_bytes,
        )

    def ingest(
        self,
        stream: BinaryIO | TextIO | Iterable[bytes | str],
        tenant_id: str,
        batch_id: str | None = None,
    ) -> BatchRecord:
        """
        Ingest one bulk export.

        Args:
            stream: NDJSON export
            tenant_id: Tenant the export belongs to
            batch_id: Batch identifier (generated if omitted)

        Returns:
            BatchRecord snapshot after chunking and dispatch

        Raises:
            StructuralError: If the export is not NDJSON; the batch is marked PartiallyFailed
        """
        tenant_id = validate_tenant_id(tenant_id)
        batch_id = validate_batch_id(batch_id or uuid.uuid4().hex)

        existing = self._existing_batch(tenant_id, batch_id)
        if existing is not None and existing.total_resources is not None:
            logger.info(
                "Batch already chunked, ingest skipped",
                extra={"tenant_id": tenant_id, "batch_id": batch_id},
            )
            return existing

        outcomes: Counter = Counter()
        with log_operation("Bulk ingest", logger=logger, tenant_id=tenant_id, batch_id=batch_id):
            for item in self.chunker.chunk(stream, tenant_id, batch_id):
                try:
                    outcome = self.dispatcher.dispatch(item, Stage.ENRICHING)
                except DispatchError as e:
                    # Item is already failed and dead-lettered; keep going
                    logger.error(f"Dispatch failed: {e}", extra=item.log_context())
                    outcomes["error"] += 1
                    continue
                outcomes[outcome.value] += 1

            settle(self.tracker, tenant_id, batch_id)

        batch = self.tracker.get_batch_status(tenant_id, batch_id)
        logger.info(
            f"Ingested {batch.total_resources} records: {dict(outcomes)}",
            extra={"tenant_id": tenant_id, "batch_id": batch_id, "errored_count": batch.errored_count},
        )
        return batch

    def ingest_file(self, path: str | Path, tenant_id: str, batch_id: str | None = None) -> BatchRecord:
        """Ingest an NDJSON export from a file."""
        with open(path, "rb") as f:
            return self.ingest(f, tenant_id, batch_id)

    def cancel(self, tenant_id: str, batch_id: str) -> None:
        """Stop onward dispatch of a batch; items finish their current stage."""
        self.tracker.request_cancel(validate_tenant_id(tenant_id), validate_batch_id(batch_id))
        logger.warning("Batch cancellation requested", extra={"tenant_id": tenant_id, "batch_id": batch_id})

    def _existing_batch(self, tenant_id: str, batch_id: str) -> BatchRecord | None:
        try:
            return self.tracker.get_batch_status(tenant_id, batch_id)
        except BatchNotFoundError:
            return None
