"""
Chunker: splits a bulk export into per-resource work items.

Each well-formed record is registered with the state tracker
(Received -> Chunked) and yielded as soon as it is read, so chunking,
validation and dispatch interleave record by record. Malformed records are
recorded against the batch once, keyed by line number, and skipped; a
stream without record boundaries aborts the batch.
"""

from typing import BinaryIO, Iterable, Iterator, TextIO

from fhir_rag_ingestion.core.errors import StructuralError, ValidationError
from fhir_rag_ingestion.core.models import (
    BatchStage,
    RejectedRecord,
    Stage,
    TransitionStatus,
    WorkItem,
)
from fhir_rag_ingestion.core.retry import RetryPolicy
from fhir_rag_ingestion.observability import metrics
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.storage.state_tracker import StateTracker

from .ndjson_reader import ParsedRecord, check_first_line, iter_lines, parse_line

logger = get_logger(__name__)


class Chunker:
    """
    Lazy, single-pass NDJSON chunker.
    """

    def __init__(
        self,
        tracker: StateTracker,
        retry_policy: RetryPolicy | None = None,
        max_record_bytes: int | None = None,
    ):
        """
        Args:
            tracker: State tracker receiving item registrations and batch counters
            retry_policy: Backoff for transient tracker failures (chunking stage policy)
            max_record_bytes: Records above this size are rejected
        """
        self.tracker = tracker
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, initial_delay=0.5, max_delay=5.0)
        self.max_record_bytes = max_record_bytes

    def chunk(
        self,
        stream: BinaryIO | TextIO | Iterable[bytes | str],
        tenant_id: str,
        batch_id: str,
    ) -> Iterator[WorkItem]:
        """
        Split `stream` into work items in stage Chunked.

        The BatchRecord is created before the first record is read;
        total_resources is set only once the stream is exhausted.

        Args:
            stream: NDJSON export, binary or text
            tenant_id: Tenant the export belongs to
            batch_id: Batch identifier

        Yields:
            WorkItem: One per well-formed, not previously chunked record

        Raises:
            StructuralError: If record boundaries cannot be established
        """
        self._call(self.tracker.create_batch, tenant_id, batch_id)
        log_extra = {"tenant_id": tenant_id, "batch_id": batch_id}
        logger.info("Chunking started", extra=log_extra)

        total = 0
        rejected = 0
        seen: set[str] = set()
        first = True

        try:
            for line in iter_lines(stream):
                if not line.content.strip():
                    continue
                if first:
                    check_first_line(line)
                    first = False

                position = line.position
                total += 1
                try:
                    record = parse_line(position, line.content, self.max_record_bytes)
                except ValidationError as e:
                    rejected += 1
                    self._reject(
                        tenant_id,
                        batch_id,
                        RejectedRecord(
                            position=position,
                            resource_type=e.context.get("resource_type"),
                            resource_id=e.resource_id,
                            reason=e.message,
                        ),
                    )
                    continue

                item = self._register(record, tenant_id, batch_id, seen)
                if item is None:
                    rejected += 1
                    continue
                if item.stage == Stage.CHUNKED:
                    yield item
        except StructuralError as e:
            self._abort(tenant_id, batch_id, e)
            raise

        self._call(self.tracker.set_total_resources, tenant_id, batch_id, total)
        self._call(self.tracker.mark_batch_stage, tenant_id, batch_id, BatchStage.PROCESSING)

        logger.info(
            f"Chunking finished: {total} records, {rejected} rejected",
            extra={**log_extra, "total_resources": total, "rejected": rejected},
        )

    def _register(
        self, record: ParsedRecord, tenant_id: str, batch_id: str, seen: set[str]
    ) -> WorkItem | None:
        """
        Record Received -> Chunked for one record.

        Returns the item, or None if the record repeats an id already seen
        in this export. An item another chunking pass already moved past
        Chunked is returned unchanged and not emitted again.
        """
        item = WorkItem(
            tenant_id=tenant_id,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            batch_id=batch_id,
            payload=record.payload,
            metadata={"line_number": record.position},
        )

        if item.correlation_id in seen:
            self._reject(
                tenant_id,
                batch_id,
                RejectedRecord(
                    position=record.position,
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    reason="Duplicate resource id in export",
                ),
            )
            return None
        seen.add(item.correlation_id)

        result = self._call(
            self.tracker.record_transition,
            item.correlation_id,
            None,
            Stage.RECEIVED,
            tenant_id=tenant_id,
            batch_id=batch_id,
        )
        if result.status == TransitionStatus.DUPLICATE and result.current_stage != Stage.RECEIVED:
            logger.info(
                f"Item already chunked (stage {result.current_stage.value}), skipping",
                extra=item.log_context(),
            )
            metrics.increment_counter(metrics.duplicate_deliveries_total, stage="chunking")
            return item.with_stage(result.current_stage)

        self._call(
            self.tracker.record_transition,
            item.correlation_id,
            Stage.RECEIVED,
            Stage.CHUNKED,
            tenant_id=tenant_id,
        )
        metrics.record_stage_outcome("chunking", "completed")
        return item.with_stage(Stage.CHUNKED)

    def _reject(self, tenant_id: str, batch_id: str, rejected: RejectedRecord) -> None:
        entry = {
            "kind": ValidationError.kind,
            "marker": rejected.marker,
            "position": rejected.position,
            "reason": rejected.reason,
        }
        if not self._call(self.tracker.record_rejection, tenant_id, batch_id, rejected.position, entry):
            logger.debug(
                f"Record {rejected.marker} already rejected by an earlier pass",
                extra={"tenant_id": tenant_id, "batch_id": batch_id, "position": rejected.position},
            )
            return

        logger.warning(
            f"Rejected record {rejected.marker}: {rejected.reason}",
            extra={"tenant_id": tenant_id, "batch_id": batch_id, "position": rejected.position},
        )
        self._call(self.tracker.mark_batch_stage, tenant_id, batch_id, BatchStage.PARTIALLY_FAILED)
        metrics.increment_counter(metrics.records_rejected_total)

    def _abort(self, tenant_id: str, batch_id: str, error: StructuralError) -> None:
        logger.error(
            f"Chunking aborted: {error}",
            extra={"tenant_id": tenant_id, "batch_id": batch_id},
        )
        entry = {"kind": error.kind, "reason": error.message, **error.context}
        self._call(self.tracker.add_batch_error, tenant_id, batch_id, entry)
        self._call(self.tracker.mark_batch_stage, tenant_id, batch_id, BatchStage.PARTIALLY_FAILED)
        metrics.increment_counter(metrics.batches_total, status="StructuralError")

    def _call(self, fn, *args, **kwargs):
        return self.retry_policy.call(fn, *args, operation=fn.__name__, **kwargs)
