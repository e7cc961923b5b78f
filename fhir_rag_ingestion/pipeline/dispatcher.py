"""
Dispatcher: hands work items to the queue topic of their next stage.

Dispatch is idempotent per correlation id: an item the state tracker
already records at or beyond the target stage is not enqueued again.
Enqueue failures are retried with the dispatch policy; once the budget is
spent the item is failed and dead-lettered, never dropped.
"""

import time
from typing import Callable

from fhir_rag_ingestion.core.config import PipelineConfig
from fhir_rag_ingestion.core.errors import DispatchError, PipelineError, TransientError
from fhir_rag_ingestion.core.models import (
    BatchStage,
    DeadLetterRecord,
    DispatchOutcome,
    Envelope,
    ErrorEntry,
    ProcessingResult,
    Stage,
    WorkItem,
    topic_for,
)
from fhir_rag_ingestion.core.state_machine import rank, retry_entry
from fhir_rag_ingestion.core.timeouts import call_with_timeout
from fhir_rag_ingestion.observability import metrics
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.pipeline.status import settle
from fhir_rag_ingestion.storage.dead_letters import DeadLetterStore
from fhir_rag_ingestion.storage.state_tracker import StateTracker
from fhir_rag_ingestion.transport.base import MessageQueue

logger = get_logger(__name__)


class Dispatcher:
    """
    Routes work items between stages and owns terminal-failure bookkeeping.
    """

    def __init__(
        self,
        queue: MessageQueue,
        tracker: StateTracker,
        dead_letters: DeadLetterStore,
        config: PipelineConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            queue: Stage queue transport
            tracker: State tracker
            dead_letters: Store for items that exhausted their retries
            config: Pipeline configuration (dispatch retry policy, topic prefix)
            sleep: Sleep function used between enqueue retries
        """
        self.queue = queue
        self.tracker = tracker
        self.dead_letters = dead_letters
        self.config = config or PipelineConfig()
        self.sleep = sleep
        self.policy = self.config.retry_policy("dispatch")
        self.timeout = self.config.stage("dispatch").operation_timeout

    def dispatch(self, item: WorkItem, target_stage: Stage) -> DispatchOutcome:
        """
        Enqueue `item` for the workers of `target_stage`.

        Args:
            item: Work item in the stage preceding `target_stage`
            target_stage: Enriching or Storing

        Returns:
            DISPATCHED, DUPLICATE if the item already reached `target_stage`
            or later, CANCELLED if the batch was cancelled

        Raises:
            DispatchError: If enqueueing failed after all retry attempts. The
                item has been failed and dead-lettered when this is raised.
        """
        topic = topic_for(target_stage, self.config.topic_prefix)
        log_extra = {**item.log_context(), "target_stage": target_stage.value}

        current = self.tracker.get_stage(item.correlation_id, item.tenant_id)
        if current is None:
            raise DispatchError(
                f"Item {item.correlation_id} is not registered for tenant {item.tenant_id}",
                correlation_id=item.correlation_id,
            )
        if self._already_at_or_past(current, target_stage):
            logger.info(f"Item already at {current.value}, dispatch skipped", extra=log_extra)
            metrics.increment_counter(metrics.dispatches_total, target_stage=target_stage.value, outcome="duplicate")
            return DispatchOutcome.DUPLICATE

        if self.tracker.is_cancelled(item.tenant_id, item.batch_id):
            logger.info("Batch cancelled, dispatch skipped", extra=log_extra)
            metrics.increment_counter(metrics.dispatches_total, target_stage=target_stage.value, outcome="cancelled")
            return DispatchOutcome.CANCELLED

        self._enqueue(item, topic, target_stage, delay=0.0)
        return DispatchOutcome.DISPATCHED

    def retry(self, item: WorkItem, delay: float) -> DispatchOutcome:
        """
        Re-enqueue a failed item at the entry point of the stage it failed in.

        Args:
            item: Work item in stage Failed
            delay: Backoff before the item becomes visible again
        """
        if item.stage != Stage.FAILED:
            raise ValueError(f"Only failed items can be retried, item is {item.stage.value}")

        target_stage = retry_entry(item.last_active_stage)
        if target_stage is None:
            raise ValueError(f"Item {item.correlation_id} has no retry entry point")

        if self.tracker.is_cancelled(item.tenant_id, item.batch_id):
            logger.info("Batch cancelled, retry skipped", extra=item.log_context())
            metrics.increment_counter(metrics.dispatches_total, target_stage=target_stage.value, outcome="cancelled")
            return DispatchOutcome.CANCELLED

        self._enqueue(item, topic_for(target_stage, self.config.topic_prefix), target_stage, delay=delay)
        return DispatchOutcome.DISPATCHED

    def fail(self, item: WorkItem, error: PipelineError | Exception) -> None:
        """
        Settle the bookkeeping for an item left in Failed by a permanent error.

        The item stays in Failed and is not dead-lettered. The transition to
        Failed must already be recorded by the caller.
        """
        last = item.error_history[-1]
        self._record_batch_failure(item, last.stage, last.kind, last.message)
        logger.error(
            f"Item failed permanently after {item.attempt} attempts: {last.message}",
            extra={**item.log_context(), "failed_stage": last.stage.value, "error_kind": last.kind},
        )
        settle(self.tracker, item.tenant_id, item.batch_id)

    def dead_letter(self, item: WorkItem, error: PipelineError | Exception | None = None) -> None:
        """
        Move a failed item to DeadLettered and record it durably.

        The batch's errored_count is incremented once per item; a replayed
        item that fails again is not counted twice.
        """
        result = self.tracker.record_transition(
            item.correlation_id,
            Stage.FAILED,
            Stage.DEAD_LETTERED,
            tenant_id=item.tenant_id,
            reason=str(error) if error else None,
        )
        if not result.accepted:
            logger.warning(
                f"Dead-letter transition not applied: {result.reason}",
                extra=item.log_context(),
            )
            return

        record = DeadLetterRecord.from_item(item.with_stage(Stage.DEAD_LETTERED))
        self.dead_letters.save(record)

        last = record.last_error
        self._record_batch_failure(item, record.failed_stage, last.kind, last.message)
        metrics.increment_counter(metrics.dead_letters_total, stage=record.failed_stage.value, error_kind=last.kind)
        logger.error(
            f"Item dead-lettered after {item.attempt} attempts: {last.message}",
            extra={**item.log_context(), "failed_stage": record.failed_stage.value, "error_kind": last.kind},
        )
        settle(self.tracker, item.tenant_id, item.batch_id)

    def _record_batch_failure(self, item: WorkItem, failed_stage: Stage, kind: str, message: str) -> None:
        if not item.metadata.get("replayed"):
            self.tracker.increment_counters(item.tenant_id, item.batch_id, errored=1)
        self.tracker.add_batch_error(
            item.tenant_id,
            item.batch_id,
            {
                "kind": kind,
                "marker": f"{item.resource_type}/{item.resource_id}",
                "correlation_id": item.correlation_id,
                "stage": failed_stage.value,
                "attempt": item.attempt,
                "reason": message,
                "history": [e.model_dump(mode="json") for e in item.error_history],
            },
        )
        self.tracker.mark_batch_stage(item.tenant_id, item.batch_id, BatchStage.PARTIALLY_FAILED)

    def _enqueue(self, item: WorkItem, topic: str, target_stage: Stage, delay: float) -> None:
        envelope = Envelope(topic=topic, target_stage=target_stage, item=item)
        started = time.monotonic()
        try:
            self.policy.call(
                call_with_timeout,
                self.queue.enqueue,
                self.timeout,
                topic,
                envelope,
                delay,
                sleep=self.sleep,
                operation="enqueue",
            )
        except TransientError as e:
            metrics.increment_counter(metrics.dispatches_total, target_stage=target_stage.value, outcome="error")
            error = DispatchError(
                f"Enqueue to {topic} failed after {self.policy.max_attempts} attempts: {e}",
                topic=topic,
                correlation_id=item.correlation_id,
            )
            self._fail_dispatch(item, error, time.monotonic() - started)
            raise error from e

        self.tracker.record_event(
            item.correlation_id, item.tenant_id, target_stage, "Dispatched", reason=envelope.message_id
        )
        metrics.increment_counter(metrics.dispatches_total, target_stage=target_stage.value, outcome="dispatched")
        logger.debug(
            f"Dispatched to {topic}",
            extra={**item.log_context(), "topic": topic, "message_id": envelope.message_id, "delay_seconds": delay},
        )

    def _fail_dispatch(self, item: WorkItem, error: DispatchError, duration: float) -> None:
        if item.stage == Stage.FAILED:
            # Retry envelope could not be published; item is already Failed
            entry = ErrorEntry(
                stage=item.last_active_stage, kind=error.kind, message=str(error), attempt=item.attempt
            )
            failed = item.model_copy(update={"error_history": [*item.error_history, entry]})
        else:
            result = self.tracker.record_transition(
                item.correlation_id, item.stage, Stage.FAILED, tenant_id=item.tenant_id, reason=str(error)
            )
            if not result.accepted:
                logger.warning(f"Failed transition not applied: {result.reason}", extra=item.log_context())
                return
            failed = item.with_error(item.stage, error)

        self.tracker.append_result(
            ProcessingResult(
                correlation_id=item.correlation_id,
                tenant_id=item.tenant_id,
                batch_id=item.batch_id,
                stage=item.stage,
                success=False,
                duration_seconds=duration,
                errors=[str(error)],
            )
        )
        self.dead_letter(failed, error)

    @staticmethod
    def _already_at_or_past(current: Stage, target_stage: Stage) -> bool:
        if current in (Stage.FAILED, Stage.DEAD_LETTERED):
            return True
        current_rank = rank(current)
        target_rank = rank(target_stage)
        return current_rank is not None and target_rank is not None and current_rank >= target_rank
