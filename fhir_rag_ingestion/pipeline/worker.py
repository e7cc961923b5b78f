"""
Stage worker: consumes one stage topic with bounded concurrency.

For every delivered envelope the worker claims ownership of the item with
a compare-and-set on the state tracker, runs the stage handler, records the
outcome and acknowledges the message. The claim holds a lease owned by the
message id, so a redelivery of the same message takes the item back while a
concurrent copy loses the claim and is acknowledged without side effects.
A message on its last permitted delivery is failed and dead-lettered instead
of processed, so a transport redirect never strands an item.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

from fhir_rag_ingestion.core.config import PipelineConfig
from fhir_rag_ingestion.core.errors import (
    DeliveryLimitExceeded,
    DispatchError,
    DuplicateDelivery,
    PermanentError,
    PipelineError,
    TransientError,
)
from fhir_rag_ingestion.core.models import (
    Envelope,
    ProcessingResult,
    Stage,
    TransitionStatus,
    WorkItem,
    topic_for,
)
from fhir_rag_ingestion.core.state_machine import PREDECESSORS
from fhir_rag_ingestion.observability import metrics
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.pipeline.dispatcher import Dispatcher
from fhir_rag_ingestion.pipeline.handlers import HANDLERS_BY_NAME, HandlerContext, StageHandler
from fhir_rag_ingestion.pipeline.status import settle
from fhir_rag_ingestion.storage.state_tracker import StateTracker
from fhir_rag_ingestion.transport.base import MessageQueue

logger = get_logger(__name__)


class Outcome(str, Enum):
    """What happened to one delivered envelope."""

    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    DEFERRED = "deferred"


class StageWorker:
    """
    Consumer loop for one stage topic.

    Usage:
        worker = StageWorker("enrichment", queue, tracker, dispatcher, context, config)
        stop = threading.Event()
        worker.run(stop)
    """

    def __init__(
        self,
        stage_name: str,
        queue: MessageQueue,
        tracker: StateTracker,
        dispatcher: Dispatcher,
        context: HandlerContext,
        config: PipelineConfig | None = None,
    ):
        """
        Args:
            stage_name: "enrichment" or "persistence"
            queue: Stage queue transport
            tracker: State tracker
            dispatcher: Dispatcher for onward dispatch, retries and dead letters
            context: Capabilities passed to the stage handler
            config: Pipeline configuration
        """
        if stage_name not in HANDLERS_BY_NAME:
            raise ValueError(f"No handler for stage '{stage_name}'. Must be one of {', '.join(HANDLERS_BY_NAME)}")

        self.handler: StageHandler = HANDLERS_BY_NAME[stage_name]
        self.queue = queue
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.config = config or PipelineConfig()
        self.settings = self.config.stage(stage_name)
        self.policy = self.settings.retry
        self.topic = topic_for(self.handler.stage, self.config.topic_prefix)

        self.context = context
        if self.context.operation_timeout is None:
            self.context.operation_timeout = self.settings.operation_timeout

        self._slots = threading.BoundedSemaphore(self.settings.max_in_flight)

    # ---- message handling ----

    def handle_envelope(self, envelope: Envelope) -> Outcome:
        """
        Process one delivered envelope and acknowledge it.

        Returns:
            Outcome of the delivery
        """
        item = envelope.item
        stage = self.handler.stage
        log_extra = {**item.log_context(), "message_id": envelope.message_id, "delivery_count": envelope.delivery_count}

        try:
            self._check_routing(envelope)
        except DuplicateDelivery as e:
            logger.warning(f"Misrouted message dropped: {e}", extra=log_extra)
            metrics.record_stage_outcome(self.handler.name, Outcome.REJECTED.value)
            self.queue.ack(self.topic, envelope.message_id)
            return Outcome.REJECTED

        try:
            claim = self.tracker.record_transition(
                item.correlation_id,
                item.stage,
                stage,
                tenant_id=item.tenant_id,
                lease_seconds=self.settings.visibility_timeout,
                lease_owner=envelope.message_id,
            )
        except TransientError as e:
            delay = self.policy.delay_for(1)
            logger.warning(f"Claim failed, message released for {delay:.2f}s: {e}", extra=log_extra)
            self.queue.nack(self.topic, envelope.message_id, delay)
            return Outcome.DEFERRED

        if not claim.accepted:
            outcome = Outcome.DUPLICATE if claim.status == TransitionStatus.DUPLICATE else Outcome.REJECTED
            logger.info(f"Delivery not claimed ({claim.status.value}): {claim.reason}", extra=log_extra)
            if outcome == Outcome.DUPLICATE:
                metrics.increment_counter(metrics.duplicate_deliveries_total, stage=self.handler.name)
            metrics.record_stage_outcome(self.handler.name, outcome.value)
            self.queue.ack(self.topic, envelope.message_id)
            return outcome

        claimed = item.begin_stage(stage)
        if envelope.delivery_count >= self.config.max_deliveries:
            outcome = self._abandon(claimed, envelope.delivery_count)
        else:
            outcome = self._process(claimed)
        self.queue.ack(self.topic, envelope.message_id)
        return outcome

    def _check_routing(self, envelope: Envelope) -> None:
        stage = self.handler.stage
        item = envelope.item
        if envelope.target_stage != stage:
            raise DuplicateDelivery(
                f"Envelope targets {envelope.target_stage.value}, worker handles {stage.value}"
            )
        if item.stage not in (PREDECESSORS[stage], Stage.FAILED):
            raise DuplicateDelivery(f"Item in stage {item.stage.value} cannot enter {stage.value}")

    def _process(self, claimed: WorkItem) -> Outcome:
        log_extra = claimed.log_context()
        started = time.monotonic()
        metrics.items_in_flight.labels(stage=self.handler.name).inc()
        try:
            processed = self.handler.process(claimed, self.context)
        except PermanentError as e:
            return self._fail(claimed, e, time.monotonic() - started, permanent=True)
        except TransientError as e:
            return self._fail(claimed, e, time.monotonic() - started)
        except PipelineError as e:
            return self._fail(claimed, e, time.monotonic() - started, permanent=True)
        except Exception as e:
            logger.exception(f"Unexpected error in {self.handler.name} handler", extra=log_extra)
            return self._fail(claimed, e, time.monotonic() - started)
        finally:
            metrics.items_in_flight.labels(stage=self.handler.name).dec()

        return self._succeed(processed, time.monotonic() - started)

    def _succeed(self, processed: WorkItem, duration: float) -> Outcome:
        handler = self.handler
        result = self.tracker.record_transition(
            processed.correlation_id, handler.stage, handler.done_stage, tenant_id=processed.tenant_id
        )
        if not result.accepted:
            # Another worker reclaimed the expired lease and finished first
            logger.warning(f"Completion not recorded: {result.reason}", extra=processed.log_context())
            metrics.record_stage_outcome(handler.name, Outcome.DUPLICATE.value, duration)
            return Outcome.DUPLICATE

        done = processed.with_stage(handler.done_stage)
        self._append_result(done, handler.stage, True, duration)
        metrics.record_stage_outcome(handler.name, Outcome.COMPLETED.value, duration)

        if handler.next_stage is not None:
            try:
                self.dispatcher.dispatch(done, handler.next_stage)
            except DispatchError as e:
                logger.error(f"Onward dispatch failed: {e}", extra=done.log_context())
                return Outcome.DEAD_LETTERED
        else:
            if done.metadata.get("replayed"):
                self.tracker.increment_counters(done.tenant_id, done.batch_id, recovered=1)
            else:
                self.tracker.increment_counters(done.tenant_id, done.batch_id, processed=1)
            settle(self.tracker, done.tenant_id, done.batch_id)

        logger.info(
            f"{handler.name} finished in {duration:.3f}s",
            extra={**done.log_context(), "duration_seconds": duration},
        )
        return Outcome.COMPLETED

    def _abandon(self, claimed: WorkItem, delivery_count: int) -> Outcome:
        error = DeliveryLimitExceeded(
            f"Message delivered {delivery_count} times without completing {self.handler.stage.value}",
            delivery_count=delivery_count,
        )
        logger.error(str(error), extra={**claimed.log_context(), "delivery_count": delivery_count})
        return self._fail(claimed, error, 0.0, dead_letter=True)

    def _fail(
        self,
        claimed: WorkItem,
        error: Exception,
        duration: float,
        permanent: bool = False,
        dead_letter: bool = False,
    ) -> Outcome:
        handler = self.handler
        failed = claimed.with_error(handler.stage, error)
        result = self.tracker.record_transition(
            claimed.correlation_id, handler.stage, Stage.FAILED, tenant_id=claimed.tenant_id, reason=str(error)
        )
        if not result.accepted:
            logger.warning(f"Failure not recorded: {result.reason}", extra=claimed.log_context())
            return Outcome.DUPLICATE

        self._append_result(claimed, handler.stage, False, duration, errors=[str(error)])

        if permanent:
            metrics.record_stage_outcome(handler.name, Outcome.FAILED.value, duration)
            self.dispatcher.fail(failed, error)
            return Outcome.FAILED

        if dead_letter or self.policy.exhausted(claimed.stage_attempt):
            metrics.record_stage_outcome(handler.name, Outcome.DEAD_LETTERED.value, duration)
            self.dispatcher.dead_letter(failed, error)
            return Outcome.DEAD_LETTERED

        delay = self.policy.delay_for(claimed.stage_attempt)
        logger.warning(
            f"{handler.name} failed (attempt {claimed.stage_attempt}/{self.policy.max_attempts}), "
            f"retrying in {delay:.2f}s: {error}",
            extra={**claimed.log_context(), "delay_seconds": delay},
        )
        metrics.record_stage_outcome(handler.name, Outcome.RETRIED.value, duration)
        metrics.increment_counter(metrics.retries_total, stage=handler.name)
        try:
            self.dispatcher.retry(failed, delay)
        except DispatchError:
            return Outcome.DEAD_LETTERED
        return Outcome.RETRIED

    def _append_result(
        self, item: WorkItem, stage: Stage, success: bool, duration: float, errors: list[str] | None = None
    ) -> None:
        metrics_: dict[str, float] = {"attempt": float(item.attempt), "payload_bytes": float(len(item.payload))}
        if isinstance(item.metadata.get("quality_score"), (int, float)):
            metrics_["quality_score"] = float(item.metadata["quality_score"])
        self.tracker.append_result(
            ProcessingResult(
                correlation_id=item.correlation_id,
                tenant_id=item.tenant_id,
                batch_id=item.batch_id,
                stage=stage,
                success=success,
                duration_seconds=duration,
                errors=errors or [],
                metrics=metrics_,
            )
        )

    # ---- consumer loop ----

    def poll_once(self) -> Outcome | None:
        """Dequeue and process a single message synchronously, None if the topic is idle."""
        envelope = self.queue.dequeue(self.topic, self.settings.visibility_timeout)
        if envelope is None:
            return None
        return self.handle_envelope(envelope)

    def drain(self, max_messages: int = 10_000) -> list[Outcome]:
        """Process visible messages until the topic is idle."""
        outcomes = []
        while len(outcomes) < max_messages:
            outcome = self.poll_once()
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def run(self, stop_event: threading.Event) -> None:
        """
        Consume until `stop_event` is set, with at most max_in_flight items
        processing concurrently. In-flight items finish before returning.
        """
        logger.info(
            f"Worker started on {self.topic} (max_in_flight={self.settings.max_in_flight})",
            extra={"topic": self.topic},
        )
        with ThreadPoolExecutor(
            max_workers=self.settings.max_in_flight, thread_name_prefix=f"{self.handler.name}-worker"
        ) as executor:
            while not stop_event.is_set():
                if not self._slots.acquire(timeout=self.config.poll_interval):
                    continue
                try:
                    envelope = self.queue.dequeue(self.topic, self.settings.visibility_timeout)
                except TransientError as e:
                    self._slots.release()
                    logger.warning(f"Dequeue failed: {e}", extra={"topic": self.topic})
                    stop_event.wait(self.config.poll_interval)
                    continue

                if envelope is None:
                    self._slots.release()
                    stop_event.wait(self.config.poll_interval)
                    continue

                future = executor.submit(self._handle_safely, envelope)
                future.add_done_callback(lambda _: self._slots.release())

        logger.info("Worker stopped", extra={"topic": self.topic})

    def _handle_safely(self, envelope: Envelope) -> Outcome | None:
        try:
            return self.handle_envelope(envelope)
        except TransientError as e:
            # Message stays unacknowledged and is redelivered after its visibility timeout
            logger.warning(f"Delivery abandoned: {e}", extra={**envelope.item.log_context(), "topic": self.topic})
            return None
        except Exception:
            logger.exception(
                "Delivery abandoned after unexpected error",
                extra={**envelope.item.log_context(), "topic": self.topic},
            )
            return None
