"""
Pipeline State Tracker.

Single point of truth for idempotency: one state record per (tenant, correlation id),
changed only through compare-and-set transitions, plus an append-only log
of every accepted transition and dispatch event. Also owns BatchRecords,
whose counters are changed only through atomic increments.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

from fhir_rag_ingestion.core.errors import BatchNotFoundError
from fhir_rag_ingestion.core.models import (
    BatchRecord,
    BatchStage,
    ProcessingResult,
    Stage,
    TransitionStatus,
)
from fhir_rag_ingestion.core.models.work_item import utcnow
from fhir_rag_ingestion.core.state_machine import (
    LEASED_STAGES,
    RETRY_ENTRY,
    classify_conflict,
    is_valid_transition,
)
from fhir_rag_ingestion.observability.logger import get_logger

from .connection import DatabaseConnectionPool, transient_db_errors

logger = get_logger(__name__)


class TransitionResult(BaseModel):
    """
    Outcome of record_transition.

    Attributes:
        status: ACCEPTED, DUPLICATE or REJECTED
        reason: Why the transition was not a plain acceptance
        current_stage: Stored stage after the call
    """

    status: TransitionStatus
    reason: str | None = None
    current_stage: Stage | None = None

    @property
    def accepted(self) -> bool:
        return self.status == TransitionStatus.ACCEPTED


def resolve_batch_stage(current: BatchStage, requested: BatchStage) -> BatchStage:
    """
    Batch stages only move forward. PartiallyFailed and Completed are final;
    PartiallyFailed can be entered from any non-final stage.
    """
    if current in (BatchStage.PARTIALLY_FAILED, BatchStage.COMPLETED):
        return current
    if requested == BatchStage.CHUNKING:
        return current
    return requested


def _new_failed_stage(from_stage: Stage | None, to_stage: Stage) -> Stage | None:
    if to_stage == Stage.FAILED and from_stage not in (None, Stage.DEAD_LETTERED):
        return from_stage
    return None


def _statically_valid(from_stage: Stage | None, to_stage: Stage, replay: bool) -> bool:
    # Failed -> retry entry also depends on the stored failed_stage,
    # which is checked by the compare-and-set itself.
    if from_stage == Stage.FAILED and to_stage in RETRY_ENTRY.values():
        return True
    return is_valid_transition(from_stage, to_stage, replay=replay)


def _retry_sources(to_stage: Stage) -> list[str]:
    return [s.value for s, entry in RETRY_ENTRY.items() if entry == to_stage]


class StateTracker(ABC):
    """Abstract state tracker."""

    # ---- per-item state ----

    @abstractmethod
    def record_transition(
        self,
        correlation_id: str,
        from_stage: Stage | None,
        to_stage: Stage,
        *,
        tenant_id: str,
        batch_id: str | None = None,
        lease_seconds: float | None = None,
        lease_owner: str | None = None,
        reason: str | None = None,
        replay: bool = False,
    ) -> TransitionResult:
        """
        Atomically move an item from `from_stage` to `to_stage`.

        Args:
            correlation_id: Item correlation id
            from_stage: Expected stored stage, None to register a new item
            to_stage: Requested stage
            tenant_id: Owning tenant; a record owned by another tenant is never touched
            batch_id: Batch id, required when registering a new item
            lease_seconds: Ownership lease for in-flight stages
            lease_owner: Holder of the lease, typically the transport message id.
                The same owner may reclaim its own live lease after a redelivery.
            reason: Free text stored in the transition log
            replay: Permit DeadLettered -> Failed for an explicit replay

        Returns:
            TransitionResult: ACCEPTED if this caller now owns the transition,
            DUPLICATE if the item already moved past `from_stage`,
            REJECTED if the transition is invalid, out of order or crosses tenants
        """

    @abstractmethod
    def record_event(self, correlation_id: str, tenant_id: str, stage: Stage, event: str, reason: str | None = None) -> None:
        """Append a non-transition event (e.g. "Dispatched") to the log."""

    @abstractmethod
    def get_stage(self, correlation_id: str, tenant_id: str) -> Stage | None:
        """Stored stage of an item, None if unknown to this tenant."""

    @abstractmethod
    def transition_log(self, correlation_id: str, tenant_id: str) -> list[dict[str, Any]]:
        """Every logged transition and event of an item, oldest first."""

    @abstractmethod
    def stage_counts(self, tenant_id: str, batch_id: str) -> dict[str, int]:
        """Number of items per stored stage in a batch."""

    # ---- processing results ----

    @abstractmethod
    def append_result(self, result: ProcessingResult) -> None:
        """Append a ProcessingResult (never updated afterwards)."""

    @abstractmethod
    def results(self, correlation_id: str, tenant_id: str) -> list[ProcessingResult]:
        """ProcessingResults of an item, oldest first."""

    # ---- batches ----

    @abstractmethod
    def create_batch(self, tenant_id: str, batch_id: str) -> BatchRecord:
        """Create the BatchRecord if it does not exist and return it."""

    @abstractmethod
    def get_batch_status(self, tenant_id: str, batch_id: str) -> BatchRecord:
        """
        Raises:
            BatchNotFoundError: If the tenant has no such batch
        """

    @abstractmethod
    def increment_counters(
        self, tenant_id: str, batch_id: str, processed: int = 0, errored: int = 0, recovered: int = 0
    ) -> None:
        """Atomically add to the batch counters."""

    @abstractmethod
    def add_batch_error(self, tenant_id: str, batch_id: str, entry: dict[str, Any]) -> None:
        """Append an entry to the batch error list."""

    @abstractmethod
    def record_rejection(self, tenant_id: str, batch_id: str, position: int, entry: dict[str, Any]) -> bool:
        """
        Count a rejected record against the batch once.

        Registers the rejection by its position in the export and, only if
        it is new, appends `entry` to the batch errors and adds one to
        errored_count in the same step.

        Returns:
            True if the rejection is new, False if a previous chunking pass
            already recorded it
        """

    @abstractmethod
    def set_total_resources(self, tenant_id: str, batch_id: str, total: int) -> None:
        """Record the number of records in the export once chunking finishes."""

    @abstractmethod
    def mark_batch_stage(self, tenant_id: str, batch_id: str, stage: BatchStage) -> BatchStage:
        """Request a batch stage change; returns the resulting stage."""

    @abstractmethod
    def settle_batch(self, tenant_id: str, batch_id: str) -> bool:
        """
        Move a batch whose records all reached a terminal outcome to
        Completed (no errors) or PartiallyFailed.

        Returns:
            True if this call settled the batch
        """

    @abstractmethod
    def request_cancel(self, tenant_id: str, batch_id: str) -> None:
        """Mark a batch cancelled; items are not dispatched onward afterwards."""

    @abstractmethod
    def is_cancelled(self, tenant_id: str, batch_id: str) -> bool:
        """Whether cancellation was requested for a batch."""


@dataclass
class _StateRecord:
    tenant_id: str
    batch_id: str
    stage: Stage
    failed_stage: Stage | None = None
    lease_expires_at: float | None = None
    lease_owner: str | None = None


class InMemoryStateTracker(StateTracker):
    """
    Lock-protected tracker for local runs and tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[tuple[str, str], _StateRecord] = {}
        self._log: list[dict[str, Any]] = []
        self._results: list[ProcessingResult] = []
        self._batches: dict[tuple[str, str], BatchRecord] = {}
        self._rejections: set[tuple[str, str, int]] = set()

    def record_transition(
        self,
        correlation_id: str,
        from_stage: Stage | None,
        to_stage: Stage,
        *,
        tenant_id: str,
        batch_id: str | None = None,
        lease_seconds: float | None = None,
        lease_owner: str | None = None,
        reason: str | None = None,
        replay: bool = False,
    ) -> TransitionResult:
        if not _statically_valid(from_stage, to_stage, replay):
            return TransitionResult(
                status=TransitionStatus.REJECTED,
                reason=f"invalid transition {getattr(from_stage, 'value', None)} -> {to_stage.value}",
            )

        with self._lock:
            now = self._clock()
            record = self._states.get((tenant_id, correlation_id))

            if record is None:
                if from_stage is not None:
                    return TransitionResult(status=TransitionStatus.REJECTED, reason="unknown correlation id")
                if not batch_id:
                    raise ValueError("batch_id is required to register a new item")
                self._states[(tenant_id, correlation_id)] = _StateRecord(tenant_id=tenant_id, batch_id=batch_id, stage=to_stage)
                self._append_log(correlation_id, tenant_id, None, to_stage, "transition", reason)
                return TransitionResult(status=TransitionStatus.ACCEPTED, current_stage=to_stage)

            lease = now + lease_seconds if lease_seconds and to_stage in LEASED_STAGES else None

            if record.stage == from_stage and is_valid_transition(
                from_stage, to_stage, failed_stage=record.failed_stage, replay=replay
            ):
                record.failed_stage = _new_failed_stage(from_stage, to_stage) or record.failed_stage
                record.stage = to_stage
                record.lease_expires_at = lease
                record.lease_owner = lease_owner if lease is not None else None
                self._append_log(correlation_id, tenant_id, from_stage, to_stage, "transition", reason)
                return TransitionResult(status=TransitionStatus.ACCEPTED, current_stage=to_stage)

            if record.stage == from_stage:
                # Failed -> wrong retry entry
                return TransitionResult(
                    status=TransitionStatus.REJECTED,
                    reason=f"item failed in {getattr(record.failed_stage, 'value', None)}, cannot re-enter {to_stage.value}",
                    current_stage=record.stage,
                )

            lease_expired = record.lease_expires_at is not None and (
                record.lease_expires_at <= now or (lease_owner is not None and record.lease_owner == lease_owner)
            )
            status, why = classify_conflict(record.stage, from_stage, to_stage, lease_expired)
            if status == TransitionStatus.ACCEPTED:
                record.lease_expires_at = lease
                record.lease_owner = lease_owner
                self._append_log(correlation_id, tenant_id, from_stage, to_stage, "reclaim", why)
                logger.warning(
                    f"Expired lease on {to_stage.value} reclaimed",
                    extra={"correlation_id": correlation_id, "tenant_id": tenant_id},
                )
            return TransitionResult(status=status, reason=why, current_stage=record.stage)

    def record_event(self, correlation_id: str, tenant_id: str, stage: Stage, event: str, reason: str | None = None) -> None:
        with self._lock:
            self._append_log(correlation_id, tenant_id, None, stage, event, reason)

    def get_stage(self, correlation_id: str, tenant_id: str) -> Stage | None:
        with self._lock:
            record = self._states.get((tenant_id, correlation_id))
            if record is None:
                return None
            return record.stage

    def transition_log(self, correlation_id: str, tenant_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(e) for e in self._log
                if e["correlation_id"] == correlation_id and e["tenant_id"] == tenant_id
            ]

    def stage_counts(self, tenant_id: str, batch_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for record in self._states.values():
                if record.tenant_id == tenant_id and record.batch_id == batch_id:
                    counts[record.stage.value] = counts.get(record.stage.value, 0) + 1
        return counts

    def append_result(self, result: ProcessingResult) -> None:
        with self._lock:
            self._results.append(result)

    def results(self, correlation_id: str, tenant_id: str) -> list[ProcessingResult]:
        with self._lock:
            return [
                r for r in self._results
                if r.correlation_id == correlation_id and r.tenant_id == tenant_id
            ]

    def create_batch(self, tenant_id: str, batch_id: str) -> BatchRecord:
        with self._lock:
            key = (tenant_id, batch_id)
            if key not in self._batches:
                self._batches[key] = BatchRecord(batch_id=batch_id, tenant_id=tenant_id)
            return self._batches[key].model_copy(deep=True)

    def get_batch_status(self, tenant_id: str, batch_id: str) -> BatchRecord:
        with self._lock:
            return self._batch(tenant_id, batch_id).model_copy(deep=True)

    def increment_counters(
        self, tenant_id: str, batch_id: str, processed: int = 0, errored: int = 0, recovered: int = 0
    ) -> None:
        with self._lock:
            batch = self._batch(tenant_id, batch_id)
            batch.processed_count += processed
            batch.errored_count += errored
            batch.recovered_count += recovered
            batch.updated_at = utcnow()

    def add_batch_error(self, tenant_id: str, batch_id: str, entry: dict[str, Any]) -> None:
        with self._lock:
            batch = self._batch(tenant_id, batch_id)
            batch.errors.append(dict(entry))
            batch.updated_at = utcnow()

    def record_rejection(self, tenant_id: str, batch_id: str, position: int, entry: dict[str, Any]) -> bool:
        with self._lock:
            batch = self._batch(tenant_id, batch_id)
            key = (tenant_id, batch_id, position)
            if key in self._rejections:
                return False
            self._rejections.add(key)
            batch.errors.append(dict(entry))
            batch.errored_count += 1
            batch.updated_at = utcnow()
            return True

    def set_total_resources(self, tenant_id: str, batch_id: str, total: int) -> None:
        with self._lock:
            batch = self._batch(tenant_id, batch_id)
            batch.total_resources = total
            batch.updated_at = utcnow()

    def mark_batch_stage(self, tenant_id: str, batch_id: str, stage: BatchStage) -> BatchStage:
        with self._lock:
            batch = self._batch(tenant_id, batch_id)
            batch.stage = resolve_batch_stage(batch.stage, stage)
            batch.updated_at = utcnow()
            return batch.stage

    def settle_batch(self, tenant_id: str, batch_id: str) -> bool:
        with self._lock:
            batch = self._batch(tenant_id, batch_id)
            if batch.settled_at is not None or not batch.is_settled:
                return False
            batch.stage = BatchStage.PARTIALLY_FAILED if batch.errored_count else BatchStage.COMPLETED
            batch.settled_at = utcnow()
            batch.updated_at = batch.settled_at
            return True

    def request_cancel(self, tenant_id: str, batch_id: str) -> None:
        with self._lock:
            self._batch(tenant_id, batch_id).cancel_requested = True

    def is_cancelled(self, tenant_id: str, batch_id: str) -> bool:
        with self._lock:
            batch = self._batches.get((tenant_id, batch_id))
            return bool(batch and batch.cancel_requested)

    def _batch(self, tenant_id: str, batch_id: str) -> BatchRecord:
        try:
            return self._batches[(tenant_id, batch_id)]
        except KeyError:
            raise BatchNotFoundError(
                f"Batch {batch_id} not found for tenant {tenant_id}", tenant_id=tenant_id, batch_id=batch_id
            ) from None

    def _append_log(
        self,
        correlation_id: str,
        tenant_id: str,
        from_stage: Stage | None,
        to_stage: Stage,
        event: str,
        reason: str | None,
    ) -> None:
        self._log.append({
            "correlation_id": correlation_id,
            "tenant_id": tenant_id,
            "from_stage": from_stage.value if from_stage else None,
            "to_stage": to_stage.value,
            "event": event,
            "reason": reason,
            "created_at": utcnow(),
        })


class PostgresStateTracker(StateTracker):
    """
    Tracker backed by pipeline_state, pipeline_transition, processing_result
    and batch_record. Compare-and-set is a conditional UPDATE; counters use
    SET n = n + k so concurrent workers never overwrite each other.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        self.pool = pool

    def record_transition(
        self,
        correlation_id: str,
        from_stage: Stage | None,
        to_stage: Stage,
        *,
        tenant_id: str,
        batch_id: str | None = None,
        lease_seconds: float | None = None,
        lease_owner: str | None = None,
        reason: str | None = None,
        replay: bool = False,
    ) -> TransitionResult:
        if not _statically_valid(from_stage, to_stage, replay):
            return TransitionResult(
                status=TransitionStatus.REJECTED,
                reason=f"invalid transition {getattr(from_stage, 'value', None)} -> {to_stage.value}",
            )

        lease = float(lease_seconds) if lease_seconds and to_stage in LEASED_STAGES else None

        with transient_db_errors("record_transition"):
            with self.pool.get_connection() as conn:
                with conn.cursor() as cur:
                    if from_stage is None:
                        return self._register(cur, correlation_id, to_stage, tenant_id, batch_id, reason)

                    params = {
                        "cid": correlation_id,
                        "tenant": tenant_id,
                        "from": from_stage.value,
                        "to": to_stage.value,
                        "failed": getattr(_new_failed_stage(from_stage, to_stage), "value", None),
                        "lease": lease,
                        "owner": lease_owner,
                        "retry_sources": _retry_sources(to_stage),
                    }
                    cas = """
                        UPDATE pipeline_state
                        SET stage = %(to)s,
                            failed_stage = COALESCE(%(failed)s, failed_stage),
                            lease_expires_at = now() + make_interval(secs => %(lease)s::float8),
                            lease_owner = CASE WHEN %(lease)s::float8 IS NULL THEN NULL ELSE %(owner)s END,
                            updated_at = now()
                        WHERE correlation_id = %(cid)s
                          AND tenant_id = %(tenant)s
                          AND stage = %(from)s
                    """
                    if from_stage == Stage.FAILED and to_stage != Stage.DEAD_LETTERED:
                        cas += " AND failed_stage = ANY(%(retry_sources)s)"
                    cur.execute(cas, params)
                    if cur.rowcount == 1:
                        self._insert_log(cur, correlation_id, tenant_id, from_stage, to_stage, "transition", reason)
                        return TransitionResult(status=TransitionStatus.ACCEPTED, current_stage=to_stage)

                    if to_stage in LEASED_STAGES:
                        cur.execute(
                            """
                            UPDATE pipeline_state
                            SET lease_expires_at = now() + make_interval(secs => %(lease)s::float8),
                                lease_owner = %(owner)s,
                                updated_at = now()
                            WHERE correlation_id = %(cid)s
                              AND tenant_id = %(tenant)s
                              AND stage = %(to)s
                              AND (lease_expires_at <= now() OR lease_owner = %(owner)s)
                            """,
                            params,
                        )
                        if cur.rowcount == 1:
                            self._insert_log(
                                cur, correlation_id, tenant_id, from_stage, to_stage, "reclaim", "reclaimed expired lease"
                            )
                            logger.warning(
                                f"Expired lease on {to_stage.value} reclaimed",
                                extra={"correlation_id": correlation_id, "tenant_id": tenant_id},
                            )
                            return TransitionResult(
                                status=TransitionStatus.ACCEPTED,
                                reason="reclaimed expired lease",
                                current_stage=to_stage,
                            )

                    cur.execute(
                        "SELECT stage, failed_stage FROM pipeline_state WHERE correlation_id = %s AND tenant_id = %s",
                        (correlation_id, tenant_id),
                    )
                    row = cur.fetchone()

        if row is None:
            return TransitionResult(status=TransitionStatus.REJECTED, reason="unknown correlation id")

        current = Stage(row["stage"])
        if current == from_stage:
            return TransitionResult(
                status=TransitionStatus.REJECTED,
                reason=f"item failed in {row['failed_stage']}, cannot re-enter {to_stage.value}",
                current_stage=current,
            )
        status, why = classify_conflict(current, from_stage, to_stage, lease_expired=False)
        return TransitionResult(status=status, reason=why, current_stage=current)

    def _register(self, cur, correlation_id, to_stage, tenant_id, batch_id, reason) -> TransitionResult:
        if not batch_id:
            raise ValueError("batch_id is required to register a new item")
        cur.execute(
            """
            INSERT INTO pipeline_state (correlation_id, tenant_id, batch_id, stage)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (tenant_id, correlation_id) DO NOTHING
            """,
            (correlation_id, tenant_id, batch_id, to_stage.value),
        )
        if cur.rowcount == 1:
            self._insert_log(cur, correlation_id, tenant_id, None, to_stage, "transition", reason)
            return TransitionResult(status=TransitionStatus.ACCEPTED, current_stage=to_stage)

        cur.execute(
            "SELECT stage FROM pipeline_state WHERE correlation_id = %s AND tenant_id = %s",
            (correlation_id, tenant_id),
        )
        row = cur.fetchone()
        return TransitionResult(
            status=TransitionStatus.DUPLICATE, reason="item already registered", current_stage=Stage(row["stage"])
        )

    def _insert_log(self, cur, correlation_id, tenant_id, from_stage, to_stage, event, reason) -> None:
        cur.execute(
            """
            INSERT INTO pipeline_transition (correlation_id, tenant_id, from_stage, to_stage, event, reason)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                correlation_id,
                tenant_id,
                from_stage.value if from_stage else None,
                to_stage.value,
                event,
                reason,
            ),
        )

    def record_event(self, correlation_id: str, tenant_id: str, stage: Stage, event: str, reason: str | None = None) -> None:
        with transient_db_errors("record_event"):
            with self.pool.get_cursor() as cur:
                self._insert_log(cur, correlation_id, tenant_id, None, stage, event, reason)

    def get_stage(self, correlation_id: str, tenant_id: str) -> Stage | None:
        with transient_db_errors("get_stage"):
            rows = self.pool.execute_query(
                "SELECT stage FROM pipeline_state WHERE correlation_id = %s AND tenant_id = %s",
                (correlation_id, tenant_id),
            )
        return Stage(rows[0]["stage"]) if rows else None

    def transition_log(self, correlation_id: str, tenant_id: str) -> list[dict[str, Any]]:
        return self.pool.execute_query(
            """
            SELECT correlation_id, tenant_id, from_stage, to_stage, event, reason, created_at
            FROM pipeline_transition
            WHERE correlation_id = %s AND tenant_id = %s
            ORDER BY transition_id
            """,
            (correlation_id, tenant_id),
        )

    def stage_counts(self, tenant_id: str, batch_id: str) -> dict[str, int]:
        rows = self.pool.execute_query(
            """
            SELECT stage, COUNT(*) AS count
            FROM pipeline_state
            WHERE tenant_id = %s AND batch_id = %s
            GROUP BY stage
            """,
            (tenant_id, batch_id),
        )
        return {r["stage"]: r["count"] for r in rows}

    def append_result(self, result: ProcessingResult) -> None:
        with transient_db_errors("append_result"):
            self.pool.execute_command(
                """
                INSERT INTO processing_result (
                    correlation_id, tenant_id, batch_id, stage, success,
                    duration_seconds, errors, metrics, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s)
                """,
                (
                    result.correlation_id,
                    result.tenant_id,
                    result.batch_id,
                    result.stage.value,
                    result.success,
                    result.duration_seconds,
                    json.dumps(result.errors),
                    json.dumps(result.metrics),
                    result.created_at,
                ),
            )

    def results(self, correlation_id: str, tenant_id: str) -> list[ProcessingResult]:
        rows = self.pool.execute_query(
            """
            SELECT correlation_id, tenant_id, batch_id, stage, success,
                   duration_seconds, errors, metrics, created_at
            FROM processing_result
            WHERE correlation_id = %s AND tenant_id = %s
            ORDER BY result_id
            """,
            (correlation_id, tenant_id),
        )
        return [ProcessingResult.model_validate(r) for r in rows]

    def create_batch(self, tenant_id: str, batch_id: str) -> BatchRecord:
        with transient_db_errors("create_batch"):
            self.pool.execute_command(
                """
                INSERT INTO batch_record (tenant_id, batch_id, stage)
                VALUES (%s, %s, %s)
                ON CONFLICT (tenant_id, batch_id) DO NOTHING
                """,
                (tenant_id, batch_id, BatchStage.CHUNKING.value),
            )
        return self.get_batch_status(tenant_id, batch_id)

    def get_batch_status(self, tenant_id: str, batch_id: str) -> BatchRecord:
        with transient_db_errors("get_batch_status"):
            rows = self.pool.execute_query(
                "SELECT * FROM batch_record WHERE tenant_id = %s AND batch_id = %s",
                (tenant_id, batch_id),
            )
        if not rows:
            raise BatchNotFoundError(
                f"Batch {batch_id} not found for tenant {tenant_id}", tenant_id=tenant_id, batch_id=batch_id
            )
        return BatchRecord.model_validate(rows[0])

    def increment_counters(
        self, tenant_id: str, batch_id: str, processed: int = 0, errored: int = 0, recovered: int = 0
    ) -> None:
        with transient_db_errors("increment_counters"):
            rowcount = self.pool.execute_command(
                """
                UPDATE batch_record
                SET processed_count = processed_count + %s,
                    errored_count = errored_count + %s,
                    recovered_count = recovered_count + %s,
                    updated_at = now()
                WHERE tenant_id = %s AND batch_id = %s
                """,
                (processed, errored, recovered, tenant_id, batch_id),
            )
        self._require_row(rowcount, tenant_id, batch_id)

    def add_batch_error(self, tenant_id: str, batch_id: str, entry: dict[str, Any]) -> None:
        with transient_db_errors("add_batch_error"):
            rowcount = self.pool.execute_command(
                """
                UPDATE batch_record
                SET errors = errors || jsonb_build_array(%s::jsonb),
                    updated_at = now()
                WHERE tenant_id = %s AND batch_id = %s
                """,
                (json.dumps(entry, default=str), tenant_id, batch_id),
            )
        self._require_row(rowcount, tenant_id, batch_id)

    def record_rejection(self, tenant_id: str, batch_id: str, position: int, entry: dict[str, Any]) -> bool:
        with transient_db_errors("record_rejection"):
            with self.pool.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO rejected_record (tenant_id, batch_id, position)
                        VALUES (%s, %s, %s)
                        ON CONFLICT (tenant_id, batch_id, position) DO NOTHING
                        """,
                        (tenant_id, batch_id, position),
                    )
                    if cur.rowcount != 1:
                        return False
                    cur.execute(
                        """
                        UPDATE batch_record
                        SET errors = errors || jsonb_build_array(%s::jsonb),
                            errored_count = errored_count + 1,
                            updated_at = now()
                        WHERE tenant_id = %s AND batch_id = %s
                        """,
                        (json.dumps(entry, default=str), tenant_id, batch_id),
                    )
                    self._require_row(cur.rowcount, tenant_id, batch_id)
        return True

    def set_total_resources(self, tenant_id: str, batch_id: str, total: int) -> None:
        with transient_db_errors("set_total_resources"):
            rowcount = self.pool.execute_command(
                """
                UPDATE batch_record SET total_resources = %s, updated_at = now()
                WHERE tenant_id = %s AND batch_id = %s
                """,
                (total, tenant_id, batch_id),
            )
        self._require_row(rowcount, tenant_id, batch_id)

    def mark_batch_stage(self, tenant_id: str, batch_id: str, stage: BatchStage) -> BatchStage:
        with transient_db_errors("mark_batch_stage"):
            rows = self.pool.execute_query(
                """
                UPDATE batch_record
                SET stage = CASE
                        WHEN stage IN ('PartiallyFailed', 'Completed') THEN stage
                        WHEN %(requested)s = 'Chunking' THEN stage
                        ELSE %(requested)s
                    END,
                    updated_at = now()
                WHERE tenant_id = %(tenant)s AND batch_id = %(batch)s
                RETURNING stage
                """,
                {"requested": stage.value, "tenant": tenant_id, "batch": batch_id},
            )
        self._require_row(len(rows), tenant_id, batch_id)
        return BatchStage(rows[0]["stage"])

    def settle_batch(self, tenant_id: str, batch_id: str) -> bool:
        with transient_db_errors("settle_batch"):
            rowcount = self.pool.execute_command(
                """
                UPDATE batch_record
                SET stage = CASE WHEN errored_count > 0 THEN 'PartiallyFailed' ELSE 'Completed' END,
                    settled_at = now(),
                    updated_at = now()
                WHERE tenant_id = %s AND batch_id = %s
                  AND settled_at IS NULL
                  AND total_resources IS NOT NULL
                  AND processed_count + errored_count >= total_resources
                """,
                (tenant_id, batch_id),
            )
        return rowcount == 1

    def request_cancel(self, tenant_id: str, batch_id: str) -> None:
        rowcount = self.pool.execute_command(
            "UPDATE batch_record SET cancel_requested = TRUE, updated_at = now() WHERE tenant_id = %s AND batch_id = %s",
            (tenant_id, batch_id),
        )
        self._require_row(rowcount, tenant_id, batch_id)

    def is_cancelled(self, tenant_id: str, batch_id: str) -> bool:
        with transient_db_errors("is_cancelled"):
            rows = self.pool.execute_query(
                "SELECT cancel_requested FROM batch_record WHERE tenant_id = %s AND batch_id = %s",
                (tenant_id, batch_id),
            )
        return bool(rows and rows[0]["cancel_requested"])

    def _require_row(self, rowcount: int, tenant_id: str, batch_id: str) -> None:
        if rowcount == 0:
            raise BatchNotFoundError(
                f"Batch {batch_id} not found for tenant {tenant_id}", tenant_id=tenant_id, batch_id=batch_id
            )
