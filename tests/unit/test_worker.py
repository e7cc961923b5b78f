"""
Unit tests for StageWorker: claim, process, retry, redelivery and dead-letter handling.

Runs the enrichment and persistence workers against in-memory backends.
"""

import io
import json
import threading
import time

import pytest

from fhir_rag_ingestion.core.errors import PermanentError, TransientError
from fhir_rag_ingestion.core.models import BatchStage, Envelope, Stage, WorkItem, make_correlation_id, topic_for
from fhir_rag_ingestion.core.retry import RetryPolicy
from fhir_rag_ingestion.pipeline import Outcome, StageWorker
from fhir_rag_ingestion.pipeline.handlers import HandlerContext

TENANT = "org-acme"
BATCH = "batch-1"
ENRICHMENT_TOPIC = topic_for(Stage.ENRICHING)
PERSISTENCE_TOPIC = topic_for(Stage.STORING)


def export(*resource_ids: str) -> io.BytesIO:
    lines = [json.dumps({"resourceType": "Observation", "id": rid, "status": "final"}) for rid in resource_ids]
    return io.BytesIO(("\n".join(lines) + "\n").encode("utf-8"))


def cid(resource_id: str) -> str:
    return make_correlation_id(BATCH, "Observation", resource_id)


class TestHappyPath:
    """Tests for items flowing through both stages"""

    def test_all_items_complete(self, harness):
        harness.ingest.ingest(export("a", "b", "c"), TENANT, BATCH)
        outcomes = harness.run_until_idle()

        assert outcomes.count(Outcome.COMPLETED) == 6
        for rid in ("a", "b", "c"):
            assert harness.tracker.get_stage(cid(rid), TENANT) == Stage.COMPLETED

        batch = harness.tracker.get_batch_status(TENANT, BATCH)
        assert batch.processed_count == 3
        assert batch.errored_count == 0
        assert batch.stage == BatchStage.COMPLETED
        assert harness.blobs.put_count == 3
        assert harness.index.upsert_count == 3

    def test_results_recorded_per_stage(self, harness):
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()

        results = harness.tracker.results(cid("a"), TENANT)
        assert [(r.stage, r.success) for r in results] == [(Stage.ENRICHING, True), (Stage.STORING, True)]
        assert results[0].metrics["quality_score"] == 0.9
        assert results[1].metrics["attempt"] == 2.0

    def test_full_transition_history(self, harness):
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()

        log = harness.tracker.transition_log(cid("a"), TENANT)
        stages = [e["to_stage"] for e in log if e["event"] == "transition"]
        assert stages == ["Received", "Chunked", "Enriching", "Enriched", "Storing", "Completed"]

    def test_stored_blob_is_enriched(self, harness):
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()
        blob = json.loads(harness.blobs.get(f"{TENANT}/{BATCH}/Observation/a"))
        assert blob["enrichment"]["summary"] == "Observation summary"


class TestRetries:
    """Tests for transient failures and retry budgets"""

    def test_transient_twice_then_success(self, harness, scripted_enrichment):
        """Test that an item succeeding on its third enrichment attempt completes with attempt 3"""
        scripted_enrichment.fail_with(TransientError("rate limited"), TransientError("rate limited"))
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        outcomes = harness.run_until_idle()

        assert outcomes.count(Outcome.RETRIED) == 2
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED
        assert len(scripted_enrichment.calls) == 3

        enrichment = [r for r in harness.tracker.results(cid("a"), TENANT) if r.stage == Stage.ENRICHING]
        assert [r.success for r in enrichment] == [False, False, True]
        assert enrichment[-1].metrics["attempt"] == 3.0

        failures = [e for e in harness.tracker.transition_log(cid("a"), TENANT) if e["to_stage"] == "Failed"]
        assert len(failures) == 2
        assert harness.tracker.get_batch_status(TENANT, BATCH).stage == BatchStage.COMPLETED

    def test_exhausted_retries_dead_letter(self, harness, scripted_enrichment):
        scripted_enrichment.fail_with(*[TransientError("outage") for _ in range(5)])
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        outcomes = harness.run_until_idle()

        assert outcomes.count(Outcome.RETRIED) == 4
        assert outcomes.count(Outcome.DEAD_LETTERED) == 1
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.DEAD_LETTERED

        record = harness.dead_letters.get(TENANT, cid("a"))
        assert record.failed_stage == Stage.ENRICHING
        assert record.attempt == 5
        assert len(record.error_history) == 5
        assert record.item.payload == json.dumps(
            {"resourceType": "Observation", "id": "a", "status": "final"}
        ).encode("utf-8")

        batch = harness.tracker.get_batch_status(TENANT, BATCH)
        assert batch.errored_count == 1
        assert batch.stage == BatchStage.PARTIALLY_FAILED

    def test_permanent_error_leaves_item_failed(self, harness, scripted_enrichment):
        """Test that a permanent failure is final: no retry, no dead letter, batch still settles"""
        scripted_enrichment.fail_for("a", PermanentError("payload rejected"))
        harness.ingest.ingest(export("a", "b"), TENANT, BATCH)
        outcomes = harness.run_until_idle()

        assert outcomes.count(Outcome.FAILED) == 1
        assert len([c for c in scripted_enrichment.calls if c["resource_id"] == "a"]) == 1
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.FAILED
        assert harness.tracker.get_stage(cid("b"), TENANT) == Stage.COMPLETED
        assert harness.dead_letters.get(TENANT, cid("a")) is None

        batch = harness.tracker.get_batch_status(TENANT, BATCH)
        assert (batch.processed_count, batch.errored_count) == (1, 1)
        assert batch.stage == BatchStage.PARTIALLY_FAILED
        assert batch.settled_at is not None

        error = batch.errors[0]
        assert error["kind"] == "permanent_error"
        assert error["stage"] == "Enriching"
        assert [e["message"] for e in error["history"]] == ["payload rejected"]

        results = harness.tracker.results(cid("a"), TENANT)
        assert [(r.success, r.errors) for r in results] == [(False, ["payload rejected"])]

    def test_unexpected_error_treated_as_transient(self, harness, scripted_enrichment):
        scripted_enrichment.fail_with(KeyError("summary"))
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED

    def test_index_failures_resume_after_blob(self, harness_factory, scripted_enrichment, flaky_index_factory):
        """Test that persistence retries rewrite the index only, never the blob"""
        index = flaky_index_factory(failures=2)
        harness = harness_factory(scripted_enrichment, index_store=index)
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()

        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED
        assert harness.blobs.put_count == 1
        assert index.upsert_count == 1
        assert index.attempts == 3
        assert harness.tracker.get_batch_status(TENANT, BATCH).stage == BatchStage.COMPLETED

    def test_stage_budgets_are_independent(self, harness_factory, scripted_enrichment, flaky_index_factory, config_factory):
        """Test that enrichment retries do not use up the persistence budget"""
        config = config_factory()
        config.stages["persistence"].retry = RetryPolicy(max_attempts=2, initial_delay=0.0, max_delay=0.0)
        scripted_enrichment.fail_with(TransientError("x"), TransientError("x"))
        harness = harness_factory(scripted_enrichment, index_store=flaky_index_factory(failures=1), config=config)

        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED


class TestIdempotency:
    """Tests for duplicate and misrouted deliveries"""

    def test_redelivered_completed_item_is_noop(self, harness, scripted_enrichment):
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()

        item = WorkItem(
            tenant_id=TENANT, resource_type="Observation", resource_id="a", batch_id=BATCH, stage=Stage.CHUNKED
        )
        harness.queue.enqueue(ENRICHMENT_TOPIC, Envelope(topic=ENRICHMENT_TOPIC, target_stage=Stage.ENRICHING, item=item))
        outcomes = harness.run_until_idle()

        assert outcomes == [Outcome.DUPLICATE]
        assert len(scripted_enrichment.calls) == 1
        assert harness.blobs.put_count == 1
        assert harness.tracker.get_batch_status(TENANT, BATCH).processed_count == 1

    def test_concurrent_copies_processed_once(self, harness, scripted_enrichment):
        """Test that two deliveries of the same item produce one claim and one side effect"""
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        envelope = harness.queue.dequeue(ENRICHMENT_TOPIC, 30)
        copy = envelope.model_copy(update={"message_id": "copy-1"})

        outcomes = []
        barrier = threading.Barrier(2)

        def deliver(env):
            barrier.wait()
            outcomes.append(harness.enricher.handle_envelope(env))

        threads = [threading.Thread(target=deliver, args=(e,)) for e in (envelope, copy)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(o.value for o in outcomes) == ["completed", "duplicate"]
        assert len(scripted_enrichment.calls) == 1

    def test_misrouted_envelope_rejected(self, harness):
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        envelope = harness.queue.dequeue(ENRICHMENT_TOPIC, 30)
        misrouted = envelope.model_copy(update={"target_stage": Stage.STORING})

        assert harness.enricher.handle_envelope(misrouted) == Outcome.REJECTED
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.CHUNKED

    def test_claim_failure_defers_delivery(self, harness, monkeypatch):
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        original = harness.tracker.record_transition
        failures = [TransientError("tracker unavailable")]

        def flaky_transition(*args, **kwargs):
            if failures and args[2] == Stage.ENRICHING:
                raise failures.pop()
            return original(*args, **kwargs)

        monkeypatch.setattr(harness.tracker, "record_transition", flaky_transition)
        assert harness.enricher.poll_once() == Outcome.DEFERRED
        assert harness.queue.depth(ENRICHMENT_TOPIC) == 1

        harness.run_until_idle()
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def claim_and_crash(harness, clock) -> Envelope:
    """Take the next enrichment message, claim its item and never finish."""
    envelope = harness.queue.dequeue(ENRICHMENT_TOPIC, 30)
    clock.advance(1)
    claim = harness.tracker.record_transition(
        envelope.correlation_id,
        envelope.item.stage,
        Stage.ENRICHING,
        tenant_id=envelope.tenant_id,
        lease_seconds=30,
        lease_owner=envelope.message_id,
    )
    assert claim.accepted
    return envelope


class TestRedelivery:
    """Tests for messages redelivered after a worker stopped mid-stage"""

    def test_redelivery_before_lease_ends_completes(self, harness_factory, scripted_enrichment):
        """Test that a message redelivered while its own lease is live is processed, not dropped"""
        clock = FakeClock()
        harness = harness_factory(scripted_enrichment, clock=clock)
        harness.ingest.ingest(export("a"), TENANT, BATCH)

        claim_and_crash(harness, clock)
        # Visible again at 1030, lease runs until 1031
        clock.advance(29)

        outcomes = harness.run_until_idle()

        assert outcomes == [Outcome.COMPLETED, Outcome.COMPLETED]
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED
        batch = harness.tracker.get_batch_status(TENANT, BATCH)
        assert batch.processed_count == 1
        assert batch.settled_at is not None

    def test_other_copy_during_live_lease_is_duplicate(self, harness_factory, scripted_enrichment):
        clock = FakeClock()
        harness = harness_factory(scripted_enrichment, clock=clock)
        harness.ingest.ingest(export("a"), TENANT, BATCH)

        envelope = claim_and_crash(harness, clock)
        copy = envelope.model_copy(update={"message_id": "copy-1"})
        assert harness.enricher.handle_envelope(copy) == Outcome.DUPLICATE
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.ENRICHING

    def test_last_delivery_dead_letters_item(self, harness_factory, scripted_enrichment, config_factory):
        """Test that an item whose message keeps timing out ends in DeadLettered, not stuck in Enriching"""
        clock = FakeClock()
        harness = harness_factory(scripted_enrichment, config=config_factory(max_deliveries=3), clock=clock)
        harness.ingest.ingest(export("a", "b"), TENANT, BATCH)

        for _ in range(2):
            envelope = claim_and_crash(harness, clock)
            assert envelope.item.resource_id == "a"
            clock.advance(29)

        outcomes = harness.run_until_idle()

        assert outcomes.count(Outcome.DEAD_LETTERED) == 1
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.DEAD_LETTERED
        assert [c["resource_id"] for c in scripted_enrichment.calls] == ["b"]
        assert harness.queue.dead_letters(ENRICHMENT_TOPIC) == []

        record = harness.dead_letters.get(TENANT, cid("a"))
        assert record.failed_stage == Stage.ENRICHING
        assert record.last_error.kind == "delivery_limit_exceeded"

        batch = harness.tracker.get_batch_status(TENANT, BATCH)
        assert (batch.processed_count, batch.errored_count) == (1, 1)
        assert batch.stage == BatchStage.PARTIALLY_FAILED
        assert batch.settled_at is not None

    def test_dead_lettered_after_delivery_limit_can_be_replayed(
        self, harness_factory, scripted_enrichment, config_factory
    ):
        clock = FakeClock()
        harness = harness_factory(scripted_enrichment, config=config_factory(max_deliveries=2), clock=clock)
        harness.ingest.ingest(export("a"), TENANT, BATCH)

        claim_and_crash(harness, clock)
        clock.advance(29)
        harness.run_until_idle()
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.DEAD_LETTERED

        assert harness.replayer.replay(TENANT)["replayed"] == 1
        harness.run_until_idle()
        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED
        assert harness.tracker.get_batch_status(TENANT, BATCH).recovered_count == 1


class TestQualityAndTenants:
    def test_low_quality_flagged_and_completed(self, harness_factory, enrichment_factory):
        harness = harness_factory(enrichment_factory(quality_score=0.3))
        harness.ingest.ingest(export("a"), TENANT, BATCH)
        harness.run_until_idle()

        assert harness.tracker.get_stage(cid("a"), TENANT) == Stage.COMPLETED
        flagged = harness.index.query(TENANT, {"flagged_for_review": True})
        assert [e["attributes"]["resource_id"] for e in flagged] == ["a"]

    def test_tenants_never_share_records(self, harness):
        """Test that identical exports from two tenants stay fully separated"""
        harness.ingest.ingest(export("a", "b"), "org-acme", BATCH)
        harness.ingest.ingest(export("a"), "org-beta", BATCH)
        harness.run_until_idle()

        assert {e["key"] for e in harness.index.query("org-acme")} == {
            "org-acme/batch-1/Observation/a",
            "org-acme/batch-1/Observation/b",
        }
        assert {e["key"] for e in harness.index.query("org-beta")} == {"org-beta/batch-1/Observation/a"}
        assert harness.tracker.get_batch_status("org-acme", BATCH).processed_count == 2
        assert harness.tracker.get_batch_status("org-beta", BATCH).processed_count == 1


class TestConsumerLoop:
    def test_unknown_stage(self, harness):
        with pytest.raises(ValueError, match="No handler"):
            StageWorker("chunking", harness.queue, harness.tracker, harness.dispatcher, HandlerContext())

    def test_run_until_stopped(self, harness):
        harness.ingest.ingest(export("a", "b", "c", "d"), TENANT, BATCH)
        stop = threading.Event()
        threads = [
            threading.Thread(target=harness.enricher.run, args=(stop,)),
            threading.Thread(target=harness.persister.run, args=(stop,)),
        ]
        for t in threads:
            t.start()
        try:
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                if harness.tracker.get_batch_status(TENANT, BATCH).settled_at is not None:
                    break
                time.sleep(0.02)
        finally:
            stop.set()
            for t in threads:
                t.join(timeout=10)

        batch = harness.tracker.get_batch_status(TENANT, BATCH)
        assert batch.stage == BatchStage.COMPLETED
        assert batch.processed_count == 4
        assert harness.queue.depth(ENRICHMENT_TOPIC) == 0
        assert harness.queue.depth(PERSISTENCE_TOPIC) == 0
