"""
End-to-end tests for the ingestion pipeline on the PostgreSQL backends.

Exports flow through chunking, enrichment and persistence with a scripted
enrichment capability in place of the OpenAI client.
"""

import io
import threading
import time

import pytest

from fhir_rag_ingestion.core.errors import PermanentError, TransientError
from fhir_rag_ingestion.core.models import BatchStage, Stage, make_correlation_id
from fhir_rag_ingestion.pipeline import BulkIngestPipeline, DeadLetterReplayer, Dispatcher, StageWorker
from fhir_rag_ingestion.pipeline.handlers import HandlerContext
from fhir_rag_ingestion.pipeline.status import batch_details
from fhir_rag_ingestion.storage import (
    PostgresBlobStore,
    PostgresDeadLetterStore,
    PostgresIndexStore,
    PostgresStateTracker,
    storage_key,
)
from fhir_rag_ingestion.transport import PostgresQueue

TENANT = "org-acme"
BATCH = "export-2024-01"

pytestmark = pytest.mark.e2e


class PostgresPipeline:
    """Pipeline components wired to one PostgreSQL pool."""

    def __init__(self, pool, enrichment, config):
        self.config = config
        self.tracker = PostgresStateTracker(pool)
        self.queue = PostgresQueue(pool, max_deliveries=config.max_deliveries)
        self.blobs = PostgresBlobStore(pool)
        self.index = PostgresIndexStore(pool)
        self.dead_letters = PostgresDeadLetterStore(pool)
        self.dispatcher = Dispatcher(self.queue, self.tracker, self.dead_letters, config, sleep=lambda s: None)
        self.ingest = BulkIngestPipeline(self.tracker, self.dispatcher, config)
        self.replayer = DeadLetterReplayer(self.tracker, self.dead_letters, self.dispatcher)
        self.enricher = StageWorker(
            "enrichment",
            self.queue,
            self.tracker,
            self.dispatcher,
            HandlerContext(enrichment=enrichment, quality_threshold=config.quality_threshold),
            config,
        )
        self.persister = StageWorker(
            "persistence",
            self.queue,
            self.tracker,
            self.dispatcher,
            HandlerContext(blob_store=self.blobs, index_store=self.index),
            config,
        )

    def run_until_idle(self, max_rounds: int = 50) -> None:
        for _ in range(max_rounds):
            if not (self.enricher.drain() + self.persister.drain()):
                break


@pytest.fixture
def pipeline(clean_db, scripted_enrichment, config_factory):
    return PostgresPipeline(clean_db, scripted_enrichment, config_factory())


def test_export_with_malformed_record(pipeline, make_export):
    """Test that ten records with one malformed line finish as nine stored and one errored"""
    pipeline.ingest.ingest(io.BytesIO(make_export(10, malformed=(4,))), TENANT, BATCH)
    pipeline.run_until_idle()

    details = batch_details(pipeline.tracker, TENANT, BATCH)
    assert details["stage"] == BatchStage.PARTIALLY_FAILED.value
    assert details["processed_count"] == 9
    assert details["errored_count"] == 1
    assert details["total_resources"] == 10
    assert details["items_by_stage"] == {"Completed": 9}
    assert details["errors"][0]["marker"] == "line:4"

    assert len(pipeline.index.query(TENANT)) == 9
    key = storage_key(TENANT, BATCH, "Observation", "obs-0001")
    assert b'"enrichment"' in pipeline.blobs.get(key)


def test_retries_and_dead_letter_replay(pipeline, scripted_enrichment, make_export):
    """Test transient retries, an item that exhausts its retries and a successful replay"""
    scripted_enrichment.fail_with(TransientError("rate limited"))
    scripted_enrichment.fail_for("obs-0002", *[TransientError("model unavailable") for _ in range(5)])
    pipeline.ingest.ingest(io.BytesIO(make_export(3)), TENANT, BATCH)
    pipeline.run_until_idle()

    batch = pipeline.tracker.get_batch_status(TENANT, BATCH)
    assert batch.processed_count == 2
    assert batch.errored_count == 1
    assert batch.stage == BatchStage.PARTIALLY_FAILED

    dead = pipeline.replayer.list_pending(TENANT)
    assert len(dead) == 1
    assert dead[0].last_error.kind == "transient_error"

    assert pipeline.replayer.replay(TENANT, batch_id=BATCH)["replayed"] == 1
    pipeline.run_until_idle()

    batch = pipeline.tracker.get_batch_status(TENANT, BATCH)
    assert batch.recovered_count == 1
    assert batch.errored_count == 1
    assert pipeline.tracker.stage_counts(TENANT, BATCH) == {"Completed": 3}
    assert pipeline.replayer.list_pending(TENANT) == []


def test_permanent_failure_settles_batch(pipeline, scripted_enrichment, make_export):
    scripted_enrichment.fail_for("obs-0001", PermanentError("model refused input"))
    pipeline.ingest.ingest(io.BytesIO(make_export(2)), TENANT, BATCH)
    pipeline.run_until_idle()

    details = batch_details(pipeline.tracker, TENANT, BATCH)
    assert details["stage"] == BatchStage.PARTIALLY_FAILED.value
    assert details["items_by_stage"] == {"Completed": 1, "Failed": 1}
    assert details["errors"][0]["history"][0]["message"] == "model refused input"
    assert pipeline.replayer.list_pending(TENANT) == []
    assert pipeline.tracker.get_batch_status(TENANT, BATCH).settled_at is not None


def test_interrupted_chunking_rerun(pipeline, make_export):
    """Test that rejected records are counted once when an export is chunked again"""
    lines = make_export(3, malformed=(2,)).splitlines(keepends=True)

    def interrupted():
        yield from lines[:2]
        raise OSError("connection reset while reading export")

    with pytest.raises(OSError):
        pipeline.ingest.ingest(interrupted(), TENANT, BATCH)
    pipeline.ingest.ingest(iter(lines), TENANT, BATCH)
    pipeline.run_until_idle()

    batch = pipeline.tracker.get_batch_status(TENANT, BATCH)
    assert (batch.total_resources, batch.processed_count, batch.errored_count) == (3, 2, 1)
    assert batch.settled_at is not None


def test_reingest_is_noop(pipeline, make_export):
    pipeline.ingest.ingest(io.BytesIO(make_export(3)), TENANT, BATCH)
    pipeline.run_until_idle()
    pipeline.ingest.ingest(io.BytesIO(make_export(3)), TENANT, BATCH)
    pipeline.run_until_idle()

    batch = pipeline.tracker.get_batch_status(TENANT, BATCH)
    assert batch.processed_count == 3
    assert batch.stage == BatchStage.COMPLETED


def test_tenants_sharing_batch_id(pipeline, make_export):
    pipeline.ingest.ingest(io.BytesIO(make_export(2)), "org-acme", BATCH)
    pipeline.ingest.ingest(io.BytesIO(make_export(2)), "org-beta", BATCH)
    pipeline.run_until_idle()

    for tenant in ("org-acme", "org-beta"):
        assert pipeline.tracker.get_batch_status(tenant, BATCH).stage == BatchStage.COMPLETED
        keys = [e["key"] for e in pipeline.index.query(tenant)]
        assert all(key.startswith(f"{tenant}/") for key in keys)
        assert len(keys) == 2


@pytest.mark.slow
def test_concurrent_workers(pipeline, make_export):
    """Test threaded workers draining a batch concurrently, each item processed once"""
    pipeline.ingest.ingest(io.BytesIO(make_export(40)), TENANT, BATCH)

    stop = threading.Event()
    threads = [
        threading.Thread(target=worker.run, args=(stop,))
        for worker in (pipeline.enricher, pipeline.persister)
    ]
    for t in threads:
        t.start()

    deadline = time.monotonic() + 60
    try:
        while time.monotonic() < deadline:
            if pipeline.tracker.get_batch_status(TENANT, BATCH).settled_at is not None:
                break
            time.sleep(0.1)
    finally:
        stop.set()
        for t in threads:
            t.join(timeout=30)

    batch = pipeline.tracker.get_batch_status(TENANT, BATCH)
    assert batch.stage == BatchStage.COMPLETED
    assert batch.processed_count == 40

    cid = make_correlation_id(BATCH, "Observation", "obs-0007")
    results = pipeline.tracker.results(cid, TENANT)
    assert [(r.stage, r.success) for r in results] == [(Stage.ENRICHING, True), (Stage.STORING, True)]
