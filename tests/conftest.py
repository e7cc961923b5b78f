"""
Pytest configuration and fixtures for fhir-rag-ingestion tests

This module provides shared fixtures for unit, integration, and E2E tests:
fast in-memory pipeline components, scripted fakes for the enrichment
capability and the stores, and a PostgreSQL container for the PostgreSQL
backends.
"""
import json
import os
import threading
import time
from typing import Any, Generator

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from fhir_rag_ingestion.core.config import PipelineConfig, StageSettings
from fhir_rag_ingestion.core.errors import TransientError
from fhir_rag_ingestion.core.retry import RetryPolicy
from fhir_rag_ingestion.enrichment.base import EnrichmentCapability, EnrichmentResult
from fhir_rag_ingestion.pipeline import BulkIngestPipeline, DeadLetterReplayer, Dispatcher, StageWorker
from fhir_rag_ingestion.pipeline.handlers import HandlerContext
from fhir_rag_ingestion.storage import (
    TABLES,
    DatabaseConnectionPool,
    InMemoryBlobStore,
    InMemoryDeadLetterStore,
    InMemoryIndexStore,
    InMemoryStateTracker,
    ensure_schema,
)
from fhir_rag_ingestion.transport import InMemoryQueue


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that test the full pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# DATA HELPERS
# =======================

def resource_line(resource_type: str, resource_id: str, **fields: Any) -> str:
    """One NDJSON line for a resource."""
    return json.dumps({"resourceType": resource_type, "id": resource_id, **fields})


def ndjson(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture
def make_export():
    """
    Build an NDJSON export of `count` Observation resources.

    Positions listed in `malformed` (1-based) are replaced with broken JSON.
    """
    def _make(count: int, malformed: tuple[int, ...] = (), resource_type: str = "Observation") -> bytes:
        lines = []
        for n in range(1, count + 1):
            if n in malformed:
                lines.append('{"resourceType": "Observation", "id": ')
            else:
                lines.append(resource_line(resource_type, f"obs-{n:04d}", status="final", valueQuantity={"value": n}))
        return ndjson(*lines)
    return _make


# =======================
# FAKES
# =======================

class ScriptedEnrichment(EnrichmentCapability):
    """
    Enrichment fake: raises the scripted errors in order, then succeeds.

    Errors scripted with fail_for only hit calls for that resource id and
    are raised before the shared ones.

    Successful calls return the payload with an "enrichment" object and the
    configured quality score.
    """

    def __init__(self, quality_score: float = 0.9):
        self.quality_score = quality_score
        self.errors: list[Exception] = []
        self.errors_by_resource: dict[str, list[Exception]] = {}
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def fail_with(self, *errors: Exception) -> "ScriptedEnrichment":
        self.errors.extend(errors)
        return self

    def fail_for(self, resource_id: str, *errors: Exception) -> "ScriptedEnrichment":
        self.errors_by_resource.setdefault(resource_id, []).extend(errors)
        return self

    def enrich(self, tenant_id: str, payload: bytes, context: dict[str, Any]) -> EnrichmentResult:
        with self._lock:
            self.calls.append({"tenant_id": tenant_id, **context})
            own = self.errors_by_resource.get(context.get("resource_id"))
            if own:
                raise own.pop(0)
            if self.errors:
                raise self.errors.pop(0)
        resource = json.loads(payload)
        resource["enrichment"] = {"summary": f"{context['resource_type']} summary", "quality_score": self.quality_score}
        return EnrichmentResult(
            payload=json.dumps(resource).encode("utf-8"),
            quality_score=self.quality_score,
            summary=f"{context['resource_type']} summary",
            embedding=[0.1, 0.2, 0.3],
            model="fake-model",
        )


class FlakyIndexStore(InMemoryIndexStore):
    """Index store that fails the first `failures` upserts with TransientError."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def upsert(self, key, tenant_id, attributes):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientError("index unavailable")
        super().upsert(key, tenant_id, attributes)


class FlakyQueue(InMemoryQueue):
    """Queue whose enqueue fails for the topics in `broken_topics`."""

    def __init__(self, broken_topics: set[str] | None = None, **kwargs):
        super().__init__(**kwargs)
        self.broken_topics = broken_topics or set()
        self.enqueue_attempts = 0

    def enqueue(self, topic, envelope, delay=0.0):
        self.enqueue_attempts += 1
        if topic in self.broken_topics:
            raise TransientError(f"{topic} unavailable")
        super().enqueue(topic, envelope, delay)


@pytest.fixture
def scripted_enrichment() -> ScriptedEnrichment:
    return ScriptedEnrichment()


@pytest.fixture
def enrichment_factory():
    return ScriptedEnrichment


@pytest.fixture
def flaky_index_factory():
    return FlakyIndexStore


@pytest.fixture
def flaky_queue_factory():
    return FlakyQueue


# =======================
# IN-MEMORY PIPELINE
# =======================

def fast_config(**overrides: Any) -> PipelineConfig:
    """Configuration with the default attempt budgets and zero backoff delays."""
    def policy(max_attempts: int) -> RetryPolicy:
        return RetryPolicy(max_attempts=max_attempts, initial_delay=0.0, max_delay=0.0)

    stages = {
        "chunking": StageSettings(retry=policy(2)),
        "dispatch": StageSettings(retry=policy(3)),
        "enrichment": StageSettings(retry=policy(5), max_in_flight=4, operation_timeout=5.0, visibility_timeout=30.0),
        "persistence": StageSettings(retry=policy(3), max_in_flight=4, operation_timeout=5.0, visibility_timeout=30.0),
    }
    return PipelineConfig(quality_threshold=0.6, poll_interval=0.01, stages=stages, **overrides)


class PipelineHarness:
    """All pipeline components wired to in-memory backends."""

    def __init__(self, enrichment: EnrichmentCapability, index_store=None, queue=None, config=None, clock=None):
        self.config = config or fast_config()
        clock = clock or time.monotonic
        self.tracker = InMemoryStateTracker(clock=clock)
        self.queue = queue or InMemoryQueue(max_deliveries=self.config.max_deliveries, clock=clock)
        self.blobs = InMemoryBlobStore()
        self.index = index_store or InMemoryIndexStore()
        self.dead_letters = InMemoryDeadLetterStore()
        self.enrichment = enrichment
        self.dispatcher = Dispatcher(self.queue, self.tracker, self.dead_letters, self.config, sleep=lambda s: None)
        self.ingest = BulkIngestPipeline(self.tracker, self.dispatcher, self.config)
        self.replayer = DeadLetterReplayer(self.tracker, self.dead_letters, self.dispatcher)
        self.enricher = StageWorker(
            "enrichment",
            self.queue,
            self.tracker,
            self.dispatcher,
            HandlerContext(enrichment=enrichment, quality_threshold=self.config.quality_threshold),
            self.config,
        )
        self.persister = StageWorker(
            "persistence",
            self.queue,
            self.tracker,
            self.dispatcher,
            HandlerContext(blob_store=self.blobs, index_store=self.index),
            self.config,
        )

    def run_until_idle(self, max_rounds: int = 50) -> list:
        """Drain both stage topics until neither has visible messages."""
        outcomes = []
        for _ in range(max_rounds):
            round_outcomes = self.enricher.drain() + self.persister.drain()
            if not round_outcomes:
                break
            outcomes.extend(round_outcomes)
        return outcomes


@pytest.fixture
def harness(scripted_enrichment) -> PipelineHarness:
    return PipelineHarness(scripted_enrichment)


@pytest.fixture
def harness_factory():
    """Build a harness with custom fakes."""
    return PipelineHarness


@pytest.fixture
def config_factory():
    return fast_config


# =======================
# DATABASE FIXTURES (Testcontainers)
# =======================

@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance with the pipeline schema
    """
    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_pipeline",
        password="test_password",
        dbname="test_fhir_ingestion",
    ) as postgres:
        # Wait for container to be ready
        postgres.get_connection_url()
        yield postgres


@pytest.fixture(scope="session")
def pg_pool(postgres_container) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Connection pool against the test container, schema created once
    """
    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_fhir_ingestion",
        user="test_pipeline",
        password="test_password",
        max_size=8,
    )
    pool.open()
    ensure_schema(pool)
    yield pool
    pool.close()


@pytest.fixture(scope="function")
def clean_db(pg_pool) -> Generator[DatabaseConnectionPool, None, None]:
    """
    Provide a clean database by truncating all pipeline tables before each test
    """
    with pg_pool.get_cursor() as cur:
        cur.execute(f"TRUNCATE TABLE {', '.join(TABLES)}")
    yield pg_pool


@pytest.fixture(scope="function")
def db_connection(postgres_container) -> Generator[psycopg.Connection, None, None]:
    """
    Raw psycopg connection for assertions on table contents
    """
    conn_url = postgres_container.get_connection_url().replace("postgresql+psycopg2://", "postgresql://")
    with psycopg.connect(conn_url) as conn:
        yield conn
        conn.rollback()


# =======================
# CONFIGURATION FIXTURES
# =======================

@pytest.fixture(scope="session")
def test_env_vars():
    """
    Set test environment variables

    This fixture loads test.env and sets environment variables
    """
    from dotenv import load_dotenv

    env_path = os.path.join(
        os.path.dirname(os.path.dirname(__file__)),
        "config",
        "test.env"
    )

    if os.path.exists(env_path):
        load_dotenv(env_path, override=True)
