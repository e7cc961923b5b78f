"""
Prometheus metrics collection for the ingestion pipeline

Covers per-stage throughput and latency, retries, dead letters, duplicate
deliveries absorbed by the idempotency guard, and batch outcomes.
"""
import os
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# STAGE METRICS
# =======================

# Items leaving a stage, by outcome
stage_items_total = Counter(
    name="pipeline_stage_items_total",
    documentation="Work items handled per stage",
    labelnames=["stage", "status"],  # status: completed, retried, failed, dead_lettered, duplicate, rejected
    registry=REGISTRY,
)

stage_duration_seconds = Histogram(
    name="pipeline_stage_duration_seconds",
    documentation="Time spent processing a work item in a stage",
    labelnames=["stage"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)

items_in_flight = Gauge(
    name="pipeline_items_in_flight",
    documentation="Work items currently being processed by this worker",
    labelnames=["stage"],
    registry=REGISTRY,
)

# =======================
# RELIABILITY METRICS
# =======================

retries_total = Counter(
    name="pipeline_retries_total",
    documentation="Retry attempts scheduled after transient failures",
    labelnames=["stage"],
    registry=REGISTRY,
)

dead_letters_total = Counter(
    name="pipeline_dead_letters_total",
    documentation="Work items moved to DeadLettered",
    labelnames=["stage", "error_kind"],
    registry=REGISTRY,
)

duplicate_deliveries_total = Counter(
    name="pipeline_duplicate_deliveries_total",
    documentation="Deliveries absorbed by the idempotency guard",
    labelnames=["stage"],
    registry=REGISTRY,
)

dispatches_total = Counter(
    name="pipeline_dispatches_total",
    documentation="Dispatch calls by outcome",
    labelnames=["target_stage", "outcome"],  # outcome: dispatched, duplicate, cancelled, error
    registry=REGISTRY,
)

# =======================
# DATA QUALITY METRICS
# =======================

records_rejected_total = Counter(
    name="pipeline_records_rejected_total",
    documentation="Malformed records rejected while chunking",
    registry=REGISTRY,
)

quality_score = Histogram(
    name="pipeline_quality_score",
    documentation="Quality scores returned by the enrichment capability",
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
    registry=REGISTRY,
)

flagged_for_review_total = Counter(
    name="pipeline_flagged_for_review_total",
    documentation="Items whose quality score fell below the configured threshold",
    registry=REGISTRY,
)

# =======================
# BATCH METRICS
# =======================

batch_size = Histogram(
    name="pipeline_batch_size_records",
    documentation="Number of records in each bulk export",
    buckets=[10, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000],
    registry=REGISTRY,
)

batches_total = Counter(
    name="pipeline_batches_total",
    documentation="Bulk exports by final outcome",
    labelnames=["status"],  # status: Completed, PartiallyFailed, StructuralError
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    # Lazy import: the HTTP server is only needed by long-running workers
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    if labels:
        histogram.labels(**labels).observe(value)
    else:
        histogram.observe(value)


def record_stage_outcome(stage: str, status: str, duration_seconds: float | None = None) -> None:
    """
    Record a work item leaving a stage.

    Args:
        stage: Stage name
        status: Outcome label
        duration_seconds: Time spent in the stage, if measured
    """
    increment_counter(stage_items_total, 1, stage=stage, status=status)
    if duration_seconds is not None:
        observe_histogram(stage_duration_seconds, duration_seconds, stage=stage)


def record_batch_settled(status: str, total_resources: int | None) -> None:
    increment_counter(batches_total, 1, status=status)
    if total_resources:
        observe_histogram(batch_size, total_resources)
