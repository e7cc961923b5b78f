"""
Command-line interface for the ingestion pipeline.

Usage:
    python -m fhir_rag_ingestion.cli.pipeline_cli init-db
    python -m fhir_rag_ingestion.cli.pipeline_cli ingest --tenant <tenant_id> --input <file_path> [--batch-id <id>]
    python -m fhir_rag_ingestion.cli.pipeline_cli worker --stage {enrichment,persistence}
    python -m fhir_rag_ingestion.cli.pipeline_cli status --tenant <tenant_id> --batch <batch_id>
    python -m fhir_rag_ingestion.cli.pipeline_cli dead-letters list --tenant <tenant_id> [--batch <batch_id>]
    python -m fhir_rag_ingestion.cli.pipeline_cli dead-letters replay --tenant <tenant_id> [options]
    python -m fhir_rag_ingestion.cli.pipeline_cli cancel --tenant <tenant_id> --batch <batch_id>
"""

import argparse
import json
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

from fhir_rag_ingestion.core.config import PipelineConfig, load_config
from fhir_rag_ingestion.core.errors import PipelineError
from fhir_rag_ingestion.enrichment.openai_client import OpenAIEnrichmentClient
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.observability.metrics import start_metrics_server
from fhir_rag_ingestion.pipeline import (
    BulkIngestPipeline,
    DeadLetterReplayer,
    Dispatcher,
    StageWorker,
    batch_details,
)
from fhir_rag_ingestion.pipeline.handlers import HandlerContext
from fhir_rag_ingestion.storage import (
    DatabaseConnectionPool,
    PostgresBlobStore,
    PostgresDeadLetterStore,
    PostgresIndexStore,
    PostgresStateTracker,
    ensure_schema,
)
from fhir_rag_ingestion.transport import PostgresQueue

logger = get_logger(__name__)


@dataclass
class Components:
    """PostgreSQL-backed pipeline components sharing one pool."""

    pool: DatabaseConnectionPool
    config: PipelineConfig
    tracker: PostgresStateTracker
    queue: PostgresQueue
    dead_letters: PostgresDeadLetterStore
    dispatcher: Dispatcher


def open_pool(args) -> DatabaseConnectionPool:
    pool = DatabaseConnectionPool(
        host=args.db_host,
        port=args.db_port,
        database=args.db_name,
        user=args.db_user,
        password=args.db_password,
        max_size=args.pool_size,
    )
    pool.open()
    return pool


def build_components(pool: DatabaseConnectionPool, config: PipelineConfig) -> Components:
    tracker = PostgresStateTracker(pool)
    queue = PostgresQueue(pool, max_deliveries=config.max_deliveries)
    dead_letters = PostgresDeadLetterStore(pool)
    dispatcher = Dispatcher(queue, tracker, dead_letters, config)
    return Components(pool, config, tracker, queue, dead_letters, dispatcher)


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def init_db_command(args, components: Components):
    ensure_schema(components.pool)
    logger.info("Pipeline schema is up to date")


def ingest_command(args, components: Components):
    input_path = Path(args.input)
    if not input_path.exists():
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    pipeline = BulkIngestPipeline(components.tracker, components.dispatcher, components.config)
    batch = pipeline.ingest_file(input_path, tenant_id=args.tenant, batch_id=args.batch_id)

    logger.info("=" * 60)
    logger.info("INGEST COMPLETE")
    logger.info("=" * 60)
    logger.info(f"Batch: {batch.batch_id}")
    logger.info(f"Total resources: {batch.total_resources}")
    logger.info(f"Rejected / errored: {batch.errored_count}")
    logger.info(f"Batch stage: {batch.stage.value}")
    logger.info("=" * 60)
    print_json({"batch_id": batch.batch_id, **batch.progress()})


def worker_command(args, components: Components):
    if args.stage == "enrichment":
        context = HandlerContext(
            enrichment=OpenAIEnrichmentClient(model=args.model, embedding_model=args.embedding_model),
            quality_threshold=components.config.quality_threshold,
        )
    else:
        context = HandlerContext(
            blob_store=PostgresBlobStore(components.pool),
            index_store=PostgresIndexStore(components.pool),
        )

    worker = StageWorker(
        args.stage,
        components.queue,
        components.tracker,
        components.dispatcher,
        context,
        components.config,
    )

    if args.metrics_port:
        start_metrics_server(args.metrics_port)

    stop = threading.Event()

    def request_stop(signum, frame):
        logger.info(f"Received signal {signum}, finishing in-flight items")
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)
    worker.run(stop)


def status_command(args, components: Components):
    print_json(batch_details(components.tracker, args.tenant, args.batch))


def dead_letters_command(args, components: Components):
    replayer = DeadLetterReplayer(components.tracker, components.dead_letters, components.dispatcher)

    if args.dl_command == "list":
        records = replayer.list_pending(args.tenant, batch_id=args.batch, limit=args.limit)
        print_json([
            {
                "correlation_id": r.correlation_id,
                "batch_id": r.batch_id,
                "resource": f"{r.item.resource_type}/{r.item.resource_id}",
                "failed_stage": r.failed_stage.value,
                "attempt": r.attempt,
                "error_kind": r.last_error.kind,
                "error": r.last_error.message,
                "dead_lettered_at": r.dead_lettered_at,
            }
            for r in records
        ])
    elif args.dl_command == "replay":
        summary = replayer.replay(
            args.tenant,
            batch_id=args.batch,
            correlation_ids=args.correlation_ids,
            limit=args.limit,
        )
        print_json(summary)


def cancel_command(args, components: Components):
    pipeline = BulkIngestPipeline(components.tracker, components.dispatcher, components.config)
    pipeline.cancel(args.tenant, args.batch)
    print_json(batch_details(components.tracker, args.tenant, args.batch))


COMMANDS = {
    "init-db": init_db_command,
    "ingest": ingest_command,
    "worker": worker_command,
    "status": status_command,
    "dead-letters": dead_letters_command,
    "cancel": cancel_command,
}


def add_db_arguments(parser: argparse.ArgumentParser) -> None:
    """Database connection arguments; omitted values fall back to DB_* env vars."""
    parser.add_argument("--db-host", default=None, help="Database host (default: $DB_HOST or localhost)")
    parser.add_argument("--db-port", type=int, default=None, help="Database port (default: $DB_PORT or 5432)")
    parser.add_argument("--db-name", default=None, help="Database name (default: $DB_NAME or fhir_ingestion)")
    parser.add_argument("--db-user", default=None, help="Database user (default: $DB_USER or pipeline)")
    parser.add_argument("--db-password", default=None, help="Database password (default: $DB_PASSWORD)")
    parser.add_argument("--pool-size", type=int, default=10, help="Maximum pool connections (default: 10)")
    parser.add_argument("--config", default=None, help="Pipeline YAML (default: $PIPELINE_CONFIG or config/pipeline.yaml)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bulk clinical-record ingestion pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create tables
  python -m fhir_rag_ingestion.cli.pipeline_cli init-db

  # Ingest a bulk export
  python -m fhir_rag_ingestion.cli.pipeline_cli ingest --tenant org-acme --input exports/Observation.ndjson

  # Run an enrichment worker with metrics on :8000
  python -m fhir_rag_ingestion.cli.pipeline_cli worker --stage enrichment --metrics-port 8000

  # Replay every dead letter of a batch
  python -m fhir_rag_ingestion.cli.pipeline_cli dead-letters replay --tenant org-acme --batch <batch_id>
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init-db", help="Create the pipeline tables")
    add_db_arguments(init_parser)

    ingest_parser = subparsers.add_parser("ingest", help="Ingest an NDJSON bulk export")
    ingest_parser.add_argument("--tenant", required=True, help="Tenant ID")
    ingest_parser.add_argument("--input", required=True, help="Path to the NDJSON export")
    ingest_parser.add_argument("--batch-id", default=None, help="Batch ID (generated if omitted)")
    add_db_arguments(ingest_parser)

    worker_parser = subparsers.add_parser("worker", help="Run a stage worker until interrupted")
    worker_parser.add_argument("--stage", required=True, choices=["enrichment", "persistence"], help="Stage to consume")
    worker_parser.add_argument("--model", default=None, help="Chat model (default: $ENRICHMENT_MODEL)")
    worker_parser.add_argument("--embedding-model", default=None, help="Embedding model (default: $EMBEDDING_MODEL)")
    worker_parser.add_argument("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
    add_db_arguments(worker_parser)

    status_parser = subparsers.add_parser("status", help="Show batch progress")
    status_parser.add_argument("--tenant", required=True, help="Tenant ID")
    status_parser.add_argument("--batch", required=True, help="Batch ID")
    add_db_arguments(status_parser)

    dl_parser = subparsers.add_parser("dead-letters", help="List or replay dead-lettered items")
    dl_subparsers = dl_parser.add_subparsers(dest="dl_command", required=True)

    dl_list = dl_subparsers.add_parser("list", help="List pending dead letters")
    dl_list.add_argument("--tenant", required=True, help="Tenant ID")
    dl_list.add_argument("--batch", default=None, help="Only this batch")
    dl_list.add_argument("--limit", type=int, default=100, help="Maximum records (default: 100)")
    add_db_arguments(dl_list)

    dl_replay = dl_subparsers.add_parser("replay", help="Replay dead letters")
    dl_replay.add_argument("--tenant", required=True, help="Tenant ID")
    dl_replay.add_argument("--batch", default=None, help="Only this batch")
    dl_replay.add_argument("--correlation-ids", nargs="+", default=None, help="Only these items")
    dl_replay.add_argument("--limit", type=int, default=None, help="Maximum items to replay")
    add_db_arguments(dl_replay)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel onward dispatch of a batch")
    cancel_parser.add_argument("--tenant", required=True, help="Tenant ID")
    cancel_parser.add_argument("--batch", required=True, help="Batch ID")
    add_db_arguments(cancel_parser)

    return parser


def main(argv: list[str] | None = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = load_config(args.config)
    pool = open_pool(args)
    try:
        COMMANDS[args.command](args, build_components(pool, config))
    except PipelineError as e:
        logger.error(f"{args.command} failed: {e}", extra={"error_kind": e.kind})
        sys.exit(1)
    finally:
        pool.close()


if __name__ == "__main__":
    main()
