"""
DDL for the PostgreSQL backends.

Every table that holds tenant data carries tenant_id in its primary key or
in a unique constraint, so lookups are always tenant-scoped.
"""

from .connection import DatabaseConnectionPool

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS queue_message (
    message_id      TEXT PRIMARY KEY,
    topic           TEXT NOT NULL,
    body            TEXT NOT NULL,
    visible_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    delivery_count  INTEGER NOT NULL DEFAULT 0,
    enqueued_at     TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);
CREATE INDEX IF NOT EXISTS idx_queue_message_topic_visible
    ON queue_message (topic, visible_at, enqueued_at);

CREATE TABLE IF NOT EXISTS blob_object (
    object_key  TEXT PRIMARY KEY,
    data        BYTEA NOT NULL,
    size_bytes  INTEGER NOT NULL,
    checksum    TEXT NOT NULL,
    written_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS index_entry (
    tenant_id   TEXT NOT NULL,
    entry_key   TEXT NOT NULL,
    attributes  JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, entry_key)
);
CREATE INDEX IF NOT EXISTS idx_index_entry_attributes
    ON index_entry USING GIN (attributes);

CREATE TABLE IF NOT EXISTS batch_record (
    tenant_id         TEXT NOT NULL,
    batch_id          TEXT NOT NULL,
    total_resources   INTEGER,
    processed_count   INTEGER NOT NULL DEFAULT 0,
    errored_count     INTEGER NOT NULL DEFAULT 0,
    recovered_count   INTEGER NOT NULL DEFAULT 0,
    stage             TEXT NOT NULL,
    errors            JSONB NOT NULL DEFAULT '[]'::jsonb,
    cancel_requested  BOOLEAN NOT NULL DEFAULT FALSE,
    settled_at        TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, batch_id)
);

CREATE TABLE IF NOT EXISTS rejected_record (
    tenant_id   TEXT NOT NULL,
    batch_id    TEXT NOT NULL,
    position    INTEGER NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, batch_id, position)
);

CREATE TABLE IF NOT EXISTS pipeline_state (
    tenant_id         TEXT NOT NULL,
    correlation_id    TEXT NOT NULL,
    batch_id          TEXT NOT NULL,
    stage             TEXT NOT NULL,
    failed_stage      TEXT,
    lease_expires_at  TIMESTAMPTZ,
    lease_owner       TEXT,
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, correlation_id)
);
CREATE INDEX IF NOT EXISTS idx_pipeline_state_batch
    ON pipeline_state (tenant_id, batch_id, stage);
ALTER TABLE pipeline_state ADD COLUMN IF NOT EXISTS lease_owner TEXT;

CREATE TABLE IF NOT EXISTS pipeline_transition (
    transition_id   BIGSERIAL PRIMARY KEY,
    correlation_id  TEXT NOT NULL,
    tenant_id       TEXT NOT NULL,
    from_stage      TEXT,
    to_stage        TEXT NOT NULL,
    event           TEXT NOT NULL,
    reason          TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);
CREATE INDEX IF NOT EXISTS idx_pipeline_transition_correlation
    ON pipeline_transition (correlation_id, created_at);

CREATE TABLE IF NOT EXISTS processing_result (
    result_id         BIGSERIAL PRIMARY KEY,
    correlation_id    TEXT NOT NULL,
    tenant_id         TEXT NOT NULL,
    batch_id          TEXT NOT NULL,
    stage             TEXT NOT NULL,
    success           BOOLEAN NOT NULL,
    duration_seconds  DOUBLE PRECISION NOT NULL,
    errors            JSONB NOT NULL,
    metrics           JSONB NOT NULL,
    created_at        TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_processing_result_correlation
    ON processing_result (tenant_id, correlation_id);

CREATE TABLE IF NOT EXISTS dead_letter (
    tenant_id         TEXT NOT NULL,
    correlation_id    TEXT NOT NULL,
    batch_id          TEXT NOT NULL,
    failed_stage      TEXT NOT NULL,
    attempt           INTEGER NOT NULL,
    record            JSONB NOT NULL,
    dead_lettered_at  TIMESTAMPTZ NOT NULL,
    replayed_at       TIMESTAMPTZ,
    PRIMARY KEY (tenant_id, correlation_id)
);
CREATE INDEX IF NOT EXISTS idx_dead_letter_batch
    ON dead_letter (tenant_id, batch_id);
"""

TABLES = (
    "rejected_record",
    "dead_letter",
    "processing_result",
    "pipeline_transition",
    "pipeline_state",
    "batch_record",
    "index_entry",
    "blob_object",
    "queue_message",
)


def ensure_schema(pool: DatabaseConnectionPool) -> None:
    """Create all pipeline tables if they do not exist."""
    with pool.get_cursor() as cur:
        cur.execute(SCHEMA_DDL)
