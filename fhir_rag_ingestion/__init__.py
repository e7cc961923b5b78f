"""
Multi-tenant bulk clinical-record ingestion pipeline.

Bulk NDJSON exports are chunked into per-resource work items, enriched with
clinical context and a quality score, and persisted with searchable
metadata. Every hop is idempotent per correlation id.
"""

__version__ = "0.1.0"
