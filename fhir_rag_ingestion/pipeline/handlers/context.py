"""
Dependencies handed to stage handlers.
"""

from dataclasses import dataclass

from fhir_rag_ingestion.enrichment.base import EnrichmentCapability
from fhir_rag_ingestion.storage.blob_store import BlobStore
from fhir_rag_ingestion.storage.index_store import IndexStore


@dataclass
class HandlerContext:
    """
    Attributes:
        enrichment: Enrichment capability (enrichment stage)
        blob_store: Durable store (persistence stage)
        index_store: Searchable index (persistence stage)
        quality_threshold: Scores below this flag an item for review
        operation_timeout: Seconds before an external call counts as transient
    """

    enrichment: EnrichmentCapability | None = None
    blob_store: BlobStore | None = None
    index_store: IndexStore | None = None
    quality_threshold: float = 0.5
    operation_timeout: float | None = None
