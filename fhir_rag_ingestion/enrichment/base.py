"""
Enrichment capability interface.
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field


class EnrichmentResult(BaseModel):
    """
    Output of the enrichment capability for one resource.

    Attributes:
        payload: Enriched resource bytes
        quality_score: Data quality estimate in [0.0, 1.0]
        summary: Derived clinical summary
        embedding: Embedding vector of the summary, empty if none was produced
        model: Model that produced the enrichment
    """

    payload: bytes
    quality_score: float = Field(..., ge=0.0, le=1.0)
    summary: str = ""
    embedding: list[float] = Field(default_factory=list)
    model: str | None = None


class EnrichmentCapability(ABC):
    """Derives clinical context and a quality score for one resource."""

    @abstractmethod
    def enrich(self, tenant_id: str, payload: bytes, context: dict[str, Any]) -> EnrichmentResult:
        """
        Enrich one resource.

        Args:
            tenant_id: Tenant the resource belongs to
            payload: Raw resource bytes
            context: Tenant-scoped context (batch_id, resource_type, resource_id)

        Raises:
            TransientError: Retryable failure (timeout, throttling, outage)
            PermanentError: The capability rejected the input
        """
