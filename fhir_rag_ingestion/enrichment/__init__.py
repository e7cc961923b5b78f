"""
Enrichment capabilities.
"""

from .base import EnrichmentCapability, EnrichmentResult
from .openai_client import OpenAIEnrichmentClient

__all__ = ["EnrichmentCapability", "EnrichmentResult", "OpenAIEnrichmentClient"]
