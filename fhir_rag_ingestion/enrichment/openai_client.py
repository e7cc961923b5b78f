"""
Enrichment capability backed by the OpenAI API.

A chat completion produces a short clinical summary and a quality score for
the resource; the summary is embedded for retrieval. SDK failures are mapped
onto the pipeline's transient/permanent error split.
"""

import json
import os
from typing import Any

import openai
from openai import OpenAI

from fhir_rag_ingestion.core.errors import PermanentError, TransientError
from fhir_rag_ingestion.enrichment.base import EnrichmentCapability, EnrichmentResult
from fhir_rag_ingestion.observability.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MODEL = os.getenv("ENRICHMENT_MODEL", "gpt-4o-mini")
DEFAULT_EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")

SYSTEM_PROMPT = (
    "You annotate FHIR resources for a clinical retrieval index. "
    "Reply with a JSON object with two keys: "
    '"summary" (one or two plain sentences describing the clinical content) and '
    '"quality_score" (a number from 0.0 to 1.0 rating how complete and coherent the record is).'
)

TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def get_openai_client() -> OpenAI:
    """Lazy instantiation so importing this module never needs an API key."""
    return OpenAI()


class OpenAIEnrichmentClient(EnrichmentCapability):
    """
    Enrichment through chat completions and embeddings.

    The enriched payload is the original resource with an "enrichment"
    object added (summary, quality score, embedding, model).
    """

    def __init__(
        self,
        model: str | None = None,
        embedding_model: str | None = None,
        client: OpenAI | None = None,
        max_tokens: int = 300,
    ):
        """
        Args:
            model: Chat model (defaults to env var ENRICHMENT_MODEL)
            embedding_model: Embedding model (defaults to env var EMBEDDING_MODEL)
            client: Preconfigured OpenAI client, created lazily if omitted
            max_tokens: Completion token limit
        """
        self.model = model or DEFAULT_MODEL
        self.embedding_model = embedding_model or DEFAULT_EMBEDDING_MODEL
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def enrich(self, tenant_id: str, payload: bytes, context: dict[str, Any]) -> EnrichmentResult:
        try:
            resource = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PermanentError(f"Payload is not a JSON resource: {e}", tenant_id=tenant_id) from e

        try:
            summary, score = self._summarize(resource, context)
            embedding = self._embed(summary) if summary else []
        except TRANSIENT_ERRORS as e:
            raise TransientError(f"Enrichment call failed: {e}", tenant_id=tenant_id) from e
        except openai.APIStatusError as e:
            raise PermanentError(
                f"Enrichment request rejected ({e.status_code}): {e}", tenant_id=tenant_id
            ) from e

        resource["enrichment"] = {
            "summary": summary,
            "quality_score": score,
            "embedding": embedding,
            "model": self.model,
        }
        return EnrichmentResult(
            payload=json.dumps(resource, separators=(",", ":")).encode("utf-8"),
            quality_score=score,
            summary=summary,
            embedding=embedding,
            model=self.model,
        )

    def _summarize(self, resource: dict[str, Any], context: dict[str, Any]) -> tuple[str, float]:
        prompt = (
            f"Resource {context.get('resource_type')}/{context.get('resource_id')}:\n"
            f"{json.dumps(resource, sort_keys=True)}"
        )
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.0,
            max_tokens=self.max_tokens,
        )
        content = resp.choices[0].message.content or ""

        try:
            parsed = json.loads(content)
            score = float(parsed["quality_score"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            # Malformed model output usually clears up on the next attempt
            raise TransientError(f"Unparseable enrichment response: {content[:200]!r}") from e

        return str(parsed.get("summary", "")), min(max(score, 0.0), 1.0)

    def _embed(self, text: str) -> list[float]:
        resp = self.client.embeddings.create(model=self.embedding_model, input=text)
        return list(resp.data[0].embedding)
