"""
WorkItem model representing one clinical resource at one processing stage.
"""

import base64
import hashlib
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from .stage import Stage

MetadataValue = str | int | float | bool | None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_correlation_id(batch_id: str, resource_type: str, resource_id: str) -> str:
    """
    Derive the correlation id of a logical unit of work.

    The id depends only on (batch_id, resource_type, resource_id), so every
    re-dispatch of the same resource within a batch carries the same id.
    """
    key = f"{batch_id}|{resource_type}|{resource_id}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class ErrorEntry(BaseModel):
    """
    One failure observed while processing a work item.

    Attributes:
        stage: Stage the item was in when the failure happened
        kind: Error kind (transient_error, permanent_error, ...)
        message: Human-readable error message
        attempt: Item attempt number at the time of failure
        occurred_at: When the failure was observed
    """

    stage: Stage
    kind: str
    message: str
    attempt: int = Field(0, ge=0)
    occurred_at: datetime = Field(default_factory=utcnow)


class WorkItem(BaseModel):
    """
    The unit of pipeline work.

    Attributes:
        tenant_id: Isolation boundary, immutable once set
        resource_type: Clinical resource type (e.g. "Patient", "Observation")
        resource_id: Clinical resource id within the export
        batch_id: Bulk export this item came from
        stage: Current lifecycle stage
        attempt: Total processing attempts so far, only increases
        stage_attempt: Attempts within the current stage, checked against the retry policy
        payload: Raw or enriched resource bytes
        metadata: Scalar annotations (quality score, embedding refs, timestamps)
        correlation_id: Deterministic id of (batch_id, resource_type, resource_id)
        error_history: Every failure observed so far, oldest first
        last_active_stage: In-flight stage the item last failed in
    """

    tenant_id: str = Field(..., min_length=1, frozen=True)
    resource_type: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    batch_id: str = Field(..., min_length=1)
    stage: Stage = Stage.RECEIVED
    attempt: int = Field(0, ge=0)
    stage_attempt: int = Field(0, ge=0)
    payload: bytes = b""
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)
    correlation_id: str = ""
    error_history: list[ErrorEntry] = Field(default_factory=list)
    last_active_stage: Stage | None = None

    class Config:
        json_schema_extra = {
            "example": {
                "tenant_id": "org-acme",
                "resource_type": "Observation",
                "resource_id": "obs-0001",
                "batch_id": "5f0c1c1e-5a7c-4c55-8f3e-6f3a7f1d2b10",
                "stage": "Enriching",
                "attempt": 1,
                "stage_attempt": 1,
                "metadata": {"line_number": 12},
            }
        }

    @field_validator("payload", mode="before")
    @classmethod
    def decode_payload(cls, v: Any) -> Any:
        """Accept base64 text, which is how payloads travel inside envelopes."""
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @field_serializer("payload", when_used="json")
    def encode_payload(self, v: bytes) -> str:
        return base64.b64encode(v).decode("ascii")

    @model_validator(mode="after")
    def check_correlation_id(self) -> "WorkItem":
        expected = make_correlation_id(self.batch_id, self.resource_type, self.resource_id)
        if not self.correlation_id:
            self.correlation_id = expected
        elif self.correlation_id != expected:
            raise ValueError(
                f"correlation_id {self.correlation_id!r} does not match "
                f"({self.batch_id}, {self.resource_type}, {self.resource_id})"
            )
        return self

    def begin_stage(self, stage: Stage) -> "WorkItem":
        """
        Return a copy claimed for processing in an in-flight stage.

        attempt always increases by one. stage_attempt restarts at one when the
        item enters the stage from its predecessor and keeps counting when it
        re-enters through the Failed retry path.
        """
        retrying = self.stage == Stage.FAILED and self.last_active_stage == stage
        return self.model_copy(
            update={
                "stage": stage,
                "attempt": self.attempt + 1,
                "stage_attempt": self.stage_attempt + 1 if retrying else 1,
                "metadata": dict(self.metadata),
            }
        )

    def with_stage(self, stage: Stage, **updates: Any) -> "WorkItem":
        """Return a copy moved to `stage`."""
        return self.model_copy(update={"stage": stage, "metadata": dict(self.metadata), **updates})

    def with_error(self, stage: Stage, error: Exception) -> "WorkItem":
        """Return a copy in stage Failed with `error` appended to the history."""
        entry = ErrorEntry(
            stage=stage,
            kind=getattr(error, "kind", type(error).__name__),
            message=str(error),
            attempt=self.attempt,
        )
        return self.model_copy(
            update={
                "stage": Stage.FAILED,
                "last_active_stage": stage,
                "error_history": [*self.error_history, entry],
                "metadata": dict(self.metadata),
            }
        )

    def log_context(self) -> dict[str, Any]:
        """Fields attached to every log line about this item."""
        return {
            "tenant_id": self.tenant_id,
            "batch_id": self.batch_id,
            "correlation_id": self.correlation_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "stage": self.stage.value,
            "attempt": self.attempt,
        }
