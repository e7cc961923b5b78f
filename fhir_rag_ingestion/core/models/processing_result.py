"""
ProcessingResult model emitted by each stage on completion (append-only).
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .stage import Stage
from .work_item import utcnow


class ProcessingResult(BaseModel):
    """
    Outcome of one stage for one work item. Never mutated after creation.

    Attributes:
        correlation_id: Work item the result belongs to
        tenant_id: Owning tenant
        batch_id: Batch the item came from
        stage: Stage that produced the result
        success: Whether the stage finished successfully
        duration_seconds: Wall time spent in the stage
        errors: Validation or error messages
        metrics: Stage-specific numbers (quality score, payload bytes, ...)
        created_at: When the result was emitted
    """

    correlation_id: str
    tenant_id: str
    batch_id: str
    stage: Stage
    success: bool
    duration_seconds: float = Field(0.0, ge=0.0)
    errors: list[str] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True
