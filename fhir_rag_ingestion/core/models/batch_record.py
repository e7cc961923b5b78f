"""
BatchRecord model tracking the overall progress of one bulk export.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .stage import BatchStage
from .work_item import utcnow


class RejectedRecord(BaseModel):
    """
    A record the chunker could not turn into a work item.

    Attributes:
        position: 1-based line number of the record in the export
        resource_type: Resource type, if it could be recovered
        resource_id: Resource id, if it could be recovered
        reason: Why the record was rejected
    """

    position: int = Field(..., ge=1)
    resource_type: str | None = None
    resource_id: str | None = None
    reason: str

    @property
    def marker(self) -> str:
        """Resource identifier if recoverable, else a positional marker."""
        if self.resource_type and self.resource_id:
            return f"{self.resource_type}/{self.resource_id}"
        return f"line:{self.position}"


class BatchRecord(BaseModel):
    """
    Progress of one bulk export.

    Counters are only ever changed through atomic increments on the state
    tracker; this model is a read snapshot.

    Attributes:
        batch_id: Batch identifier
        tenant_id: Owning tenant
        total_resources: Records in the export, None until chunking finishes
        processed_count: Items that reached Completed
        errored_count: Rejected records plus items that failed terminally
        recovered_count: Replayed dead letters that later reached Completed
        stage: Batch lifecycle stage
        errors: Rejected-record and terminal-failure entries
        cancel_requested: Whether the batch has been cancelled
        settled_at: When every record reached a terminal outcome
        created_at: When the export was accepted
        updated_at: Last modification
    """

    batch_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    total_resources: int | None = Field(None, ge=0)
    processed_count: int = Field(0, ge=0)
    errored_count: int = Field(0, ge=0)
    recovered_count: int = Field(0, ge=0)
    stage: BatchStage = BatchStage.CHUNKING
    errors: list[dict[str, Any]] = Field(default_factory=list)
    cancel_requested: bool = False
    settled_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "batch_id": "5f0c1c1e-5a7c-4c55-8f3e-6f3a7f1d2b10",
                "tenant_id": "org-acme",
                "total_resources": 10,
                "processed_count": 9,
                "errored_count": 1,
                "stage": "PartiallyFailed",
                "errors": [{"marker": "line:4", "reason": "invalid JSON"}],
            }
        }

    @property
    def is_settled(self) -> bool:
        """True once every record of the export has reached a terminal outcome."""
        if self.total_resources is None:
            return False
        return self.processed_count + self.errored_count >= self.total_resources

    def progress(self) -> dict[str, Any]:
        """Operator-facing progress view."""
        return {
            "stage": self.stage.value,
            "processed_count": self.processed_count,
            "total_resources": self.total_resources,
            "errored_count": self.errored_count,
        }
