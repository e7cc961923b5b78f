"""
DeadLetterRecord model for items that exhausted their retries.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .stage import Stage
from .work_item import ErrorEntry, WorkItem, utcnow


class DeadLetterRecord(BaseModel):
    """
    A dead-lettered work item held for manual or automated replay.

    Attributes:
        correlation_id: Work item correlation id
        tenant_id: Owning tenant
        batch_id: Batch the item came from
        failed_stage: In-flight stage the item failed in
        attempt: Item attempt number when it was dead-lettered
        error_history: Full error history of the item
        item: Last known state of the work item, including its payload
        dead_lettered_at: When the item was dead-lettered
        replayed_at: When the item was last replayed, if ever
    """

    correlation_id: str
    tenant_id: str
    batch_id: str
    failed_stage: Stage
    attempt: int = Field(0, ge=0)
    error_history: list[ErrorEntry] = Field(..., min_length=1)
    item: WorkItem
    dead_lettered_at: datetime = Field(default_factory=utcnow)
    replayed_at: datetime | None = None

    @classmethod
    def from_item(cls, item: WorkItem) -> "DeadLetterRecord":
        failed_stage = item.last_active_stage or item.stage
        return cls(
            correlation_id=item.correlation_id,
            tenant_id=item.tenant_id,
            batch_id=item.batch_id,
            failed_stage=failed_stage,
            attempt=item.attempt,
            error_history=item.error_history,
            item=item,
        )

    @property
    def last_error(self) -> ErrorEntry:
        return self.error_history[-1]
