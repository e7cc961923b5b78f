"""
Envelope model: the wire form of a work item on a stage topic.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from .stage import Stage
from .work_item import WorkItem, utcnow

TOPIC_SUFFIXES = {
    Stage.ENRICHING: "enrichment",
    Stage.STORING: "persistence",
}


def topic_for(stage: Stage, prefix: str = "fhir-ingest") -> str:
    """Queue topic that feeds the workers of an in-flight stage."""
    if stage not in TOPIC_SUFFIXES:
        raise ValueError(f"Stage {stage.value} has no queue topic")
    return f"{prefix}.{TOPIC_SUFFIXES[stage]}"


def dead_letter_topic(topic: str) -> str:
    return f"{topic}.dlq"


class Envelope(BaseModel):
    """
    A work item wrapped for transport.

    Attributes:
        message_id: Transport message id, new for every enqueue
        topic: Stage topic the message was published to
        target_stage: Stage the consuming worker will move the item into
        delivery_count: Deliveries so far, maintained by the transport
        enqueued_at: When the message was published
        item: The work item
    """

    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    topic: str
    target_stage: Stage
    delivery_count: int = Field(0, ge=0)
    enqueued_at: datetime = Field(default_factory=utcnow)
    item: WorkItem

    @property
    def tenant_id(self) -> str:
        return self.item.tenant_id

    @property
    def correlation_id(self) -> str:
        return self.item.correlation_id

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "Envelope":
        return cls.model_validate_json(data)
