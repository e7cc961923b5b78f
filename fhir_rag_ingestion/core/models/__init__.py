"""
Core data models for the clinical-record ingestion pipeline.

All models use Pydantic for runtime validation and type safety.
"""

from .batch_record import BatchRecord, RejectedRecord
from .dead_letter import DeadLetterRecord
from .envelope import Envelope, dead_letter_topic, topic_for
from .processing_result import ProcessingResult
from .stage import BatchStage, DispatchOutcome, Stage, TransitionStatus
from .work_item import ErrorEntry, WorkItem, make_correlation_id

__all__ = [
    "Stage",
    "BatchStage",
    "DispatchOutcome",
    "TransitionStatus",
    "WorkItem",
    "ErrorEntry",
    "make_correlation_id",
    "BatchRecord",
    "RejectedRecord",
    "ProcessingResult",
    "Envelope",
    "topic_for",
    "dead_letter_topic",
    "DeadLetterRecord",
]
