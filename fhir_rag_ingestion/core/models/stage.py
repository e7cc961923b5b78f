"""
Stage enumerations for work items and batches.
"""

from enum import Enum


class Stage(str, Enum):
    """Lifecycle stage of a single work item."""

    RECEIVED = "Received"
    CHUNKED = "Chunked"
    ENRICHING = "Enriching"
    ENRICHED = "Enriched"
    STORING = "Storing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    DEAD_LETTERED = "DeadLettered"


class BatchStage(str, Enum):
    """Lifecycle stage of a bulk export batch."""

    CHUNKING = "Chunking"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    PARTIALLY_FAILED = "PartiallyFailed"


class DispatchOutcome(str, Enum):
    """Result of handing a work item to the dispatcher."""

    DISPATCHED = "dispatched"
    DUPLICATE = "duplicate"
    CANCELLED = "cancelled"


class TransitionStatus(str, Enum):
    """Result of a compare-and-set on the state tracker."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
