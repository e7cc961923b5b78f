"""
Error taxonomy for the ingestion pipeline.

Record-level errors (ValidationError, TransientError, PermanentError,
DispatchError) never abort a batch. StructuralError aborts only the batch
whose stream could not be split into records. DuplicateDelivery is absorbed
by the stage workers and never surfaced to callers.
"""

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "pipeline_error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)


class StructuralError(PipelineError):
    """Record boundaries cannot be established in a bulk export stream."""

    kind = "structural_error"


class ValidationError(PipelineError):
    """A single record is malformed. Recorded against the batch and skipped."""

    kind = "validation_error"

    def __init__(self, message: str, position: int | None = None, resource_id: str | None = None, **context: Any):
        self.position = position
        self.resource_id = resource_id
        super().__init__(message, **context)


class TransientError(PipelineError):
    """Retryable failure (network, timeout, throttling)."""

    kind = "transient_error"


class PermanentError(PipelineError):
    """Non-retryable failure; the input was rejected by a collaborator."""

    kind = "permanent_error"


class DispatchError(PipelineError):
    """Enqueueing a work item failed after all retry attempts."""

    kind = "dispatch_error"


class DuplicateDelivery(PipelineError):
    """A redelivered or concurrent copy of a message lost the ownership claim."""

    kind = "duplicate_delivery"


class TenantIsolationError(PipelineError):
    """An operation referenced data owned by another tenant."""

    kind = "tenant_isolation_error"


class BatchNotFoundError(PipelineError):
    """No batch record exists for the given tenant and batch id."""

    kind = "batch_not_found"


class DeliveryLimitExceeded(PipelineError):
    """A message reached the transport's delivery ceiling without its stage completing."""

    kind = "delivery_limit_exceeded"
