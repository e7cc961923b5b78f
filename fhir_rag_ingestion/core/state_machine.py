"""
Work item state machine.

Forward path:
    Received -> Chunked -> Enriching -> Enriched -> Storing -> Completed

Failed is reachable from any in-flight stage. From Failed an item either
re-enters the entry point of the stage it failed in (retry) or moves to
DeadLettered once its retries are exhausted. A dead-lettered item only leaves
DeadLettered through an explicit replay, which puts it back in Failed.
"""

from fhir_rag_ingestion.core.models import Stage, TransitionStatus

FORWARD_ORDER: tuple[Stage, ...] = (
    Stage.RECEIVED,
    Stage.CHUNKED,
    Stage.ENRICHING,
    Stage.ENRICHED,
    Stage.STORING,
    Stage.COMPLETED,
)

IN_FLIGHT_STAGES = frozenset({Stage.CHUNKED, Stage.ENRICHING, Stage.ENRICHED, Stage.STORING})

# Stages owned by a worker under a lease; an expired lease may be reclaimed.
LEASED_STAGES = frozenset({Stage.ENRICHING, Stage.STORING})

# Stages a worker can own, mapped to the stage it must arrive from.
PREDECESSORS = {
    Stage.CHUNKED: Stage.RECEIVED,
    Stage.ENRICHING: Stage.CHUNKED,
    Stage.ENRICHED: Stage.ENRICHING,
    Stage.STORING: Stage.ENRICHED,
    Stage.COMPLETED: Stage.STORING,
}

# Where an item re-enters the pipeline after failing in a given stage.
RETRY_ENTRY = {
    Stage.CHUNKED: Stage.ENRICHING,
    Stage.ENRICHING: Stage.ENRICHING,
    Stage.ENRICHED: Stage.STORING,
    Stage.STORING: Stage.STORING,
}

TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.DEAD_LETTERED})


def rank(stage: Stage) -> int | None:
    """Position of a stage on the forward path, None for Failed/DeadLettered."""
    try:
        return FORWARD_ORDER.index(stage)
    except ValueError:
        return None


def retry_entry(failed_stage: Stage | None) -> Stage | None:
    if failed_stage is None:
        return None
    return RETRY_ENTRY.get(failed_stage)


def is_valid_transition(
    from_stage: Stage | None,
    to_stage: Stage,
    failed_stage: Stage | None = None,
    replay: bool = False,
) -> bool:
    """
    Check a single transition against the rule table.

    Args:
        from_stage: Current stage, None when the item is first registered
        to_stage: Requested stage
        failed_stage: Stage the item failed in (only used when from_stage is Failed)
        replay: Whether the transition is part of an explicit dead-letter replay

    Returns:
        True if the transition is permitted
    """
    if from_stage is None:
        return to_stage == Stage.RECEIVED

    if to_stage == Stage.FAILED:
        if from_stage == Stage.DEAD_LETTERED:
            return replay
        return from_stage in IN_FLIGHT_STAGES

    if from_stage == Stage.FAILED:
        if to_stage == Stage.DEAD_LETTERED:
            return True
        return to_stage == retry_entry(failed_stage)

    from_rank = rank(from_stage)
    to_rank = rank(to_stage)
    if from_rank is None or to_rank is None:
        return False
    # Transitions are recorded one step at a time, never skipped.
    return to_rank == from_rank + 1


def classify_conflict(
    current: Stage,
    from_stage: Stage | None,
    to_stage: Stage,
    lease_expired: bool,
) -> tuple[TransitionStatus, str]:
    """
    Decide what a failed compare-and-set means.

    Called when the stored stage is not `from_stage`. A stored stage equal to
    the requested in-flight stage with an expired lease may be reclaimed
    (the previous owner crashed). A stored stage already past `from_stage`
    means this is a redelivered or concurrent copy. A stored stage behind
    `from_stage` means the message arrived out of order.
    """
    if from_stage is None:
        return TransitionStatus.DUPLICATE, "item already registered"

    if current == to_stage and to_stage in LEASED_STAGES and lease_expired:
        return TransitionStatus.ACCEPTED, "reclaimed expired lease"

    if current in (Stage.FAILED, Stage.DEAD_LETTERED):
        return TransitionStatus.DUPLICATE, f"item is {current.value}"

    current_rank = rank(current)
    from_rank = rank(from_stage)
    if from_rank is None or (current_rank is not None and current_rank > from_rank):
        return TransitionStatus.DUPLICATE, f"item already at {current.value}"

    return (
        TransitionStatus.REJECTED,
        f"out of order: item is {current.value}, expected {from_stage.value}",
    )
