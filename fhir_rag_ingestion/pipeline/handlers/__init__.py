"""
Stage handlers, looked up by the stage they run in.

A handler is a plain callable taking the claimed work item and the
worker's HandlerContext and returning the processed item.
"""

from dataclasses import dataclass
from typing import Callable

from fhir_rag_ingestion.core.models import Stage, WorkItem

from .context import HandlerContext
from .enricher import enrich_item
from .persister import persist_item


@dataclass(frozen=True)
class StageHandler:
    """
    Attributes:
        name: Stage name used for configuration and metrics
        stage: In-flight stage the handler runs in
        done_stage: Stage recorded when the handler succeeds
        next_stage: Stage the item is dispatched to afterwards, None at the end
        process: The handler callable
    """

    name: str
    stage: Stage
    done_stage: Stage
    next_stage: Stage | None
    process: Callable[[WorkItem, HandlerContext], WorkItem]


STAGE_HANDLERS: dict[Stage, StageHandler] = {
    Stage.ENRICHING: StageHandler(
        name="enrichment",
        stage=Stage.ENRICHING,
        done_stage=Stage.ENRICHED,
        next_stage=Stage.STORING,
        process=enrich_item,
    ),
    Stage.STORING: StageHandler(
        name="persistence",
        stage=Stage.STORING,
        done_stage=Stage.COMPLETED,
        next_stage=None,
        process=persist_item,
    ),
}

HANDLERS_BY_NAME: dict[str, StageHandler] = {h.name: h for h in STAGE_HANDLERS.values()}

__all__ = [
    "HandlerContext",
    "StageHandler",
    "STAGE_HANDLERS",
    "HANDLERS_BY_NAME",
    "enrich_item",
    "persist_item",
]
