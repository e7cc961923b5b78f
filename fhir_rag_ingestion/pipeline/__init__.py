"""
Pipeline orchestration: dispatcher, stage workers, bulk ingest and
dead-letter replay.
"""

from .dispatcher import Dispatcher
from .ingest import BulkIngestPipeline
from .replay import DeadLetterReplayer
from .status import batch_details, batch_progress
from .worker import Outcome, StageWorker

__all__ = [
    "Dispatcher",
    "StageWorker",
    "Outcome",
    "BulkIngestPipeline",
    "DeadLetterReplayer",
    "batch_progress",
    "batch_details",
]
