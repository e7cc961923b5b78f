"""
Stage queue transports.
"""

from .base import MessageQueue
from .memory import InMemoryQueue
from .postgres import PostgresQueue

__all__ = [
    "MessageQueue",
    "InMemoryQueue",
    "PostgresQueue",
]
