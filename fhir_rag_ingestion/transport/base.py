"""
Queue abstraction consumed by the dispatcher and the stage workers.

Implementations provide at-least-once delivery: a dequeued message stays
hidden for its visibility timeout and is redelivered unless acknowledged.
After `max_deliveries` deliveries a message is redirected to the topic's
dead-letter queue instead of being delivered again.
"""

from abc import ABC, abstractmethod

from fhir_rag_ingestion.core.models import Envelope


class MessageQueue(ABC):
    """Abstract stage-topic queue."""

    def __init__(self, max_deliveries: int = 10):
        """
        Args:
            max_deliveries: Delivery-count ceiling before dead-letter redirect
        """
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        self.max_deliveries = max_deliveries

    @abstractmethod
    def enqueue(self, topic: str, envelope: Envelope, delay: float = 0.0) -> None:
        """
        Publish an envelope.

        Args:
            topic: Stage topic
            envelope: Message to publish
            delay: Seconds before the message becomes visible

        Raises:
            TransientError: If the transport is unavailable
        """

    @abstractmethod
    def dequeue(self, topic: str, visibility_timeout: float) -> Envelope | None:
        """
        Receive the next visible message, or None if the topic is empty.

        The returned envelope's delivery_count includes this delivery.
        """

    @abstractmethod
    def ack(self, topic: str, message_id: str) -> None:
        """Delete a delivered message so it is never redelivered."""

    @abstractmethod
    def nack(self, topic: str, message_id: str, delay: float = 0.0) -> None:
        """Release a delivered message so it becomes visible again after `delay` seconds."""

    @abstractmethod
    def dead_letters(self, topic: str) -> list[Envelope]:
        """Messages redirected to the dead-letter queue of `topic`."""

    @abstractmethod
    def depth(self, topic: str) -> int:
        """Messages on `topic` that are visible or in flight."""
