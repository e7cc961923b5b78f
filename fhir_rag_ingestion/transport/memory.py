"""
In-process queue for local runs and tests.

Messages are stored serialised, exactly as they would cross a process
boundary, so no object state leaks between producer and consumer.
"""

import threading
import time
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Callable

from fhir_rag_ingestion.core.models import Envelope, dead_letter_topic
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.transport.base import MessageQueue

logger = get_logger(__name__)


@dataclass
class _Message:
    message_id: str
    body: str
    visible_at: float
    delivery_count: int = 0


class InMemoryQueue(MessageQueue):
    """
    Thread-safe queue with visibility timeouts and dead-letter redirect.
    """

    def __init__(self, max_deliveries: int = 10, clock: Callable[[], float] = time.monotonic):
        super().__init__(max_deliveries)
        self._clock = clock
        self._lock = threading.Lock()
        self._topics: dict[str, OrderedDict[str, _Message]] = defaultdict(OrderedDict)

    def enqueue(self, topic: str, envelope: Envelope, delay: float = 0.0) -> None:
        message = _Message(
            message_id=envelope.message_id,
            body=envelope.to_json(),
            visible_at=self._clock() + max(delay, 0.0),
        )
        with self._lock:
            self._topics[topic][message.message_id] = message

    def dequeue(self, topic: str, visibility_timeout: float) -> Envelope | None:
        with self._lock:
            messages = self._topics[topic]
            now = self._clock()
            for message_id in list(messages):
                message = messages[message_id]
                if message.visible_at > now:
                    continue

                message.delivery_count += 1
                if message.delivery_count > self.max_deliveries:
                    del messages[message_id]
                    self._topics[dead_letter_topic(topic)][message_id] = message
                    logger.warning(
                        f"Message exceeded {self.max_deliveries} deliveries, moved to dead-letter queue",
                        extra={"topic": topic, "message_id": message_id},
                    )
                    continue

                message.visible_at = now + visibility_timeout
                envelope = Envelope.from_json(message.body)
                return envelope.model_copy(update={"delivery_count": message.delivery_count})
        return None

    def ack(self, topic: str, message_id: str) -> None:
        with self._lock:
            self._topics[topic].pop(message_id, None)

    def nack(self, topic: str, message_id: str, delay: float = 0.0) -> None:
        with self._lock:
            message = self._topics[topic].get(message_id)
            if message is not None:
                message.visible_at = self._clock() + max(delay, 0.0)

    def dead_letters(self, topic: str) -> list[Envelope]:
        with self._lock:
            messages = list(self._topics[dead_letter_topic(topic)].values())
        return [
            Envelope.from_json(m.body).model_copy(update={"delivery_count": m.delivery_count})
            for m in messages
        ]

    def depth(self, topic: str) -> int:
        with self._lock:
            return len(self._topics[topic])
