"""
PostgreSQL-backed stage queue.

Workers claim messages with FOR UPDATE SKIP LOCKED, so concurrent workers
never block on each other. A claimed message is hidden until its visibility
timeout elapses and is redelivered unless acknowledged.
"""

from fhir_rag_ingestion.core.models import Envelope, dead_letter_topic
from fhir_rag_ingestion.observability.logger import get_logger
from fhir_rag_ingestion.storage.connection import DatabaseConnectionPool, transient_db_errors
from fhir_rag_ingestion.transport.base import MessageQueue

logger = get_logger(__name__)


class PostgresQueue(MessageQueue):
    """
    Stage queue stored in the queue_message table.
    """

    def __init__(self, pool: DatabaseConnectionPool, max_deliveries: int = 10):
        """
        Args:
            pool: Database connection pool
            max_deliveries: Delivery-count ceiling before dead-letter redirect
        """
        super().__init__(max_deliveries)
        self.pool = pool

    def enqueue(self, topic: str, envelope: Envelope, delay: float = 0.0) -> None:
        query = """
            INSERT INTO queue_message (message_id, topic, body, visible_at)
            VALUES (%s, %s, %s, now() + make_interval(secs => %s))
            ON CONFLICT (message_id) DO NOTHING
        """
        with transient_db_errors("enqueue"):
            self.pool.execute_command(
                query, (envelope.message_id, topic, envelope.to_json(), float(max(delay, 0.0)))
            )

    def dequeue(self, topic: str, visibility_timeout: float) -> Envelope | None:
        claim = """
            UPDATE queue_message q
            SET visible_at = now() + make_interval(secs => %(vt)s),
                delivery_count = q.delivery_count + 1
            WHERE q.message_id = (
                SELECT message_id
                FROM queue_message
                WHERE topic = %(topic)s AND visible_at <= now()
                ORDER BY enqueued_at
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            RETURNING q.message_id, q.body, q.delivery_count
        """
        while True:
            with transient_db_errors("dequeue"):
                rows = self.pool.execute_query(claim, {"topic": topic, "vt": float(visibility_timeout)})
            if not rows:
                return None

            row = rows[0]
            if row["delivery_count"] > self.max_deliveries:
                self._redirect_to_dead_letter(topic, row["message_id"])
                continue

            envelope = Envelope.from_json(row["body"])
            return envelope.model_copy(update={"delivery_count": row["delivery_count"]})

    def ack(self, topic: str, message_id: str) -> None:
        with transient_db_errors("ack"):
            self.pool.execute_command(
                "DELETE FROM queue_message WHERE topic = %s AND message_id = %s",
                (topic, message_id),
            )

    def nack(self, topic: str, message_id: str, delay: float = 0.0) -> None:
        with transient_db_errors("nack"):
            self.pool.execute_command(
                """
                UPDATE queue_message SET visible_at = now() + make_interval(secs => %s)
                WHERE topic = %s AND message_id = %s
                """,
                (float(max(delay, 0.0)), topic, message_id),
            )

    def dead_letters(self, topic: str) -> list[Envelope]:
        rows = self.pool.execute_query(
            "SELECT body, delivery_count FROM queue_message WHERE topic = %s ORDER BY enqueued_at",
            (dead_letter_topic(topic),),
        )
        return [
            Envelope.from_json(r["body"]).model_copy(update={"delivery_count": r["delivery_count"]})
            for r in rows
        ]

    def depth(self, topic: str) -> int:
        rows = self.pool.execute_query(
            "SELECT COUNT(*) AS depth FROM queue_message WHERE topic = %s", (topic,)
        )
        return rows[0]["depth"]

    def _redirect_to_dead_letter(self, topic: str, message_id: str) -> None:
        with transient_db_errors("dead-letter redirect"):
            self.pool.execute_command(
                "UPDATE queue_message SET topic = %s, visible_at = now() WHERE message_id = %s",
                (dead_letter_topic(topic), message_id),
            )
        logger.warning(
            f"Message exceeded {self.max_deliveries} deliveries, moved to dead-letter queue",
            extra={"topic": topic, "message_id": message_id},
        )
