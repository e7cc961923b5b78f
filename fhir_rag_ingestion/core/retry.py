"""
Retry / backoff policy shared by every stage.

One RetryPolicy instance is configured per stage (chunking, dispatch,
enrichment, persistence); the bookkeeping that applies it is the same
everywhere.
"""

import random
import time
from typing import Any, Callable, TypeVar

from pydantic import BaseModel, Field, model_validator

from fhir_rag_ingestion.core.errors import TransientError
from fhir_rag_ingestion.observability.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """
    Exponential backoff with a capped delay and a bounded attempt count.

    Attributes:
        max_attempts: Attempts allowed before the item is dead-lettered
        initial_delay: Delay in seconds after the first failed attempt
        multiplier: Growth factor applied per attempt
        max_delay: Upper bound for any single delay
        jitter: Fraction of the delay randomised (0.0 disables jitter)
    """

    max_attempts: int = Field(3, ge=1)
    initial_delay: float = Field(1.0, ge=0.0)
    multiplier: float = Field(2.0, ge=1.0)
    max_delay: float = Field(60.0, ge=0.0)
    jitter: float = Field(0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})"
            )
        return self

    def delay_for(self, attempt: int) -> float:
        """
        Backoff delay after failed attempt number `attempt` (1-based).
        """
        if attempt < 1:
            return 0.0
        delay = min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay -= delay * self.jitter * random.random()
        return delay

    def exhausted(self, attempt: int) -> bool:
        """True when `attempt` attempts have used up the budget."""
        return attempt >= self.max_attempts

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        retry_on: tuple[type[BaseException], ...] = (TransientError,),
        sleep: Callable[[float], None] = time.sleep,
        operation: str | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Call `fn` until it succeeds or the attempt budget is spent.

        Raises:
            The last exception raised by `fn` once attempts are exhausted
        """
        name = operation or getattr(fn, "__name__", "operation")
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except retry_on as e:
                if self.exhausted(attempt):
                    logger.error(
                        f"{name} failed after {attempt} attempts: {e}",
                        extra={"operation": name, "attempt": attempt},
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{name} failed (attempt {attempt}/{self.max_attempts}), retrying in {delay:.2f}s: {e}",
                    extra={"operation": name, "attempt": attempt, "delay_seconds": delay},
                )
                sleep(delay)
                attempt += 1
