"""
Per-operation timeouts for calls that block on the network.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from fhir_rag_ingestion.core.errors import TransientError

T = TypeVar("T")


def call_with_timeout(fn: Callable[..., T], timeout: float | None, *args: Any, **kwargs: Any) -> T:
    """
    Run `fn` and give up after `timeout` seconds.

    A timed-out call is reported as a TransientError. The call itself keeps
    running on its helper thread until it returns; callers must only use this
    for operations that are safe to repeat.

    Args:
        fn: Callable to run
        timeout: Seconds to wait, None or 0 to wait indefinitely

    Raises:
        TransientError: If the call did not finish in time
    """
    if not timeout:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="op-timeout")
    try:
        future = executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            name = getattr(fn, "__name__", "operation")
            raise TransientError(f"{name} timed out after {timeout}s", timeout=timeout) from e
    finally:
        executor.shutdown(wait=False)
