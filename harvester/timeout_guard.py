"""Deadline wrapper for outbound calls."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

from harvester.errors import RequestTimeout

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Upper bound on page workers plus attendance workers; HarvestConfig rejects more.
GUARD_POOL_SIZE = 32

_guard_pool = ThreadPoolExecutor(max_workers=GUARD_POOL_SIZE, thread_name_prefix='timeout-guard')


def with_timeout(operation: Callable[[], T], timeout: float, label: str) -> T:
    """
    Run an operation, failing if it does not finish within the deadline.

    The deadline starts when a guard thread picks the operation up, so time
    spent queued behind other calls never counts against it. After a timeout
    the operation keeps running on its guard thread, but its result or
    exception is discarded. No retry is attempted.

    Args:
        operation: Zero-argument callable performing the outbound call
        timeout: Deadline in seconds
        label: Description embedded in the timeout error

    Returns:
        Whatever the operation returns

    Raises:
        RequestTimeout: If the deadline passes first
    """
    started = threading.Event()

    def run() -> T:
        started.set()
        return operation()

    future = _guard_pool.submit(run)
    started.wait()
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning(f"Deadline of {timeout:g}s exceeded: {label}")
        raise RequestTimeout(label, timeout) from None
