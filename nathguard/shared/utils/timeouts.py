"""Deadline enforcement for storage calls.

psycopg2 has statement_timeout on the server side, but a hung socket or a
slow KMS round trip can still stall a request thread. Every component runs
its storage calls through run_with_timeout() so the caller gets control
back within the configured deadline.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, TypeVar

from nathguard.shared.database.repository import StorageTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()

STORAGE_WORKERS = 16


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=STORAGE_WORKERS,
                thread_name_prefix="nathguard-storage",
            )
        return _executor


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: Optional[float],
    *args: Any,
    operation: str = "storage",
    **kwargs: Any,
) -> T:
    """Run func(*args, **kwargs) and wait at most timeout_seconds.

    A timeout of None runs the call inline. Exceptions raised by func
    propagate unchanged.

    Raises:
        StorageTimeoutError: If the deadline passes first. The call keeps
            running on the worker thread; its result is discarded.
    """
    if timeout_seconds is None:
        return func(*args, **kwargs)

    future = _get_executor().submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        future.cancel()
        logger.warning(
            "STORAGE_CALL_TIMED_OUT",
            extra={"operation": operation, "timeout_seconds": timeout_seconds}
        )
        raise StorageTimeoutError(f"{operation} exceeded {timeout_seconds}s")


def shutdown_executor(wait: bool = True) -> None:
    """Stop the shared storage worker pool. Used at gateway shutdown."""
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=wait)
            _executor = None
