"""
Retry helper for broker calls.

The broker throttles with HTTP 429. A throttled call gets exactly one more
attempt after a fixed wait; any other error propagates immediately.
"""
import time
from typing import Callable, Tuple, Type, TypeVar

from journal_sync.exceptions import RateLimitError
from journal_sync.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    max_retries: int = 1,
    delay: float = 2.0,
    retry_on: Tuple[Type[Exception], ...] = (RateLimitError,),
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "",
) -> T:
    """
    Call func, retrying on the given exception types with a fixed delay.

    Args:
        func: Zero-argument callable
        max_retries: Extra attempts after the first
        delay: Seconds to wait before each retry
        retry_on: Exception types that trigger a retry
        sleep: Injected for tests
        operation: Name used in log events

    Raises:
        The last exception once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as e:
            if attempt >= max_retries:
                logger.warning("RETRIES_EXHAUSTED", operation=operation, attempts=attempt + 1, error=str(e))
                raise
            attempt += 1
            logger.warning(
                "RETRYING_AFTER_BACKOFF",
                operation=operation,
                attempt=attempt,
                max_retries=max_retries,
                wait=f"{delay:.2f}s",
                error=str(e),
            )
            sleep(delay)
