"""
Exponential backoff with jitter for transient provisioner failures.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional

from ..errors import DependencyUnavailable, PlatformError

logger = logging.getLogger("storeplane.retry")

MAX_DELAY_MS = 30000


def default_should_retry(exc: BaseException, attempt: int) -> bool:
    # An open breaker will not close within a backoff window.
    if isinstance(exc, DependencyUnavailable):
        return False
    if isinstance(exc, PlatformError):
        return exc.retryable
    return True


def backoff_delay_ms(attempt: int, base_delay_ms: float, max_delay_ms: float = MAX_DELAY_MS) -> float:
    jitter = random.uniform(0, base_delay_ms / 2.0) if base_delay_ms > 0 else 0.0
    return min(base_delay_ms * (2 ** attempt) + jitter, max_delay_ms)


def retry_with_backoff(
    fn: Callable[[int], Any],
    max_retries: int = 2,
    base_delay_ms: float = 2000,
    max_delay_ms: float = MAX_DELAY_MS,
    operation_name: str = "operation",
    should_retry: Optional[Callable[[BaseException, int], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Call fn(attempt) up to max_retries + 1 times; re-raises the last error."""
    should_retry = should_retry or default_should_retry
    attempt = 0
    while True:
        try:
            return fn(attempt)
        except Exception as e:
            if attempt >= max_retries:
                logger.error("%s failed after %d attempts: %s", operation_name, attempt + 1, e)
                raise
            if not should_retry(e, attempt):
                logger.warning("%s failed with non-retryable error on attempt %d: %s", operation_name, attempt + 1, e)
                raise
            delay_ms = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            logger.warning("%s attempt %d failed, retrying in %dms: %s", operation_name, attempt + 1, delay_ms, e)
            sleep(delay_ms / 1000.0)
            attempt += 1
