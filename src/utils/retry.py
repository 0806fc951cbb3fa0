"""
Retry policy for external grading calls (code sandbox, AI grader).

Transport errors and 5xx responses are retried with exponential backoff
(``delay * backoff ** attempt``); everything else is raised immediately.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

import openai
import requests

try:
    from ..config import config
except ImportError:
    from src.config import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """True for connection failures, timeouts and 5xx responses."""
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return status is not None and status >= 500
    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(exc, openai.APIConnectionError):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code >= 500
    return False


def call_with_retries(
    func: Callable[[], T],
    *,
    max_retries: Optional[int] = None,
    delay: Optional[float] = None,
    backoff: Optional[float] = None,
    retry_if: Callable[[BaseException], bool] = is_transient,
    description: str = "external call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` and retry transient failures.

    Args:
        func: Zero-argument callable
        max_retries: Extra attempts after the first (default: config.grading.max_retries)
        delay: Initial delay in seconds (default: config.grading.retry_delay)
        backoff: Delay multiplier per attempt (default: config.grading.retry_backoff)
        retry_if: Predicate deciding whether an exception is retryable
        description: Name used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``func`` returns

    Raises:
        The last exception once retries are exhausted, or the first
        non-retryable one.
    """
    max_retries = config.grading.max_retries if max_retries is None else max_retries
    delay = config.grading.retry_delay if delay is None else delay
    backoff = config.grading.retry_backoff if backoff is None else backoff

    for attempt in range(max_retries + 1):
        try:
            return func()
        except Exception as exc:
            if attempt >= max_retries or not retry_if(exc):
                raise
            wait = delay * (backoff ** attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt + 1,
                max_retries + 1,
                wait,
                exc,
            )
            sleep(wait)

    # Unreachable: the loop either returns or raises
    raise RuntimeError(f"{description}: retry loop exited without result")
