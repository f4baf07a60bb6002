"""
Retry and backoff helpers for outbound provider calls.

Only transport-level failures (timeouts, dropped connections) are retried
here. HTTP status handling belongs to the caller, which decides between
fallback, surfacing, or ignoring the failure.
"""

import asyncio
import logging
from typing import Optional, Tuple, Type

import aiohttp
import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    httpx.TransportError,
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
)


class RetryConfig:
    """Default retry knobs for provider HTTP calls."""

    MAX_ATTEMPTS = 2
    BACKOFF_MIN_SEC = 0.5
    BACKOFF_MAX_SEC = 4.0
    BACKOFF_MULTIPLIER = 1.0


def get_provider_retry_decorator(
    max_attempts: Optional[int] = None,
    exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
    min_wait: Optional[float] = None,
    max_wait: Optional[float] = None,
):
    """
    Get standardized retry decorator for research-provider HTTP operations.
    """
    return retry(
        stop=stop_after_attempt(max_attempts or RetryConfig.MAX_ATTEMPTS),
        wait=wait_exponential(
            multiplier=RetryConfig.BACKOFF_MULTIPLIER,
            min=min_wait if min_wait is not None else RetryConfig.BACKOFF_MIN_SEC,
            max=max_wait if max_wait is not None else RetryConfig.BACKOFF_MAX_SEC,
        ),
        retry=retry_if_exception_type(exceptions or TRANSIENT_EXCEPTIONS),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
