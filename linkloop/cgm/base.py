"""Shared types and helpers for CGM feed adapters."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from linkloop.config import settings
from linkloop.core.errors import FeedUnavailable
from linkloop.logging_config import get_logger
from linkloop.models.glucose import GlucoseTrend, ReadingSource

logger = get_logger(__name__)

T = TypeVar("T")

# Plausible sensor range; anything outside is a sensor error code
MIN_FEED_VALUE = 20
MAX_FEED_VALUE = 600


@dataclass(frozen=True)
class FeedReading:
    """A reading as produced by a feed adapter, before merging."""

    timestamp: datetime
    value: int
    trend: GlucoseTrend
    source: ReadingSource


def is_plausible(value: int | None) -> bool:
    return value is not None and MIN_FEED_VALUE <= value <= MAX_FEED_VALUE


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    max_retries: int | None = None,
    retry_delay: float | None = None,
) -> T:
    """Run a feed call, retrying transient failures with linear backoff.

    Only FeedUnavailable is retried; every other error propagates at once.

    Args:
        operation: Zero-argument coroutine factory
        description: Used in log messages
        max_retries: Attempts before giving up (default from settings)
        retry_delay: Base delay in seconds; attempt n waits delay * n

    Raises:
        FeedUnavailable: When every attempt failed transiently
    """
    if max_retries is None:
        max_retries = settings.feed_max_retries
    if retry_delay is None:
        retry_delay = settings.feed_retry_delay_seconds

    last_error: FeedUnavailable | None = None
    for attempt in range(max_retries):
        try:
            return await operation()
        except FeedUnavailable as e:
            last_error = e
            logger.warning(
                "Transient feed failure",
                operation=description,
                attempt=attempt + 1,
                max_retries=max_retries,
                error=str(e),
            )
            if attempt < max_retries - 1:
                await asyncio.sleep(retry_delay * (attempt + 1))

    raise FeedUnavailable(
        f"{description} failed after {max_retries} attempts: {last_error}"
    )
