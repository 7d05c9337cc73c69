"""Retry policy with capped exponential backoff, and the injectable clock.

This module provides:
- RetryPolicy: Decides whether a failed upload is retried and after how long
- Clock / SystemClock: Time source used for backoff, expiry and timing
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from lessonup.client.upload.types import (
    IntegrityMismatchError,
    InvalidTransitionError,
    SourceUnavailableError,
)

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 30.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Seconds between connectivity probes
NETWORK_CHECK_INTERVAL = 5.0

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)

# Failures that another attempt cannot fix
NON_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    SourceUnavailableError,
    InvalidTransitionError,
)


class Clock(Protocol):
    """Time source for the upload queue."""

    def now(self) -> float:
        """Current Unix timestamp in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend for the given number of seconds."""
        ...


class SystemClock:
    """Clock backed by the wall clock and asyncio.sleep."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class RetryPolicy:
    """Bounded retry policy applied uniformly to transfer and verification failures.

    The n-th automatic retry waits min(multiplier^n * initial_backoff, max_backoff)
    seconds: 2s, 4s, 8s with the defaults.

    Attributes:
        max_attempts: Automatic retries before the task is marked failed.
        initial_backoff: Base delay in seconds.
        max_backoff: Upper bound of a single delay in seconds.
        backoff_multiplier: Growth factor per attempt.
        retry_integrity_mismatch: Whether a failed verification is retried like a
            transient failure (True) or treated as fatal (False).
    """

    max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    retry_integrity_mismatch: bool = True

    def delay_for(self, attempt: int) -> float:
        """Get the delay before retry number attempt (1-based).

        Args:
            attempt: Retry number, starting at 1.

        Returns:
            Delay in seconds.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.backoff_multiplier ** attempt * self.initial_backoff, self.max_backoff)

    def is_retryable(self, error: BaseException) -> bool:
        """Check if this kind of failure may be retried at all."""
        if isinstance(error, IntegrityMismatchError):
            return self.retry_integrity_mismatch
        return not isinstance(error, NON_RETRYABLE_EXCEPTIONS)

    def should_retry(self, retry_count: int, error: BaseException) -> bool:
        """Check if a task that already consumed retry_count retries gets another.

        Args:
            retry_count: Retries already consumed.
            error: The failure that just happened.

        Returns:
            True if the task should be re-queued with backoff.
        """
        if not self.is_retryable(error):
            logger.debug(f"Not retrying non-retryable failure: {error!r}")
            return False
        return retry_count < self.max_attempts
