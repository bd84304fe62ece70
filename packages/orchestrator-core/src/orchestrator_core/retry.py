"""
Retry configuration for collaborator calls with exponential backoff.

This module provides RetryConfig for calculating retry delays with
exponential backoff and jitter, and call_with_retry for wrapping a single
collaborator call. Only TransientError is retried; everything else
propagates immediately.

The same RetryConfig drives per-key requeue backoff in the control loop,
so a flapping PD endpoint slows down every reconciliation that depends on
it instead of hammering it.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from orchestrator_core.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Uses exponential backoff with jitter to spread out retry attempts
    and prevent overwhelming the target system.

    Attributes:
        max_attempts: Maximum number of attempts per call (default 3)
        min_wait_seconds: Wait before the first retry (default 0.5)
        max_wait_seconds: Upper bound for a single wait (default 60.0)
        exponential_base: Base for exponential calculation (default 2.0)
        jitter_fraction: Fraction of wait time to add as jitter (default 0.5)

    Example:
        config = RetryConfig(max_attempts=5, min_wait_seconds=2.0)
        delay = config.calculate_delay(attempt=1)
        # ~4-6 seconds (2s * 2^1 base + jitter)
    """

    max_attempts: int = 3
    min_wait_seconds: float = 0.5
    max_wait_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter_fraction: float = 0.5

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate the delay before the next attempt.

        Formula: min(max_wait, min_wait * base^attempt) + random(0, wait * jitter)

        Args:
            attempt: The attempt number (0 for first retry, 1 for second, etc.)

        Returns:
            Delay in seconds
        """
        wait = min(
            self.max_wait_seconds,
            self.min_wait_seconds * (self.exponential_base**attempt),
        )
        jitter = random.uniform(0, wait * self.jitter_fraction)
        return wait + jitter

    def should_retry(self, retry_count: int) -> bool:
        """
        Check if another attempt should be made.

        Args:
            retry_count: Current number of attempts made

        Returns:
            True if retry_count < max_attempts, False otherwise
        """
        return retry_count < self.max_attempts


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` and retry it on TransientError.

    Args:
        operation: Zero-argument coroutine factory
        config: Retry policy
        description: Label used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``operation`` returns

    Raises:
        TransientError: The last transient failure once attempts run out
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientError as e:
            attempt += 1
            if not config.should_retry(attempt):
                raise
            delay = config.calculate_delay(attempt - 1)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description,
                attempt,
                config.max_attempts,
                e,
                delay,
            )
            await sleep(delay)
