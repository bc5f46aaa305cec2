"""Retry utilities for transient service failures.

Provides retry logic with exponential backoff so that a blip in the job
directory, claim store or object store does not fail a whole archive run.

Usage:
    from wrasse.core.resilience import RetryConfig, with_retry

    job = await with_retry(lambda: directory.get_job(job_id), name="directory")
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from wrasse.errors import ServiceError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25  # Add up to 25% random jitter


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next retry
    """
    delay = config.base_delay_seconds * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay_seconds)

    # Jitter keeps racing instances from retrying in lockstep
    jitter = delay * config.jitter_factor * random.random()
    return delay + jitter


def is_transient_error(error: BaseException) -> bool:
    """Check if an error is transient and worth retrying.

    Returns True for network failures, timeouts and 5xx/429 answers.
    Returns False for not-found, version mismatches and other 4xx answers.
    """
    if isinstance(error, ServiceError):
        return error.is_transient

    if isinstance(
        error,
        (
            httpx.TransportError,  # connect/read/write failures and timeouts
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
        ),
    ):
        return True

    return False


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    name: str = "operation",
) -> T:
    """Execute an async operation with retry on transient failures.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        config: Optional retry configuration
        is_transient: Predicate deciding whether an error is retried
        name: Label used in log events

    Returns:
        Result of the operation

    Raises:
        Exception: The last error once retries are exhausted, or the first
            non-transient error
    """
    if config is None:
        config = RetryConfig()

    attempts = max(1, config.max_attempts)
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e

            if not is_transient(e):
                raise

            if attempt >= attempts - 1:
                break

            delay = calculate_backoff(attempt, config)
            logger.warning(
                "retry_attempt",
                operation=name,
                attempt=attempt + 1,
                max_attempts=attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)

    logger.error(
        "retries_exhausted",
        operation=name,
        attempts=attempts,
        error=str(last_error),
    )
    raise last_error  # type: ignore
