"""Bounded exponential backoff for transient backend errors.

Retries on connection errors, timeouts, throttling and server-side errors
(5xx). Does NOT retry on client errors like 404 (NoSuchKey) or 403, or on
script/validation errors returned by Redis.

Backoff sleeps are ``asyncio.sleep`` calls, so cancelling the calling task
aborts the retry loop immediately with ``asyncio.CancelledError``.
"""

import asyncio
import functools
import logging
import random
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import redis.exceptions
from minio.error import S3Error, ServerError
from urllib3.exceptions import HTTPError, MaxRetryError, TimeoutError as Urllib3TimeoutError

from chunked_uploads.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryProfile:
    """Attempt count and delay schedule for one class of operations."""

    max_attempts: int
    base_delay: float
    max_delay: float
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            return random.uniform(0, delay)
        return delay


# Liveness/readiness checks: fail fast.
HEALTH_PROFILE = RetryProfile(max_attempts=2, base_delay=0.1, max_delay=0.5)
# Data path: chunk writes, session updates, notifications.
DEFAULT_PROFILE = RetryProfile(max_attempts=4, base_delay=0.2, max_delay=5.0)


def profiles_from_settings(settings: Settings) -> tuple[RetryProfile, RetryProfile]:
    """Build (data path, health) profiles from settings."""
    default = RetryProfile(
        max_attempts=settings.retry_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )
    health = RetryProfile(
        max_attempts=settings.health_retry_attempts,
        base_delay=settings.health_retry_base_delay,
        max_delay=settings.health_retry_max_delay,
    )
    return default, health


# ─── Error classifiers ──────────────────────────────────────────────────────

_RETRIABLE_S3_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "Throttling",
    "ThrottlingException",
    "XMinioServerNotInitialized",
}


def is_retriable_storage_error(exc: BaseException) -> bool:
    """Classify MinIO/S3 and network errors."""
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, S3Error):
        if exc.code in _RETRIABLE_S3_CODES:
            return True
        status = getattr(exc.response, "status", None)
        return status is not None and (status >= 500 or status == 429)
    return isinstance(
        exc,
        (ConnectionError, TimeoutError, socket.gaierror, HTTPError, MaxRetryError, Urllib3TimeoutError),
    )


def is_retriable_redis_error(exc: BaseException) -> bool:
    """Classify Redis errors; script and type errors are never retried."""
    if isinstance(
        exc,
        (
            redis.exceptions.ConnectionError,
            redis.exceptions.TimeoutError,
            redis.exceptions.BusyLoadingError,
            redis.exceptions.TryAgainError,
        ),
    ):
        return True
    if isinstance(exc, redis.exceptions.ResponseError):
        return str(exc).startswith(("LOADING", "TRYAGAIN", "CLUSTERDOWN"))
    return isinstance(exc, (ConnectionError, TimeoutError))


# ─── Retry loop ─────────────────────────────────────────────────────────────


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    profile: RetryProfile = DEFAULT_PROFILE,
    is_retriable: Callable[[BaseException], bool],
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds, fails permanently, or runs out of attempts.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        profile: Attempt count and backoff schedule
        is_retriable: Predicate deciding whether an error is transient
        description: Name used in log messages

    Returns:
        The operation's result

    Raises:
        The last error raised by ``operation``.
    """
    for attempt in range(1, profile.max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_retriable(e):
                raise
            if attempt == profile.max_attempts:
                logger.error(f"{description} failed after {profile.max_attempts} attempts: {e}")
                raise

            delay = profile.delay_for(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{profile.max_attempts}): "
                f"{e}. Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)

    raise RuntimeError("retry profile must allow at least one attempt")


def retry_on_transient(
    is_retriable: Callable[[BaseException], bool],
    profile: RetryProfile = DEFAULT_PROFILE,
    description: str = "operation",
) -> Callable:
    """Decorator form of :func:`retry_async` for coroutine functions."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                profile=profile,
                is_retriable=is_retriable,
                description=description,
            )
        return wrapper
    return decorator
