#!/usr/bin/env python3
"""Resilience Patterns for remote database access.

This module provides the failure-handling primitives shared by the
session manager, the database client and the connectivity probe:
    - Inline retry with exponential backoff (session token fetch)
    - Circuit breaker (REST requests against the database)
    - Bounded execution time (connectivity probes)

Retries here are short and local. Operation-level retries (the
three-attempt ceiling on queued operations) belong to the sync driver
and are counted per pass, not by sleeping.

Example:
    token = await retry_async(
        session.fetch,
        max_attempts=3,
        initial_delay=1.0,
    )

    circuit = CircuitBreaker(failure_threshold=5, timeout=60, name="rtdb")
    value = await circuit.call(client.get, "clients/c1")

    await with_timeout(remote.probe_connected, 5.0)
"""
import asyncio
import logging
import random
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import (
    CircuitOpenError,
    NetworkError,
    RateLimitError,
    ServerError,
    TimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Retry with Exponential Backoff
# ============================================

RETRYABLE_EXCEPTIONS = (
    NetworkError,
    RateLimitError,
    ServerError,
    asyncio.TimeoutError,
    OSError,
)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple = RETRYABLE_EXCEPTIONS,
    **kwargs,
) -> T:
    """Call an async function, retrying transient failures with backoff.

    Args:
        func: Async function to call
        *args: Arguments to pass to func
        max_attempts: Maximum attempts (including the first)
        backoff_factor: Delay multiplier between attempts
        initial_delay: Delay in seconds before the first retry
        max_delay: Upper bound on any single delay
        jitter: Randomize each delay by 0.5x-1.5x
        retryable_exceptions: Exceptions to retry on; anything else is raised
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from func

    Raises:
        The last retryable exception once attempts are exhausted, or the
        first non-retryable exception immediately.
    """
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except retryable_exceptions as e:
            if attempt >= max_attempts:
                logger.error(f"All {max_attempts} attempts failed. Last error: {e}")
                raise

            if isinstance(e, RateLimitError) and e.retry_after:
                delay = float(e.retry_after)

            wait = min(delay, max_delay)
            if jitter:
                wait = wait * (0.5 + random.random())

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {wait:.1f}s"
            )
            await asyncio.sleep(wait)
            delay = min(delay * backoff_factor, max_delay)

    raise RuntimeError("retry_async called with max_attempts < 1")


# ============================================
# Circuit Breaker
# ============================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # requests pass through
    OPEN = "open"          # requests rejected
    HALF_OPEN = "half_open"  # probing for recovery


class CircuitBreaker:
    """Circuit breaker guarding calls to the remote database.

    When the database keeps failing, the breaker opens and rejects calls
    immediately with CircuitOpenError. The sync driver treats that like
    any other transient failure, so a dead backend costs one attempt per
    operation per pass instead of a full request timeout each.

    State Transitions:
        CLOSED -> OPEN: failure_count >= failure_threshold
        OPEN -> HALF_OPEN: timeout elapsed since last failure
        HALF_OPEN -> CLOSED: success_threshold consecutive successes
        HALF_OPEN -> OPEN: any failure

    Only failures listed in ``counted_exceptions`` move the breaker.
    A 404 or a permission error means the backend is answering, so it
    should not trip the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        success_threshold: int = 1,
        name: str = "default",
        counted_exceptions: tuple = RETRYABLE_EXCEPTIONS,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.name = name
        self.counted_exceptions = counted_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _should_attempt(self) -> bool:
        if self._state != CircuitState.OPEN:
            return True
        if self._last_failure_time is None:
            return True
        elapsed = (datetime.now(UTC) - self._last_failure_time).total_seconds()
        return elapsed >= self.timeout

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        **kwargs,
    ) -> T:
        """Execute func through the circuit breaker.

        Raises:
            CircuitOpenError: If the circuit is open and the timeout has not passed
            Any exception from func (after updating circuit state)
        """
        async with self._lock:
            if not self._should_attempt():
                reset_at = None
                if self._last_failure_time:
                    reset_at = self._last_failure_time + timedelta(seconds=self.timeout)
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is open",
                    reset_at=reset_at,
                    failure_count=self._failure_count,
                )

            if self._state == CircuitState.OPEN:
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0

        try:
            result = await func(*args, **kwargs)
        except self.counted_exceptions as e:
            await self._on_failure(e)
            raise
        except Exception:
            await self._on_success()
            raise

        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    logger.info(f"Circuit '{self.name}' closed")
                    self._state = CircuitState.CLOSED
                    self._success_count = 0

    async def _on_failure(self, exception: Exception):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(UTC)

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' reopening after test failure: {exception}"
                )
                self._state = CircuitState.OPEN
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                logger.warning(
                    f"Circuit '{self.name}' opening after "
                    f"{self._failure_count} failures"
                )
                self._state = CircuitState.OPEN

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        logger.info(f"Circuit '{self.name}' manually reset")

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status for health reporting."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout,
            "last_failure_at": (
                self._last_failure_time.isoformat()
                if self._last_failure_time
                else None
            ),
        }


# ============================================
# Bounded Execution
# ============================================

async def with_timeout(
    func: Callable[..., Awaitable[T]],
    timeout_seconds: float,
    *args,
    **kwargs,
) -> T:
    """Execute an async function with a deadline.

    Raises:
        TimeoutError: The engine's NetworkError subclass, so callers can
            treat a slow backend the same as an unreachable one.
    """
    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise TimeoutError(
            f"{getattr(func, '__name__', 'call')} timed out after {timeout_seconds}s",
            timeout_seconds=timeout_seconds,
            cause=e,
        ) from e


# ============================================
# Exports
# ============================================

__all__ = [
    "retry_async",
    "RETRYABLE_EXCEPTIONS",
    "CircuitBreaker",
    "CircuitState",
    "with_timeout",
]
