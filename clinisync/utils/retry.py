"""
Retry and Backoff Utilities for clinisync.

Delay schedules shared by store reconnection (exponential), queue
requeueing (linear) and engine initialization (linear).
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, List, Optional, Type

logger = logging.getLogger(__name__)


class RetryStrategy(str, Enum):
    """How the pause grows between attempts."""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    backoff_multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.1
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)
    non_retryable_exceptions: List[Type[Exception]] = field(default_factory=list)
    label: str = "call"  # used in log lines


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retried call failed."""

    def __init__(self, attempts: int, last_error: Optional[Exception]):
        super().__init__(f"All {attempts} attempts failed: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryExecutor:
    """
    Retry executor with pluggable delay strategies.

    Attempt numbers are 1-based: the pause after the first failure is
    ``calculate_delay(1)``.
    """

    def __init__(self, config: RetryConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        attempt = max(1, attempt)
        base = self.config.base_delay
        if self.config.strategy == RetryStrategy.EXPONENTIAL:
            delay = base * (self.config.backoff_multiplier ** (attempt - 1))
        elif self.config.strategy == RetryStrategy.LINEAR:
            delay = base * attempt
        else:
            delay = base
        delay = min(delay, self.config.max_delay)

        if self.config.jitter and self.config.jitter_range > 0:
            spread = delay * self.config.jitter_range
            delay = max(0.0, random.uniform(delay - spread, delay + spread))
        return delay

    def schedule(self) -> List[float]:
        """Pauses between the configured attempts, for logs and reports."""
        return [self.calculate_delay(n) for n in range(1, self.config.max_attempts)]

    def is_retryable(self, exception: Exception) -> bool:
        """Determine if the exception type is worth another attempt."""
        if any(isinstance(exception, t) for t in self.config.non_retryable_exceptions):
            return False
        if self.config.retryable_exceptions:
            return any(isinstance(exception, t) for t in self.config.retryable_exceptions)
        # Programming errors
        return not isinstance(exception, (TypeError, ValueError, KeyError, AttributeError))

    async def async_execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        on_retry: Optional[Callable[[int, Exception], Awaitable[None]]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        **kwargs
    ) -> Any:
        """
        Await ``func`` until it succeeds or attempts run out.

        Args:
            func: Coroutine function to call
            on_retry: Awaited after the pause, before the next attempt, with the
                failed attempt number and its error. Its exceptions propagate.
            sleep: Replacement for ``asyncio.sleep`` (e.g. one that wakes on shutdown)

        Raises:
            RetryExhaustedError: If every attempt failed with a retryable error
        """
        label = self.config.label
        sleep = sleep or asyncio.sleep
        last_error: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
            if attempt == self.config.max_attempts:
                break
            delay = self.calculate_delay(attempt)
            logger.warning(f"{label}: attempt {attempt}/{self.config.max_attempts} failed ({last_error}), retrying in {delay:.1f}s")
            await sleep(delay)
            if on_retry is not None:
                await on_retry(attempt, last_error)

        logger.error(f"{label}: all {self.config.max_attempts} attempts failed")
        raise RetryExhaustedError(self.config.max_attempts, last_error)


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL,
    retryable_exceptions: Optional[List[Type[Exception]]] = None,
    **options
):
    """
    Decorator adding retry logic to a coroutine function.

    Extra keyword options are passed through to ``RetryConfig``; the label
    defaults to the function's qualified name.
    """
    def decorator(func):
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"retry() needs a coroutine function, got {func!r}")

        executor = RetryExecutor(RetryConfig(
            max_attempts=max_attempts,
            base_delay=base_delay,
            strategy=strategy,
            retryable_exceptions=retryable_exceptions or [],
            label=options.pop("label", func.__qualname__),
            **options
        ))

        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await executor.async_execute(func, *args, **kwargs)

        wrapper.retry_executor = executor
        return wrapper

    return decorator
