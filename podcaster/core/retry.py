"""Bounded retry with exponential backoff for async operations."""

import asyncio
import functools
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, Literal, TypeVar

from podcaster.core.errors import RetryExhaustedError, is_retryable
from podcaster.core.logging import get_logger
from podcaster.core.metrics import RETRY_ATTEMPTS

logger = get_logger(__name__)

T = TypeVar("T")

ServiceType = Literal["api", "database", "storage", "ai", "cdn"]

RetryCondition = Callable[[BaseException], bool]
RetryCallback = Callable[[int, BaseException], None]
ExhaustedCallback = Callable[[BaseException], None]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for a single call site.

    ``retry_condition`` of None means every error is retried.
    """

    max_attempts: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_multiplier: float = 2.0
    jitter: bool = False
    retry_condition: RetryCondition | None = None
    on_retry: RetryCallback | None = None
    on_max_attempts_reached: ExhaustedCallback | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")

    def with_overrides(self, **changes: Any) -> "RetryConfig":
        return replace(self, **changes)

    @classmethod
    def for_service(cls, service: ServiceType, **overrides: Any) -> "RetryConfig":
        """Build a config from the per-collaborator policy table."""
        try:
            preset = SERVICE_RETRY_PRESETS[service]
        except KeyError:
            raise ValueError(f"Unknown service type: {service}") from None
        return preset.with_overrides(**overrides) if overrides else preset


# Rate-limited external APIs get few attempts with long waits; idempotent
# storage and database calls get more attempts with short waits.
SERVICE_RETRY_PRESETS: dict[str, RetryConfig] = {
    "api": RetryConfig(
        max_attempts=3, base_delay_ms=1000, max_delay_ms=5000, retry_condition=is_retryable
    ),
    "database": RetryConfig(
        max_attempts=5, base_delay_ms=500, max_delay_ms=3000, retry_condition=is_retryable
    ),
    "storage": RetryConfig(
        max_attempts=4, base_delay_ms=2000, max_delay_ms=8000, retry_condition=is_retryable
    ),
    "ai": RetryConfig(
        max_attempts=2, base_delay_ms=3000, max_delay_ms=10000, retry_condition=is_retryable
    ),
    "cdn": RetryConfig(
        max_attempts=3, base_delay_ms=1000, max_delay_ms=8000, retry_condition=is_retryable
    ),
}


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Result of :meth:`RetryExecutor.execute_with_metadata`."""

    result: T
    attempts: int
    total_time_ms: float


def calculate_delay_ms(attempt: int, config: RetryConfig) -> float:
    """Backoff before the attempt following ``attempt`` (1-based).

    Args:
        attempt: Number of the attempt that just failed
        config: Retry policy

    Returns:
        Delay in milliseconds, capped at ``max_delay_ms``
    """
    delay = min(
        config.base_delay_ms * (config.backoff_multiplier ** (attempt - 1)),
        config.max_delay_ms,
    )
    if config.jitter:
        # +/-10% spread keeps simultaneous retries from lining up
        spread = delay * 0.1
        delay = max(0.0, delay + random.uniform(-spread, spread))
    return delay


class RetryExecutor:
    """Run an async operation under a :class:`RetryConfig`."""

    def __init__(self, sleep: Sleep = asyncio.sleep) -> None:
        """Initialize executor.

        Args:
            sleep: Awaitable sleep taking seconds; swapped out in tests
        """
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
        name: str | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Args:
            operation: Zero-argument coroutine factory
            config: Retry policy, defaults to ``RetryConfig()``
            name: Operation label for logs

        Returns:
            The operation's result

        Raises:
            Exception: The last error, unchanged, when attempts are exhausted
                or the retry condition rejects it
        """
        outcome, _ = await self._run(operation, config or RetryConfig(), name, False)
        return outcome

    async def execute_with_metadata(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
        name: str | None = None,
    ) -> RetryResult[T]:
        """Like :meth:`execute` but also report attempts and elapsed time.

        Raises:
            RetryExhaustedError: When every attempt failed; carries the attempt
                count and elapsed time and chains the last error
            Exception: Non-retryable errors are re-raised unchanged
        """
        started = time.perf_counter()
        try:
            result, attempts = await self._run(
                operation, config or RetryConfig(), name, True
            )
        except _Exhausted as exhausted:
            total_ms = (time.perf_counter() - started) * 1000
            raise RetryExhaustedError(
                exhausted.error,
                attempts=exhausted.attempts,
                total_time_ms=total_ms,
                operation=name,
            ) from exhausted.error
        total_ms = (time.perf_counter() - started) * 1000
        return RetryResult(result=result, attempts=attempts, total_time_ms=total_ms)

    async def _run(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig,
        name: str | None,
        wrap_exhausted: bool,
    ) -> tuple[T, int]:
        label = name or getattr(operation, "__name__", "anonymous")

        for attempt in range(1, config.max_attempts + 1):
            try:
                result = await operation()
            except Exception as error:
                if config.retry_condition is not None and not config.retry_condition(error):
                    RETRY_ATTEMPTS.labels(outcome="aborted").inc()
                    logger.debug(
                        "retry_aborted",
                        operation=label,
                        attempt=attempt,
                        error=str(error),
                    )
                    raise

                if attempt == config.max_attempts:
                    RETRY_ATTEMPTS.labels(outcome="exhausted").inc()
                    logger.warning(
                        "retry_exhausted",
                        operation=label,
                        attempts=attempt,
                        error=str(error),
                    )
                    if config.on_max_attempts_reached is not None:
                        config.on_max_attempts_reached(error)
                    if wrap_exhausted:
                        raise _Exhausted(error, attempt) from error
                    raise

                delay_ms = calculate_delay_ms(attempt, config)
                RETRY_ATTEMPTS.labels(outcome="retry").inc()
                logger.warning(
                    "retry_scheduled",
                    operation=label,
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    delay_ms=round(delay_ms, 1),
                    error=str(error),
                )
                await self._sleep(delay_ms / 1000)
                if config.on_retry is not None:
                    config.on_retry(attempt, error)
                continue

            RETRY_ATTEMPTS.labels(outcome="success").inc()
            if attempt > 1:
                logger.info("retry_succeeded", operation=label, attempts=attempt)
            return result, attempt

        raise RuntimeError("Unexpected retry loop exit")


class _Exhausted(Exception):
    """Internal signal carrying the last error out of the retry loop."""

    def __init__(self, error: Exception, attempts: int) -> None:
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


def with_retry(
    service: ServiceType = "api", executor: RetryExecutor | None = None, **overrides: Any
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator that runs an async callable under a service retry preset.

    Args:
        service: Key into ``SERVICE_RETRY_PRESETS``
        executor: Executor to use, a fresh one by default
        **overrides: Fields replaced on the preset

    Returns:
        Decorated function with retry logic
    """
    config = RetryConfig.for_service(service, **overrides)
    runner = executor or RetryExecutor()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await runner.execute(
                lambda: func(*args, **kwargs), config, name=func.__qualname__
            )

        return wrapper

    return decorator
