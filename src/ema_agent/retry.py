"""
Retry with exponential backoff for async operations.

`async_retry` wraps a fallible coroutine function so that it is attempted
`max_retries + 1` times, sleeping `calculate_delay(attempt)` seconds between
attempts. When every attempt fails a `RetryExhaustedError` is raised carrying
the last underlying error and the number of attempts made.
"""

import asyncio
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

RetryCallback = Callable[[BaseException, int], None]


@dataclass
class RetryConfig:
    """Configuration for the retry policy."""

    enabled: bool = True
    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple[type[BaseException], ...] = field(
        default_factory=lambda: (Exception,)
    )

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before the retry following `attempt` (0-based)."""
        delay = self.initial_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


class RetryExhaustedError(Exception):
    """Raised when all configured attempts of an operation have failed."""

    def __init__(self, last_exception: BaseException, attempts: int):
        super().__init__(
            f"Retry failed after {attempts} attempts. Last error: {last_exception}"
        )
        self.last_exception = last_exception
        self.attempts = attempts


def async_retry(
    config: RetryConfig | None = None,
    on_retry: RetryCallback | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Build a wrapper that retries an async callable according to `config`.

    Args:
        config: Retry configuration (defaults to `RetryConfig()`)
        on_retry: Called with (error, attempt_number) before each backoff wait

    Returns:
        A function that takes an async callable and returns the retrying version
    """
    config = config or RetryConfig()

    def wrap(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        name = getattr(func, "__qualname__", repr(func))

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_exception: BaseException | None = None

            for attempt in range(config.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except config.retryable_exceptions as e:
                    last_exception = e

                    if attempt >= config.max_retries:
                        logger.error(
                            "Retry attempts exhausted",
                            function=name,
                            max_retries=config.max_retries,
                            error=str(e),
                        )
                        raise RetryExhaustedError(e, attempt + 1) from e

                    delay = config.calculate_delay(attempt)
                    logger.warning(
                        "Call failed, retrying",
                        function=name,
                        attempt=attempt + 1,
                        next_attempt=attempt + 2,
                        delay_seconds=round(delay, 2),
                        error=str(e),
                    )

                    if on_retry is not None:
                        on_retry(e, attempt + 1)

                    await asyncio.sleep(delay)

            # Only reachable with max_retries < 0
            raise RetryExhaustedError(
                last_exception or RuntimeError("no attempts made"), 0
            )

        return wrapper

    return wrap


async def retry_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    on_retry: RetryCallback | None = None,
    **kwargs: Any,
) -> T:
    """Call `func(*args, **kwargs)` once under the retry policy."""
    return await async_retry(config, on_retry)(func)(*args, **kwargs)
