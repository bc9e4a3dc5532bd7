"""Retry wrapper and human-like timing helpers shared by all adapters."""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from lunarbot.errors import RetryExhaustedError
from lunarbot.models import BotConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how long to wait when re-invoking a failing operation."""

    attempts: int = 3
    min_delay: float = 1.0
    max_delay: float = 3.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    @classmethod
    def from_bot_config(cls, bot_config: BotConfig) -> "RetryPolicy":
        return cls(attempts=bot_config.retry_attempts)


def _log_attempt(name: str) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(f"{name} attempt {retry_state.attempt_number} failed: {exc}")

    return log


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Run ``operation`` up to ``policy.attempts`` times.

    Waits a random delay in [min_delay, max_delay] seconds between attempts.
    Exceptions outside ``policy.retry_on`` propagate immediately. After the
    last attempt a RetryExhaustedError carrying the attempt count and the last
    error is raised.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_random(policy.min_delay, policy.max_delay),
        retry=retry_if_exception_type(policy.retry_on),
        before_sleep=_log_attempt(name),
        sleep=sleep,
        reraise=False,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except RetryError as e:
        last_error = e.last_attempt.exception()
        raise RetryExhaustedError(name, policy.attempts, last_error) from last_error
    raise AssertionError("unreachable")


async def human_delay(min_ms: int = 1000, max_ms: int = 3000, sleep: Sleep = asyncio.sleep) -> None:
    """Wait a random, bounded amount of time between UI interactions."""
    low, high = sorted((max(min_ms, 0), max(max_ms, 0)))
    await sleep(random.randint(low, high) / 1000)


async def human_type(element: Any, text: str, sleep: Sleep = asyncio.sleep) -> None:
    """Type one character at a time with 50-150 ms jitter."""
    for char in text:
        await element.type(char)
        await human_delay(50, 150, sleep=sleep)


async def human_click(element: Any, sleep: Sleep = asyncio.sleep) -> None:
    """Hover, pause 100-300 ms, then click."""
    await element.hover()
    await human_delay(100, 300, sleep=sleep)
    await element.click()
