"""Retry/backoff policy executor with exponential backoff and jitter."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from shopchat.config import RetryConfig
from shopchat.core.types import ErrorClass
from shopchat.errors import RetryExhaustedError
from shopchat.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], ErrorClass]


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of running an operation under a retry policy."""

    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exhausted(self) -> bool:
        return isinstance(self.error, RetryExhaustedError)

    @property
    def last_error(self) -> Optional[BaseException]:
        if isinstance(self.error, RetryExhaustedError):
            return self.error.last_error
        return self.error

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
        )

    def backoff(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay after 0-indexed *attempt*: min(max, base * 2^attempt) plus jitter in [0, delay)."""
        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        if delay <= 0:
            return 0.0
        return delay + rng() * delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Classifier,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> RetryOutcome[T]:
        return await run(
            operation,
            classify,
            self.max_attempts,
            self.base_delay,
            self.max_delay,
            sleep=sleep,
            rng=rng,
        )


async def run(
    operation: Callable[[], Awaitable[T]],
    classify: Classifier,
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> RetryOutcome[T]:
    """Run *operation* until success, a fatal classification, or the attempt budget runs out.

    Never raises for errors raised by *operation* (cancellation still propagates);
    the outcome carries either the value or the error plus the attempt count.
    A fatal error is returned as-is, exhaustion as RetryExhaustedError.
    """
    policy = RetryPolicy(max_attempts=max(1, max_attempts), base_delay=base_delay, max_delay=max_delay)
    exhausted: RetryExhaustedError | None = None

    for attempt in range(policy.max_attempts):
        try:
            value = await operation()
            return RetryOutcome(value=value, attempts=attempt + 1)
        except Exception as e:
            if classify(e) == ErrorClass.FATAL:
                logger.debug("retry_fatal", attempt=attempt + 1, error=str(e))
                return RetryOutcome(error=e, attempts=attempt + 1)

            if attempt + 1 >= policy.max_attempts:
                exhausted = RetryExhaustedError(e, policy.max_attempts)
                break

            delay = policy.backoff(attempt, rng)
            logger.warning(
                "retry_transient",
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error=str(e) or type(e).__name__,
            )
            await sleep(delay)

    return RetryOutcome(error=exhausted, attempts=policy.max_attempts)
