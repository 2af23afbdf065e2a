"""Retry/backoff policy shared by every network-facing store call."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout

from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


def is_transient_error(exc: BaseException) -> bool:
    """Errors worth retrying: dropped connections and timeouts."""
    return isinstance(
        exc,
        (AutoReconnect, ConnectionFailure, NetworkTimeout, asyncio.TimeoutError, ConnectionError),
    )


def retry_any(exc: BaseException) -> bool:
    return True


class RetryExhaustedError(Exception):
    """Raised by :meth:`RetryPolicy.run` after the final failed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(f"{operation} failed after {attempts} attempt(s): {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff.

    Delay before attempt ``n + 1`` is ``min(base_delay_s * 2 ** (n - 1), max_delay_s)``,
    so successive delays never decrease and never exceed the cap.
    """

    max_attempts: int = 3
    base_delay_s: float = 2.0
    max_delay_s: float = 30.0
    is_retriable: Callable[[BaseException], bool] = field(default=is_transient_error)

    def delay_for(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt."""
        return min(self.base_delay_s * (2 ** max(0, attempt - 1)), self.max_delay_s)

    def delays(self) -> list[float]:
        """All sleeps a fully failing run performs (none after the last attempt)."""
        return [self.delay_for(attempt) for attempt in range(1, max(1, self.max_attempts))]

    async def run(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        *,
        sleep: Optional[SleepFn] = None,
        on_failure: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    ) -> T:
        """Run ``fn`` until it succeeds, fails with a non-retriable error or runs out of attempts.

        Args:
            operation: Name used in logs and in the final error
            fn: Zero-argument coroutine factory, called once per attempt
            sleep: Sleep function (injectable for tests)
            on_failure: Optional hook awaited after every failed attempt

        Returns:
            Whatever ``fn`` returns on the first successful attempt

        Raises:
            RetryExhaustedError: Every attempt failed with a retriable error
            Exception: The first non-retriable error, unchanged
        """
        sleep = sleep or asyncio.sleep
        attempts = max(1, int(self.max_attempts))

        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except Exception as e:
                if on_failure is not None:
                    await on_failure(attempt, e)

                if not self.is_retriable(e):
                    raise

                if attempt >= attempts:
                    LOGGER.error(
                        f"{operation} failed after {attempts} attempts",
                        extra={"operation": operation, "attempts": attempts, "error": str(e)},
                    )
                    raise RetryExhaustedError(operation, attempts, e) from e

                wait_time = self.delay_for(attempt)
                LOGGER.warning(
                    f"{operation} failed, retrying in {wait_time}s",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": str(e),
                    },
                )
                await sleep(wait_time)

        raise RuntimeError("unreachable")  # pragma: no cover
