"""
Retry helper with exponential backoff.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_temporary_mail_error(error: BaseException) -> bool:
    """True for failures carrying a temporary (4xx) transport status."""
    status = getattr(error, "status_code", None)
    return isinstance(status, int) and 400 <= status < 500


@dataclass
class RetryPolicy:
    """
    Exponential backoff retry.

    Attributes
    ----------
    max_retries : int
        Retries after the first attempt, so at most ``max_retries + 1`` calls.
    initial_delay : float
        Seconds to wait before the first retry; doubled for each later one.
    is_retryable : Callable[[BaseException], bool]
        Decides whether an error is worth another attempt.
    sleep : Callable[[float], Awaitable[None]]
        Sleep coroutine, replaceable in tests.
    """

    max_retries: int = 3
    initial_delay: float = 5.0
    is_retryable: Callable[[BaseException], bool] = is_temporary_mail_error
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return self.initial_delay * (2 ** (attempt - 1))

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` until it succeeds or retries are exhausted.

        Raises
        ------
        Exception
            The last error, immediately if it is not retryable.
        """
        attempt = 0
        while True:
            if attempt > 0:
                delay = self.delay_for(attempt)
                logger.info(
                    "Retry attempt %d/%d after %.1fs delay...",
                    attempt,
                    self.max_retries,
                    delay,
                )
                await self.sleep(delay)
            try:
                return await operation()
            except Exception as e:
                if attempt >= self.max_retries or not self.is_retryable(e):
                    raise
                logger.warning(
                    "Operation failed (attempt %d/%d): %s",
                    attempt + 1,
                    self.max_retries + 1,
                    e,
                )
            attempt += 1
