"""Retry policy shared by the session manager and the reader."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from acusync.errors import TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Exponential backoff for errors classified as retryable.

    Only exception classes in ``retry_on`` are retried, minus subclasses in
    ``give_up_on``; everything else propagates on first occurrence.
    ``max_attempts`` counts the first call.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (TransientRemoteError,)
    give_up_on: Tuple[Type[BaseException], ...] = ()

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)

    async def run(self, fn: Callable[[], Awaitable[T]], *, description: str = "request") -> T:
        attempt = 0
        while True:
            try:
                return await fn()
            except self.retry_on as exc:
                if isinstance(exc, self.give_up_on):
                    raise
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.warning("%s failed after %d attempts: %s", description, attempt, exc)
                    raise
                delay = self.get_delay(attempt - 1)
                logger.warning(
                    "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    description, exc, delay, attempt + 1, self.max_attempts,
                )
                await asyncio.sleep(delay)
