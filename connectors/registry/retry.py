"""Backoff policy shared by every outbound registry call."""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional, TypeVar

from connectors.registry.errors import RegistryRateLimitError, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff with jitter.

    ``max_attempts`` counts the first try, so ``max_attempts=3`` means at
    most two retries. Only errors for which ``retry_on`` returns True are
    retried; anything else is re-raised immediately.
    """
    max_attempts: int = 3
    base_delay: float = 1.0      # seconds
    max_delay: float = 30.0      # seconds
    multiplier: float = 2.0
    jitter: float = 0.1          # fraction of the delay, +/-
    retry_on: Callable[[BaseException], bool] = field(default=is_transient, compare=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False, repr=False)

    def get_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        if isinstance(error, RegistryRateLimitError) and error.retry_after:
            return min(float(error.retry_after), self.max_delay)

        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay += delay * random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)

    def with_attempts(self, max_attempts: int) -> "BackoffPolicy":
        return replace(self, max_attempts=max(1, max_attempts))

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "registry call") -> T:
        """Call ``operation`` until it succeeds, fails permanently, or attempts run out."""
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                attempt += 1
                if not self.retry_on(e) or attempt >= self.max_attempts:
                    raise
                delay = self.get_delay(attempt - 1, e)
                logger.warning(
                    f"{description} failed ({e}), retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                await self.sleep(delay)
