"""Bounded retry with exponential backoff for outbound calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ``max_attempts`` times, waiting ``base_delay_s * 2**(attempt-1)``."""

    max_attempts: int = 3
    base_delay_s: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_s * 2 ** (attempt - 1)

    def total_backoff(self) -> float:
        return sum(self.delay_for(a) for a in range(1, self.max_attempts))

    def attempt_timeout(self, budget_s: float) -> float:
        """Per-attempt timeout so all attempts plus backoff fit inside ``budget_s``."""
        remaining = budget_s - self.total_backoff()
        if remaining <= 0:
            raise ValueError(
                f"Budget {budget_s:g}s does not cover {self.total_backoff():g}s of backoff"
            )
        return remaining / self.max_attempts

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        should_retry: Callable[[Exception], bool],
        label: str = "call",
    ) -> T:
        """Await ``call`` until it succeeds or a non-retryable error is raised.

        The last error is re-raised once attempts are exhausted.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except Exception as exc:
                if attempt == self.max_attempts or not should_retry(exc):
                    raise
                wait = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s — retrying in %.1fs",
                    label,
                    attempt,
                    self.max_attempts,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)
        raise RuntimeError("unreachable")  # pragma: no cover
