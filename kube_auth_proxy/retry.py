from __future__ import annotations

from dataclasses import dataclass

from .config import INITIAL_RETRY_DELAY, MAX_RETRY_ATTEMPTS, MAX_RETRY_DELAY


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff without jitter, bounded by an attempt count.

    The policy holds no counter of its own; callers pass the number of
    retries already performed.
    """

    max_attempts: int = MAX_RETRY_ATTEMPTS
    initial_delay: float = INITIAL_RETRY_DELAY
    max_delay: float = MAX_RETRY_DELAY

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts

    def delay(self, retry_count: int) -> float:
        """Seconds to wait before the retry following ``retry_count`` failures."""

        return min(self.initial_delay * 2**retry_count, self.max_delay)

    @staticmethod
    def reset() -> int:
        return 0
