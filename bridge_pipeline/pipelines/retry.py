"""Exponential backoff policy for retryable per-record operations."""

from dataclasses import dataclass
from typing import List, Optional

from ..core.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to attempt an operation and how long to wait between attempts.

    Attempts are numbered from 1. The delay after attempt ``n`` is
    ``base_delay * backoff_factor ** (n - 1)``, capped at ``max_delay`` when set.
    No delay follows the final attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1")

    @classmethod
    def from_settings(cls, max_attempts: Optional[int] = None) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts or settings.collection_max_retries,
            base_delay=settings.retry_base_delay,
            backoff_factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to sleep after a failed ``attempt``."""
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def schedule(self) -> List[float]:
        """All delays a record sees when every attempt fails."""
        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts)]
