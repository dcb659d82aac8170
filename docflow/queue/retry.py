"""
================================================================================
RETRY POLICY WITH EXPONENTIAL BACKOFF
================================================================================
Backoff calculation shared by every queue.

A failed job is retried after ``base_delay * exponential_base ** n`` seconds,
where ``n`` is the number of previous failures, capped at ``max_delay``.
Queue backoff runs without jitter so retry times are reproducible; the
jitter switch is kept for callers that retry outside the queue.
"""

import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from docflow.utils.errors import UnrecoverableJobError


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: Optional[float] = None
    exponential_base: float = 2.0
    jitter: bool = False
    jitter_max: float = 0.5

    def calculate_delay(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt + 1``.

        ``attempt`` is zero-based: the first retry waits ``base_delay``.
        """
        delay = self.base_delay * (self.exponential_base ** max(attempt, 0))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        # Spread retries of many jobs failing together
        if self.jitter:
            jitter_amount = delay * self.jitter_max * random.uniform(-1, 1)
            delay = max(0.0, delay + jitter_amount)

        return delay

    def should_retry(self, error: BaseException, attempts_made: int) -> bool:
        """Whether a job that has failed ``attempts_made`` times runs again."""
        if isinstance(error, UnrecoverableJobError):
            return False
        return attempts_made < self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.max_attempts,
            "backoff": {
                "type": "exponential",
                "delay_ms": int(self.base_delay * 1000),
                "max_delay_ms": int(self.max_delay * 1000) if self.max_delay is not None else None,
            },
        }
