"""
Retry policy for remote mutation application with exponential backoff.

This module provides RetryPolicy for calculating retry delays with
exponential backoff and jitter, and for deciding when a failing mutation
stops being retried and becomes a fatal entry.

Rules:
- UNREACHABLE failures retry without limit (the client may be offline
  for a long time), but the delay between attempts is capped
- UNKNOWN failures retry with the same backoff until max_unknown_attempts,
  then escalate to a user-visible fatal state
- REJECTED failures never retry
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from helpdesk_sync.sync.types import FailureKind


@dataclass
class RetryPolicy:
    """
    Configuration for mutation retry behavior.

    Attributes:
        base_seconds: Delay after the first failure (default 2.0)
        multiplier: Growth factor per additional failure (default 2.0)
        cap_seconds: Upper bound on any delay, jitter included (default 30.0)
        jitter_fraction: Fraction of the delay added as random jitter (default 0.25)
        max_unknown_attempts: UNKNOWN failures tolerated before escalation (default 5)

    Example:
        policy = RetryPolicy()
        policy.next_retry_delay(1)   # ~2-2.5s
        policy.next_retry_delay(10)  # 30s (capped)
    """

    base_seconds: float = 2.0
    multiplier: float = 2.0
    cap_seconds: float = 30.0
    jitter_fraction: float = 0.25
    max_unknown_attempts: int = 5

    def next_retry_delay(self, retry_count: int) -> timedelta:
        """
        Delay before the next attempt after `retry_count` failures.

        Formula: min(cap, base * multiplier^(retry_count - 1) + jitter)

        Args:
            retry_count: Number of failed attempts so far (1 after the first failure)

        Returns:
            timedelta to wait before the next attempt
        """
        exponent = max(retry_count - 1, 0)
        wait = min(self.cap_seconds, self.base_seconds * (self.multiplier**exponent))

        # Spread retries out so a reconnect does not stampede the store
        jitter = random.uniform(0, wait * self.jitter_fraction)
        return timedelta(seconds=min(self.cap_seconds, wait + jitter))

    def calculate_next_retry(self, retry_count: int, now: datetime) -> datetime:
        """Absolute time of the next attempt after `retry_count` failures."""
        return now + self.next_retry_delay(retry_count)

    def should_retry(self, failure: FailureKind, unknown_failures: int) -> bool:
        """
        Check whether a failed mutation stays in the retry queue.

        Args:
            failure: Classification of the latest failure
            unknown_failures: UNKNOWN failures recorded so far, including this one

        Returns:
            False if the mutation must become a fatal entry
        """
        if failure == FailureKind.REJECTED:
            return False
        if failure == FailureKind.UNKNOWN:
            return unknown_failures < self.max_unknown_attempts
        return True
