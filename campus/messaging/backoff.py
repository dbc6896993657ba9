"""
Retry policy with exponential backoff.

Delay before the nth redelivery (n = 1, 2, 3) is base * multiplier**(n-1):
with the defaults, 1000, 2000, 4000 ms. The delay is handed to the broker as a
scheduling hint; no consumer thread ever sleeps on it.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class ExponentialBackoff:
    """
    Exponential backoff.

    Usage:
        backoff = ExponentialBackoff(base_ms=1000)
        delay_ms = backoff.delay_ms(message.retry_count)
    """
    base_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 60_000
    jitter: bool = False

    def delay_ms(self, retry_count: int) -> int:
        """
        Delay for a message that has already been retried *retry_count* times.

        Args:
            retry_count: Retries so far (0 for the first failure)
        """
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")

        delay = self.base_ms * (self.multiplier ** retry_count)
        if self.max_delay_ms:
            delay = min(delay, self.max_delay_ms)

        # +/-25% spread so that a burst of failures does not redeliver in lockstep
        if self.jitter and delay > 0:
            spread = delay * 0.25
            delay += random.uniform(-spread, spread)

        return max(0, int(delay))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: at most max_retries redeliveries, then dead-letter."""
    max_retries: int = 3
    backoff: ExponentialBackoff = ExponentialBackoff()

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def delay_for_retry(self, n: int) -> int:
        """Delay in ms before the nth retry (1-indexed)."""
        if n < 1:
            raise ValueError("retry number is 1-indexed")
        return self.backoff.delay_ms(n - 1)

    @classmethod
    def from_config(cls, messaging_config) -> "RetryPolicy":
        return cls(
            max_retries=messaging_config.max_retries,
            backoff=ExponentialBackoff(
                base_ms=messaging_config.base_delay_ms,
                multiplier=messaging_config.multiplier,
                max_delay_ms=messaging_config.max_delay_ms,
            ),
        )
