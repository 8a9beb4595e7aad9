"""Backoff policy for retried transactions and resumed streams."""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter.

    The delay before attempt ``n`` (1-based) is
    ``min(base_delay * multiplier ** (n - 1), max_delay)`` scaled by a random
    factor in ``[1 - jitter, 1 + jitter)``.
    """

    base_delay: float = 0.01
    max_delay: float = 32.0
    multiplier: float = 2.0
    jitter: float = 0.5

    def delay(self, attempt: int) -> float:
        """Return the sleep in seconds before the given retry attempt."""
        raw = min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)
        if self.jitter:
            raw *= 1 - self.jitter + random.random() * 2 * self.jitter  # noqa: S311
        return max(raw, 0.0)


NO_BACKOFF = BackoffPolicy(base_delay=0.0, max_delay=0.0, jitter=0.0)
