"""Retry policy shared by the capability gateway and workflow task steps."""

from __future__ import annotations

import random
from dataclasses import dataclass

from studyloop.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    With the defaults an operation is attempted 3 times and the waits after
    each failed attempt are 1s, 2s, 4s (each ±10%).
    """

    attempts: int = 3
    base_delay: float = 1.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("a retry policy needs at least one attempt")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(**settings.get_retry_config())

    @classmethod
    def single(cls) -> RetryPolicy:
        """No retries."""
        return cls(attempts=1)

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Backoff after the given 1-based failed attempt."""
        base = self.base_delay * 2 ** (attempt - 1)
        spread = (rng or random).uniform(-self.jitter, self.jitter)
        return max(0.0, base * (1 + spread))
