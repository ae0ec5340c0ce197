"""
Retry policy for webhook delivery.

Pure functions: response classification and capped exponential backoff.
"""
import random
from dataclasses import dataclass

from hookrelay.config import settings


# Statuses worth retrying: timeouts, rate limiting and transient server errors
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_success(status_code: int) -> bool:
    """2xx responses count as delivered."""
    return 200 <= status_code < 300


def is_retryable(status_code: int) -> bool:
    """Whether a non-2xx status should be retried."""
    return status_code in RETRYABLE_STATUS_CODES


def compute_backoff_delay(
    attempt: int,
    initial_delay: float,
    multiplier: float,
    max_delay: float,
) -> float:
    """
    Delay before the next attempt after `attempt` failed attempts.

    delay = min(initial_delay * multiplier^(attempt - 1), max_delay)

    With 1s / x2 / 300s the delays for attempts 1..10 are
    1, 2, 4, 8, 16, 32, 64, 128, 256, 300.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    # Cap the exponent so huge attempt counts don't overflow the float
    delay = initial_delay * (multiplier ** min(attempt - 1, 64))
    return min(delay, max_delay)


def apply_jitter(delay: float, ratio: float, max_delay: float, rng: random.Random | None = None) -> float:
    """Scale delay by a random factor in [1 - ratio, 1 + ratio], clamped to max_delay."""
    if ratio <= 0:
        return delay
    rng = rng or random
    jittered = delay * rng.uniform(1 - ratio, 1 + ratio)
    return max(0.0, min(jittered, max_delay))


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff parameters, in seconds."""
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 300.0
    jitter_ratio: float = 0.0

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            initial_delay=settings.BACKOFF_INITIAL_SECONDS,
            multiplier=settings.BACKOFF_MULTIPLIER,
            max_delay=settings.BACKOFF_MAX_SECONDS,
            jitter_ratio=settings.BACKOFF_JITTER_RATIO,
        )

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        delay = compute_backoff_delay(attempt, self.initial_delay, self.multiplier, self.max_delay)
        return apply_jitter(delay, self.jitter_ratio, self.max_delay, rng)
