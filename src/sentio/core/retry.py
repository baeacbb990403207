"""Retry policy for calls to external services.

Delays grow exponentially from ``base_delay`` and are capped at
``max_delay``; a random jitter is added on top so that concurrent
workflows hitting the same failing provider do not retry in lockstep.
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime

from .config import GenerationSettings
from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound of the exponential part, in seconds
        jitter: Upper bound of the random delay added to every backoff
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    @classmethod
    def from_settings(cls, settings: GenerationSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.jitter_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the given zero-based attempt failed."""
        exp_delay = self.base_delay * (2**attempt)
        return min(self.max_delay, exp_delay) + self.rng() * self.jitter

    def has_attempts_left(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Parse a Retry-After header into seconds.

    Accepts both delta-seconds and an HTTP-date. Returns None when the
    header is absent or unparseable.

    Args:
        value: Raw header value
        now: Current POSIX time, used to turn an HTTP-date into a delay
    """
    if not value:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable Retry-After header", retry_after=value)
        return None

    if now is None:
        now = time.time()
    return max(0.0, when.timestamp() - now)
