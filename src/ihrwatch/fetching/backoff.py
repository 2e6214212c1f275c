"""
Exponential backoff bookkeeping for cached fetchers.

Every fetcher owns one BackoffState. A BackoffPolicy turns the number of
consecutive failures into a cool-down window; the fetcher refuses to ask
upstream until that window has passed.
"""

import datetime
import email.utils
import logging
import random
from dataclasses import dataclass
from typing import Optional

from .constants import (
    BACKOFF_BASE_DELAY,
    BACKOFF_FAILURE_CAP,
    BACKOFF_MAX_DELAY,
    BACKOFF_JITTER,
)

logger = logging.getLogger(__name__)


@dataclass
class BackoffState:
    """Failure counter and cool-down deadline of a single fetcher."""
    consecutive_failures: int = 0
    blocked_until: float = 0.0

    def is_blocked(self, now: float) -> bool:
        return now < self.blocked_until

    def remaining(self, now: float) -> float:
        """Seconds left in the current cool-down, 0 when unblocked."""
        return max(0.0, self.blocked_until - now)

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.blocked_until = 0.0


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff schedule.

    delay(k) = min(max_delay, 2**min(failure_cap, k) * base_delay)

    Attributes:
        base_delay: Seconds multiplied by the power of two
        failure_cap: Largest exponent used
        max_delay: Ceiling for any single cool-down
        jitter: Fraction of the delay that may be added at random (0 disables)
    """
    base_delay: float = BACKOFF_BASE_DELAY
    failure_cap: int = BACKOFF_FAILURE_CAP
    max_delay: float = BACKOFF_MAX_DELAY
    jitter: float = BACKOFF_JITTER

    def __post_init__(self):
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError('Backoff delays must not be negative')
        if self.failure_cap < 0:
            raise ValueError('Backoff failure_cap must not be negative')
        if self.jitter < 0:
            raise ValueError('Backoff jitter must not be negative')

    def delay_for(self, consecutive_failures: int) -> float:
        """Cool-down in seconds after the given number of consecutive failures."""
        exponent = min(self.failure_cap, max(0, consecutive_failures))
        delay = min(self.max_delay, (2 ** exponent) * self.base_delay)
        if self.jitter > 0 and delay > 0:
            delay = min(self.max_delay, delay + random.uniform(0, self.jitter * delay))
        return delay

    def register_failure(self, state: BackoffState, now: float,
                         retry_after: Optional[float] = None) -> float:
        """
        Count a failure and move the cool-down deadline.

        Args:
            state: State to update in place
            now: Current timestamp
            retry_after: Server supplied minimum wait, if any

        Returns:
            The cool-down applied, in seconds
        """
        state.consecutive_failures += 1
        delay = self.delay_for(state.consecutive_failures)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        state.blocked_until = now + delay
        return delay


def parse_retry_after(headers) -> Optional[float]:
    """
    Extract a minimum wait in seconds from rate limit response headers.

    Supports X-Ratelimit-Retry-At (ISO timestamp) and Retry-After
    (delta seconds or HTTP date). Returns None when nothing usable is found.
    """
    if not headers:
        return None

    if 'X-Ratelimit-Retry-At' in headers:
        try:
            retry_at = datetime.datetime.fromisoformat(headers['X-Ratelimit-Retry-At'])
            if retry_at.tzinfo is None:
                retry_at = retry_at.astimezone()
            retry_after = (retry_at - datetime.datetime.now().astimezone()).total_seconds()
            return max(0.0, retry_after)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to parse X-Ratelimit-Retry-At header: %s", e)
            return None

    if 'Retry-After' in headers:
        value = str(headers['Retry-After']).strip()
        if value.isdigit():
            return float(value)
        try:
            retry_at = email.utils.parsedate_to_datetime(value)
            if retry_at is None:
                return None
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=datetime.timezone.utc)
            retry_after = (retry_at - datetime.datetime.now(datetime.timezone.utc)).total_seconds()
            return max(0.0, retry_after)
        except (ValueError, TypeError) as e:
            logger.warning("Failed to parse Retry-After header: %s", e)

    return None
