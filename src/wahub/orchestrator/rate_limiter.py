"""Send rate limiting and exponential backoff.

This module implements the per-instance send rate limiter and the backoff
helper shared by the restore scheduler.

Key Components:
- SendRateLimiter: Sliding per-minute and per-hour send windows
- RateLimitDecision: Outcome of a rate-limit check with retry hint
- ExponentialBackoff: Exponential backoff with optional jitter
"""

from __future__ import annotations

import random
from collections import deque
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

MINUTE = timedelta(seconds=60)
HOUR = timedelta(seconds=3600)


class BackoffConfig(BaseModel):
    """Exponential backoff configuration.

    Attributes:
        initial_delay_seconds: Initial backoff delay
        max_delay_seconds: Maximum backoff delay
        multiplier: Backoff multiplier per attempt
        jitter: Add random jitter to delays
    """

    initial_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter: bool = Field(default=False)


class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Args:
        config: Backoff configuration
    """

    def __init__(self, config: BackoffConfig) -> None:
        self._config = config

    def next_delay(self, attempt: int) -> float:
        """Calculate the backoff delay for an attempt.

        Formula: min(initial_delay * multiplier^attempt, max_delay)
        With jitter: delay * (0.5 + random() * 0.5)

        Args:
            attempt: Attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self._config.initial_delay_seconds * (self._config.multiplier**attempt)
        delay = min(delay, self._config.max_delay_seconds)

        if self._config.jitter:
            # Multiply by a random factor between 0.5 and 1.0
            jitter_factor = 0.5 + random.random() * 0.5
            delay *= jitter_factor

        logger.debug(
            "backoff_delay_calculated",
            attempt=attempt,
            delay=delay,
            jitter=self._config.jitter,
        )

        return delay


class RateLimitDecision(BaseModel):
    """Result of a rate-limit check.

    Attributes:
        allowed: True if a send may go out now.
        retry_after_seconds: Seconds until the next slot frees up (0 if allowed).
        limit: Which window is exhausted ("minute" or "hour"), if any.
    """

    allowed: bool
    retry_after_seconds: float = 0.0
    limit: str | None = None


class SendRateLimiter:
    """Per-instance sliding-window send limiter.

    Keeps the timestamps of recent sends. A send is allowed only while fewer
    than ``per_minute`` sends happened in the last 60 seconds and fewer than
    ``per_hour`` in the last 3600 seconds.

    Args:
        per_minute: Maximum sends per sliding minute
        per_hour: Maximum sends per sliding hour
    """

    def __init__(self, per_minute: int, per_hour: int) -> None:
        self.per_minute = per_minute
        self.per_hour = per_hour
        self._sends: deque[datetime] = deque()

    def _prune(self, now: datetime) -> None:
        while self._sends and now - self._sends[0] >= HOUR:
            self._sends.popleft()

    def _count_since(self, cutoff: datetime) -> int:
        return sum(1 for sent_at in self._sends if sent_at > cutoff)

    def check(self, now: datetime) -> RateLimitDecision:
        """Decide whether a send may be issued at ``now``."""
        self._prune(now)

        minute_sends = [t for t in self._sends if now - t < MINUTE]
        if len(minute_sends) >= self.per_minute:
            # Oldest send inside the window must age out first
            oldest = minute_sends[len(minute_sends) - self.per_minute]
            wait = (oldest + MINUTE - now).total_seconds()
            return RateLimitDecision(
                allowed=False, retry_after_seconds=max(wait, 0.0), limit="minute"
            )

        if len(self._sends) >= self.per_hour:
            oldest = self._sends[len(self._sends) - self.per_hour]
            wait = (oldest + HOUR - now).total_seconds()
            return RateLimitDecision(
                allowed=False, retry_after_seconds=max(wait, 0.0), limit="hour"
            )

        return RateLimitDecision(allowed=True)

    def record(self, now: datetime) -> None:
        """Record a send issued at ``now``."""
        self._sends.append(now)
        self._prune(now)

    def usage(self, now: datetime) -> dict[str, int]:
        """Sends counted in each window at ``now``."""
        self._prune(now)
        return {
            "last_minute": self._count_since(now - MINUTE),
            "last_hour": len(self._sends),
        }
