"""
vault-rebalancer Core: Daily Rebalance Limiter

Caps discretionary rebalances per UTC calendar day.

The window resets lazily: every public call first checks whether the UTC
date has rolled over and, if so, zeroes the count. No background timer is
needed and the limiter stays correct across idle periods. Two rebalances at
23:59 and 00:01 UTC count against different days.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from core.interfaces import Clock, SystemClock
from core.models import RateLimiterState

logger = logging.getLogger(__name__)


class DailyRateLimiter:
    """
    Daily quota gate for rebalances.

    Usage:
        limiter = DailyRateLimiter(max_per_day=3)
        if limiter.try_acquire():
            submit()
            limiter.commit()
    """

    def __init__(self, max_per_day: int, clock: Optional[Clock] = None):
        if max_per_day < 0:
            raise ValueError(f"max_per_day must be >= 0, got {max_per_day}")
        self.max_per_day = int(max_per_day)
        self._clock = clock or SystemClock()
        self._state = RateLimiterState(count=0, window_day=self._utc_day())

        logger.info(f"Initialized DailyRateLimiter (max_per_day={self.max_per_day})")

    def try_acquire(self) -> bool:
        """True if another rebalance fits in today's budget. Does not consume it."""
        self._reset_if_new_day()
        return self._state.count < self.max_per_day

    def commit(self) -> None:
        """Record a completed rebalance against today's budget."""
        self._reset_if_new_day()
        self._state.count += 1

        logger.info(
            "Rebalance recorded: %d/%d (remaining=%d, utc_day=%s)",
            self._state.count,
            self.max_per_day,
            max(0, self.max_per_day - self._state.count),
            self._state.window_day.isoformat(),
        )

        if self._state.count >= self.max_per_day:
            logger.info(
                "Daily rebalance limit reached (%d/%d); next window opens %s",
                self._state.count,
                self.max_per_day,
                self.next_window_start().isoformat(),
            )

    def current_count(self) -> int:
        self._reset_if_new_day()
        return self._state.count

    def remaining(self) -> int:
        return max(0, self.max_per_day - self.current_count())

    def next_window_start(self) -> datetime:
        """Start of the next UTC day."""
        tomorrow = self._utc_day() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)

    def snapshot(self) -> RateLimiterState:
        self._reset_if_new_day()
        return RateLimiterState(count=self._state.count, window_day=self._state.window_day)

    def _reset_if_new_day(self) -> None:
        today = self._utc_day()
        if today != self._state.window_day:
            logger.info(
                "Rate limiter reset: %s -> %s (previous count=%d)",
                self._state.window_day.isoformat(),
                today.isoformat(),
                self._state.count,
            )
            self._state.window_day = today
            self._state.count = 0

    def _utc_day(self) -> date:
        return self._clock.now().astimezone(timezone.utc).date()
