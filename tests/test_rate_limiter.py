"""
Tests for the Daily Rate Limiter

Validates the per-UTC-day budget, lazy reset on day rollover and that
checking the budget never consumes it.
"""
import pytest
from datetime import datetime, timedelta, timezone

from core.rate_limiter import DailyRateLimiter
from tests.helpers.vault_stubs import FakeClock


class TestDailyBudget:
    def test_allows_up_to_max(self, clock):
        limiter = DailyRateLimiter(max_per_day=3, clock=clock)

        for _ in range(3):
            assert limiter.try_acquire()
            limiter.commit()

        assert not limiter.try_acquire()
        assert limiter.current_count() == 3
        assert limiter.remaining() == 0

    def test_try_acquire_does_not_consume(self, clock):
        limiter = DailyRateLimiter(max_per_day=1, clock=clock)

        for _ in range(5):
            assert limiter.try_acquire()
        assert limiter.current_count() == 0

    def test_zero_budget_blocks_everything(self, clock):
        limiter = DailyRateLimiter(max_per_day=0, clock=clock)
        assert not limiter.try_acquire()

    def test_negative_budget_rejected(self, clock):
        with pytest.raises(ValueError):
            DailyRateLimiter(max_per_day=-1, clock=clock)


class TestDayRollover:
    def test_resets_on_new_utc_day(self):
        clock = FakeClock(datetime(2024, 6, 1, 23, 59, tzinfo=timezone.utc))
        limiter = DailyRateLimiter(max_per_day=3, clock=clock)
        for _ in range(3):
            limiter.commit()
        assert not limiter.try_acquire()

        clock.set(datetime(2024, 6, 2, 0, 1, tzinfo=timezone.utc))

        assert limiter.try_acquire()
        assert limiter.current_count() == 0
        assert limiter.snapshot().window_day.isoformat() == "2024-06-02"

    def test_23_59_and_00_01_count_against_different_days(self):
        clock = FakeClock(datetime(2024, 6, 1, 23, 59, tzinfo=timezone.utc))
        limiter = DailyRateLimiter(max_per_day=1, clock=clock)

        assert limiter.try_acquire()
        limiter.commit()

        clock.advance(minutes=2)

        assert limiter.try_acquire()
        limiter.commit()
        assert limiter.current_count() == 1

    def test_same_day_does_not_reset(self):
        clock = FakeClock(datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc))
        limiter = DailyRateLimiter(max_per_day=2, clock=clock)
        limiter.commit()

        clock.advance(hours=23, minutes=59)

        assert limiter.current_count() == 1

    def test_day_follows_utc_not_local_offset(self):
        """01:00 at UTC+2 is still the previous UTC day"""
        plus_two = timezone(timedelta(hours=2))
        clock = FakeClock(datetime(2024, 6, 1, 20, 0, tzinfo=timezone.utc))
        limiter = DailyRateLimiter(max_per_day=1, clock=clock)
        limiter.commit()

        clock.set(datetime(2024, 6, 2, 1, 0, tzinfo=plus_two))

        assert limiter.current_count() == 1
        assert not limiter.try_acquire()

    def test_reset_after_idle_days(self):
        clock = FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))
        limiter = DailyRateLimiter(max_per_day=1, clock=clock)
        limiter.commit()

        clock.advance(days=5)

        assert limiter.try_acquire()

    def test_next_window_start(self, clock):
        limiter = DailyRateLimiter(max_per_day=1, clock=clock)
        assert limiter.next_window_start() == datetime(2024, 6, 2, tzinfo=timezone.utc)
