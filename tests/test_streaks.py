"""
tests/test_streaks.py — Daily Check-in Arithmetic
==================================================
"""

from __future__ import annotations

from datetime import date

import pytest

from huddle.engine.streaks import (
    ALREADY_CHECKED_IN,
    advance_streak,
    current_count,
    is_bonus_day,
)
from huddle.errors import ServiceError

TODAY = date(2026, 3, 10)
YESTERDAY = date(2026, 3, 9)


class TestAdvanceStreak:
    def test_first_check_in_starts_at_one(self):
        update = advance_streak(None, 0, 0, TODAY)
        assert update.streak_count == 1
        assert update.longest_streak == 1
        assert update.last_check_in == TODAY
        assert update.continued is False

    def test_consecutive_day_extends(self):
        update = advance_streak(YESTERDAY, 4, 4, TODAY)
        assert update.streak_count == 5
        assert update.longest_streak == 5
        assert update.continued is True

    def test_gap_resets_to_one_but_keeps_longest(self):
        update = advance_streak(date(2026, 3, 7), 9, 12, TODAY)
        assert update.streak_count == 1
        assert update.longest_streak == 12
        assert update.continued is False

    def test_same_day_rejected(self):
        with pytest.raises(ServiceError) as exc_info:
            advance_streak(TODAY, 3, 3, TODAY)
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == ALREADY_CHECKED_IN

    def test_future_check_in_rejected(self):
        with pytest.raises(ServiceError):
            advance_streak(date(2026, 3, 11), 1, 1, TODAY)


class TestCurrentCount:
    def test_never_checked_in(self):
        assert current_count(None, 0, TODAY) == 0

    @pytest.mark.parametrize("last", [TODAY, YESTERDAY])
    def test_live_streak(self, last):
        assert current_count(last, 6, TODAY) == 6

    def test_broken_streak_reads_zero(self):
        assert current_count(date(2026, 3, 8), 6, TODAY) == 0


class TestBonusDay:
    @pytest.mark.parametrize("count, expected", [(7, True), (14, True), (6, False), (0, False)])
    def test_weekly_interval(self, count, expected):
        assert is_bonus_day(count, 7) is expected

    def test_zero_interval_never_bonus(self):
        assert is_bonus_day(7, 0) is False
