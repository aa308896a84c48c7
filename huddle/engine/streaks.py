"""
huddle.engine.streaks — Daily Check-in Arithmetic
==================================================

Pure calculation — callers pass in ``today`` (a UTC date) so the rules
are testable without freezing the clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from huddle.errors import create_error

ALREADY_CHECKED_IN = "You have already checked in today"


@dataclass(frozen=True, slots=True)
class StreakUpdate:
    streak_count: int
    longest_streak: int
    last_check_in: date
    continued: bool


def advance_streak(
    last_check_in: date | None,
    streak_count: int,
    longest_streak: int,
    today: date,
) -> StreakUpdate:
    """Apply a check-in made on *today*.

    - first check-in → 1
    - same day → 400 ``ALREADY_CHECKED_IN``
    - previous check-in yesterday → count + 1
    - anything older → reset to 1
    """
    if last_check_in is not None and last_check_in >= today:
        raise create_error(ALREADY_CHECKED_IN, 400)

    continued = last_check_in is not None and last_check_in == today - timedelta(days=1)
    count = streak_count + 1 if continued else 1
    return StreakUpdate(
        streak_count=count,
        longest_streak=max(longest_streak, count),
        last_check_in=today,
        continued=continued,
    )


def current_count(last_check_in: date | None, streak_count: int, today: date) -> int:
    """Streak as seen on *today*: broken streaks read as 0."""
    if last_check_in is None:
        return 0
    if last_check_in >= today - timedelta(days=1):
        return streak_count
    return 0


def is_bonus_day(streak_count: int, interval: int) -> bool:
    return interval > 0 and streak_count > 0 and streak_count % interval == 0
