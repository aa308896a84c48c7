"""
huddle.engine.badges — Badge Level Progression
===============================================

Pure calculation for badge progress — no database I/O.

Each badge type climbs Bronze → Silver → Gold.  Progress toward the
current level is capped at its goal; reaching the goal earns that level,
then (unless the level is Gold) progress restarts at zero for the next
level with the goal doubled.  Gold is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from huddle.database.models import BadgeLevel, BadgeType

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

LEVEL_ORDER: tuple[BadgeLevel, ...] = (BadgeLevel.BRONZE, BadgeLevel.SILVER, BadgeLevel.GOLD)

DEFAULT_INITIAL_GOAL = 5

# Points granted each time a badge earns a level
BADGE_POINTS: dict[BadgeType, int] = {
    BadgeType.GOAL_COMPLETED: 50,
    BadgeType.HELPER: 30,
    BadgeType.MILESTONE_ACHIEVER: 100,
    BadgeType.CONSISTENCY_MASTER: 75,
    BadgeType.TIME_BASED: 40,
    BadgeType.EVENT_BADGE: 20,
}


def next_level(level: BadgeLevel | str) -> BadgeLevel | None:
    """Return the level after *level*, or ``None`` at Gold."""
    idx = LEVEL_ORDER.index(BadgeLevel(level))
    if idx + 1 >= len(LEVEL_ORDER):
        return None
    return LEVEL_ORDER[idx + 1]


def level_rank(level: BadgeLevel | str) -> int:
    """1 for Bronze, 2 for Silver, 3 for Gold."""
    return LEVEL_ORDER.index(BadgeLevel(level)) + 1


def badge_points(badge_type: BadgeType | str, cache: ConfigCache | None = None) -> int:
    bt = BadgeType(badge_type)
    default = BADGE_POINTS[bt]
    if cache is None:
        return default
    return cache.get_int(f"badges.{bt.value}", default)


def initial_goal(cache: ConfigCache | None = None) -> int:
    if cache is None:
        return DEFAULT_INITIAL_GOAL
    return max(1, cache.get_int("badges.initial_goal", DEFAULT_INITIAL_GOAL))


@dataclass(frozen=True, slots=True)
class ProgressState:
    """Progress toward ``level`` of one badge type."""

    level: BadgeLevel
    progress: int
    goal: int
    milestone_achieved: bool = False


@dataclass(frozen=True, slots=True)
class ProgressResult:
    state: ProgressState
    earned_level: BadgeLevel | None = None


def apply_progress(state: ProgressState, increment: int = 1) -> ProgressResult:
    """Advance *state* by *increment* and report any level earned.

    >>> r = apply_progress(ProgressState(BadgeLevel.BRONZE, 4, 5))
    >>> r.earned_level, r.state.level, r.state.progress, r.state.goal
    (<BadgeLevel.BRONZE: 'Bronze'>, <BadgeLevel.SILVER: 'Silver'>, 0, 10)
    """
    if increment <= 0 or state.milestone_achieved:
        return ProgressResult(state=state)

    progress = min(state.progress + increment, state.goal)
    if progress < state.goal:
        return ProgressResult(
            state=ProgressState(state.level, progress, state.goal, False),
        )

    upcoming = next_level(state.level)
    if upcoming is None:
        return ProgressResult(
            state=ProgressState(state.level, state.goal, state.goal, True),
            earned_level=state.level,
        )
    return ProgressResult(
        state=ProgressState(upcoming, 0, state.goal * 2, False),
        earned_level=state.level,
    )
