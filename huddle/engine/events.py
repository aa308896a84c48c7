"""
huddle.engine.events — GamificationEvent and Action catalogue
==============================================================

The universal event envelope for the gamification pipeline.  Every
rewarded user action (goal completion, check-in, comment, ...) is
normalized into a :class:`GamificationEvent` before
:func:`huddle.services.gamification_service.process_event` handles it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from huddle.database.models import BadgeType

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

__all__ = ["Action", "GamificationEvent", "DEFAULT_POINTS", "ACTION_BADGE", "points_for_action"]


class Action(enum.StrEnum):
    """Every action that can move points or badge progress."""
    GOAL_COMPLETED = "goal_completed"
    MILESTONE_COMPLETED = "milestone_completed"
    TASK_COMPLETED = "task_completed"
    CHALLENGE_COMPLETED = "challenge_completed"
    DAILY_CHECK_IN = "daily_check_in"
    STREAK_BONUS = "streak_bonus"
    BLOG_POST_CREATED = "blog_post_created"
    COMMENT_CREATED = "comment_created"
    FRIEND_ADDED = "friend_added"
    BADGE_EARNED = "badge_earned"
    MANUAL_AWARD = "manual_award"
    REWARD_REDEEMED = "reward_redeemed"


# ---------------------------------------------------------------------------
# Base points per action (overridable via ``points.<action>`` settings)
# ---------------------------------------------------------------------------
DEFAULT_POINTS: dict[Action, int] = {
    Action.GOAL_COMPLETED: 50,
    Action.MILESTONE_COMPLETED: 20,
    Action.TASK_COMPLETED: 5,
    Action.CHALLENGE_COMPLETED: 40,
    Action.DAILY_CHECK_IN: 10,
    Action.STREAK_BONUS: 25,
    Action.BLOG_POST_CREATED: 10,
    Action.COMMENT_CREATED: 2,
    Action.FRIEND_ADDED: 5,
    Action.BADGE_EARNED: 0,   # varies by badge type
    Action.MANUAL_AWARD: 0,   # varies
    Action.REWARD_REDEEMED: 0,  # negative, the reward price
}

# Which badge an action advances (actions absent here advance none)
ACTION_BADGE: dict[Action, BadgeType] = {
    Action.GOAL_COMPLETED: BadgeType.GOAL_COMPLETED,
    Action.MILESTONE_COMPLETED: BadgeType.MILESTONE_ACHIEVER,
    Action.TASK_COMPLETED: BadgeType.TIME_BASED,
    Action.CHALLENGE_COMPLETED: BadgeType.EVENT_BADGE,
    Action.DAILY_CHECK_IN: BadgeType.CONSISTENCY_MASTER,
    Action.COMMENT_CREATED: BadgeType.HELPER,
}


def points_for_action(action: Action, cache: ConfigCache | None = None) -> int:
    default = DEFAULT_POINTS.get(action, 0)
    if cache is None:
        return default
    return cache.get_int(f"points.{action.value}", default)


# ---------------------------------------------------------------------------
# GamificationEvent — the universal event envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class GamificationEvent:
    """A rewarded user action.

    ``source_id`` identifies the thing that caused the action (goal ID,
    check-in date, ...).  The pipeline never rewards the same
    ``(user_id, action, source_id)`` twice.  ``points`` overrides the
    configured amount (manual awards).
    """

    user_id: int
    action: Action
    source_id: str | None = None
    points: int | None = None
    reason: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict = field(default_factory=dict)
