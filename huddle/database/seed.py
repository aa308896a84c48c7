"""
huddle.database.seed — Default Settings Seeder
===============================================

Baseline gamification settings seeded on first startup so points, badges,
streaks and levels work out of the box.

Idempotent — only inserts keys that don't already exist.  Admin edits are
never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from huddle.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "points.goal_completed": (50, "points", "Points for completing a goal"),
    "points.milestone_completed": (20, "points", "Points for completing a milestone"),
    "points.task_completed": (5, "points", "Points for completing a task"),
    "points.challenge_completed": (40, "points", "Points for finishing a challenge"),
    "points.daily_check_in": (10, "points", "Points for the daily streak check-in"),
    "points.streak_bonus": (25, "points", "Bonus points on every streak_bonus_interval-th day"),
    "points.blog_post_created": (10, "points", "Points for publishing a blog post"),
    "points.comment_created": (2, "points", "Points for commenting on a post"),
    "points.friend_added": (5, "points", "Points for each new friendship"),
    "streak.bonus_interval": (7, "streak", "Consecutive days between streak bonuses"),
    "badges.goal_completed": (50, "badges", "Points granted when this badge levels up"),
    "badges.helper": (30, "badges", "Points granted when this badge levels up"),
    "badges.milestone_achiever": (100, "badges", "Points granted when this badge levels up"),
    "badges.consistency_master": (75, "badges", "Points granted when this badge levels up"),
    "badges.time_based": (40, "badges", "Points granted when this badge levels up"),
    "badges.event_badge": (20, "badges", "Points granted when this badge levels up"),
    "badges.initial_goal": (5, "badges", "Actions needed for the first (Bronze) badge level"),
    "level.base": (100, "level", "Points needed to go from level 1 to level 2"),
    "level.factor": (1.5, "level", "Growth factor of the per-level point requirement"),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist.

    Runs on every startup but only writes rows for keys that are missing,
    so it is safe to call repeatedly.
    """
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
