"""
huddle.services.gamification_service — Points, Badges, Streaks & Leaderboards
==============================================================================

Shared pipeline called by every service that rewards a user action
(goal completion, comments, check-ins, ...).  :func:`apply_event` runs
inside the caller's session so the reward commits or rolls back together
with the action that earned it.

Idempotency: ``point_transactions`` is unique on
``(user_id, action, source_id)``.  A repeated event is detected up-front
and reported as a duplicate without touching any counters; a concurrent
duplicate that slips past the check fails on the constraint and rolls the
whole transaction back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from huddle.constants import isoformat, level_for_points, utctoday
from huddle.database.engine import get_session
from huddle.database.models import (
    ActivityLog,
    Badge,
    BadgeLevel,
    BadgeProgress,
    BadgeType,
    NotificationType,
    PointTransaction,
    Streak,
    User,
)
from huddle.engine import badges as badge_rules
from huddle.engine import streaks as streak_rules
from huddle.engine.events import ACTION_BADGE, Action, GamificationEvent, points_for_action
from huddle.engine.pagination import PageRequest, ranked
from huddle.errors import create_error, not_found
from huddle.services.notification_service import notify

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RewardResult:
    points_awarded: int = 0
    total_points: int = 0
    level: int = 1
    leveled_up: bool = False
    duplicate: bool = False
    badges_earned: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "points_awarded": self.points_awarded,
            "total_points": self.total_points,
            "level": self.level,
            "leveled_up": self.leveled_up,
            "duplicate": self.duplicate,
            "badges_earned": list(self.badges_earned),
        }


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------
def _already_rewarded(session: Session, user_id: int, action: str, source_id: str | None) -> bool:
    if source_id is None:
        return False
    return session.scalar(
        select(PointTransaction.id).where(
            PointTransaction.user_id == user_id,
            PointTransaction.action == action,
            PointTransaction.source_id == source_id,
        )
    ) is not None


def _credit(
    session: Session,
    user: User,
    action: str,
    points: int,
    *,
    source_id: str | None,
    reason: str | None,
    cache: ConfigCache | None,
    metadata: dict | None = None,
) -> int:
    """Write one ledger row and move the user's balance (never below zero)."""
    applied = max(points, -user.points)
    session.add(PointTransaction(
        user_id=user.id,
        action=action,
        points=applied,
        source_id=source_id,
        reason=reason,
    ))
    session.add(ActivityLog(
        user_id=user.id,
        action=action,
        points_delta=applied,
        metadata_=metadata or None,
    ))
    user.points += applied
    user.level = level_for_points(user.points, cache)
    session.flush()
    return applied


def get_or_create_progress(
    session: Session,
    user_id: int,
    badge_type: BadgeType,
    cache: ConfigCache | None,
) -> BadgeProgress:
    row = session.get(BadgeProgress, (user_id, badge_type.value))
    if row is None:
        row = BadgeProgress(
            user_id=user_id,
            badge_type=badge_type.value,
            level=BadgeLevel.BRONZE.value,
            progress=0,
            goal=badge_rules.initial_goal(cache),
            milestone_achieved=False,
        )
        session.add(row)
        session.flush()
    return row


def _advance_badge(
    session: Session,
    user: User,
    badge_type: BadgeType,
    cache: ConfigCache | None,
) -> dict | None:
    """Add one unit of progress; award/upgrade the badge when a level is hit."""
    row = get_or_create_progress(session, user.id, badge_type, cache)
    result = badge_rules.apply_progress(
        badge_rules.ProgressState(
            level=BadgeLevel(row.level),
            progress=row.progress,
            goal=row.goal,
            milestone_achieved=row.milestone_achieved,
        )
    )
    row.level = result.state.level.value
    row.progress = result.state.progress
    row.goal = result.state.goal
    row.milestone_achieved = result.state.milestone_achieved

    if result.earned_level is None:
        return None

    earned = result.earned_level
    badge = session.scalar(
        select(Badge).where(Badge.user_id == user.id, Badge.badge_type == badge_type.value)
    )
    if badge is None:
        badge = Badge(user_id=user.id, badge_type=badge_type.value, level=earned.value)
        session.add(badge)
    else:
        badge.level = earned.value
    session.flush()

    bonus = badge_rules.badge_points(badge_type, cache)
    _credit(
        session, user, Action.BADGE_EARNED.value, bonus,
        source_id=f"{badge_type.value}:{earned.value}",
        reason=f"{earned.value} {badge_type.value} badge",
        cache=cache,
        metadata={"badge_type": badge_type.value, "level": earned.value},
    )
    notify(
        session, user.id, NotificationType.BADGE,
        f"You earned the {earned.value} {badge_type.value.replace('_', ' ')} badge!",
    )
    logger.info("User %s earned %s %s badge", user.id, earned.value, badge_type.value)
    return {"badge_type": badge_type.value, "level": earned.value, "points": bonus}


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
def apply_event(
    session: Session,
    event: GamificationEvent,
    cache: ConfigCache | None = None,
) -> RewardResult:
    """Reward *event* inside *session* (the caller commits).

    1. Skip if ``(user, action, source_id)`` was already rewarded
    2. Credit points (configured per action, or ``event.points``)
    3. Advance the matching badge, awarding a level when its goal is hit
    4. Recompute the level from total points
    """
    user = session.get(User, event.user_id)
    if user is None:
        raise not_found("User")

    if _already_rewarded(session, user.id, event.action.value, event.source_id):
        logger.debug("Duplicate %s for user %s (%s)", event.action, user.id, event.source_id)
        return RewardResult(
            total_points=user.points, level=user.level, duplicate=True,
        )

    old_level = user.level
    points = event.points if event.points is not None else points_for_action(event.action, cache)
    result = RewardResult()
    result.points_awarded = _credit(
        session, user, event.action.value, points,
        source_id=event.source_id,
        reason=event.reason,
        cache=cache,
        metadata=event.metadata,
    )

    badge_type = ACTION_BADGE.get(event.action)
    if badge_type is not None:
        earned = _advance_badge(session, user, badge_type, cache)
        if earned is not None:
            result.badges_earned.append(earned)

    result.total_points = user.points
    result.level = user.level
    result.leveled_up = user.level > old_level
    if result.leveled_up:
        session.add(ActivityLog(
            user_id=user.id,
            action="level_up",
            metadata_={"old_level": old_level, "new_level": user.level},
        ))
    return result


def process_event(
    engine: Engine,
    event: GamificationEvent,
    cache: ConfigCache | None = None,
) -> dict:
    """Run :func:`apply_event` in its own transaction."""
    with get_session(engine) as session:
        return apply_event(session, event, cache).to_dict()


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------
def _streak_dict(streak: Streak, today) -> dict:
    return {
        "user_id": streak.user_id,
        "streak_count": streak_rules.current_count(streak.last_check_in, streak.streak_count, today),
        "longest_streak": streak.longest_streak,
        "last_check_in": isoformat(streak.last_check_in),
        "checked_in_today": streak.last_check_in == today,
    }


def _get_or_create_streak(session: Session, user_id: int) -> Streak:
    streak = session.get(Streak, user_id)
    if streak is None:
        streak = Streak(user_id=user_id, streak_count=0, longest_streak=0)
        session.add(streak)
        session.flush()
    return streak


def check_in(engine: Engine, user_id: int, cache: ConfigCache | None = None, today=None) -> dict:
    """Daily check-in: advance the streak and reward it (bonus on interval days)."""
    today = today or utctoday()
    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise not_found("User")
        streak = _get_or_create_streak(session, user_id)
        advanced = streak_rules.advance_streak(
            streak.last_check_in, streak.streak_count, streak.longest_streak, today,
        )
        streak.streak_count = advanced.streak_count
        streak.longest_streak = advanced.longest_streak
        streak.last_check_in = advanced.last_check_in

        reward = apply_event(
            session,
            GamificationEvent(
                user_id=user_id,
                action=Action.DAILY_CHECK_IN,
                source_id=today.isoformat(),
                metadata={"streak_count": streak.streak_count},
            ),
            cache,
        )
        interval = cache.get_int("streak.bonus_interval", 7) if cache else 7
        bonus = None
        if streak_rules.is_bonus_day(streak.streak_count, interval):
            bonus = apply_event(
                session,
                GamificationEvent(
                    user_id=user_id,
                    action=Action.STREAK_BONUS,
                    source_id=today.isoformat(),
                    reason=f"{streak.streak_count}-day streak",
                ),
                cache,
            ).to_dict()
        logger.info("User %s checked in (streak=%d)", user_id, streak.streak_count)
        return {
            "streak": _streak_dict(streak, today),
            "reward": reward.to_dict(),
            "bonus": bonus,
        }


def get_streak(engine: Engine, user_id: int, today=None) -> dict:
    today = today or utctoday()
    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise not_found("User")
        streak = session.get(Streak, user_id)
        if streak is None:
            return {
                "user_id": user_id,
                "streak_count": 0,
                "longest_streak": 0,
                "last_check_in": None,
                "checked_in_today": False,
            }
        return _streak_dict(streak, today)


def reset_streak(session: Session, user_id: int) -> Streak:
    streak = session.get(Streak, user_id)
    if streak is None:
        raise not_found("Streak")
    streak.streak_count = 0
    streak.last_check_in = None
    return streak


def reset_all_streaks(session: Session) -> int:
    result = session.execute(
        update(Streak).values(streak_count=0, last_check_in=None)
    )
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------
def badge_dict(b: Badge) -> dict:
    return {
        "id": b.id,
        "badge_type": b.badge_type,
        "level": b.level,
        "points": badge_rules.BADGE_POINTS.get(BadgeType(b.badge_type), 0),
        "is_showcased": b.is_showcased,
        "awarded_at": isoformat(b.awarded_at),
        "expires_at": isoformat(b.expires_at),
    }


def list_badges(engine: Engine, user_id: int) -> dict:
    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise not_found("User")
        badges = session.scalars(
            select(Badge).where(Badge.user_id == user_id).order_by(Badge.awarded_at.asc(), Badge.id)
        ).all()
        progress = session.scalars(
            select(BadgeProgress).where(BadgeProgress.user_id == user_id)
        ).all()
        return {
            "badges": [badge_dict(b) for b in badges],
            "progress": [
                {
                    "badge_type": p.badge_type,
                    "level": p.level,
                    "progress": p.progress,
                    "goal": p.goal,
                    "milestone_achieved": p.milestone_achieved,
                }
                for p in progress
            ],
        }


def set_showcase(engine: Engine, user_id: int, badge_id: int, showcased: bool) -> dict:
    with get_session(engine) as session:
        badge = session.get(Badge, badge_id)
        if badge is None or badge.user_id != user_id:
            raise not_found("Badge")
        badge.is_showcased = showcased
        return badge_dict(badge)


# ---------------------------------------------------------------------------
# Points history
# ---------------------------------------------------------------------------
def points_history(engine: Engine, user_id: int, req: PageRequest) -> dict:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise not_found("User")
        total = session.scalar(
            select(func.count()).select_from(PointTransaction)
            .where(PointTransaction.user_id == user_id)
        ) or 0
        rows = session.scalars(
            select(PointTransaction)
            .where(PointTransaction.user_id == user_id)
            .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {
            "points": user.points,
            "level": user.level,
            "transactions": [
                {
                    "id": t.id,
                    "action": t.action,
                    "points": t.points,
                    "reason": t.reason,
                    "created_at": isoformat(t.created_at),
                }
                for t in rows
            ],
            "pagination": req.meta(total),
        }


def adjust_points(
    session: Session,
    user_id: int,
    delta: int,
    reason: str,
    cache: ConfigCache | None = None,
) -> User:
    """Manual award or deduction; the balance never drops below zero."""
    if delta == 0:
        raise create_error("Point adjustment must be non-zero", 400)
    user = session.get(User, user_id)
    if user is None:
        raise not_found("User")
    _credit(
        session, user, Action.MANUAL_AWARD.value, delta,
        source_id=None, reason=reason, cache=cache,
        metadata={"reason": reason},
    )
    return user


def spend_points(
    session: Session,
    user: User,
    points: int,
    *,
    source_id: str,
    reason: str,
    cache: ConfigCache | None = None,
    insufficient_message: str = "Insufficient points",
) -> int:
    """Deduct *points* from the balance; 400 when the balance is short."""
    if user.points < points:
        raise create_error(insufficient_message, 400)
    return -_credit(
        session, user, Action.REWARD_REDEEMED.value, -points,
        source_id=source_id, reason=reason, cache=cache,
        metadata={"reason": reason, "source_id": source_id},
    )


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------
def points_leaderboard(engine: Engine, req: PageRequest) -> dict:
    """Active users by points desc, level desc (ties by ID)."""
    with get_session(engine) as session:
        total = session.scalar(
            select(func.count()).select_from(User).where(User.is_active.is_(True))
        ) or 0
        users = session.scalars(
            select(User)
            .where(User.is_active.is_(True))
            .order_by(User.points.desc(), User.level.desc(), User.id.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        rows = [
            {
                "user_id": u.id,
                "username": u.username,
                "avatar_url": u.avatar_url,
                "points": u.points,
                "level": u.level,
            }
            for u in users
        ]
        return {"leaderboard": ranked(rows, req), "pagination": req.meta(total)}


def streak_leaderboard(engine: Engine, req: PageRequest, today=None) -> dict:
    """Users with a live streak by count desc, most recent check-in first."""
    today = today or utctoday()
    alive_since = today - timedelta(days=1)
    with get_session(engine) as session:
        conditions = (
            User.is_active.is_(True),
            Streak.streak_count > 0,
            Streak.last_check_in >= alive_since,
        )
        total = session.scalar(
            select(func.count()).select_from(Streak).join(User, User.id == Streak.user_id)
            .where(*conditions)
        ) or 0
        results = session.execute(
            select(Streak, User)
            .join(User, User.id == Streak.user_id)
            .where(*conditions)
            .order_by(
                Streak.streak_count.desc(),
                Streak.last_check_in.desc(),
                Streak.user_id.asc(),
            )
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        rows = [
            {
                "user_id": user.id,
                "username": user.username,
                "avatar_url": user.avatar_url,
                "streak_count": streak.streak_count,
                "longest_streak": streak.longest_streak,
                "last_check_in": isoformat(streak.last_check_in),
            }
            for streak, user in results
        ]
        return {"leaderboard": ranked(rows, req), "pagination": req.meta(total)}
