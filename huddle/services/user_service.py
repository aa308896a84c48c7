"""
huddle.services.user_service — Profiles, search and account lifecycle
======================================================================
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, func, select

from huddle.constants import clean_text, isoformat
from huddle.database.engine import get_session
from huddle.database.models import ActivityLog, Badge, Follow, Friendship, Streak, User
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, not_found
from huddle.services import auth_service

logger = logging.getLogger(__name__)

# User-editable keys inside users.settings
ALLOWED_SETTINGS: frozenset[str] = frozenset({
    "email_notifications",
    "profile_public",
    "show_streak",
    "theme",
})


def user_summary(user: User) -> dict:
    """Public card used wherever another user is embedded in a response."""
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "level": user.level,
    }


def profile_dict(user: User, *, include_private: bool = False) -> dict:
    data = {
        **user_summary(user),
        "bio": user.bio,
        "points": user.points,
        "roles": list(user.roles or []),
        "created_at": isoformat(user.created_at),
    }
    if include_private:
        data.update({
            "email": user.email,
            "is_verified": user.is_verified,
            "settings": dict(user.settings or {}),
            "subscription_status": user.subscription_status,
            "subscription_plan": user.subscription_plan,
            "trial_started_at": isoformat(user.trial_started_at),
        })
    return data


def get_active_user(session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise not_found("User")
    return user


def get_profile(engine: Engine, viewer_id: int, user_id: int) -> dict:
    with get_session(engine) as session:
        user = get_active_user(session, user_id)
        data = profile_dict(user, include_private=viewer_id == user_id)
        data["friends_count"] = session.scalar(
            select(func.count()).select_from(Friendship).where(Friendship.user_id == user_id)
        ) or 0
        data["followers_count"] = session.scalar(
            select(func.count()).select_from(Follow).where(Follow.following_id == user_id)
        ) or 0
        data["following_count"] = session.scalar(
            select(func.count()).select_from(Follow).where(Follow.follower_id == user_id)
        ) or 0
        streak = session.get(Streak, user_id)
        data["streak_count"] = streak.streak_count if streak else 0
        data["showcased_badges"] = [
            {"badge_type": b.badge_type, "level": b.level}
            for b in session.scalars(
                select(Badge).where(Badge.user_id == user_id, Badge.is_showcased.is_(True))
            ).all()
        ]
        return data


def search_users(engine: Engine, query: str, req: PageRequest) -> dict:
    """Case-insensitive username/display-name prefix search over active users."""
    term = (query or "").strip().lower()
    if not term:
        raise create_error("Search query is required", 400)
    pattern = term.replace("%", r"\%").replace("_", r"\_") + "%"
    with get_session(engine) as session:
        conditions = (
            User.is_active.is_(True),
            (func.lower(User.username).like(pattern, escape="\\"))
            | (func.lower(User.display_name).like(pattern, escape="\\")),
        )
        total = session.scalar(select(func.count()).select_from(User).where(*conditions)) or 0
        rows = session.scalars(
            select(User)
            .where(*conditions)
            .order_by(User.username.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"users": [user_summary(u) for u in rows], "pagination": req.meta(total)}


def update_profile(engine: Engine, user_id: int, changes: dict[str, Any]) -> dict:
    """Apply profile edits; ``settings`` is merged key-by-key."""
    with get_session(engine) as session:
        user = get_active_user(session, user_id)
        if "display_name" in changes:
            user.display_name = clean_text(
                changes["display_name"], 60, field="display_name", required=False
            )
        if "bio" in changes:
            user.bio = clean_text(changes["bio"], 500, field="bio", required=False)
        if "avatar_url" in changes:
            user.avatar_url = clean_text(
                changes["avatar_url"], 500, field="avatar_url", required=False
            )
        if changes.get("settings") is not None:
            unknown = set(changes["settings"]) - ALLOWED_SETTINGS
            if unknown:
                raise create_error(f"Unknown settings: {', '.join(sorted(unknown))}", 400)
            # Reassign so the JSONB column is marked dirty
            user.settings = {**(user.settings or {}), **changes["settings"]}
        session.flush()
        logger.info("User %s updated profile", user_id)
        return profile_dict(user, include_private=True)


def change_password(engine: Engine, user_id: int, current: str, new: str) -> None:
    with get_session(engine) as session:
        user = get_active_user(session, user_id)
        if not auth_service.verify_password(current or "", user.password_hash):
            raise create_error("Current password is incorrect", 400)
        auth_service.validate_password(new)
        user.password_hash = auth_service.hash_password(new)
        auth_service.revoke_all_for_user(session, user_id)
        logger.info("User %s changed password", user_id)


def deactivate_account(engine: Engine, user_id: int) -> None:
    """Soft-delete: the row stays, logins and lookups stop working."""
    with get_session(engine) as session:
        user = get_active_user(session, user_id)
        user.is_active = False
        auth_service.revoke_all_for_user(session, user_id)
        session.add(ActivityLog(user_id=user_id, action="account_deactivated"))
        logger.info("User %s deactivated their account", user_id)


def activity_feed(engine: Engine, user_id: int, req: PageRequest) -> dict:
    with get_session(engine) as session:
        get_active_user(session, user_id)
        total = session.scalar(
            select(func.count()).select_from(ActivityLog).where(ActivityLog.user_id == user_id)
        ) or 0
        rows = session.scalars(
            select(ActivityLog)
            .where(ActivityLog.user_id == user_id)
            .order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {
            "activity": [
                {
                    "id": a.id,
                    "action": a.action,
                    "points_delta": a.points_delta,
                    "metadata": a.metadata_,
                    "timestamp": isoformat(a.timestamp),
                }
                for a in rows
            ],
            "pagination": req.meta(total),
        }
