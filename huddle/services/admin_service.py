"""
huddle.services.admin_service — Audited admin mutations
========================================================

Every admin write follows the same shape inside one transaction:

1. Read the "before" snapshot
2. Apply the change
3. Write an ``admin_action_log`` row with before/after JSONB and client IP
4. NOTIFY ``config_changed`` when the settings table was touched
5. Commit
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from huddle.constants import ROLE_USER, VALID_ROLES, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    AdminActionLog,
    AdminActionType,
    BlogPost,
    Goal,
    Setting,
    Streak,
    Subscription,
    User,
    WorkStatus,
)
from huddle.engine.cache import notify_before_commit
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, not_found
from huddle.services import auth_service, gamification_service
from huddle.services.user_service import profile_dict

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

# Never copied into audit snapshots
_REDACTED_COLUMNS = frozenset({"password_hash"})


# ---------------------------------------------------------------------------
# Audit helpers
# ---------------------------------------------------------------------------
def row_snapshot(obj: Any) -> dict | None:
    """JSON-safe snapshot of a model instance."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        if col.name in _REDACTED_COLUMNS:
            continue
        val = getattr(obj, "metadata_" if col.name == "metadata" else col.key, None)
        if isinstance(val, (datetime, date)):
            val = isoformat(val)
        result[col.name] = val
    return result


def log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: AdminActionType,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    ip_address: str | None = None,
    reason: str | None = None,
) -> None:
    session.add(AdminActionLog(
        actor_id=actor_id,
        action_type=action_type.value,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        ip_address=ip_address,
        reason=reason,
    ))


def _target_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise not_found("User")
    return user


def admin_user_dict(user: User) -> dict:
    data = profile_dict(user, include_private=True)
    data["is_active"] = user.is_active
    data["last_seen_at"] = isoformat(user.last_seen_at)
    return data


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
def list_users(
    engine: Engine,
    req: PageRequest,
    *,
    q: str | None = None,
    include_inactive: bool = True,
) -> dict:
    with get_session(engine) as session:
        conditions = []
        if q:
            term = f"%{q.strip().lower()}%"
            conditions.append(
                func.lower(User.username).like(term) | func.lower(User.email).like(term)
            )
        if not include_inactive:
            conditions.append(User.is_active.is_(True))
        total = session.scalar(select(func.count()).select_from(User).where(*conditions)) or 0
        users = session.scalars(
            select(User)
            .where(*conditions)
            .order_by(User.id.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"users": [admin_user_dict(u) for u in users], "pagination": req.meta(total)}


def set_roles(
    engine: Engine,
    *,
    actor_id: int,
    user_id: int,
    roles: list[str],
    ip_address: str | None = None,
) -> dict:
    unknown = set(roles) - set(VALID_ROLES)
    if unknown:
        raise create_error(f"Unknown roles: {', '.join(sorted(unknown))}", 400)
    new_roles = sorted(set(roles) | {ROLE_USER})
    with get_session(engine) as session:
        user = _target_user(session, user_id)
        before = row_snapshot(user)
        user.roles = new_roles
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.ROLE_CHANGE,
            target_table="users",
            target_id=str(user.id),
            before=before,
            after=row_snapshot(user),
            ip_address=ip_address,
        )
        logger.info("Admin %s set roles of user %s to %s", actor_id, user_id, new_roles)
        return admin_user_dict(user)


def set_active(
    engine: Engine,
    *,
    actor_id: int,
    user_id: int,
    active: bool,
    reason: str | None = None,
    ip_address: str | None = None,
) -> dict:
    """Deactivate (revoking every refresh token) or reactivate a user."""
    if not active and actor_id == user_id:
        raise create_error("You cannot deactivate your own account from the admin API", 400)
    with get_session(engine) as session:
        user = _target_user(session, user_id)
        if user.is_active == active:
            raise create_error(
                f"User is already {'active' if active else 'deactivated'}", 400,
            )
        before = row_snapshot(user)
        user.is_active = active
        if not active:
            auth_service.revoke_all_for_user(session, user_id)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.REACTIVATE if active else AdminActionType.DEACTIVATE,
            target_table="users",
            target_id=str(user.id),
            before=before,
            after=row_snapshot(user),
            ip_address=ip_address,
            reason=reason,
        )
        logger.info("Admin %s %s user %s", actor_id, "reactivated" if active else "deactivated", user_id)
        return admin_user_dict(user)


# ---------------------------------------------------------------------------
# Gamification
# ---------------------------------------------------------------------------
def reset_user_streak(
    engine: Engine,
    *,
    actor_id: int,
    user_id: int,
    ip_address: str | None = None,
) -> dict:
    with get_session(engine) as session:
        _target_user(session, user_id)
        before = row_snapshot(session.get(Streak, user_id))
        streak = gamification_service.reset_streak(session, user_id)
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.STREAK_RESET,
            target_table="streaks",
            target_id=str(user_id),
            before=before,
            after=row_snapshot(streak),
            ip_address=ip_address,
        )
        return {"user_id": user_id, "streak_count": streak.streak_count}


def reset_all_streaks(engine: Engine, *, actor_id: int, ip_address: str | None = None) -> dict:
    with get_session(engine) as session:
        count = gamification_service.reset_all_streaks(session)
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.STREAK_RESET,
            target_table="streaks",
            target_id=None,
            before=None,
            after={"streaks_reset": count},
            ip_address=ip_address,
        )
        logger.info("Admin %s reset %d streaks", actor_id, count)
        return {"streaks_reset": count}


def award_points(
    engine: Engine,
    *,
    actor_id: int,
    user_id: int,
    delta: int,
    reason: str,
    cache: ConfigCache | None = None,
    ip_address: str | None = None,
) -> dict:
    """Award (or, with a negative *delta*, deduct) points; floor is zero."""
    if not reason or not reason.strip():
        raise create_error("A reason is required", 400)
    with get_session(engine) as session:
        user = _target_user(session, user_id)
        before = {"points": user.points, "level": user.level}
        gamification_service.adjust_points(session, user_id, delta, reason.strip(), cache)
        after = {"points": user.points, "level": user.level}
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.POINTS_ADJUST,
            target_table="users",
            target_id=str(user_id),
            before=before,
            after=after,
            ip_address=ip_address,
            reason=reason.strip(),
        )
        logger.info("Admin %s adjusted points of user %s by %d", actor_id, user_id, delta)
        return {"user_id": user_id, **after}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
def setting_dict(row: Setting) -> dict:
    try:
        value = json.loads(row.value_json)
    except (json.JSONDecodeError, TypeError):
        value = row.value_json
    return {
        "key": row.key,
        "value": value,
        "category": row.category,
        "description": row.description,
        "updated_at": isoformat(row.updated_at),
    }


def list_settings(engine: Engine) -> list[dict]:
    with get_session(engine) as session:
        rows = session.scalars(select(Setting).order_by(Setting.category, Setting.key)).all()
        return [setting_dict(r) for r in rows]


def update_settings(
    engine: Engine,
    items: list[dict],
    *,
    actor_id: int,
    cache: ConfigCache | None = None,
    ip_address: str | None = None,
) -> int:
    """Upsert settings, auditing each real change; the cache reloads after."""
    touched = 0
    with get_session(engine) as session:
        for item in items:
            key = item["key"]
            existing = session.get(Setting, key)
            before = setting_dict(existing) if existing is not None else None
            if before is not None:
                before.pop("updated_at")

            if existing is None:
                existing = Setting(
                    key=key,
                    value_json=json.dumps(item["value"]),
                    category=item.get("category") or "general",
                    description=item.get("description"),
                )
                session.add(existing)
            else:
                existing.value_json = json.dumps(item["value"])
                if item.get("category"):
                    existing.category = item["category"]
                if item.get("description") is not None:
                    existing.description = item["description"]

            after = {
                "key": key,
                "value": item["value"],
                "category": existing.category,
                "description": existing.description,
            }
            if before != after:
                log_admin_action(
                    session,
                    actor_id=actor_id,
                    action_type=AdminActionType.UPDATE if before else AdminActionType.CREATE,
                    target_table="settings",
                    target_id=key,
                    before=before,
                    after=after,
                    ip_address=ip_address,
                )
            touched += 1
        notify_before_commit(session, "settings")

    if cache is not None:
        cache.handle_notify("settings")
    logger.info("Admin %s updated %d settings", actor_id, touched)
    return touched


# ---------------------------------------------------------------------------
# Audit log & metrics
# ---------------------------------------------------------------------------
def audit_log(
    engine: Engine,
    req: PageRequest,
    *,
    action_type: str | None = None,
    target_table: str | None = None,
) -> dict:
    with get_session(engine) as session:
        conditions = []
        if action_type:
            conditions.append(AdminActionLog.action_type == action_type)
        if target_table:
            conditions.append(AdminActionLog.target_table == target_table)
        total = session.scalar(
            select(func.count()).select_from(AdminActionLog).where(*conditions)
        ) or 0
        rows = session.scalars(
            select(AdminActionLog)
            .where(*conditions)
            .order_by(AdminActionLog.timestamp.desc(), AdminActionLog.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {
            "entries": [
                {
                    "id": r.id,
                    "actor_id": r.actor_id,
                    "action_type": r.action_type,
                    "target_table": r.target_table,
                    "target_id": r.target_id,
                    "before_snapshot": r.before_snapshot,
                    "after_snapshot": r.after_snapshot,
                    "ip_address": r.ip_address,
                    "reason": r.reason,
                    "timestamp": isoformat(r.timestamp),
                }
                for r in rows
            ],
            "pagination": req.meta(total),
        }


def metrics(engine: Engine) -> dict:
    """Headline counters for the admin dashboard."""
    week_ago = utcnow() - timedelta(days=7)
    with get_session(engine) as session:
        def count(model, *conditions) -> int:
            return session.scalar(select(func.count()).select_from(model).where(*conditions)) or 0

        return {
            "users_total": count(User),
            "users_active": count(User, User.is_active.is_(True)),
            "users_active_7d": count(User, User.last_seen_at >= week_ago),
            "posts_total": count(BlogPost, BlogPost.is_deleted.is_(False)),
            "goals_completed": count(Goal, Goal.status == WorkStatus.COMPLETED.value),
            "subscriptions_active": count(Subscription, Subscription.is_active.is_(True)),
        }
