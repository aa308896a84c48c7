"""
huddle.api.routes.admin — Admin endpoints (role ``admin``)
===========================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, client_ip, get_cache, get_engine, pagination, require_roles
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.constants import ROLE_ADMIN
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest
from huddle.services import (
    admin_service,
    moderation_service,
    notification_service,
    retention_service,
    reward_service,
)
from huddle.services.log_buffer import (
    VALID_LEVELS,
    get_capture_level,
    get_logs,
    set_capture_level,
)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(rate_limited_user)])

require_admin = require_roles(ROLE_ADMIN)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RolesUpdate(BaseModel):
    roles: list[str]


class ActiveUpdate(BaseModel):
    active: bool
    reason: str | None = None


class PointsAward(BaseModel):
    delta: int
    reason: str


class SettingUpdate(BaseModel):
    key: str
    value: Any
    category: str | None = None
    description: str | None = None


class LogLevelUpdate(BaseModel):
    level: str


class SystemNotification(BaseModel):
    user_ids: list[int] = Field(min_length=1)
    message: str
    link: str | None = None


class RewardCreate(BaseModel):
    name: str
    points_required: int
    reward_type: str | None = None
    description: str | None = None
    image_url: str | None = None


class RewardUpdate(BaseModel):
    name: str | None = None
    points_required: int | None = None
    reward_type: str | None = None
    description: str | None = None
    image_url: str | None = None
    is_active: bool | None = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/users")
def list_users(
    q: str | None = Query(None),
    include_inactive: bool = Query(True),
    req: PageRequest = Depends(pagination),
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(admin_service.list_users(engine, req, q=q, include_inactive=include_inactive))


@router.put("/users/{user_id}/roles")
def set_roles(
    user_id: int,
    body: RolesUpdate,
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    user = admin_service.set_roles(
        engine, actor_id=admin.id, user_id=user_id, roles=body.roles,
        ip_address=client_ip(request),
    )
    return ok(user, "Roles updated")


@router.put("/users/{user_id}/active")
def set_active(
    user_id: int,
    body: ActiveUpdate,
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    user = admin_service.set_active(
        engine, actor_id=admin.id, user_id=user_id, active=body.active,
        reason=body.reason, ip_address=client_ip(request),
    )
    return ok(user, "User reactivated" if body.active else "User deactivated")


# ---------------------------------------------------------------------------
# Gamification
# ---------------------------------------------------------------------------
@router.post("/users/{user_id}/streak/reset")
def reset_user_streak(
    user_id: int,
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    result = admin_service.reset_user_streak(
        engine, actor_id=admin.id, user_id=user_id, ip_address=client_ip(request),
    )
    return ok(result, "Streak reset")


@router.post("/streaks/reset")
def reset_all_streaks(
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    result = admin_service.reset_all_streaks(engine, actor_id=admin.id, ip_address=client_ip(request))
    return ok(result, "All streaks reset")


@router.post("/users/{user_id}/points")
def award_points(
    user_id: int,
    body: PointsAward,
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    result = admin_service.award_points(
        engine, actor_id=admin.id, user_id=user_id, delta=body.delta,
        reason=body.reason, cache=cache, ip_address=client_ip(request),
    )
    return ok(result, "Points adjusted")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@router.get("/settings")
def list_settings(
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok({"settings": admin_service.list_settings(engine)})


@router.put("/settings")
def update_settings(
    body: list[SettingUpdate],
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    count = admin_service.update_settings(
        engine, [item.model_dump() for item in body],
        actor_id=admin.id, cache=cache, ip_address=client_ip(request),
    )
    return ok({"updated": count}, "Settings saved")


# ---------------------------------------------------------------------------
# Audit, logs & metrics
# ---------------------------------------------------------------------------
@router.get("/audit")
def audit_log(
    action_type: str | None = Query(None),
    target_table: str | None = Query(None),
    req: PageRequest = Depends(pagination),
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(admin_service.audit_log(engine, req, action_type=action_type, target_table=target_table))


@router.get("/logs")
def get_live_logs(
    tail: int = Query(200, ge=1, le=2000),
    level: str | None = Query(None),
    logger_filter: str | None = Query(None, alias="logger"),
    admin: AuthUser = Depends(require_admin),
):
    """Return recent log entries from the in-memory ring buffer."""
    entries = get_logs(tail=tail, level=level, logger_filter=logger_filter)
    return ok({
        "entries": entries,
        "total": len(entries),
        "capture_level": get_capture_level(),
        "valid_levels": list(VALID_LEVELS),
    })


@router.put("/logs/level")
def change_log_level(
    body: LogLevelUpdate,
    admin: AuthUser = Depends(require_admin),
):
    """Change the capture level of the ring-buffer handler on-the-fly."""
    try:
        new_level = set_capture_level(body.level)
    except ValueError as exc:
        raise HTTPException(400, detail=str(exc))
    return ok({"level": new_level}, "Capture level changed")


@router.get("/metrics")
def metrics(
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(admin_service.metrics(engine))


@router.post("/notifications", status_code=201)
def send_notification(
    body: SystemNotification,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    sent = [
        notification_service.send_system_notification(
            engine, uid, body.message, sender_id=admin.id, link=body.link,
        )
        for uid in body.user_ids
    ]
    return ok({"sent": len(sent)}, "Notifications sent")


@router.get("/retention")
def retention_stats(
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(retention_service.get_retention_stats(engine))


@router.post("/retention/run")
def run_retention(
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(retention_service.run_retention_cleanup(engine), "Retention cleanup complete")


# ---------------------------------------------------------------------------
# Rewards & feedback
# ---------------------------------------------------------------------------
@router.get("/rewards")
def list_rewards(
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(reward_service.list_rewards(engine, include_inactive=True))


@router.post("/rewards", status_code=201)
def create_reward(
    body: RewardCreate,
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    reward = reward_service.create_reward(
        engine, actor_id=admin.id, ip_address=client_ip(request), **body.model_dump(),
    )
    return ok(reward, "Reward created")


@router.patch("/rewards/{reward_id}")
def update_reward(
    reward_id: int,
    body: RewardUpdate,
    request: Request,
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    reward = reward_service.update_reward(
        engine, reward_id, body.model_dump(exclude_unset=True),
        actor_id=admin.id, ip_address=client_ip(request),
    )
    return ok(reward, "Reward updated")


@router.get("/redemptions")
def redemptions(
    start: datetime = Query(...),
    end: datetime = Query(...),
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(reward_service.redemptions_between(engine, start, end))


@router.get("/feedback")
def feedback(
    req: PageRequest = Depends(pagination),
    admin: AuthUser = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    return ok(moderation_service.list_feedback(engine, req))
