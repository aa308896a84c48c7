"""
huddle.api.routes.notifications — Per-user notification inbox
==============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_engine, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.pagination import PageRequest
from huddle.services import notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    unread_only: bool = Query(False),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(notification_service.list_notifications(engine, user.id, req, unread_only=unread_only))


@router.get("/unread-count")
def unread_count(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok({"unread": notification_service.unread_count(engine, user.id)})


@router.post("/read-all")
def mark_all_read(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok({"updated": notification_service.mark_all_read(engine, user.id)}, "All notifications read")


@router.post("/{notification_id}/read")
def mark_read(
    notification_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(notification_service.mark_read(engine, user.id, notification_id))


@router.delete("/{notification_id}")
def delete_notification(
    notification_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    notification_service.delete_notification(engine, user.id, notification_id)
    return ok(None, "Notification deleted")
