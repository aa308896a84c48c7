"""
huddle.api.routes.reminders — Scheduled reminders (subscribers only)
=====================================================================
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_engine, require_active_subscription
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.services import reminder_service

router = APIRouter(
    prefix="/reminders",
    tags=["reminders"],
    dependencies=[Depends(require_active_subscription)],
)


class ReminderCreate(BaseModel):
    message: str
    remind_at: datetime
    recurrence: str | None = None


class ReminderUpdate(BaseModel):
    message: str | None = None
    remind_at: datetime | None = None
    recurrence: str | None = None


@router.get("")
def list_reminders(
    include_disabled: bool = Query(True),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(reminder_service.list_reminders(engine, user.id, include_disabled=include_disabled))


@router.post("", status_code=201)
def create_reminder(
    body: ReminderCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    reminder = reminder_service.create_reminder(
        engine, user.id, body.message, body.remind_at, body.recurrence,
    )
    return ok(reminder, "Reminder created")


@router.patch("/{reminder_id}")
def update_reminder(
    reminder_id: int,
    body: ReminderUpdate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    changes = body.model_dump(exclude_unset=True)
    return ok(reminder_service.update_reminder(engine, user.id, reminder_id, changes), "Reminder updated")


@router.post("/{reminder_id}/disable")
def disable_reminder(
    reminder_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(reminder_service.disable_reminder(engine, user.id, reminder_id), "Reminder disabled")


@router.delete("/{reminder_id}")
def delete_reminder(
    reminder_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    reminder_service.delete_reminder(engine, user.id, reminder_id)
    return ok(None, "Reminder deleted")
