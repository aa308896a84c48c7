"""
huddle.services.reminder_service — Custom and streak reminders
===============================================================

Users schedule reminders (one-off, daily or weekly); the API lifespan
polls :func:`send_due_reminders`, which turns every due reminder into a
``reminder`` notification.  One-off reminders are disabled once sent;
recurring ones move to their next future occurrence, skipping any that
were missed while the server was down.

:func:`send_streak_reminders` nudges users whose streak breaks unless they
check in today.  It runs once a day and is safe to repeat.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from sqlalchemy import Engine, select

from huddle.constants import clean_text, ensure_utc, isoformat, utcnow, utctoday
from huddle.database.engine import get_session
from huddle.database.models import (
    Notification,
    NotificationType,
    Recurrence,
    Reminder,
    Streak,
    User,
)
from huddle.errors import create_error, not_found
from huddle.services.notification_service import notify

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 200
DISPATCH_BATCH_SIZE = 500
STREAK_REMINDER_LINK = "/gamification/streak"

_STEP = {
    Recurrence.DAILY: timedelta(days=1),
    Recurrence.WEEKLY: timedelta(weeks=1),
}


def reminder_dict(r: Reminder) -> dict:
    return {
        "id": r.id,
        "message": r.message,
        "remind_at": isoformat(r.remind_at),
        "recurrence": r.recurrence,
        "is_disabled": r.is_disabled,
        "last_sent_at": isoformat(r.last_sent_at),
        "created_at": isoformat(r.created_at),
    }


def next_occurrence(remind_at: datetime, recurrence: Recurrence, now: datetime) -> datetime | None:
    """First occurrence strictly after *now*; ``None`` for one-off reminders."""
    step = _STEP.get(recurrence)
    if step is None:
        return None
    remind_at = ensure_utc(remind_at)
    if remind_at > now:
        return remind_at
    missed = (now - remind_at) // step + 1
    return remind_at + step * missed


def _recurrence(value: str | None) -> Recurrence:
    try:
        return Recurrence(value or Recurrence.NONE.value)
    except ValueError:
        raise create_error(f"Unknown recurrence: {value}", 400)


def _future(value: datetime) -> datetime:
    value = ensure_utc(value)
    if value <= utcnow():
        raise create_error("remind_at must be in the future", 400)
    return value


def _owned(session, user_id: int, reminder_id: int) -> Reminder:
    reminder = session.get(Reminder, reminder_id)
    if reminder is None or reminder.user_id != user_id:
        raise not_found("Reminder")
    return reminder


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def create_reminder(
    engine: Engine,
    user_id: int,
    message: str,
    remind_at: datetime,
    recurrence: str | None = None,
) -> dict:
    reminder = Reminder(
        user_id=user_id,
        message=clean_text(message, MAX_MESSAGE_LENGTH, field="message"),
        remind_at=_future(remind_at),
        recurrence=_recurrence(recurrence).value,
        is_disabled=False,
    )
    with get_session(engine) as session:
        session.add(reminder)
        session.flush()
        logger.debug("Reminder %s scheduled for user %s", reminder.id, user_id)
        return reminder_dict(reminder)


def list_reminders(engine: Engine, user_id: int, *, include_disabled: bool = True) -> list[dict]:
    """Soonest first."""
    with get_session(engine) as session:
        stmt = select(Reminder).where(Reminder.user_id == user_id)
        if not include_disabled:
            stmt = stmt.where(Reminder.is_disabled.is_(False))
        rows = session.scalars(stmt.order_by(Reminder.remind_at.asc(), Reminder.id.asc())).all()
        return [reminder_dict(r) for r in rows]


def update_reminder(engine: Engine, user_id: int, reminder_id: int, changes: dict[str, Any]) -> dict:
    """Rescheduling a disabled reminder re-enables it."""
    with get_session(engine) as session:
        reminder = _owned(session, user_id, reminder_id)
        if changes.get("message") is not None:
            reminder.message = clean_text(changes["message"], MAX_MESSAGE_LENGTH, field="message")
        if changes.get("recurrence") is not None:
            reminder.recurrence = _recurrence(changes["recurrence"]).value
        if changes.get("remind_at") is not None:
            reminder.remind_at = _future(changes["remind_at"])
            reminder.is_disabled = False
        session.flush()
        return reminder_dict(reminder)


def disable_reminder(engine: Engine, user_id: int, reminder_id: int) -> dict:
    with get_session(engine) as session:
        reminder = _owned(session, user_id, reminder_id)
        reminder.is_disabled = True
        session.flush()
        return reminder_dict(reminder)


def delete_reminder(engine: Engine, user_id: int, reminder_id: int) -> None:
    with get_session(engine) as session:
        session.delete(_owned(session, user_id, reminder_id))


# ---------------------------------------------------------------------------
# Dispatch (lifespan task)
# ---------------------------------------------------------------------------
def send_due_reminders(engine: Engine, now: datetime | None = None) -> int:
    """Notify owners of every due reminder; returns how many were sent."""
    now = now or utcnow()
    sent = 0
    while True:
        with get_session(engine) as session:
            due = session.scalars(
                select(Reminder)
                .join(User, User.id == Reminder.user_id)
                .where(
                    Reminder.is_disabled.is_(False),
                    Reminder.remind_at <= now,
                    User.is_active.is_(True),
                )
                .order_by(Reminder.remind_at.asc(), Reminder.id.asc())
                .limit(DISPATCH_BATCH_SIZE)
            ).all()
            for reminder in due:
                notify(
                    session, reminder.user_id, NotificationType.REMINDER,
                    reminder.message, link="/reminders",
                )
                reminder.last_sent_at = now
                upcoming = next_occurrence(reminder.remind_at, Recurrence(reminder.recurrence), now)
                if upcoming is None:
                    reminder.is_disabled = True
                else:
                    reminder.remind_at = upcoming
            sent += len(due)
        if len(due) < DISPATCH_BATCH_SIZE:
            break
    if sent:
        logger.info("Sent %d reminders", sent)
    return sent


def send_streak_reminders(engine: Engine, today: date | None = None) -> int:
    """Remind users who checked in yesterday but not yet today."""
    today = today or utctoday()
    day_start = datetime.combine(today, time.min, tzinfo=UTC)
    with get_session(engine) as session:
        already = select(Notification.user_id).where(
            Notification.notification_type == NotificationType.REMINDER.value,
            Notification.link == STREAK_REMINDER_LINK,
            Notification.created_at >= day_start,
        )
        rows = session.execute(
            select(Streak.user_id, Streak.streak_count)
            .join(User, User.id == Streak.user_id)
            .where(
                User.is_active.is_(True),
                Streak.streak_count > 0,
                Streak.last_check_in == today - timedelta(days=1),
                Streak.user_id.not_in(already),
            )
        ).all()
        for user_id, count in rows:
            notify(
                session, user_id, NotificationType.REMINDER,
                f"Check in today to keep your {count}-day streak going!",
                link=STREAK_REMINDER_LINK,
            )
    if rows:
        logger.info("Sent %d streak reminders for %s", len(rows), today.isoformat())
    return len(rows)
