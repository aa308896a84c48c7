"""
huddle.services.notification_service — Per-user notification inbox
====================================================================

Other services call :func:`notify` inside their own transaction.  The row
is written with the caller's changes; once that transaction commits, every
registered delivery listener (socket hub, email queue) receives the
serialized notification.  A rollback discards pending deliveries, so
nobody is told about something that never happened.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import Engine, event, func, select, update
from sqlalchemy.orm import Session

from huddle.constants import clean_text, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import Notification, NotificationType, User
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, not_found

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
MAX_MESSAGE_LENGTH = 500

_PENDING_KEY = "huddle.pending_notifications"


@dataclass(frozen=True, slots=True)
class Delivery:
    """A committed notification ready to be pushed."""

    user_id: int
    payload: dict
    email: str | None = None


DeliveryListener = Callable[[Delivery], None]

_listeners: list[DeliveryListener] = []
_retention_days = DEFAULT_RETENTION_DAYS


def configure(retention_days: int) -> None:
    global _retention_days
    _retention_days = retention_days


def register_listener(listener: DeliveryListener) -> None:
    """Register a callable invoked (on the committing thread) per delivery."""
    if listener not in _listeners:
        _listeners.append(listener)


def unregister_listener(listener: DeliveryListener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


@event.listens_for(Session, "after_commit")
def _dispatch_pending(session: Session) -> None:
    pending: list[Delivery] = session.info.pop(_PENDING_KEY, [])
    for delivery in pending:
        for listener in list(_listeners):
            try:
                listener(delivery)
            except Exception:
                logger.exception("Notification listener failed for user %s", delivery.user_id)


@event.listens_for(Session, "after_rollback")
def _discard_pending(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def notification_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "type": n.notification_type,
        "message": n.message,
        "link": n.link,
        "sender_id": n.sender_id,
        "is_read": n.is_read,
        "created_at": isoformat(n.created_at),
        "expires_at": isoformat(n.expires_at),
    }


# ---------------------------------------------------------------------------
# Creation (called inside other services' sessions)
# ---------------------------------------------------------------------------
def notify(
    session: Session,
    user_id: int,
    notification_type: NotificationType | str,
    message: str,
    *,
    sender_id: int | None = None,
    link: str | None = None,
) -> Notification:
    """Add a notification to *session* and queue it for delivery on commit."""
    ntype = NotificationType(notification_type)
    now = utcnow()
    note = Notification(
        user_id=user_id,
        sender_id=sender_id,
        notification_type=ntype.value,
        message=clean_text(message, MAX_MESSAGE_LENGTH, field="message"),
        link=link,
        is_read=False,
        created_at=now,
        expires_at=now + timedelta(days=_retention_days),
    )
    session.add(note)
    session.flush()

    recipient = session.get(User, user_id)
    email = None
    if recipient is not None and (recipient.settings or {}).get("email_notifications"):
        email = recipient.email

    session.info.setdefault(_PENDING_KEY, []).append(
        Delivery(user_id=user_id, payload=notification_dict(note), email=email)
    )
    return note


# ---------------------------------------------------------------------------
# Inbox operations
# ---------------------------------------------------------------------------
def _visible(user_id: int):
    now = utcnow()
    return (
        Notification.user_id == user_id,
        (Notification.expires_at.is_(None)) | (Notification.expires_at > now),
    )


def list_notifications(
    engine: Engine,
    user_id: int,
    req: PageRequest,
    *,
    unread_only: bool = False,
) -> dict:
    with get_session(engine) as session:
        conditions = list(_visible(user_id))
        if unread_only:
            conditions.append(Notification.is_read.is_(False))
        total = session.scalar(
            select(func.count()).select_from(Notification).where(*conditions)
        ) or 0
        rows = session.scalars(
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {
            "notifications": [notification_dict(n) for n in rows],
            "pagination": req.meta(total),
        }


def unread_count(engine: Engine, user_id: int) -> int:
    with get_session(engine) as session:
        return session.scalar(
            select(func.count())
            .select_from(Notification)
            .where(*_visible(user_id), Notification.is_read.is_(False))
        ) or 0


def mark_read(engine: Engine, user_id: int, notification_id: int) -> dict:
    with get_session(engine) as session:
        note = session.get(Notification, notification_id)
        if note is None or note.user_id != user_id:
            raise not_found("Notification")
        note.is_read = True
        return notification_dict(note)


def mark_all_read(engine: Engine, user_id: int) -> int:
    with get_session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
        return result.rowcount or 0


def delete_notification(engine: Engine, user_id: int, notification_id: int) -> None:
    with get_session(engine) as session:
        note = session.get(Notification, notification_id)
        if note is None or note.user_id != user_id:
            raise not_found("Notification")
        session.delete(note)


def send_system_notification(
    engine: Engine,
    user_id: int,
    message: str,
    *,
    sender_id: int | None = None,
    notification_type: str = NotificationType.SYSTEM.value,
    link: str | None = None,
) -> dict:
    """Create a notification outside any other transaction."""
    try:
        ntype = NotificationType(notification_type)
    except ValueError:
        raise create_error(f"Unknown notification type: {notification_type}", 400)
    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise not_found("User")
        note = notify(session, user_id, ntype, message, sender_id=sender_id, link=link)
        return notification_dict(note)
