"""
huddle.services.retention_service — Periodic cleanup of expired rows
=====================================================================

Removes rows that have outlived their usefulness:

- notifications past ``expires_at``
- badges whose ``expires_at`` has passed
- refresh tokens that are revoked or expired
- rate-limit events older than a day

Deletion is batched so long-running purges never hold row locks for
long.  The API lifespan runs :func:`run_retention_cleanup` every
``retention_interval_minutes``; admins can also trigger it by hand.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, delete, func, or_, select

from huddle.constants import isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import Badge, Notification, RateLimitEvent, RefreshToken

logger = logging.getLogger(__name__)

# How many rows to delete in each batch
BATCH_SIZE = 5_000

RATE_LIMIT_HORIZON = timedelta(days=1)


def _batch_delete(engine: Engine, model, *conditions) -> int:
    deleted = 0
    while True:
        with get_session(engine) as session:
            ids = session.scalars(
                select(model.id).where(*conditions).limit(BATCH_SIZE)
            ).all()
            if not ids:
                break
            result = session.execute(delete(model).where(model.id.in_(ids)))
            deleted += result.rowcount or 0
        if len(ids) < BATCH_SIZE:
            break
    return deleted


def run_retention_cleanup(engine: Engine, now: datetime | None = None) -> dict[str, int]:
    """Purge every expired class of row; returns per-table counts."""
    now = now or utcnow()

    summary = {
        "notifications_deleted": _batch_delete(
            engine, Notification,
            Notification.expires_at.is_not(None), Notification.expires_at <= now,
        ),
        "badges_deleted": _batch_delete(
            engine, Badge,
            Badge.expires_at.is_not(None), Badge.expires_at <= now,
        ),
        "refresh_tokens_deleted": _batch_delete(
            engine, RefreshToken,
            or_(RefreshToken.revoked_at.is_not(None), RefreshToken.expires_at <= now),
        ),
        "rate_limit_events_deleted": _batch_delete(
            engine, RateLimitEvent,
            RateLimitEvent.timestamp < now - RATE_LIMIT_HORIZON,
        ),
    }

    if any(summary.values()):
        logger.info(
            "Retention cleanup: %d notifications, %d badges, %d refresh tokens, %d rate-limit events",
            summary["notifications_deleted"],
            summary["badges_deleted"],
            summary["refresh_tokens_deleted"],
            summary["rate_limit_events_deleted"],
        )
    return summary


def get_retention_stats(engine: Engine) -> dict:
    """Sizes of the tables the cleanup job manages."""
    with get_session(engine) as session:
        oldest = session.scalar(select(func.min(Notification.created_at)))
        return {
            "notifications": session.scalar(select(func.count()).select_from(Notification)) or 0,
            "oldest_notification": isoformat(oldest),
            "refresh_tokens": session.scalar(select(func.count()).select_from(RefreshToken)) or 0,
            "rate_limit_events": session.scalar(select(func.count()).select_from(RateLimitEvent)) or 0,
        }
