"""
huddle.api.rate_limit — Sliding-window mutation throttle
=========================================================

Mutations (POST/PUT/PATCH/DELETE) are limited to
``rate_limit.max_requests`` per ``rate_limit.window_seconds``, keyed by
subject: ``user:<id>`` for authenticated routes and ``ip:<addr>`` for the
register/login endpoints.

State lives in the ``rate_limit_events`` table so limits survive restarts.
Exceeding the limit returns HTTP 429 with a ``Retry-After`` header.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from huddle.api.deps import AuthUser, client_ip, get_config, get_current_user, get_engine
from huddle.config import HuddleConfig
from huddle.constants import ensure_utc, utcnow
from huddle.database.models import RateLimitEvent

logger = logging.getLogger(__name__)

# HTTP methods considered "mutations"
_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class RateLimiter:
    """Sliding-window rate limiter keyed by an opaque subject string."""

    def __init__(self, max_requests: int, window_seconds: int, *, engine: Engine) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _prune(self, session: Session, subject: str) -> None:
        cutoff = utcnow() - timedelta(seconds=self.window_seconds)
        session.execute(
            delete(RateLimitEvent).where(
                RateLimitEvent.subject == subject,
                RateLimitEvent.timestamp < cutoff,
            )
        )

    def check(self, subject: str) -> tuple[bool, dict[str, Any]]:
        """Return ``(allowed, info)``; info has ``remaining``, ``reset`` and ``limit``."""
        now = utcnow()
        with Session(self.engine) as session:
            self._prune(session, subject)
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.subject == subject)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= self.max_requests:
            oldest = ensure_utc(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }
        return True, {
            "remaining": self.max_requests - count,
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def record(self, subject: str) -> dict[str, Any]:
        with Session(self.engine) as session:
            self._prune(session, subject)
            session.add(RateLimitEvent(subject=subject, timestamp=utcnow()))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(RateLimitEvent)
                .where(RateLimitEvent.subject == subject)
            ) or 0
            session.commit()
        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def reset(self, subject: str | None = None) -> None:
        """Clear rate limit state. If subject is None, clear all."""
        with Session(self.engine) as session:
            if subject is None:
                session.execute(delete(RateLimitEvent))
            else:
                session.execute(delete(RateLimitEvent).where(RateLimitEvent.subject == subject))
            session.commit()


def get_rate_limiter(
    engine: Engine = Depends(get_engine),
    cfg: HuddleConfig = Depends(get_config),
) -> RateLimiter:
    return RateLimiter(cfg.rate_limit_max_requests, cfg.rate_limit_window_seconds, engine=engine)


async def _enforce(limiter: RateLimiter, subject: str) -> None:
    allowed, info = await asyncio.to_thread(limiter.check, subject)
    if not allowed:
        logger.warning(
            "Rate limit exceeded for %s: %d requests per %ds",
            subject, limiter.max_requests, limiter.window_seconds,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": (
                    f"Rate limit exceeded: {limiter.max_requests} requests per "
                    f"{limiter.window_seconds} seconds."
                ),
                "retry_after": info["reset"],
            },
            headers={"Retry-After": str(info["reset"])},
        )
    await asyncio.to_thread(limiter.record, subject)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------
async def rate_limited_user(
    request: Request,
    user: AuthUser = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> AuthUser:
    """Authenticate *and* throttle mutations per user; reads pass through."""
    if request.method in _MUTATION_METHODS:
        await _enforce(limiter, f"user:{user.id}")
    return user


async def rate_limited_ip(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Throttle anonymous endpoints (register, login) per client IP."""
    if request.method in _MUTATION_METHODS:
        await _enforce(limiter, f"ip:{client_ip(request) or 'unknown'}")
