"""
huddle.services.auth_service — Accounts, passwords and refresh tokens
======================================================================

Passwords are hashed with bcrypt.  Refresh tokens are opaque random
strings; only their SHA-256 digest is stored, and every refresh rotates
the token (the presented one is revoked).  Access tokens (JWT) are minted
by :mod:`huddle.api.deps` from the dict this module returns.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import secrets
from datetime import timedelta

import bcrypt
from sqlalchemy import Engine, func, or_, select, update
from sqlalchemy.orm import Session

from huddle.constants import ROLE_USER, ensure_utc, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    ActivityLog,
    RefreshToken,
    Streak,
    SubscriptionStatus,
    User,
)
from huddle.errors import create_error

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,30}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8

INVALID_CREDENTIALS = "Invalid credentials"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    return bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    ).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise create_error(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 400
        )


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def auth_user_dict(user: User) -> dict:
    """Claims needed to mint an access token."""
    return {
        "id": user.id,
        "username": user.username,
        "roles": list(user.roles or [ROLE_USER]),
    }


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------
def register(engine: Engine, username: str, email: str, password: str) -> dict:
    """Create an account on a fresh trial.

    Raises 400 for malformed input and 409 when the username or email is
    already taken (usernames compare case-insensitively).
    """
    username = (username or "").strip()
    email = (email or "").strip().lower()
    if not USERNAME_RE.match(username):
        raise create_error(
            "Username must be 3-30 characters of letters, digits, '_', '.' or '-'", 400
        )
    if not EMAIL_RE.match(email):
        raise create_error("A valid email address is required", 400)
    validate_password(password)

    with get_session(engine) as session:
        clash = session.scalar(
            select(User).where(
                or_(func.lower(User.username) == username.lower(), User.email == email)
            )
        )
        if clash is not None:
            field = "Email" if clash.email == email else "Username"
            raise create_error(f"{field} is already registered", 409)

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            roles=[ROLE_USER],
            settings={},
            subscription_status=SubscriptionStatus.TRIAL.value,
            trial_started_at=utcnow(),
        )
        session.add(user)
        session.flush()
        session.add(Streak(user_id=user.id, streak_count=0, longest_streak=0))
        session.add(ActivityLog(user_id=user.id, action="registered"))
        logger.info("Registered user %s (%s)", user.id, username)
        return auth_user_dict(user)


def authenticate(engine: Engine, identifier: str, password: str) -> dict:
    """Resolve *identifier* (username or email) and check *password*.

    Unknown users, inactive users and wrong passwords all raise the same
    401 so the response doesn't reveal which accounts exist.
    """
    ident = (identifier or "").strip()
    with get_session(engine) as session:
        user = session.scalar(
            select(User).where(
                or_(
                    func.lower(User.username) == ident.lower(),
                    User.email == ident.lower(),
                )
            )
        )
        if user is None or not user.is_active or not verify_password(password or "", user.password_hash):
            logger.warning("Failed login for %r", ident)
            raise create_error(INVALID_CREDENTIALS, 401)
        user.last_seen_at = utcnow()
        return auth_user_dict(user)


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------
def _issue(session: Session, user_id: int, lifetime_days: int) -> str:
    token = secrets.token_urlsafe(48)
    session.add(RefreshToken(
        user_id=user_id,
        token_hash=_token_digest(token),
        expires_at=utcnow() + timedelta(days=lifetime_days),
    ))
    return token


def issue_refresh_token(engine: Engine, user_id: int, lifetime_days: int) -> str:
    with get_session(engine) as session:
        return _issue(session, user_id, lifetime_days)


def rotate_refresh_token(engine: Engine, token: str, lifetime_days: int) -> tuple[dict, str]:
    """Revoke *token* and return ``(auth_user, new_refresh_token)``."""
    with get_session(engine) as session:
        row = session.scalar(
            select(RefreshToken).where(RefreshToken.token_hash == _token_digest(token or ""))
        )
        if (
            row is None
            or row.revoked_at is not None
            or ensure_utc(row.expires_at) <= utcnow()
        ):
            raise create_error("Invalid or expired refresh token", 401)
        user = session.get(User, row.user_id)
        if user is None or not user.is_active:
            raise create_error("Invalid or expired refresh token", 401)
        row.revoked_at = utcnow()
        new_token = _issue(session, user.id, lifetime_days)
        return auth_user_dict(user), new_token


def revoke_refresh_token(engine: Engine, token: str) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            update(RefreshToken)
            .where(
                RefreshToken.token_hash == _token_digest(token or ""),
                RefreshToken.revoked_at.is_(None),
            )
            .values(revoked_at=utcnow())
        )
        return bool(result.rowcount)


def revoke_all_for_user(session: Session, user_id: int) -> None:
    session.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=utcnow())
    )


def load_auth_user(engine: Engine, user_id: int) -> dict | None:
    """Return the current claims for an active user, else ``None``."""
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return {
            **auth_user_dict(user),
            "subscription_status": user.subscription_status,
            "subscription_plan": user.subscription_plan,
            "trial_started_at": user.trial_started_at,
        }
