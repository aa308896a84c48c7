"""
huddle.api.deps — FastAPI dependency injection
===============================================
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Query, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from huddle.config import HuddleConfig, load_config
from huddle.constants import DEFAULT_PAGE_SIZE, ROLE_ADMIN, utcnow
from huddle.database.engine import create_db_engine
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest, page_request
from huddle.realtime.hub import Hub
from huddle.services import auth_service, billing_service
from huddle.services.email_queue import EmailQueue, NullEmailQueue, build_email_queue

_WEAK_SECRETS = frozenset({
    "huddle-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


# ---------------------------------------------------------------------------
# Process singletons
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> HuddleConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_cache() -> ConfigCache:
    cache = ConfigCache(get_engine())
    cache.load_all()
    return cache


@lru_cache(maxsize=1)
def get_hub() -> Hub:
    return Hub()


@lru_cache(maxsize=1)
def get_email_queue() -> EmailQueue | NullEmailQueue:
    return build_email_queue(get_config())


@lru_cache(maxsize=1)
def get_stripe_client() -> billing_service.StripeClient:
    return billing_service.client_from_env()


def pagination(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
) -> PageRequest:
    """``?page=&page_size=`` clamped to the allowed range."""
    return page_request(page, page_size)


def client_ip(request: Request) -> str | None:
    """Peer address as seen by the server.

    ``X-Forwarded-For`` is only honoured through uvicorn's proxy-header
    handling, for the addresses listed in ``HUDDLE_TRUSTED_PROXIES``.
    """
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def create_access_token(user: dict, minutes: int) -> str:
    payload = {
        "sub": str(user["id"]),
        "username": user["username"],
        "roles": list(user["roles"]),
        "type": "access",
        "exp": utcnow() + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Return the claims of a valid access token, else ``None``."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        return None
    if payload.get("type") != "access":
        return None
    try:
        int(payload.get("sub", ""))
    except (TypeError, ValueError):
        return None
    return payload


# ---------------------------------------------------------------------------
# Request-scoped user
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AuthUser:
    id: int
    username: str
    roles: tuple[str, ...]
    subscription_status: str
    subscription_plan: str | None = None
    trial_started_at: datetime | None = None

    def has_role(self, *roles: str) -> bool:
        """Admins pass every role check."""
        return ROLE_ADMIN in self.roles or any(r in self.roles for r in roles)


def resolve_token(engine: Engine, token: str | None) -> AuthUser | None:
    """Token → live :class:`AuthUser`; ``None`` if anything is off.

    Roles come from the database, so a role change or deactivation takes
    effect on the next request rather than at token expiry.
    """
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    row = auth_service.load_auth_user(engine, int(payload["sub"]))
    if row is None:
        return None
    return AuthUser(
        id=row["id"],
        username=row["username"],
        roles=tuple(row["roles"]),
        subscription_status=row["subscription_status"],
        subscription_plan=row["subscription_plan"],
        trial_started_at=row["trial_started_at"],
    )


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
) -> AuthUser:
    """Validate the bearer token and return the caller. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    user = resolve_token(engine, authorization.split(" ", 1)[1].strip())
    if user is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return user


def require_roles(*roles: str) -> Callable[..., AuthUser]:
    """Dependency factory: 403 unless the caller holds one of *roles*."""

    def _check(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if not user.has_role(*roles):
            raise HTTPException(status.HTTP_403_FORBIDDEN, "Insufficient permissions")
        return user

    return _check


def require_active_subscription(
    user: AuthUser = Depends(get_current_user),
    cfg: HuddleConfig = Depends(get_config),
) -> AuthUser:
    if not billing_service.has_access(
        user.subscription_status, user.trial_started_at, cfg.trial_days,
    ):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Subscription required")
    return user
