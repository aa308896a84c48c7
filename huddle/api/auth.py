"""
huddle.api.auth — Password login + JWT issuance
================================================
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import (
    AuthUser,
    create_access_token,
    get_config,
    get_current_user,
    get_engine,
)
from huddle.api.rate_limit import rate_limited_ip
from huddle.api.responses import ok
from huddle.config import HuddleConfig
from huddle.services import auth_service, user_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterBody(BaseModel):
    username: str
    email: str
    password: str


class LoginBody(BaseModel):
    identifier: str
    password: str


class RefreshBody(BaseModel):
    refresh_token: str


def _token_pair(engine: Engine, cfg: HuddleConfig, user: dict) -> dict:
    return {
        "user": user,
        "access_token": create_access_token(user, cfg.access_token_minutes),
        "refresh_token": auth_service.issue_refresh_token(engine, user["id"], cfg.refresh_token_days),
        "token_type": "bearer",
        "expires_in": cfg.access_token_minutes * 60,
    }


@router.post("/register", status_code=201, dependencies=[Depends(rate_limited_ip)])
def register(
    body: RegisterBody,
    engine: Engine = Depends(get_engine),
    cfg: HuddleConfig = Depends(get_config),
):
    user = auth_service.register(engine, body.username, body.email, body.password)
    return ok(_token_pair(engine, cfg, user), "Registered")


@router.post("/login", dependencies=[Depends(rate_limited_ip)])
def login(
    body: LoginBody,
    engine: Engine = Depends(get_engine),
    cfg: HuddleConfig = Depends(get_config),
):
    user = auth_service.authenticate(engine, body.identifier, body.password)
    logger.info("User %s logged in", user["id"])
    return ok(_token_pair(engine, cfg, user), "Logged in")


@router.post("/refresh")
def refresh(
    body: RefreshBody,
    engine: Engine = Depends(get_engine),
    cfg: HuddleConfig = Depends(get_config),
):
    user, new_refresh = auth_service.rotate_refresh_token(
        engine, body.refresh_token, cfg.refresh_token_days,
    )
    return ok({
        "user": user,
        "access_token": create_access_token(user, cfg.access_token_minutes),
        "refresh_token": new_refresh,
        "token_type": "bearer",
        "expires_in": cfg.access_token_minutes * 60,
    }, "Token refreshed")


@router.post("/logout")
def logout(body: RefreshBody, engine: Engine = Depends(get_engine)):
    auth_service.revoke_refresh_token(engine, body.refresh_token)
    return ok(None, "Logged out")


@router.get("/me")
def me(user: AuthUser = Depends(get_current_user), engine: Engine = Depends(get_engine)):
    """Return the caller's own full profile."""
    return ok(user_service.get_profile(engine, user.id, user.id))
