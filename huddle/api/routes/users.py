"""
huddle.api.routes.users — Profiles, search and account management
==================================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_engine, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.pagination import PageRequest
from huddle.services import user_service

router = APIRouter(prefix="/users", tags=["users"])


class ProfileUpdate(BaseModel):
    display_name: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    settings: dict[str, Any] | None = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


@router.get("/search")
def search_users(
    q: str = Query(..., min_length=1),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(user_service.search_users(engine, q, req))


@router.patch("/me")
def update_me(
    body: ProfileUpdate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    changes = body.model_dump(exclude_unset=True)
    return ok(user_service.update_profile(engine, user.id, changes), "Profile updated")


@router.post("/me/password")
def change_password(
    body: PasswordChange,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    user_service.change_password(engine, user.id, body.current_password, body.new_password)
    return ok(None, "Password changed; please sign in again")


@router.delete("/me")
def delete_me(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    user_service.deactivate_account(engine, user.id)
    return ok(None, "Account deactivated")


@router.get("/{user_id}")
def get_profile(
    user_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(user_service.get_profile(engine, user.id, user_id))


@router.get("/{user_id}/activity")
def activity(
    user_id: int,
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(user_service.activity_feed(engine, user_id, req))
