"""
huddle.api.routes.challenges — Time-boxed community challenges
===============================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_cache, get_engine, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.database.models import Visibility
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest
from huddle.services import challenge_service

router = APIRouter(prefix="/challenges", tags=["challenges"])


class ChallengeCreate(BaseModel):
    title: str
    goal: str
    start_date: str
    end_date: str
    description: str | None = None
    visibility: str = Visibility.PUBLIC.value
    rewards: list[dict[str, Any]] = Field(default_factory=list)


class ChallengeUpdate(BaseModel):
    title: str | None = None
    goal: str | None = None
    description: str | None = None
    end_date: str | None = None
    rewards: list[dict[str, Any]] | None = None


class ProgressBody(BaseModel):
    progress: int


@router.post("", status_code=201)
def create_challenge(
    body: ChallengeCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    challenge = challenge_service.create_challenge(
        engine, user.id, body.title, body.goal, body.start_date, body.end_date,
        description=body.description,
        visibility=body.visibility,
        rewards=body.rewards,
    )
    return ok(challenge, "Challenge created")


@router.get("")
def list_challenges(
    status: str | None = Query(None),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(challenge_service.list_challenges(engine, user.id, req, status=status))


@router.get("/{challenge_id}")
def get_challenge(
    challenge_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(challenge_service.get_challenge(engine, user.id, challenge_id))


@router.patch("/{challenge_id}")
def update_challenge(
    challenge_id: int,
    body: ChallengeUpdate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    changes = body.model_dump(exclude_unset=True)
    return ok(challenge_service.update_challenge(engine, user.id, challenge_id, changes), "Challenge updated")


@router.post("/{challenge_id}/cancel")
def cancel_challenge(
    challenge_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(challenge_service.cancel_challenge(engine, user.id, challenge_id), "Challenge cancelled")


@router.post("/{challenge_id}/join")
def join_challenge(
    challenge_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(challenge_service.join_challenge(engine, user.id, challenge_id), "Joined challenge")


@router.post("/{challenge_id}/leave")
def leave_challenge(
    challenge_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(challenge_service.leave_challenge(engine, user.id, challenge_id), "Left challenge")


@router.patch("/{challenge_id}/progress")
def update_progress(
    challenge_id: int,
    body: ProgressBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(challenge_service.update_progress(engine, user.id, challenge_id, body.progress, cache))


@router.get("/{challenge_id}/leaderboard")
def leaderboard(
    challenge_id: int,
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(challenge_service.challenge_leaderboard(engine, user.id, challenge_id, req))
