"""
huddle.api.routes.gamification — Streaks, badges, points and leaderboards
==========================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_cache, get_engine, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest
from huddle.services import gamification_service

router = APIRouter(prefix="/gamification", tags=["gamification"])


class ShowcaseBody(BaseModel):
    showcased: bool = True


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------
@router.post("/check-in")
def check_in(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(gamification_service.check_in(engine, user.id, cache), "Checked in")


@router.get("/streak")
def my_streak(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.get_streak(engine, user.id))


@router.get("/users/{user_id}/streak")
def user_streak(
    user_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.get_streak(engine, user_id))


# ---------------------------------------------------------------------------
# Badges
# ---------------------------------------------------------------------------
@router.get("/badges")
def my_badges(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.list_badges(engine, user.id))


@router.get("/users/{user_id}/badges")
def user_badges(
    user_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.list_badges(engine, user_id))


@router.patch("/badges/{badge_id}/showcase")
def showcase(
    badge_id: int,
    body: ShowcaseBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.set_showcase(engine, user.id, badge_id, body.showcased))


# ---------------------------------------------------------------------------
# Points & leaderboards
# ---------------------------------------------------------------------------
@router.get("/points/history")
def points_history(
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.points_history(engine, user.id, req))


@router.get("/leaderboard/points")
def points_leaderboard(
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.points_leaderboard(engine, req))


@router.get("/leaderboard/streaks")
def streak_leaderboard(
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(gamification_service.streak_leaderboard(engine, req))
