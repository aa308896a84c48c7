"""
huddle.api.routes.rewards — Reward catalogue and redemption
============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_cache, get_engine, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest
from huddle.services import reward_service

router = APIRouter(prefix="/rewards", tags=["rewards"])


@router.get("")
def list_rewards(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(reward_service.list_rewards(engine))


@router.get("/redemptions")
def my_redemptions(
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(reward_service.my_redemptions(engine, user.id, req))


@router.get("/{reward_id}")
def get_reward(
    reward_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(reward_service.get_reward(engine, reward_id))


@router.post("/{reward_id}/redeem", status_code=201)
def redeem(
    reward_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(reward_service.redeem(engine, user.id, reward_id, cache), "Reward redeemed")
