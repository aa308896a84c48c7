"""
huddle.api.routes.friends — Friend requests, friendships and follows
=====================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_cache, get_engine, get_hub, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest
from huddle.realtime.hub import Hub, chat_room
from huddle.services import friend_service

router = APIRouter(prefix="/friends", tags=["friends"])


class FriendRequestBody(BaseModel):
    user_id: int


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------
@router.post("/requests", status_code=201)
def send_request(
    body: FriendRequestBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.send_request(engine, user.id, body.user_id), "Friend request sent")


@router.get("/requests")
def pending_requests(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.pending_requests(engine, user.id))


@router.post("/requests/{request_id}/accept")
def accept_request(
    request_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
    hub: Hub = Depends(get_hub),
):
    data = friend_service.accept_request(engine, user.id, request_id, cache)
    room = chat_room(data["chat_id"])
    for uid in (data["sender_id"], data["receiver_id"]):
        hub.call_threadsafe(hub.join_user_to_room, uid, room)
    return ok(data, "Friend request accepted")


@router.post("/requests/{request_id}/reject")
def reject_request(
    request_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.reject_request(engine, user.id, request_id), "Friend request rejected")


@router.delete("/requests/{request_id}")
def cancel_request(
    request_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    friend_service.cancel_request(engine, user.id, request_id)
    return ok(None, "Friend request cancelled")


# ---------------------------------------------------------------------------
# Friendships
# ---------------------------------------------------------------------------
@router.get("")
def list_friends(
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.list_friends(engine, user.id, req))


@router.delete("/{friend_id}")
def remove_friend(
    friend_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    friend_service.remove_friend(engine, user.id, friend_id)
    return ok(None, "Friend removed")


# ---------------------------------------------------------------------------
# Follows
# ---------------------------------------------------------------------------
@router.post("/follow/{user_id}")
def follow(
    user_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.follow(engine, user.id, user_id))


@router.delete("/follow/{user_id}")
def unfollow(
    user_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.unfollow(engine, user.id, user_id))


@router.get("/{user_id}/followers")
def followers(
    user_id: int,
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.list_followers(engine, user_id, req))


@router.get("/{user_id}/following")
def following(
    user_id: int,
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(friend_service.list_following(engine, user_id, req))
