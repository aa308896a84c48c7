"""
huddle.api.routes.groups — Groups, membership and invites
==========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_engine, get_hub, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.pagination import PageRequest
from huddle.realtime.hub import Hub, chat_room
from huddle.services import group_service

router = APIRouter(prefix="/groups", tags=["groups"])


class GroupCreate(BaseModel):
    name: str
    description: str | None = None
    is_private: bool = False
    restricted_role: str | None = None


class GroupUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    is_private: bool | None = None


class InviteBody(BaseModel):
    user_id: int


@router.post("", status_code=201)
def create_group(
    body: GroupCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    group = group_service.create_group(
        engine, user.id, body.name, body.description,
        is_private=body.is_private,
        restricted_role=body.restricted_role,
        creator_roles=user.roles,
    )
    if group.get("chat_id"):
        hub.call_threadsafe(hub.join_user_to_room, user.id, chat_room(group["chat_id"]))
    return ok(group, "Group created")


@router.get("")
def list_groups(
    search: str | None = Query(None),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(group_service.list_groups(engine, req, search=search))


@router.get("/mine")
def my_groups(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(group_service.my_groups(engine, user.id))


@router.get("/{group_id}")
def get_group(
    group_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(group_service.get_group(engine, user.id, group_id))


@router.patch("/{group_id}")
def update_group(
    group_id: int,
    body: GroupUpdate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    changes = body.model_dump(exclude_unset=True)
    return ok(group_service.update_group(engine, user.id, group_id, changes), "Group updated")


@router.delete("/{group_id}")
def delete_group(
    group_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    group_service.delete_group(engine, user.id, group_id, user.roles)
    return ok(None, "Group deleted")


@router.post("/{group_id}/join")
def join_group(
    group_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    data = group_service.join_group(engine, user.id, group_id, user.roles)
    if data.get("chat_id"):
        hub.call_threadsafe(hub.join_user_to_room, user.id, chat_room(data["chat_id"]))
    return ok(data, "Joined group")


@router.post("/{group_id}/leave")
def leave_group(
    group_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    data = group_service.leave_group(engine, user.id, group_id)
    if data.get("chat_id"):
        hub.call_threadsafe(hub.leave_user_from_room, user.id, chat_room(data["chat_id"]))
    return ok(data, "Left group")


@router.post("/{group_id}/invite", status_code=201)
def invite(
    group_id: int,
    body: InviteBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(group_service.invite_user(engine, user.id, group_id, body.user_id), "Invitation sent")


@router.get("/{group_id}/members")
def members(
    group_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(group_service.list_members(engine, user.id, group_id))
