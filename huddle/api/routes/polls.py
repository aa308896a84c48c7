"""
huddle.api.routes.polls — Group polls
======================================

Poll changes are also pushed to the group's chat room so open clients
refresh the tally without polling.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_engine, get_hub
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.realtime.hub import Hub, chat_room
from huddle.services import poll_service

router = APIRouter(tags=["polls"])


class PollCreate(BaseModel):
    question: str
    options: list[str]
    expires_at: datetime | None = None


class VoteBody(BaseModel):
    option_id: int


def _broadcast(hub: Hub, poll: dict, event: str) -> None:
    if poll.get("chat_id"):
        hub.emit_threadsafe(chat_room(poll["chat_id"]), event, poll)


@router.get("/groups/{group_id}/polls")
def list_polls(
    group_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(poll_service.list_polls(engine, user.id, group_id))


@router.post("/groups/{group_id}/polls", status_code=201)
def create_poll(
    group_id: int,
    body: PollCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    poll = poll_service.create_poll(
        engine, user.id, group_id, body.question, body.options, body.expires_at,
    )
    _broadcast(hub, poll, "pollCreated")
    return ok(poll, "Poll created")


@router.get("/polls/{poll_id}")
def get_poll(
    poll_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(poll_service.get_results(engine, user.id, poll_id))


@router.post("/polls/{poll_id}/vote")
def vote(
    poll_id: int,
    body: VoteBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    poll = poll_service.vote(engine, user.id, poll_id, body.option_id)
    # my_vote is per viewer
    _broadcast(hub, {**poll, "my_vote": None}, "pollUpdated")
    return ok(poll, "Vote recorded")


@router.delete("/polls/{poll_id}")
def delete_poll(
    poll_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    result = poll_service.delete_poll(engine, user.id, poll_id)
    _broadcast(hub, result, "pollDeleted")
    return ok(None, "Poll deleted")
