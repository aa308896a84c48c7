"""
huddle.api.routes.chats — Chats, messages, reactions and read receipts
=======================================================================

Every mutation here broadcasts the same server event the socket handlers
emit, so REST clients and socket clients see one stream.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_engine, get_hub, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.pagination import PageRequest
from huddle.realtime.hub import Hub, chat_room
from huddle.services import chat_service

router = APIRouter(prefix="/chats", tags=["chats"])


class PrivateChatBody(BaseModel):
    user_id: int


class MessageBody(BaseModel):
    content: str


class ReactionBody(BaseModel):
    reaction: str


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------
@router.get("")
def list_chats(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(chat_service.list_chats(engine, user.id))


@router.post("/private")
def open_private_chat(
    body: PrivateChatBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    chat = chat_service.open_private_chat(engine, user.id, body.user_id)
    for uid in (user.id, body.user_id):
        hub.call_threadsafe(hub.join_user_to_room, uid, chat_room(chat["id"]))
    return ok(chat)


@router.get("/{chat_id}")
def get_chat(
    chat_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(chat_service.get_chat(engine, user.id, chat_id))


@router.post("/{chat_id}/read")
def mark_read(
    chat_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    result = chat_service.mark_read(engine, user.id, chat_id)
    hub.emit_threadsafe(chat_room(chat_id), "messageRead", {
        "chatId": chat_id, "userId": user.id, "messageIds": result["message_ids"],
    })
    return ok(result, "Chat marked as read")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
@router.get("/{chat_id}/messages")
def list_messages(
    chat_id: int,
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(chat_service.list_messages(engine, user.id, chat_id, req))


@router.post("/{chat_id}/messages", status_code=201)
def send_message(
    chat_id: int,
    body: MessageBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    message = chat_service.send_message(engine, user.id, chat_id, body.content)
    hub.emit_threadsafe(chat_room(chat_id), "receiveMessage", message)
    return ok(message, "Message sent")


@router.patch("/messages/{message_id}")
def edit_message(
    message_id: int,
    body: MessageBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    message = chat_service.edit_message(engine, user.id, message_id, body.content)
    hub.emit_threadsafe(chat_room(message["chat_id"]), "messageEdited", message)
    return ok(message, "Message edited")


@router.delete("/messages/{message_id}")
def delete_message(
    message_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    result = chat_service.delete_message(engine, user.id, message_id, user.roles)
    hub.emit_threadsafe(chat_room(result["chat_id"]), "messageDeleted", {
        "messageId": result["id"], "chatId": result["chat_id"],
    })
    return ok(result, "Message deleted")


@router.post("/messages/{message_id}/reactions")
def add_reaction(
    message_id: int,
    body: ReactionBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    result = chat_service.add_reaction(engine, user.id, message_id, body.reaction)
    hub.emit_threadsafe(chat_room(result["chat_id"]), "reactionAdded", result)
    return ok(result)


@router.delete("/messages/{message_id}/reactions")
def remove_reaction(
    message_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    hub: Hub = Depends(get_hub),
):
    result = chat_service.remove_reaction(engine, user.id, message_id)
    hub.emit_threadsafe(chat_room(result["chat_id"]), "reactionRemoved", result)
    return ok(result)
