"""
huddle.realtime.handlers — Client socket events
================================================

Each client event is a persistence call (through ``run_db``) followed by
a broadcast to the affected chat room.  Failures never close the socket:
the caller alone receives an ``error`` frame naming the event that failed.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine

from huddle.database.engine import run_db
from huddle.engine.pagination import page_request
from huddle.errors import ServiceError, create_error, forbidden
from huddle.realtime.hub import Hub, SocketLike, chat_room
from huddle.services import chat_service, notification_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SocketContext:
    hub: Hub
    engine: Engine
    socket: SocketLike
    user_id: int
    username: str
    roles: tuple[str, ...] = ()


Handler = Callable[[SocketContext, dict], Awaitable[None]]


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise create_error(f"{key} is required", 400) from None


def _require_in_room(ctx: SocketContext, chat_id: int) -> str:
    room = chat_room(chat_id)
    if room not in ctx.hub.rooms_of(ctx.socket):
        raise forbidden("Join the chat first")
    return room


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------
async def join_room(ctx: SocketContext, data: dict) -> None:
    chat_id = _require_int(data, "chatId")
    if not await run_db(chat_service.is_participant, ctx.engine, chat_id, ctx.user_id):
        raise forbidden("You are not a participant of this chat")
    room = chat_room(chat_id)
    ctx.hub.join(ctx.socket, room)
    await ctx.hub.emit(room, "roomMessage", {
        "chatId": chat_id, "message": f"{ctx.username} has joined.",
    })


async def leave_room(ctx: SocketContext, data: dict) -> None:
    chat_id = _require_int(data, "chatId")
    room = chat_room(chat_id)
    ctx.hub.leave(ctx.socket, room)
    await ctx.hub.emit(room, "roomMessage", {
        "chatId": chat_id, "message": f"{ctx.username} has left.",
    })


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
async def send_message(ctx: SocketContext, data: dict) -> None:
    chat_id = _require_int(data, "chatId")
    message = await run_db(
        chat_service.send_message, ctx.engine, ctx.user_id, chat_id, data.get("content", ""),
    )
    room = chat_room(chat_id)
    ctx.hub.join(ctx.socket, room)
    await ctx.hub.emit(room, "receiveMessage", message)


async def edit_message(ctx: SocketContext, data: dict) -> None:
    message_id = _require_int(data, "messageId")
    message = await run_db(
        chat_service.edit_message, ctx.engine, ctx.user_id, message_id, data.get("content", ""),
    )
    await ctx.hub.emit(chat_room(message["chat_id"]), "messageEdited", message)


async def delete_message(ctx: SocketContext, data: dict) -> None:
    message_id = _require_int(data, "messageId")
    result = await run_db(
        chat_service.delete_message, ctx.engine, ctx.user_id, message_id, ctx.roles,
    )
    await ctx.hub.emit(chat_room(result["chat_id"]), "messageDeleted", {
        "messageId": result["id"], "chatId": result["chat_id"],
    })


async def add_reaction(ctx: SocketContext, data: dict) -> None:
    message_id = _require_int(data, "messageId")
    result = await run_db(
        chat_service.add_reaction, ctx.engine, ctx.user_id, message_id, data.get("reaction", ""),
    )
    await ctx.hub.emit(chat_room(result["chat_id"]), "reactionAdded", result)


async def remove_reaction(ctx: SocketContext, data: dict) -> None:
    message_id = _require_int(data, "messageId")
    result = await run_db(chat_service.remove_reaction, ctx.engine, ctx.user_id, message_id)
    await ctx.hub.emit(chat_room(result["chat_id"]), "reactionRemoved", result)


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------
async def typing(ctx: SocketContext, data: dict) -> None:
    chat_id = _require_int(data, "chatId")
    room = _require_in_room(ctx, chat_id)
    await ctx.hub.emit(room, "userTyping", {
        "chatId": chat_id, "userId": ctx.user_id, "username": ctx.username,
    }, exclude=ctx.socket)


async def stop_typing(ctx: SocketContext, data: dict) -> None:
    chat_id = _require_int(data, "chatId")
    room = _require_in_room(ctx, chat_id)
    await ctx.hub.emit(room, "userStoppedTyping", {
        "chatId": chat_id, "userId": ctx.user_id,
    }, exclude=ctx.socket)


async def mark_as_read(ctx: SocketContext, data: dict) -> None:
    chat_id = _require_int(data, "chatId")
    result = await run_db(chat_service.mark_read, ctx.engine, ctx.user_id, chat_id)
    await ctx.hub.emit(chat_room(chat_id), "messageRead", {
        "chatId": chat_id, "userId": ctx.user_id, "messageIds": result["message_ids"],
    })


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
async def fetch_notifications(ctx: SocketContext, data: dict) -> None:
    req = page_request(data.get("page"), data.get("pageSize"))
    result = await run_db(
        notification_service.list_notifications,
        ctx.engine, ctx.user_id, req,
        unread_only=bool(data.get("unreadOnly")),
    )
    await ctx.hub.send(ctx.socket, "notifications", result)


HANDLERS: dict[str, Handler] = {
    "joinRoom": join_room,
    "leaveRoom": leave_room,
    "sendMessage": send_message,
    "editMessage": edit_message,
    "deleteMessage": delete_message,
    "addReaction": add_reaction,
    "removeReaction": remove_reaction,
    "typing": typing,
    "stopTyping": stop_typing,
    "markAsRead": mark_as_read,
    "fetchNotifications": fetch_notifications,
}


async def dispatch(ctx: SocketContext, raw: Any) -> None:
    """Route one inbound frame; every failure is reported to the caller only."""
    if not isinstance(raw, dict) or not isinstance(raw.get("event"), str):
        await ctx.hub.send(ctx.socket, "error", {
            "event": None, "message": "Frames must be {\"event\": ..., \"data\": {...}}", "status": 400,
        })
        return

    name = raw["event"]
    data = raw.get("data") or {}
    handler = HANDLERS.get(name)
    if handler is None:
        await ctx.hub.send(ctx.socket, "error", {
            "event": name, "message": f"Unknown event: {name}", "status": 400,
        })
        return
    if not isinstance(data, dict):
        await ctx.hub.send(ctx.socket, "error", {
            "event": name, "message": "data must be an object", "status": 400,
        })
        return

    try:
        await handler(ctx, data)
    except ServiceError as exc:
        logger.debug("Socket event %s from user %s failed: %s", name, ctx.user_id, exc.message)
        await ctx.hub.send(ctx.socket, "error", {
            "event": name, "message": exc.message, "status": exc.status_code,
        })
    except Exception:
        logger.exception("Socket event %s from user %s crashed", name, ctx.user_id)
        await ctx.hub.send(ctx.socket, "error", {
            "event": name, "message": "Internal server error", "status": 500,
        })
