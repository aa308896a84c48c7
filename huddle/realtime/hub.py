"""
huddle.realtime.hub — Room registry and broadcast
==================================================

Every socket sits in its personal room (``user:<id>``) plus the room of
each chat it participates in (``chat:<id>``).  Frames are JSON objects
``{"event": <name>, "data": <payload>}``.

The hub lives on the event loop.  Service code running on worker threads
(sync routes, ``run_db`` calls, commit listeners) reaches it through
:meth:`Hub.emit_threadsafe`, which schedules the broadcast on the loop
captured by :meth:`Hub.bind_loop`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

from huddle.services.notification_service import Delivery

logger = logging.getLogger(__name__)


class SocketLike(Protocol):
    async def send_json(self, data: Any) -> None: ...


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def chat_room(chat_id: int) -> str:
    return f"chat:{chat_id}"


def frame(event: str, data: Any) -> dict:
    return {"event": event, "data": data}


class Hub:
    def __init__(self) -> None:
        self._rooms: dict[str, set[SocketLike]] = defaultdict(set)
        self._memberships: dict[SocketLike, set[str]] = {}
        self._users: dict[SocketLike, int] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    # -------------------------------------------------------------------
    # Loop binding
    # -------------------------------------------------------------------
    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    # -------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------
    def connect(self, socket: SocketLike, user_id: int) -> None:
        self._users[socket] = user_id
        self._memberships[socket] = set()
        self.join(socket, user_room(user_id))

    def disconnect(self, socket: SocketLike) -> None:
        for room in self._memberships.pop(socket, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(socket)
            if not members:
                del self._rooms[room]
        self._users.pop(socket, None)

    def join(self, socket: SocketLike, room: str) -> None:
        if socket not in self._memberships:
            return
        self._rooms[room].add(socket)
        self._memberships[socket].add(room)

    def leave(self, socket: SocketLike, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(socket)
            if not members:
                del self._rooms[room]
        self._memberships.get(socket, set()).discard(room)

    def join_user_to_room(self, user_id: int, room: str) -> None:
        """Add every open socket of *user_id* to *room*."""
        for socket, uid in list(self._users.items()):
            if uid == user_id:
                self.join(socket, room)

    def leave_user_from_room(self, user_id: int, room: str) -> None:
        for socket, uid in list(self._users.items()):
            if uid == user_id:
                self.leave(socket, room)

    def rooms_of(self, socket: SocketLike) -> set[str]:
        return set(self._memberships.get(socket, set()))

    def members(self, room: str) -> set[SocketLike]:
        return set(self._rooms.get(room, set()))

    def user_of(self, socket: SocketLike) -> int | None:
        return self._users.get(socket)

    @property
    def connection_count(self) -> int:
        return len(self._users)

    @property
    def online_users(self) -> int:
        return len(set(self._users.values()))

    # -------------------------------------------------------------------
    # Sending
    # -------------------------------------------------------------------
    async def send(self, socket: SocketLike, event: str, data: Any) -> bool:
        try:
            await socket.send_json(frame(event, data))
        except Exception as exc:
            logger.debug("Dropping socket of user %s after send failure: %s", self._users.get(socket), exc)
            self.disconnect(socket)
            return False
        return True

    async def emit(
        self,
        room: str,
        event: str,
        data: Any,
        *,
        exclude: SocketLike | None = None,
    ) -> int:
        """Send to everyone in *room* (minus *exclude*); returns deliveries."""
        delivered = 0
        for socket in self.members(room):
            if socket is exclude:
                continue
            if await self.send(socket, event, data):
                delivered += 1
        return delivered

    def emit_threadsafe(self, room: str, event: str, data: Any) -> None:
        """Schedule :meth:`emit` from any thread; dropped if no loop is bound."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No event loop bound; dropping %s for %s", event, room)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.create_task(self.emit(room, event, data))
        else:
            asyncio.run_coroutine_threadsafe(self.emit(room, event, data), loop)

    def call_threadsafe(self, fn, *args) -> None:
        """Run a membership change on the loop thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(fn, *args)

    def on_delivery(self, delivery: Delivery) -> None:
        """Notification listener: push to the recipient's personal room."""
        self.emit_threadsafe(user_room(delivery.user_id), "newNotification", delivery.payload)
