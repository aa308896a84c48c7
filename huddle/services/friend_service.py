"""
huddle.services.friend_service — Friend requests, friendships and follows
==========================================================================

Friendships are symmetric and stored as two rows (one per direction).
Accepting a request writes both rows, opens (or reuses) the private chat
between the pair and notifies both sides.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import Engine, and_, delete, func, or_, select

from huddle.constants import isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    Follow,
    FriendRequest,
    Friendship,
    NotificationType,
    RequestStatus,
    User,
)
from huddle.engine.events import Action, GamificationEvent
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, forbidden, not_found
from huddle.services import chat_service
from huddle.services.gamification_service import apply_event
from huddle.services.notification_service import notify
from huddle.services.user_service import get_active_user, user_summary

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


def request_dict(req: FriendRequest, sender: User | None = None, receiver: User | None = None) -> dict:
    data = {
        "id": req.id,
        "sender_id": req.sender_id,
        "receiver_id": req.receiver_id,
        "status": req.status,
        "created_at": isoformat(req.created_at),
        "responded_at": isoformat(req.responded_at),
    }
    if sender is not None:
        data["sender"] = user_summary(sender)
    if receiver is not None:
        data["receiver"] = user_summary(receiver)
    return data


def are_friends(session, user_id: int, other_id: int) -> bool:
    return session.get(Friendship, (user_id, other_id)) is not None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------
def send_request(engine: Engine, sender_id: int, receiver_id: int) -> dict:
    if sender_id == receiver_id:
        raise create_error("You cannot send a friend request to yourself", 400)
    with get_session(engine) as session:
        sender = get_active_user(session, sender_id)
        receiver = get_active_user(session, receiver_id)
        if are_friends(session, sender_id, receiver_id):
            raise create_error("You are already friends", 400)

        existing = session.scalars(
            select(FriendRequest).where(
                or_(
                    and_(FriendRequest.sender_id == sender_id,
                         FriendRequest.receiver_id == receiver_id),
                    and_(FriendRequest.sender_id == receiver_id,
                         FriendRequest.receiver_id == sender_id),
                )
            )
        ).all()
        for req in existing:
            if req.status == RequestStatus.PENDING.value:
                raise create_error("A friend request already exists between you", 400)
        # Answered requests from an earlier round are replaced
        for req in existing:
            session.delete(req)
        session.flush()

        req = FriendRequest(
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=RequestStatus.PENDING.value,
            created_at=utcnow(),
        )
        session.add(req)
        session.flush()
        notify(
            session, receiver_id, NotificationType.FRIEND_REQUEST,
            f"{sender.username} sent you a friend request",
            sender_id=sender_id,
            link=f"/friends/requests/{req.id}",
        )
        logger.info("Friend request %s: %s -> %s", req.id, sender_id, receiver_id)
        return request_dict(req, sender=sender, receiver=receiver)


def _pending_request(session, request_id: int) -> FriendRequest:
    req = session.get(FriendRequest, request_id)
    if req is None:
        raise not_found("Friend request")
    if req.status != RequestStatus.PENDING.value:
        raise create_error(f"Friend request already {req.status}", 400)
    return req


def accept_request(
    engine: Engine,
    user_id: int,
    request_id: int,
    cache: ConfigCache | None = None,
) -> dict:
    """Recipient accepts: both friendship rows, private chat, notifications."""
    with get_session(engine) as session:
        req = _pending_request(session, request_id)
        if req.receiver_id != user_id:
            raise forbidden("Only the recipient can accept this request")
        receiver = get_active_user(session, req.receiver_id)
        sender = get_active_user(session, req.sender_id)

        req.status = RequestStatus.ACCEPTED.value
        req.responded_at = utcnow()
        session.add(Friendship(user_id=sender.id, friend_id=receiver.id))
        session.add(Friendship(user_id=receiver.id, friend_id=sender.id))
        session.flush()

        chat = chat_service.get_or_create_private_chat(session, sender.id, receiver.id)

        for uid, other in ((sender.id, receiver), (receiver.id, sender)):
            apply_event(
                session,
                GamificationEvent(
                    user_id=uid, action=Action.FRIEND_ADDED, source_id=str(other.id),
                ),
                cache,
            )
        notify(
            session, sender.id, NotificationType.FRIEND_REQUEST,
            f"{receiver.username} accepted your friend request",
            sender_id=receiver.id,
            link=f"/chats/{chat.id}",
        )
        notify(
            session, receiver.id, NotificationType.FRIEND_REQUEST,
            f"You are now friends with {sender.username}",
            sender_id=sender.id,
            link=f"/chats/{chat.id}",
        )
        logger.info("Friend request %s accepted", request_id)
        data = request_dict(req, sender=sender, receiver=receiver)
        data["chat_id"] = chat.id
        return data


def reject_request(engine: Engine, user_id: int, request_id: int) -> dict:
    with get_session(engine) as session:
        req = _pending_request(session, request_id)
        if req.receiver_id != user_id:
            raise forbidden("Only the recipient can reject this request")
        req.status = RequestStatus.REJECTED.value
        req.responded_at = utcnow()
        receiver = get_active_user(session, user_id)
        notify(
            session, req.sender_id, NotificationType.FRIEND_REQUEST,
            f"{receiver.username} declined your friend request",
            sender_id=user_id,
        )
        return request_dict(req)


def cancel_request(engine: Engine, user_id: int, request_id: int) -> None:
    with get_session(engine) as session:
        req = _pending_request(session, request_id)
        if req.sender_id != user_id:
            raise forbidden("Only the sender can cancel this request")
        session.delete(req)


def pending_requests(engine: Engine, user_id: int) -> dict:
    """Incoming and outgoing pending requests for *user_id*."""
    with get_session(engine) as session:
        incoming = session.execute(
            select(FriendRequest, User)
            .join(User, User.id == FriendRequest.sender_id)
            .where(
                FriendRequest.receiver_id == user_id,
                FriendRequest.status == RequestStatus.PENDING.value,
            )
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        ).all()
        outgoing = session.execute(
            select(FriendRequest, User)
            .join(User, User.id == FriendRequest.receiver_id)
            .where(
                FriendRequest.sender_id == user_id,
                FriendRequest.status == RequestStatus.PENDING.value,
            )
            .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        ).all()
        return {
            "incoming": [request_dict(r, sender=u) for r, u in incoming],
            "outgoing": [request_dict(r, receiver=u) for r, u in outgoing],
        }


# ---------------------------------------------------------------------------
# Friendships
# ---------------------------------------------------------------------------
def list_friends(engine: Engine, user_id: int, req: PageRequest) -> dict:
    with get_session(engine) as session:
        get_active_user(session, user_id)
        conditions = (Friendship.user_id == user_id, User.is_active.is_(True))
        total = session.scalar(
            select(func.count()).select_from(Friendship)
            .join(User, User.id == Friendship.friend_id)
            .where(*conditions)
        ) or 0
        friends = session.scalars(
            select(User)
            .join(Friendship, Friendship.friend_id == User.id)
            .where(*conditions)
            .order_by(User.username.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"friends": [user_summary(u) for u in friends], "pagination": req.meta(total)}


def remove_friend(engine: Engine, user_id: int, friend_id: int) -> None:
    with get_session(engine) as session:
        if not are_friends(session, user_id, friend_id):
            raise not_found("Friendship")
        session.execute(
            delete(Friendship).where(
                or_(
                    and_(Friendship.user_id == user_id, Friendship.friend_id == friend_id),
                    and_(Friendship.user_id == friend_id, Friendship.friend_id == user_id),
                )
            )
        )
        session.execute(
            delete(FriendRequest).where(
                or_(
                    and_(FriendRequest.sender_id == user_id,
                         FriendRequest.receiver_id == friend_id),
                    and_(FriendRequest.sender_id == friend_id,
                         FriendRequest.receiver_id == user_id),
                )
            )
        )
        user = session.get(User, user_id)
        notify(
            session, friend_id, NotificationType.FRIEND_REQUEST,
            f"{user.username} removed you from their friends",
            sender_id=user_id,
        )
        logger.info("Friendship removed: %s <-> %s", user_id, friend_id)


# ---------------------------------------------------------------------------
# Follows
# ---------------------------------------------------------------------------
def follow(engine: Engine, follower_id: int, following_id: int) -> dict:
    """Idempotent; only a new follow notifies the target."""
    if follower_id == following_id:
        raise create_error("You cannot follow yourself", 400)
    with get_session(engine) as session:
        follower = get_active_user(session, follower_id)
        get_active_user(session, following_id)
        if session.get(Follow, (follower_id, following_id)) is not None:
            return {"following": True, "created": False}
        session.add(Follow(follower_id=follower_id, following_id=following_id))
        session.flush()
        notify(
            session, following_id, NotificationType.FRIEND_REQUEST,
            f"{follower.username} started following you",
            sender_id=follower_id,
        )
        return {"following": True, "created": True}


def unfollow(engine: Engine, follower_id: int, following_id: int) -> dict:
    with get_session(engine) as session:
        row = session.get(Follow, (follower_id, following_id))
        if row is None:
            return {"following": False, "removed": False}
        session.delete(row)
        return {"following": False, "removed": True}


def _follow_list(engine: Engine, user_id: int, req: PageRequest, *, followers: bool) -> dict:
    if followers:
        match, join_on = Follow.following_id == user_id, Follow.follower_id
    else:
        match, join_on = Follow.follower_id == user_id, Follow.following_id
    with get_session(engine) as session:
        get_active_user(session, user_id)
        total = session.scalar(select(func.count()).select_from(Follow).where(match)) or 0
        users = session.scalars(
            select(User)
            .join(Follow, join_on == User.id)
            .where(match)
            .order_by(Follow.created_at.desc(), User.id.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        key = "followers" if followers else "following"
        return {key: [user_summary(u) for u in users], "pagination": req.meta(total)}


def list_followers(engine: Engine, user_id: int, req: PageRequest) -> dict:
    return _follow_list(engine, user_id, req, followers=True)


def list_following(engine: Engine, user_id: int, req: PageRequest) -> dict:
    return _follow_list(engine, user_id, req, followers=False)
