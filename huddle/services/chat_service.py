"""
huddle.services.chat_service — Chats, messages, reactions and read receipts
============================================================================

Persistence half of the real-time layer.  Every function here is
synchronous and returns plain dicts; the socket handlers and REST routes
call them through ``run_db`` and then broadcast the result to the chat's
room.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from huddle.constants import ROLE_ADMIN, ROLE_MODERATOR, clean_text, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    Chat,
    ChatParticipant,
    ChatType,
    Group,
    Message,
    MessageReaction,
    MessageStatus,
    User,
)
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, forbidden, not_found
from huddle.services.user_service import get_active_user, user_summary

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
MAX_REACTION_LENGTH = 32


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def message_dict(msg: Message, sender: User | None = None) -> dict:
    return {
        "id": msg.id,
        "chat_id": msg.chat_id,
        "sender_id": msg.sender_id,
        "sender": user_summary(sender) if sender is not None else None,
        "content": msg.content,
        "status": msg.status,
        "edited_at": isoformat(msg.edited_at),
        "created_at": isoformat(msg.created_at),
        "reactions": [
            {"user_id": r.user_id, "reaction": r.reaction}
            for r in sorted(msg.reactions, key=lambda r: r.user_id)
        ],
    }


def _chat_dict(session: Session, chat: Chat, viewer_id: int) -> dict:
    participants = session.execute(
        select(ChatParticipant, User)
        .join(User, User.id == ChatParticipant.user_id)
        .where(ChatParticipant.chat_id == chat.id)
        .order_by(User.id)
    ).all()
    unread = 0
    for p, _ in participants:
        if p.user_id == viewer_id:
            unread = p.unread_count
    last = None
    if chat.last_message_id is not None:
        msg = session.get(Message, chat.last_message_id)
        if msg is not None and not msg.is_deleted:
            last = {
                "id": msg.id,
                "sender_id": msg.sender_id,
                "content": msg.content,
                "created_at": isoformat(msg.created_at),
            }
    return {
        "id": chat.id,
        "chat_type": chat.chat_type,
        "group_id": chat.group_id,
        "participants": [
            {**user_summary(u), "is_admin": p.is_admin} for p, u in participants
        ],
        "last_message": last,
        "unread_count": unread,
        "updated_at": isoformat(chat.updated_at),
    }


# ---------------------------------------------------------------------------
# Membership helpers (used by group/friend services inside their sessions)
# ---------------------------------------------------------------------------
def _pair_key(a: int, b: int) -> str:
    low, high = sorted((a, b))
    return f"{low}:{high}"


def get_or_create_private_chat(session: Session, user_a: int, user_b: int) -> Chat:
    key = _pair_key(user_a, user_b)
    chat = session.scalar(select(Chat).where(Chat.pair_key == key))
    if chat is not None:
        return chat
    now = utcnow()
    chat = Chat(chat_type=ChatType.PRIVATE.value, pair_key=key, created_at=now, updated_at=now)
    session.add(chat)
    session.flush()
    session.add_all([
        ChatParticipant(chat_id=chat.id, user_id=user_a, unread_count=0),
        ChatParticipant(chat_id=chat.id, user_id=user_b, unread_count=0),
    ])
    session.flush()
    logger.info("Private chat %s opened for %s", chat.id, key)
    return chat


def create_group_chat(session: Session, group_id: int, creator_id: int) -> Chat:
    now = utcnow()
    chat = Chat(chat_type=ChatType.GROUP.value, group_id=group_id, created_at=now, updated_at=now)
    session.add(chat)
    session.flush()
    session.add(ChatParticipant(chat_id=chat.id, user_id=creator_id, is_admin=True))
    session.flush()
    return chat


def group_chat(session: Session, group_id: int) -> Chat | None:
    return session.scalar(select(Chat).where(Chat.group_id == group_id))


def add_participant(session: Session, chat_id: int, user_id: int) -> None:
    if session.get(ChatParticipant, (chat_id, user_id)) is None:
        session.add(ChatParticipant(chat_id=chat_id, user_id=user_id, unread_count=0))
        session.flush()


def remove_participant(session: Session, chat_id: int, user_id: int) -> None:
    row = session.get(ChatParticipant, (chat_id, user_id))
    if row is not None:
        session.delete(row)
        session.flush()


def _in_service():
    """Private chats, or group chats whose group has not been deleted."""
    return Chat.group_id.is_(None) | Chat.group_id.in_(select(Group.id).where(Group.is_active.is_(True)))


def _live_chat(session: Session, chat_id: int) -> Chat:
    chat = session.get(Chat, chat_id)
    if chat is None:
        raise not_found("Chat")
    if chat.group_id is not None:
        group = session.get(Group, chat.group_id)
        if group is None or not group.is_active:
            raise not_found("Chat")
    return chat


def require_participant(session: Session, chat_id: int, user_id: int) -> ChatParticipant:
    _live_chat(session, chat_id)
    row = session.get(ChatParticipant, (chat_id, user_id))
    if row is None:
        raise forbidden("You are not a participant of this chat")
    return row


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------
def open_private_chat(engine: Engine, user_id: int, other_id: int) -> dict:
    if user_id == other_id:
        raise create_error("You cannot open a chat with yourself", 400)
    with get_session(engine) as session:
        get_active_user(session, user_id)
        get_active_user(session, other_id)
        chat = get_or_create_private_chat(session, user_id, other_id)
        return _chat_dict(session, chat, user_id)


def list_chats(engine: Engine, user_id: int) -> list[dict]:
    with get_session(engine) as session:
        chats = session.scalars(
            select(Chat)
            .join(ChatParticipant, ChatParticipant.chat_id == Chat.id)
            .where(ChatParticipant.user_id == user_id, _in_service())
            .order_by(Chat.updated_at.desc(), Chat.id.desc())
        ).all()
        return [_chat_dict(session, c, user_id) for c in chats]


def get_chat(engine: Engine, user_id: int, chat_id: int) -> dict:
    with get_session(engine) as session:
        require_participant(session, chat_id, user_id)
        return _chat_dict(session, session.get(Chat, chat_id), user_id)


def user_chat_ids(engine: Engine, user_id: int) -> list[int]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(ChatParticipant.chat_id)
            .join(Chat, Chat.id == ChatParticipant.chat_id)
            .where(ChatParticipant.user_id == user_id, _in_service())
        ).all())


def is_participant(engine: Engine, chat_id: int, user_id: int) -> bool:
    with get_session(engine) as session:
        return session.scalar(
            select(ChatParticipant.chat_id)
            .join(Chat, Chat.id == ChatParticipant.chat_id)
            .where(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id, _in_service())
        ) is not None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
def send_message(engine: Engine, user_id: int, chat_id: int, content: str) -> dict:
    """Persist a message, bump the chat, count it unread for everyone else."""
    text_ = clean_text(content, MAX_MESSAGE_LENGTH, field="message")
    with get_session(engine) as session:
        require_participant(session, chat_id, user_id)
        sender = get_active_user(session, user_id)
        now = utcnow()
        msg = Message(
            chat_id=chat_id,
            sender_id=user_id,
            content=text_,
            status=MessageStatus.SENT.value,
            created_at=now,
        )
        session.add(msg)
        session.flush()

        chat = session.get(Chat, chat_id)
        chat.last_message_id = msg.id
        chat.updated_at = now
        session.execute(
            update(ChatParticipant)
            .where(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id != user_id)
            .values(unread_count=ChatParticipant.unread_count + 1)
        )
        logger.debug("Message %s sent to chat %s by %s", msg.id, chat_id, user_id)
        return message_dict(msg, sender)


def list_messages(engine: Engine, user_id: int, chat_id: int, req: PageRequest) -> dict:
    """Newest-first history; soft-deleted messages are hidden."""
    with get_session(engine) as session:
        require_participant(session, chat_id, user_id)
        conditions = (Message.chat_id == chat_id, Message.is_deleted.is_(False))
        total = session.scalar(
            select(func.count()).select_from(Message).where(*conditions)
        ) or 0
        rows = session.execute(
            select(Message, User)
            .join(User, User.id == Message.sender_id)
            .where(*conditions)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {
            "messages": [message_dict(m, u) for m, u in rows],
            "pagination": req.meta(total),
        }


def _live_message(session: Session, message_id: int) -> Message:
    msg = session.get(Message, message_id)
    if msg is None or msg.is_deleted:
        raise not_found("Message")
    return msg


def edit_message(engine: Engine, user_id: int, message_id: int, content: str) -> dict:
    text_ = clean_text(content, MAX_MESSAGE_LENGTH, field="message")
    with get_session(engine) as session:
        msg = _live_message(session, message_id)
        if msg.sender_id != user_id:
            raise forbidden("You can only edit your own messages")
        _live_chat(session, msg.chat_id)
        msg.content = text_
        msg.edited_at = utcnow()
        session.flush()
        return message_dict(msg, session.get(User, user_id))


def delete_message(
    engine: Engine,
    user_id: int,
    message_id: int,
    roles: list[str] | tuple[str, ...] = (),
) -> dict:
    """Soft delete by the sender or a moderator."""
    with get_session(engine) as session:
        msg = _live_message(session, message_id)
        is_moderator = bool({ROLE_ADMIN, ROLE_MODERATOR} & set(roles))
        if msg.sender_id != user_id and not is_moderator:
            raise forbidden("You can only delete your own messages")
        msg.is_deleted = True
        logger.info("Message %s deleted by %s", message_id, user_id)
        return {"id": msg.id, "chat_id": msg.chat_id, "deleted_by": user_id}


def add_reaction(engine: Engine, user_id: int, message_id: int, reaction: str) -> dict:
    """One reaction per user per message; a new reaction replaces the old."""
    value = clean_text(reaction, MAX_REACTION_LENGTH, field="reaction")
    with get_session(engine) as session:
        msg = _live_message(session, message_id)
        require_participant(session, msg.chat_id, user_id)
        row = session.get(MessageReaction, (message_id, user_id))
        if row is None:
            session.add(MessageReaction(message_id=message_id, user_id=user_id, reaction=value))
        else:
            row.reaction = value
        session.flush()
        return {
            "message_id": message_id,
            "chat_id": msg.chat_id,
            "user_id": user_id,
            "reaction": value,
        }


def remove_reaction(engine: Engine, user_id: int, message_id: int) -> dict:
    with get_session(engine) as session:
        msg = _live_message(session, message_id)
        row = session.get(MessageReaction, (message_id, user_id))
        if row is None:
            raise not_found("Reaction")
        session.delete(row)
        return {"message_id": message_id, "chat_id": msg.chat_id, "user_id": user_id}


def mark_read(engine: Engine, user_id: int, chat_id: int) -> dict:
    """Mark every message from others as seen and zero my unread count."""
    with get_session(engine) as session:
        participant = require_participant(session, chat_id, user_id)
        ids = list(session.scalars(
            select(Message.id).where(
                Message.chat_id == chat_id,
                Message.sender_id != user_id,
                Message.status != MessageStatus.SEEN.value,
            )
        ).all())
        if ids:
            session.execute(
                update(Message)
                .where(Message.id.in_(ids))
                .values(status=MessageStatus.SEEN.value)
            )
        participant.unread_count = 0
        participant.last_read_at = utcnow()
        return {"chat_id": chat_id, "user_id": user_id, "message_ids": ids}
