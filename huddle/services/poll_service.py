"""
huddle.services.poll_service — Group polls
===========================================

Members of a group open polls with 2-10 options and a closing time.
Each member votes once; votes after ``expires_at`` are refused.  Results
are visible to members at any time.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from huddle.constants import clean_text, ensure_utc, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import Poll, PollOption, PollVote
from huddle.errors import create_error, forbidden, not_found
from huddle.services import chat_service
from huddle.services.group_service import GROUP_ADMIN_ROLE, require_member

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 500
MAX_OPTION_LENGTH = 200
MIN_OPTIONS = 2
MAX_OPTIONS = 10
DEFAULT_DURATION = timedelta(days=7)

STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"


def _status(poll: Poll, now: datetime | None = None) -> str:
    return STATUS_EXPIRED if ensure_utc(poll.expires_at) <= (now or utcnow()) else STATUS_ACTIVE


def _results(session: Session, poll: Poll, viewer_id: int) -> dict:
    counts = dict(session.execute(
        select(PollVote.option_id, func.count())
        .where(PollVote.poll_id == poll.id)
        .group_by(PollVote.option_id)
    ).all())
    mine = session.get(PollVote, (poll.id, viewer_id))
    chat = chat_service.group_chat(session, poll.group_id)
    return {
        "id": poll.id,
        "group_id": poll.group_id,
        "chat_id": chat.id if chat else None,
        "creator_id": poll.creator_id,
        "question": poll.question,
        "options": [
            {"id": o.id, "text": o.text, "votes": counts.get(o.id, 0)}
            for o in poll.options
        ],
        "total_votes": sum(counts.values()),
        "my_vote": mine.option_id if mine else None,
        "status": _status(poll),
        "expires_at": isoformat(poll.expires_at),
        "created_at": isoformat(poll.created_at),
    }


def _clean_options(options: list[str]) -> list[str]:
    cleaned = [clean_text(o, MAX_OPTION_LENGTH, field="option") for o in options or []]
    if not MIN_OPTIONS <= len(cleaned) <= MAX_OPTIONS:
        raise create_error(f"A poll needs between {MIN_OPTIONS} and {MAX_OPTIONS} options", 400)
    if len({o.lower() for o in cleaned}) != len(cleaned):
        raise create_error("Poll options must be unique", 400)
    return cleaned


def _member_poll(session: Session, user_id: int, poll_id: int) -> Poll:
    poll = session.get(Poll, poll_id)
    if poll is None:
        raise not_found("Poll")
    require_member(session, poll.group_id, user_id)
    return poll


def create_poll(
    engine: Engine,
    user_id: int,
    group_id: int,
    question: str,
    options: list[str],
    expires_at: datetime | None = None,
) -> dict:
    question_ = clean_text(question, MAX_QUESTION_LENGTH, field="question")
    options_ = _clean_options(options)
    now = utcnow()
    closes = ensure_utc(expires_at) if expires_at is not None else now + DEFAULT_DURATION
    if closes <= now:
        raise create_error("expires_at must be in the future", 400)
    with get_session(engine) as session:
        require_member(session, group_id, user_id)
        poll = Poll(group_id=group_id, creator_id=user_id, question=question_, expires_at=closes)
        poll.options = [PollOption(text=text, position=i) for i, text in enumerate(options_)]
        session.add(poll)
        session.flush()
        logger.info("Poll %s opened in group %s by %s", poll.id, group_id, user_id)
        return _results(session, poll, user_id)


def list_polls(engine: Engine, user_id: int, group_id: int) -> list[dict]:
    """Newest first."""
    with get_session(engine) as session:
        require_member(session, group_id, user_id)
        polls = session.scalars(
            select(Poll)
            .where(Poll.group_id == group_id)
            .order_by(Poll.created_at.desc(), Poll.id.desc())
        ).all()
        return [_results(session, p, user_id) for p in polls]


def get_results(engine: Engine, user_id: int, poll_id: int) -> dict:
    with get_session(engine) as session:
        return _results(session, _member_poll(session, user_id, poll_id), user_id)


def vote(engine: Engine, user_id: int, poll_id: int, option_id: int) -> dict:
    with get_session(engine) as session:
        poll = _member_poll(session, user_id, poll_id)
        if _status(poll) == STATUS_EXPIRED:
            raise create_error("This poll has expired", 400)
        if session.get(PollVote, (poll_id, user_id)) is not None:
            raise create_error("You have already voted in this poll", 400)
        if option_id not in {o.id for o in poll.options}:
            raise create_error("Invalid option", 400)
        session.add(PollVote(poll_id=poll_id, user_id=user_id, option_id=option_id))
        session.flush()
        return _results(session, poll, user_id)


def delete_poll(engine: Engine, user_id: int, poll_id: int) -> dict:
    """The poll's creator or a group admin may delete it."""
    with get_session(engine) as session:
        poll = session.get(Poll, poll_id)
        if poll is None:
            raise not_found("Poll")
        _, member = require_member(session, poll.group_id, user_id)
        if poll.creator_id != user_id and member.role != GROUP_ADMIN_ROLE:
            raise forbidden("Only the poll creator or a group admin can delete this poll")
        chat = chat_service.group_chat(session, poll.group_id)
        session.delete(poll)
        logger.info("Poll %s deleted by %s", poll_id, user_id)
        return {"id": poll_id, "group_id": poll.group_id, "chat_id": chat.id if chat else None}
