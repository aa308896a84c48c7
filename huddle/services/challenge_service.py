"""
huddle.services.challenge_service — Time-boxed community challenges
====================================================================

A challenge is ``ongoing`` until its ``end_date`` passes, then
``completed``; the creator may cancel it earlier.  Expiry is evaluated
on every read and persisted by whichever write touches the row next.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, exists, func, or_, select
from sqlalchemy.orm import Session

from huddle.constants import clean_text, ensure_utc, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    Challenge,
    ChallengeParticipant,
    ChallengeStatus,
    RewardType,
    User,
    Visibility,
)
from huddle.engine.events import Action, GamificationEvent
from huddle.engine.pagination import PageRequest, ranked
from huddle.errors import create_error, forbidden, not_found
from huddle.services.gamification_service import apply_event
from huddle.services.user_service import get_active_user, user_summary

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


def _parse_datetime(value, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise create_error(f"Invalid {field}: expected an ISO 8601 date", 400)
    return ensure_utc(parsed)


def _validate_rewards(rewards) -> list[dict]:
    cleaned = []
    for reward in rewards or []:
        if not isinstance(reward, dict):
            raise create_error("Each reward must be an object", 400)
        try:
            reward_type = RewardType(reward.get("reward_type")).value
        except ValueError:
            raise create_error(f"Invalid reward type: {reward.get('reward_type')!r}", 400)
        cleaned.append({
            "reward_type": reward_type,
            "value": clean_text(str(reward.get("value", "")), 200, field="reward value"),
        })
    return cleaned


def effective_status(challenge: Challenge, now: datetime | None = None) -> str:
    """``ongoing`` challenges whose end has passed read as ``completed``."""
    now = now or utcnow()
    if challenge.status == ChallengeStatus.ONGOING.value and ensure_utc(challenge.end_date) <= now:
        return ChallengeStatus.COMPLETED.value
    return challenge.status


def _refresh_status(challenge: Challenge) -> None:
    challenge.status = effective_status(challenge)


def challenge_dict(challenge: Challenge, *, participant_count: int = 0) -> dict:
    return {
        "id": challenge.id,
        "creator_id": challenge.creator_id,
        "title": challenge.title,
        "description": challenge.description,
        "goal": challenge.goal,
        "start_date": isoformat(ensure_utc(challenge.start_date)),
        "end_date": isoformat(ensure_utc(challenge.end_date)),
        "status": effective_status(challenge),
        "visibility": challenge.visibility,
        "rewards": list(challenge.rewards or []),
        "participant_count": participant_count,
        "created_at": isoformat(challenge.created_at),
    }


def _participant_count(session: Session, challenge_id: int) -> int:
    return session.scalar(
        select(func.count())
        .select_from(ChallengeParticipant)
        .where(ChallengeParticipant.challenge_id == challenge_id)
    ) or 0


def _full_dict(session: Session, challenge: Challenge) -> dict:
    return challenge_dict(challenge, participant_count=_participant_count(session, challenge.id))


def _can_view(session: Session, challenge: Challenge, user_id: int) -> bool:
    if challenge.visibility == Visibility.PUBLIC.value or challenge.creator_id == user_id:
        return True
    return session.get(ChallengeParticipant, (challenge.id, user_id)) is not None


def _visible_challenge(session: Session, challenge_id: int, user_id: int) -> Challenge:
    challenge = session.get(Challenge, challenge_id)
    if challenge is None or not _can_view(session, challenge, user_id):
        raise not_found("Challenge")
    return challenge


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def create_challenge(
    engine: Engine,
    creator_id: int,
    title: str,
    goal: str,
    start_date,
    end_date,
    *,
    description: str | None = None,
    visibility: str = Visibility.PUBLIC.value,
    rewards: list[dict] | None = None,
) -> dict:
    start = _parse_datetime(start_date, "start_date")
    end = _parse_datetime(end_date, "end_date")
    if end <= start:
        raise create_error("end_date must be after start_date", 400)
    try:
        visibility_ = Visibility(visibility).value
    except ValueError:
        raise create_error(f"Invalid visibility: {visibility!r}", 400)
    values = {
        "title": clean_text(title, 100, field="title"),
        "goal": clean_text(goal, 200, field="goal"),
        "description": clean_text(description, 500, field="description", required=False),
        "rewards": _validate_rewards(rewards),
    }
    with get_session(engine) as session:
        get_active_user(session, creator_id)
        challenge = Challenge(
            creator_id=creator_id,
            start_date=start,
            end_date=end,
            status=ChallengeStatus.ONGOING.value,
            visibility=visibility_,
            **values,
        )
        session.add(challenge)
        session.flush()
        logger.info("Challenge %s created by %s", challenge.id, creator_id)
        return _full_dict(session, challenge)


def list_challenges(
    engine: Engine,
    user_id: int,
    req: PageRequest,
    *,
    status: str | None = None,
) -> dict:
    """Public challenges plus private ones the viewer created or joined."""
    now = utcnow()
    joined = exists().where(
        ChallengeParticipant.challenge_id == Challenge.id,
        ChallengeParticipant.user_id == user_id,
    )
    conditions = [
        or_(
            Challenge.visibility == Visibility.PUBLIC.value,
            Challenge.creator_id == user_id,
            joined,
        )
    ]
    if status:
        try:
            wanted = ChallengeStatus(status)
        except ValueError:
            raise create_error(f"Invalid status: {status!r}", 400)
        if wanted is ChallengeStatus.ONGOING:
            conditions += [Challenge.status == wanted.value, Challenge.end_date > now]
        elif wanted is ChallengeStatus.COMPLETED:
            conditions.append(
                or_(
                    Challenge.status == wanted.value,
                    (Challenge.status == ChallengeStatus.ONGOING.value) & (Challenge.end_date <= now),
                )
            )
        else:
            conditions.append(Challenge.status == wanted.value)
    with get_session(engine) as session:
        total = session.scalar(select(func.count()).select_from(Challenge).where(*conditions)) or 0
        rows = session.scalars(
            select(Challenge)
            .where(*conditions)
            .order_by(Challenge.end_date.asc(), Challenge.id.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"challenges": [_full_dict(session, c) for c in rows], "pagination": req.meta(total)}


def get_challenge(engine: Engine, user_id: int, challenge_id: int) -> dict:
    with get_session(engine) as session:
        challenge = _visible_challenge(session, challenge_id, user_id)
        data = _full_dict(session, challenge)
        me = session.get(ChallengeParticipant, (challenge_id, user_id))
        data["is_participant"] = me is not None
        data["my_progress"] = me.progress if me else None
        return data


def update_challenge(engine: Engine, user_id: int, challenge_id: int, changes: dict[str, Any]) -> dict:
    with get_session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None:
            raise not_found("Challenge")
        if challenge.creator_id != user_id:
            raise forbidden("Only the creator can edit this challenge")
        _refresh_status(challenge)
        if changes.get("title") is not None:
            challenge.title = clean_text(changes["title"], 100, field="title")
        if changes.get("goal") is not None:
            challenge.goal = clean_text(changes["goal"], 200, field="goal")
        if "description" in changes:
            challenge.description = clean_text(
                changes["description"], 500, field="description", required=False
            )
        if changes.get("rewards") is not None:
            challenge.rewards = _validate_rewards(changes["rewards"])
        if changes.get("end_date") is not None:
            end = _parse_datetime(changes["end_date"], "end_date")
            if end <= ensure_utc(challenge.start_date):
                raise create_error("end_date must be after start_date", 400)
            challenge.end_date = end
            if challenge.status == ChallengeStatus.COMPLETED.value and end > utcnow():
                challenge.status = ChallengeStatus.ONGOING.value
        session.flush()
        return _full_dict(session, challenge)


def cancel_challenge(engine: Engine, user_id: int, challenge_id: int) -> dict:
    with get_session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None:
            raise not_found("Challenge")
        if challenge.creator_id != user_id:
            raise forbidden("Only the creator can cancel this challenge")
        _refresh_status(challenge)
        if challenge.status != ChallengeStatus.ONGOING.value:
            raise create_error(f"Challenge is already {challenge.status}", 400)
        challenge.status = ChallengeStatus.CANCELED.value
        logger.info("Challenge %s cancelled by %s", challenge_id, user_id)
        return _full_dict(session, challenge)


# ---------------------------------------------------------------------------
# Participation
# ---------------------------------------------------------------------------
def join_challenge(engine: Engine, user_id: int, challenge_id: int) -> dict:
    with get_session(engine) as session:
        challenge = _visible_challenge(session, challenge_id, user_id)
        get_active_user(session, user_id)
        _refresh_status(challenge)
        if challenge.status != ChallengeStatus.ONGOING.value:
            raise create_error("Only ongoing challenges can be joined", 400)
        if session.get(ChallengeParticipant, (challenge_id, user_id)) is not None:
            raise create_error("You have already joined this challenge", 400)
        session.add(ChallengeParticipant(
            challenge_id=challenge_id, user_id=user_id, progress=0, joined_at=utcnow(),
        ))
        session.flush()
        return _full_dict(session, challenge)


def leave_challenge(engine: Engine, user_id: int, challenge_id: int) -> None:
    with get_session(engine) as session:
        row = session.get(ChallengeParticipant, (challenge_id, user_id))
        if row is None:
            raise create_error("You are not part of this challenge", 400)
        session.delete(row)


def update_progress(
    engine: Engine,
    user_id: int,
    challenge_id: int,
    progress,
    cache: ConfigCache | None = None,
) -> dict:
    """Set my progress (0..100); reaching 100 rewards the completion once."""
    try:
        value = max(0, min(100, int(progress)))
    except (TypeError, ValueError):
        raise create_error("Progress must be a number", 400)
    with get_session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None:
            raise not_found("Challenge")
        _refresh_status(challenge)
        if challenge.status != ChallengeStatus.ONGOING.value:
            raise create_error(f"Challenge is {challenge.status}", 400)
        row = session.get(ChallengeParticipant, (challenge_id, user_id))
        if row is None:
            raise create_error("You are not part of this challenge", 400)
        row.progress = value
        reward = None
        if value >= 100 and row.completed_at is None:
            row.completed_at = utcnow()
            session.flush()
            reward = apply_event(
                session,
                GamificationEvent(
                    user_id=user_id,
                    action=Action.CHALLENGE_COMPLETED,
                    source_id=str(challenge_id),
                    metadata={"challenge_id": challenge_id},
                ),
                cache,
            ).to_dict()
        session.flush()
        return {
            "challenge_id": challenge_id,
            "user_id": user_id,
            "progress": row.progress,
            "completed_at": isoformat(row.completed_at),
            "reward": reward,
        }


def challenge_leaderboard(engine: Engine, user_id: int, challenge_id: int, req: PageRequest) -> dict:
    """Participants by progress desc, earliest joiners first on ties."""
    with get_session(engine) as session:
        _visible_challenge(session, challenge_id, user_id)
        total = _participant_count(session, challenge_id)
        rows = session.execute(
            select(ChallengeParticipant, User)
            .join(User, User.id == ChallengeParticipant.user_id)
            .where(ChallengeParticipant.challenge_id == challenge_id)
            .order_by(
                ChallengeParticipant.progress.desc(),
                ChallengeParticipant.joined_at.asc(),
                User.id.asc(),
            )
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        entries = [
            {
                **user_summary(u),
                "progress": p.progress,
                "completed_at": isoformat(p.completed_at),
                "joined_at": isoformat(p.joined_at),
            }
            for p, u in rows
        ]
        return {"leaderboard": ranked(entries, req), "pagination": req.meta(total)}
