"""
huddle.services.reward_service — Reward catalogue and point redemption
=======================================================================

Admins curate a catalogue of rewards priced in points.  Redeeming one
spends the price through the gamification ledger (a negative
``reward_redeemed`` transaction) and records a :class:`Redemption` in the
same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, func, select

from huddle.constants import clean_text, ensure_utc, isoformat
from huddle.database.engine import get_session
from huddle.database.models import (
    AdminActionType,
    NotificationType,
    Redemption,
    Reward,
    RewardType,
)
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, not_found
from huddle.services import gamification_service
from huddle.services.admin_service import log_admin_action, row_snapshot
from huddle.services.notification_service import notify
from huddle.services.user_service import get_active_user

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
INSUFFICIENT_POINTS = "Insufficient points to redeem this reward"


def reward_dict(r: Reward) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "points_required": r.points_required,
        "reward_type": r.reward_type,
        "image_url": r.image_url,
        "is_active": r.is_active,
        "created_at": isoformat(r.created_at),
    }


def redemption_dict(r: Redemption) -> dict:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "reward_id": r.reward_id,
        "item": r.item,
        "points_used": r.points_used,
        "redeemed_at": isoformat(r.redeemed_at),
    }


def _price(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise create_error("points_required must be a positive integer", 400)
    return value


def _reward_type(value: str | None) -> str:
    try:
        return RewardType(value or RewardType.RECOGNITION.value).value
    except ValueError:
        raise create_error(f"Unknown reward type: {value}", 400)


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------
def list_rewards(engine: Engine, *, include_inactive: bool = False) -> list[dict]:
    """Cheapest first."""
    with get_session(engine) as session:
        stmt = select(Reward)
        if not include_inactive:
            stmt = stmt.where(Reward.is_active.is_(True))
        rows = session.scalars(stmt.order_by(Reward.points_required.asc(), Reward.id.asc())).all()
        return [reward_dict(r) for r in rows]


def get_reward(engine: Engine, reward_id: int) -> dict:
    with get_session(engine) as session:
        reward = session.get(Reward, reward_id)
        if reward is None or not reward.is_active:
            raise not_found("Reward")
        return reward_dict(reward)


def create_reward(
    engine: Engine,
    *,
    actor_id: int,
    name: str,
    points_required: int,
    reward_type: str | None = None,
    description: str | None = None,
    image_url: str | None = None,
    ip_address: str | None = None,
) -> dict:
    reward = Reward(
        name=clean_text(name, MAX_NAME_LENGTH, field="name"),
        description=clean_text(description, MAX_DESCRIPTION_LENGTH, field="description", required=False),
        points_required=_price(points_required),
        reward_type=_reward_type(reward_type),
        image_url=image_url or None,
        is_active=True,
    )
    with get_session(engine) as session:
        session.add(reward)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table="rewards",
            target_id=str(reward.id),
            before=None,
            after=row_snapshot(reward),
            ip_address=ip_address,
        )
        logger.info("Admin %s created reward %s (%d pts)", actor_id, reward.id, reward.points_required)
        return reward_dict(reward)


def update_reward(
    engine: Engine,
    reward_id: int,
    changes: dict[str, Any],
    *,
    actor_id: int,
    ip_address: str | None = None,
) -> dict:
    with get_session(engine) as session:
        reward = session.get(Reward, reward_id)
        if reward is None:
            raise not_found("Reward")
        before = row_snapshot(reward)
        if changes.get("name") is not None:
            reward.name = clean_text(changes["name"], MAX_NAME_LENGTH, field="name")
        if "description" in changes:
            reward.description = clean_text(
                changes["description"], MAX_DESCRIPTION_LENGTH, field="description", required=False,
            )
        if changes.get("points_required") is not None:
            reward.points_required = _price(changes["points_required"])
        if changes.get("reward_type") is not None:
            reward.reward_type = _reward_type(changes["reward_type"])
        if "image_url" in changes:
            reward.image_url = changes["image_url"] or None
        if changes.get("is_active") is not None:
            reward.is_active = bool(changes["is_active"])
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="rewards",
            target_id=str(reward_id),
            before=before,
            after=row_snapshot(reward),
            ip_address=ip_address,
        )
        return reward_dict(reward)


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------
def redeem(
    engine: Engine,
    user_id: int,
    reward_id: int,
    cache: ConfigCache | None = None,
) -> dict:
    """Spend the reward's price; 400 when the balance is short."""
    with get_session(engine) as session:
        user = get_active_user(session, user_id)
        reward = session.get(Reward, reward_id)
        if reward is None or not reward.is_active:
            raise not_found("Reward")
        if user.points < reward.points_required:
            raise create_error(INSUFFICIENT_POINTS, 400)
        redemption = Redemption(
            user_id=user.id,
            reward_id=reward.id,
            item=reward.name,
            points_used=reward.points_required,
        )
        session.add(redemption)
        session.flush()
        gamification_service.spend_points(
            session, user, reward.points_required,
            source_id=f"redemption:{redemption.id}",
            reason=f"Redeemed {reward.name}",
            cache=cache,
            insufficient_message=INSUFFICIENT_POINTS,
        )
        notify(
            session, user.id, NotificationType.SYSTEM,
            f"You redeemed {reward.name} for {reward.points_required} points",
            link="/rewards/redemptions",
        )
        logger.info("User %s redeemed reward %s (%d pts)", user.id, reward.id, reward.points_required)
        return {
            "redemption": redemption_dict(redemption),
            "points": user.points,
            "level": user.level,
        }


def my_redemptions(engine: Engine, user_id: int, req: PageRequest) -> dict:
    with get_session(engine) as session:
        condition = Redemption.user_id == user_id
        total = session.scalar(select(func.count()).select_from(Redemption).where(condition)) or 0
        rows = session.scalars(
            select(Redemption)
            .where(condition)
            .order_by(Redemption.redeemed_at.desc(), Redemption.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"redemptions": [redemption_dict(r) for r in rows], "pagination": req.meta(total)}


def redemptions_between(engine: Engine, start: datetime, end: datetime) -> dict:
    """Admin report: every redemption in ``[start, end]`` plus totals."""
    start, end = ensure_utc(start), ensure_utc(end)
    if end < start:
        raise create_error("end must not be before start", 400)
    with get_session(engine) as session:
        rows = session.scalars(
            select(Redemption)
            .where(Redemption.redeemed_at >= start, Redemption.redeemed_at <= end)
            .order_by(Redemption.redeemed_at.asc(), Redemption.id.asc())
        ).all()
        return {
            "redemptions": [redemption_dict(r) for r in rows],
            "count": len(rows),
            "points_used": sum(r.points_used for r in rows),
        }
