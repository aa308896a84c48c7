"""
huddle.services.group_service — Groups, membership and invites
===============================================================

Every group owns one group chat; joining or leaving the group adds or
removes the matching chat participant.  Groups with ``restricted_role``
(e.g. ``military`` support groups) only admit users holding that role.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, func, select

from huddle.constants import ROLE_ADMIN, clean_text, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    Group,
    GroupInvite,
    GroupMember,
    NotificationType,
    RequestStatus,
    User,
)
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, forbidden, not_found
from huddle.services import chat_service
from huddle.services.notification_service import notify
from huddle.services.user_service import get_active_user, user_summary

logger = logging.getLogger(__name__)

MEMBER_ROLE = "member"
GROUP_ADMIN_ROLE = "admin"


def group_dict(group: Group, *, member_count: int = 0, chat_id: int | None = None) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "creator_id": group.creator_id,
        "is_private": group.is_private,
        "restricted_role": group.restricted_role,
        "member_count": member_count,
        "chat_id": chat_id,
        "created_at": isoformat(group.created_at),
    }


def _member_count(session, group_id: int) -> int:
    return session.scalar(
        select(func.count()).select_from(GroupMember).where(GroupMember.group_id == group_id)
    ) or 0


def _active_group(session, group_id: int) -> Group:
    group = session.get(Group, group_id)
    if group is None or not group.is_active:
        raise not_found("Group")
    return group


def _membership(session, group_id: int, user_id: int) -> GroupMember | None:
    return session.get(GroupMember, (group_id, user_id))


def require_member(session, group_id: int, user_id: int) -> tuple[Group, GroupMember]:
    """Active group plus the caller's membership; private groups hide from outsiders."""
    group = _active_group(session, group_id)
    member = _membership(session, group_id, user_id)
    if member is None:
        if group.is_private:
            raise not_found("Group")
        raise forbidden("Only group members can do that")
    return group, member


def _full_dict(session, group: Group) -> dict:
    chat = chat_service.group_chat(session, group.id)
    return group_dict(
        group,
        member_count=_member_count(session, group.id),
        chat_id=chat.id if chat else None,
    )


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def create_group(
    engine: Engine,
    creator_id: int,
    name: str,
    description: str | None = None,
    *,
    is_private: bool = False,
    restricted_role: str | None = None,
    creator_roles: list[str] | tuple[str, ...] = (),
) -> dict:
    name_ = clean_text(name, 100, field="name")
    desc = clean_text(description, 500, field="description", required=False)
    if restricted_role and restricted_role not in creator_roles and ROLE_ADMIN not in creator_roles:
        raise forbidden(f"Only users with the '{restricted_role}' role can create this group")
    with get_session(engine) as session:
        get_active_user(session, creator_id)
        group = Group(
            name=name_,
            description=desc,
            creator_id=creator_id,
            is_private=is_private,
            restricted_role=restricted_role or None,
            is_active=True,
        )
        session.add(group)
        session.flush()
        session.add(GroupMember(group_id=group.id, user_id=creator_id, role=GROUP_ADMIN_ROLE))
        chat_service.create_group_chat(session, group.id, creator_id)
        session.flush()
        logger.info("Group %s created by %s", group.id, creator_id)
        return _full_dict(session, group)


def list_groups(engine: Engine, req: PageRequest, *, search: str | None = None) -> dict:
    """Public, active groups, newest first."""
    with get_session(engine) as session:
        conditions = [Group.is_active.is_(True), Group.is_private.is_(False)]
        if search:
            conditions.append(func.lower(Group.name).like(f"%{search.strip().lower()}%"))
        total = session.scalar(select(func.count()).select_from(Group).where(*conditions)) or 0
        groups = session.scalars(
            select(Group)
            .where(*conditions)
            .order_by(Group.created_at.desc(), Group.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {
            "groups": [_full_dict(session, g) for g in groups],
            "pagination": req.meta(total),
        }


def my_groups(engine: Engine, user_id: int) -> list[dict]:
    with get_session(engine) as session:
        groups = session.scalars(
            select(Group)
            .join(GroupMember, GroupMember.group_id == Group.id)
            .where(GroupMember.user_id == user_id, Group.is_active.is_(True))
            .order_by(Group.name.asc())
        ).all()
        return [_full_dict(session, g) for g in groups]


def get_group(engine: Engine, user_id: int, group_id: int) -> dict:
    """Private groups are only visible to members."""
    with get_session(engine) as session:
        group = _active_group(session, group_id)
        member = _membership(session, group_id, user_id)
        if group.is_private and member is None:
            raise not_found("Group")
        data = _full_dict(session, group)
        data["is_member"] = member is not None
        data["my_role"] = member.role if member else None
        return data


def update_group(engine: Engine, user_id: int, group_id: int, changes: dict[str, Any]) -> dict:
    with get_session(engine) as session:
        group = _active_group(session, group_id)
        member = _membership(session, group_id, user_id)
        if member is None or member.role != GROUP_ADMIN_ROLE:
            raise forbidden("Only group admins can edit this group")
        if "name" in changes and changes["name"] is not None:
            group.name = clean_text(changes["name"], 100, field="name")
        if "description" in changes:
            group.description = clean_text(
                changes["description"], 500, field="description", required=False
            )
        if changes.get("is_private") is not None:
            group.is_private = bool(changes["is_private"])
        session.flush()
        return _full_dict(session, group)


def delete_group(engine: Engine, user_id: int, group_id: int, roles: list[str] | tuple[str, ...] = ()) -> None:
    """Soft delete by the creator or a site admin."""
    with get_session(engine) as session:
        group = _active_group(session, group_id)
        if group.creator_id != user_id and ROLE_ADMIN not in roles:
            raise forbidden("Only the group creator can delete this group")
        group.is_active = False
        logger.info("Group %s deleted by %s", group_id, user_id)


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------
def join_group(
    engine: Engine,
    user_id: int,
    group_id: int,
    roles: list[str] | tuple[str, ...] = (),
) -> dict:
    """Join a public group, or a private one the user was invited to."""
    with get_session(engine) as session:
        group = _active_group(session, group_id)
        if _membership(session, group_id, user_id) is not None:
            raise create_error("You are already a member of this group", 400)
        if group.restricted_role and group.restricted_role not in roles and ROLE_ADMIN not in roles:
            raise forbidden(f"This group is restricted to '{group.restricted_role}' members")

        invite = session.scalar(
            select(GroupInvite).where(
                GroupInvite.group_id == group_id,
                GroupInvite.invitee_id == user_id,
                GroupInvite.status == RequestStatus.PENDING.value,
            )
        )
        if group.is_private and invite is None:
            raise forbidden("This group is private; you need an invite to join")
        if invite is not None:
            invite.status = RequestStatus.ACCEPTED.value

        session.add(GroupMember(group_id=group_id, user_id=user_id, role=MEMBER_ROLE))
        chat = chat_service.group_chat(session, group_id)
        if chat is not None:
            chat_service.add_participant(session, chat.id, user_id)
        session.flush()
        logger.info("User %s joined group %s", user_id, group_id)
        data = _full_dict(session, group)
        data["user"] = user_summary(session.get(User, user_id))
        return data


def leave_group(engine: Engine, user_id: int, group_id: int) -> dict:
    with get_session(engine) as session:
        group = _active_group(session, group_id)
        member = _membership(session, group_id, user_id)
        if member is None:
            raise create_error("You are not a member of this group", 400)
        if group.creator_id == user_id:
            raise create_error("The group creator cannot leave; delete the group instead", 400)
        session.delete(member)
        chat = chat_service.group_chat(session, group_id)
        if chat is not None:
            chat_service.remove_participant(session, chat.id, user_id)
        session.flush()
        logger.info("User %s left group %s", user_id, group_id)
        return {
            "group_id": group_id,
            "chat_id": chat.id if chat else None,
            "user": user_summary(session.get(User, user_id)),
        }


def invite_user(engine: Engine, inviter_id: int, group_id: int, invitee_id: int) -> dict:
    """Members invite others; the invitee gets a ``group_invite`` notification."""
    with get_session(engine) as session:
        group = _active_group(session, group_id)
        if _membership(session, group_id, inviter_id) is None:
            raise forbidden("Only members can invite to this group")
        invitee = get_active_user(session, invitee_id)
        if _membership(session, group_id, invitee_id) is not None:
            raise create_error("User is already a member of this group", 400)

        invite = session.scalar(
            select(GroupInvite).where(
                GroupInvite.group_id == group_id, GroupInvite.invitee_id == invitee_id
            )
        )
        if invite is not None and invite.status == RequestStatus.PENDING.value:
            raise create_error("User has already been invited", 400)
        if invite is None:
            invite = GroupInvite(group_id=group_id, inviter_id=inviter_id, invitee_id=invitee_id)
            session.add(invite)
        else:
            invite.inviter_id = inviter_id
            invite.status = RequestStatus.PENDING.value
            invite.created_at = utcnow()
        session.flush()

        inviter = session.get(User, inviter_id)
        notify(
            session, invitee.id, NotificationType.GROUP_INVITE,
            f"{inviter.username} invited you to join {group.name}",
            sender_id=inviter_id,
            link=f"/groups/{group_id}",
        )
        return {"id": invite.id, "group_id": group_id, "invitee_id": invitee_id, "status": invite.status}


def list_members(engine: Engine, user_id: int, group_id: int) -> list[dict]:
    with get_session(engine) as session:
        group = _active_group(session, group_id)
        if group.is_private and _membership(session, group_id, user_id) is None:
            raise not_found("Group")
        rows = session.execute(
            select(GroupMember, User)
            .join(User, User.id == GroupMember.user_id)
            .where(GroupMember.group_id == group_id)
            .order_by(GroupMember.joined_at.asc(), User.id.asc())
        ).all()
        return [
            {**user_summary(u), "role": m.role, "joined_at": isoformat(m.joined_at)}
            for m, u in rows
        ]
