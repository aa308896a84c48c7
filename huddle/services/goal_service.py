"""
huddle.services.goal_service — Goals, milestones and tasks
===========================================================

Completion is the only rewarded transition: a goal, milestone or task
entering ``completed`` emits one gamification event keyed by its own ID,
so re-completing (or completing after a reopen) never pays out twice.

When a goal has milestones its progress is derived from them (completed
share, rounded down); otherwise progress is set directly and clamped to
``0..100``.  Reaching 100 completes the goal either way.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from huddle.constants import clean_text, ensure_utc, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    ActivityLog,
    Goal,
    GoalCategory,
    Milestone,
    NotificationType,
    Priority,
    Task,
    User,
    WorkStatus,
)
from huddle.engine.events import Action, GamificationEvent
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, forbidden, not_found
from huddle.services.gamification_service import apply_event
from huddle.services.notification_service import notify
from huddle.services.user_service import get_active_user, user_summary

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

MILESTONE_PROGRESS_ERROR = "Progress of a goal with milestones follows its milestones"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _enum_value(enum_cls, value, field: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise create_error(f"Invalid {field}: {value!r} (expected one of {allowed})", 400)


def _parse_date(value, field: str = "due_date") -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise create_error(f"Invalid {field}: expected YYYY-MM-DD", 400)


def clamp_progress(value) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise create_error("Progress must be a number", 400)
    return max(0, min(100, number))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def milestone_dict(m: Milestone) -> dict:
    return {
        "id": m.id,
        "goal_id": m.goal_id,
        "title": m.title,
        "due_date": isoformat(m.due_date),
        "is_completed": m.is_completed,
        "completed_at": isoformat(m.completed_at),
    }


def goal_dict(goal: Goal, *, with_milestones: bool = True) -> dict:
    data = {
        "id": goal.id,
        "user_id": goal.user_id,
        "title": goal.title,
        "description": goal.description,
        "category": goal.category,
        "priority": goal.priority,
        "status": goal.status,
        "progress": goal.progress,
        "is_public": goal.is_public,
        "due_date": isoformat(goal.due_date),
        "completed_at": isoformat(goal.completed_at),
        "created_at": isoformat(goal.created_at),
    }
    if with_milestones:
        data["milestones"] = [milestone_dict(m) for m in goal.milestones]
    return data


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "user_id": t.user_id,
        "goal_id": t.goal_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "due_date": isoformat(t.due_date),
        "completed_at": isoformat(t.completed_at),
        "created_at": isoformat(t.created_at),
    }


# ---------------------------------------------------------------------------
# Goal helpers
# ---------------------------------------------------------------------------
def _own_goal(session: Session, user_id: int, goal_id: int) -> Goal:
    goal = session.get(Goal, goal_id)
    if goal is None:
        raise not_found("Goal")
    if goal.user_id != user_id:
        raise forbidden("You can only modify your own goals")
    return goal


def _complete_goal(session: Session, goal: Goal, cache: ConfigCache | None) -> dict | None:
    """Move *goal* to completed and reward it (once per goal)."""
    if goal.status == WorkStatus.COMPLETED.value:
        return None
    goal.status = WorkStatus.COMPLETED.value
    goal.progress = 100
    goal.completed_at = utcnow()
    session.flush()
    reward = apply_event(
        session,
        GamificationEvent(
            user_id=goal.user_id,
            action=Action.GOAL_COMPLETED,
            source_id=str(goal.id),
            metadata={"goal_id": goal.id, "title": goal.title},
        ),
        cache,
    )
    if not reward.duplicate:
        notify(
            session, goal.user_id, NotificationType.GOAL_MILESTONE,
            f"Goal completed: {goal.title}",
            link=f"/goals/{goal.id}",
        )
    logger.info("Goal %s completed by %s", goal.id, goal.user_id)
    return reward.to_dict()


def _apply_progress(session: Session, goal: Goal, progress: int, cache) -> dict | None:
    goal.progress = progress
    if progress >= 100:
        return _complete_goal(session, goal, cache)
    if progress > 0 and goal.status == WorkStatus.NOT_STARTED.value:
        goal.status = WorkStatus.IN_PROGRESS.value
    return None


def _recompute_from_milestones(session: Session, goal: Goal, cache) -> dict | None:
    session.flush()
    session.refresh(goal, attribute_names=["milestones"])
    if not goal.milestones or goal.status == WorkStatus.COMPLETED.value:
        return None
    done = sum(1 for m in goal.milestones if m.is_completed)
    return _apply_progress(session, goal, done * 100 // len(goal.milestones), cache)


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------
def create_goal(
    engine: Engine,
    user_id: int,
    title: str,
    *,
    description: str | None = None,
    category: str = GoalCategory.PERSONAL.value,
    priority: str = Priority.MEDIUM.value,
    due_date=None,
    is_public: bool = False,
) -> dict:
    values = {
        "title": clean_text(title, 100, field="title"),
        "description": clean_text(description, 500, field="description", required=False),
        "category": _enum_value(GoalCategory, category, "category"),
        "priority": _enum_value(Priority, priority, "priority"),
        "due_date": _parse_date(due_date),
    }
    with get_session(engine) as session:
        get_active_user(session, user_id)
        goal = Goal(user_id=user_id, is_public=is_public, status=WorkStatus.NOT_STARTED.value,
                    progress=0, **values)
        session.add(goal)
        session.flush()
        session.add(ActivityLog(user_id=user_id, action="goal_created",
                                metadata_={"goal_id": goal.id}))
        logger.info("Goal %s created by %s", goal.id, user_id)
        return goal_dict(goal)


def list_goals(
    engine: Engine,
    user_id: int,
    req: PageRequest,
    *,
    status: str | None = None,
    category: str | None = None,
) -> dict:
    with get_session(engine) as session:
        conditions = [Goal.user_id == user_id]
        if status:
            conditions.append(Goal.status == _enum_value(WorkStatus, status, "status"))
        if category:
            conditions.append(Goal.category == _enum_value(GoalCategory, category, "category"))
        total = session.scalar(select(func.count()).select_from(Goal).where(*conditions)) or 0
        goals = session.scalars(
            select(Goal)
            .where(*conditions)
            .order_by(Goal.created_at.desc(), Goal.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"goals": [goal_dict(g) for g in goals], "pagination": req.meta(total)}


def list_public_goals(engine: Engine, req: PageRequest) -> dict:
    """Public goals of active users, archived goals excluded."""
    with get_session(engine) as session:
        conditions = (
            Goal.is_public.is_(True),
            Goal.status != WorkStatus.ARCHIVED.value,
            User.is_active.is_(True),
        )
        total = session.scalar(
            select(func.count()).select_from(Goal)
            .join(User, User.id == Goal.user_id)
            .where(*conditions)
        ) or 0
        rows = session.execute(
            select(Goal, User)
            .join(User, User.id == Goal.user_id)
            .where(*conditions)
            .order_by(Goal.created_at.desc(), Goal.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        items = []
        for g, owner in rows:
            data = goal_dict(g, with_milestones=False)
            data["owner"] = user_summary(owner)
            items.append(data)
        return {"goals": items, "pagination": req.meta(total)}


def get_goal(engine: Engine, viewer_id: int, goal_id: int) -> dict:
    with get_session(engine) as session:
        goal = session.get(Goal, goal_id)
        if goal is None or (goal.user_id != viewer_id and not goal.is_public):
            raise not_found("Goal")
        return goal_dict(goal)


def update_goal(
    engine: Engine,
    user_id: int,
    goal_id: int,
    changes: dict[str, Any],
    cache: ConfigCache | None = None,
) -> dict:
    with get_session(engine) as session:
        goal = _own_goal(session, user_id, goal_id)
        if changes.get("title") is not None:
            goal.title = clean_text(changes["title"], 100, field="title")
        if "description" in changes:
            goal.description = clean_text(
                changes["description"], 500, field="description", required=False
            )
        if changes.get("category") is not None:
            goal.category = _enum_value(GoalCategory, changes["category"], "category")
        if changes.get("priority") is not None:
            goal.priority = _enum_value(Priority, changes["priority"], "priority")
        if "due_date" in changes:
            goal.due_date = _parse_date(changes["due_date"])
        if changes.get("is_public") is not None:
            goal.is_public = bool(changes["is_public"])

        reward = None
        new_status = changes.get("status")
        if new_status is not None:
            new_status = _enum_value(WorkStatus, new_status, "status")
            if new_status == WorkStatus.COMPLETED.value:
                reward = _complete_goal(session, goal, cache)
            else:
                goal.status = new_status
                if new_status != WorkStatus.ARCHIVED.value:
                    goal.completed_at = None
        if changes.get("progress") is not None:
            if goal.milestones:
                raise create_error(MILESTONE_PROGRESS_ERROR, 400)
            reward = _apply_progress(session, goal, clamp_progress(changes["progress"]), cache) or reward
        session.flush()
        data = goal_dict(goal)
        data["reward"] = reward
        return data


def update_progress(
    engine: Engine,
    user_id: int,
    goal_id: int,
    progress,
    cache: ConfigCache | None = None,
) -> dict:
    value = clamp_progress(progress)
    with get_session(engine) as session:
        goal = _own_goal(session, user_id, goal_id)
        if goal.milestones:
            raise create_error(MILESTONE_PROGRESS_ERROR, 400)
        reward = _apply_progress(session, goal, value, cache)
        session.flush()
        data = goal_dict(goal)
        data["reward"] = reward
        return data


def complete_goal(engine: Engine, user_id: int, goal_id: int, cache: ConfigCache | None = None) -> dict:
    with get_session(engine) as session:
        goal = _own_goal(session, user_id, goal_id)
        if goal.status == WorkStatus.COMPLETED.value:
            raise create_error("Goal is already completed", 400)
        reward = _complete_goal(session, goal, cache)
        data = goal_dict(goal)
        data["reward"] = reward
        return data


def delete_goal(engine: Engine, user_id: int, goal_id: int) -> None:
    """Hard delete; milestones cascade, linked tasks are unlinked."""
    with get_session(engine) as session:
        goal = _own_goal(session, user_id, goal_id)
        for task in session.scalars(select(Task).where(Task.goal_id == goal_id)).all():
            task.goal_id = None
        session.delete(goal)
        logger.info("Goal %s deleted by %s", goal_id, user_id)


def streak_dates(engine: Engine, user_id: int) -> list[str]:
    """Distinct ``YYYY-MM-DD`` days on which the user completed goals."""
    with get_session(engine) as session:
        stamps = session.scalars(
            select(Goal.completed_at).where(
                Goal.user_id == user_id, Goal.completed_at.is_not(None)
            )
        ).all()
        return sorted({ensure_utc(ts).date().isoformat() for ts in stamps})


def goal_analytics(engine: Engine, user_id: int) -> dict:
    with get_session(engine) as session:
        goals = session.scalars(select(Goal).where(Goal.user_id == user_id)).all()
        by_status = Counter(g.status for g in goals)
        by_category = Counter(g.category for g in goals)
        completed = [g for g in goals if g.status == WorkStatus.COMPLETED.value and g.completed_at]
        durations = [
            (ensure_utc(g.completed_at) - ensure_utc(g.created_at)).total_seconds() / 86400
            for g in completed
            if g.created_at is not None
        ]
        total = len(goals)
        return {
            "total": total,
            "by_status": dict(by_status),
            "by_category": dict(by_category),
            "completion_rate": round(len(completed) / total, 4) if total else 0.0,
            "average_days_to_complete": (
                round(sum(durations) / len(durations), 2) if durations else None
            ),
        }


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------
def add_milestone(
    engine: Engine,
    user_id: int,
    goal_id: int,
    title: str,
    due_date=None,
    cache: ConfigCache | None = None,
) -> dict:
    title_ = clean_text(title, 100, field="title")
    with get_session(engine) as session:
        goal = _own_goal(session, user_id, goal_id)
        milestone = Milestone(goal_id=goal.id, title=title_, due_date=_parse_date(due_date))
        session.add(milestone)
        _recompute_from_milestones(session, goal, cache)
        return milestone_dict(milestone)


def _own_milestone(session: Session, user_id: int, milestone_id: int) -> Milestone:
    milestone = session.get(Milestone, milestone_id)
    if milestone is None:
        raise not_found("Milestone")
    if milestone.goal.user_id != user_id:
        raise forbidden("You can only modify your own milestones")
    return milestone


def complete_milestone(
    engine: Engine,
    user_id: int,
    milestone_id: int,
    cache: ConfigCache | None = None,
) -> dict:
    with get_session(engine) as session:
        milestone = _own_milestone(session, user_id, milestone_id)
        if milestone.is_completed:
            raise create_error("Milestone is already completed", 400)
        milestone.is_completed = True
        milestone.completed_at = utcnow()
        session.flush()
        reward = apply_event(
            session,
            GamificationEvent(
                user_id=user_id,
                action=Action.MILESTONE_COMPLETED,
                source_id=str(milestone.id),
                metadata={"goal_id": milestone.goal_id},
            ),
            cache,
        )
        goal = milestone.goal
        notify(
            session, user_id, NotificationType.GOAL_MILESTONE,
            f"Milestone reached: {milestone.title}",
            link=f"/goals/{goal.id}",
        )
        goal_reward = _recompute_from_milestones(session, goal, cache)
        return {
            "milestone": milestone_dict(milestone),
            "goal": goal_dict(goal, with_milestones=False),
            "reward": reward.to_dict(),
            "goal_reward": goal_reward,
        }


def delete_milestone(engine: Engine, user_id: int, milestone_id: int, cache=None) -> None:
    with get_session(engine) as session:
        milestone = _own_milestone(session, user_id, milestone_id)
        goal = milestone.goal
        session.delete(milestone)
        _recompute_from_milestones(session, goal, cache)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
def _own_task(session: Session, user_id: int, task_id: int) -> Task:
    task = session.get(Task, task_id)
    if task is None or task.user_id != user_id:
        raise not_found("Task")
    return task


def _linkable_goal(session: Session, user_id: int, goal_id) -> int | None:
    if goal_id is None:
        return None
    return _own_goal(session, user_id, int(goal_id)).id


def create_task(
    engine: Engine,
    user_id: int,
    title: str,
    *,
    description: str | None = None,
    goal_id: int | None = None,
    due_date=None,
) -> dict:
    title_ = clean_text(title, 100, field="title")
    desc = clean_text(description, 500, field="description", required=False)
    with get_session(engine) as session:
        get_active_user(session, user_id)
        task = Task(
            user_id=user_id,
            goal_id=_linkable_goal(session, user_id, goal_id),
            title=title_,
            description=desc,
            status=WorkStatus.NOT_STARTED.value,
            due_date=_parse_date(due_date),
        )
        session.add(task)
        session.flush()
        return task_dict(task)


def list_tasks(
    engine: Engine,
    user_id: int,
    req: PageRequest,
    *,
    status: str | None = None,
    goal_id: int | None = None,
) -> dict:
    with get_session(engine) as session:
        conditions = [Task.user_id == user_id]
        if status:
            conditions.append(Task.status == _enum_value(WorkStatus, status, "status"))
        if goal_id is not None:
            conditions.append(Task.goal_id == goal_id)
        total = session.scalar(select(func.count()).select_from(Task).where(*conditions)) or 0
        tasks = session.scalars(
            select(Task)
            .where(*conditions)
            .order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"tasks": [task_dict(t) for t in tasks], "pagination": req.meta(total)}


def get_task(engine: Engine, user_id: int, task_id: int) -> dict:
    with get_session(engine) as session:
        return task_dict(_own_task(session, user_id, task_id))


def update_task(engine: Engine, user_id: int, task_id: int, changes: dict[str, Any],
                cache: ConfigCache | None = None) -> dict:
    with get_session(engine) as session:
        task = _own_task(session, user_id, task_id)
        if changes.get("title") is not None:
            task.title = clean_text(changes["title"], 100, field="title")
        if "description" in changes:
            task.description = clean_text(
                changes["description"], 500, field="description", required=False
            )
        if "due_date" in changes:
            task.due_date = _parse_date(changes["due_date"])
        if "goal_id" in changes:
            task.goal_id = _linkable_goal(session, user_id, changes["goal_id"])
        reward = None
        if changes.get("status") is not None:
            new_status = _enum_value(WorkStatus, changes["status"], "status")
            if new_status == WorkStatus.COMPLETED.value:
                reward = _complete_task(session, task, cache)
            else:
                task.status = new_status
                task.completed_at = None
        session.flush()
        data = task_dict(task)
        data["reward"] = reward
        return data


def _complete_task(session: Session, task: Task, cache) -> dict | None:
    if task.status == WorkStatus.COMPLETED.value:
        return None
    task.status = WorkStatus.COMPLETED.value
    task.completed_at = utcnow()
    session.flush()
    return apply_event(
        session,
        GamificationEvent(user_id=task.user_id, action=Action.TASK_COMPLETED,
                          source_id=str(task.id)),
        cache,
    ).to_dict()


def complete_task(engine: Engine, user_id: int, task_id: int, cache: ConfigCache | None = None) -> dict:
    with get_session(engine) as session:
        task = _own_task(session, user_id, task_id)
        if task.status == WorkStatus.COMPLETED.value:
            raise create_error("Task is already completed", 400)
        reward = _complete_task(session, task, cache)
        data = task_dict(task)
        data["reward"] = reward
        return data


def delete_task(engine: Engine, user_id: int, task_id: int) -> None:
    with get_session(engine) as session:
        session.delete(_own_task(session, user_id, task_id))
