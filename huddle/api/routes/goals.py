"""
huddle.api.routes.goals — Goals, progress and milestones
=========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_cache, get_engine, pagination, require_active_subscription
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.database.models import GoalCategory, Priority
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest
from huddle.services import goal_service

router = APIRouter(prefix="/goals", tags=["goals"])


class GoalCreate(BaseModel):
    title: str
    description: str | None = None
    category: str = GoalCategory.PERSONAL.value
    priority: str = Priority.MEDIUM.value
    due_date: str | None = None
    is_public: bool = False


class GoalUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    category: str | None = None
    priority: str | None = None
    due_date: str | None = None
    is_public: bool | None = None
    status: str | None = None
    progress: int | None = None


class ProgressBody(BaseModel):
    progress: int


class MilestoneCreate(BaseModel):
    title: str
    due_date: str | None = None


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_goal(
    body: GoalCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    goal = goal_service.create_goal(
        engine, user.id, body.title,
        description=body.description,
        category=body.category,
        priority=body.priority,
        due_date=body.due_date,
        is_public=body.is_public,
    )
    return ok(goal, "Goal created")


@router.get("")
def list_goals(
    status: str | None = Query(None),
    category: str | None = Query(None),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(goal_service.list_goals(engine, user.id, req, status=status, category=category))


@router.get("/public")
def list_public_goals(
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(goal_service.list_public_goals(engine, req))


@router.get("/streak-dates")
def streak_dates(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(goal_service.streak_dates(engine, user.id))


@router.get("/analytics")
def analytics(
    user: AuthUser = Depends(require_active_subscription),
    engine: Engine = Depends(get_engine),
):
    return ok(goal_service.goal_analytics(engine, user.id))


@router.get("/{goal_id}")
def get_goal(
    goal_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(goal_service.get_goal(engine, user.id, goal_id))


@router.patch("/{goal_id}")
def update_goal(
    goal_id: int,
    body: GoalUpdate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    changes = body.model_dump(exclude_unset=True)
    return ok(goal_service.update_goal(engine, user.id, goal_id, changes, cache), "Goal updated")


@router.patch("/{goal_id}/progress")
def update_progress(
    goal_id: int,
    body: ProgressBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(goal_service.update_progress(engine, user.id, goal_id, body.progress, cache))


@router.post("/{goal_id}/complete")
def complete_goal(
    goal_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(goal_service.complete_goal(engine, user.id, goal_id, cache), "Goal completed")


@router.delete("/{goal_id}")
def delete_goal(
    goal_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    goal_service.delete_goal(engine, user.id, goal_id)
    return ok(None, "Goal deleted")


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------
@router.post("/{goal_id}/milestones", status_code=201)
def add_milestone(
    goal_id: int,
    body: MilestoneCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(
        goal_service.add_milestone(engine, user.id, goal_id, body.title, body.due_date, cache),
        "Milestone added",
    )


@router.post("/milestones/{milestone_id}/complete")
def complete_milestone(
    milestone_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(goal_service.complete_milestone(engine, user.id, milestone_id, cache), "Milestone completed")


@router.delete("/milestones/{milestone_id}")
def delete_milestone(
    milestone_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(goal_service.delete_milestone(engine, user.id, milestone_id, cache), "Milestone deleted")
