"""
huddle.api.routes.tasks — Personal tasks
=========================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_cache, get_engine, pagination
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.engine.cache import ConfigCache
from huddle.engine.pagination import PageRequest
from huddle.services import goal_service

router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskCreate(BaseModel):
    title: str
    description: str | None = None
    goal_id: int | None = None
    due_date: str | None = None


class TaskUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    goal_id: int | None = None
    due_date: str | None = None
    status: str | None = None


@router.post("", status_code=201)
def create_task(
    body: TaskCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    task = goal_service.create_task(
        engine, user.id, body.title,
        description=body.description, goal_id=body.goal_id, due_date=body.due_date,
    )
    return ok(task, "Task created")


@router.get("")
def list_tasks(
    status: str | None = Query(None),
    goal_id: int | None = Query(None),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(goal_service.list_tasks(engine, user.id, req, status=status, goal_id=goal_id))


@router.get("/{task_id}")
def get_task(
    task_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(goal_service.get_task(engine, user.id, task_id))


@router.patch("/{task_id}")
def update_task(
    task_id: int,
    body: TaskUpdate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    changes = body.model_dump(exclude_unset=True)
    return ok(goal_service.update_task(engine, user.id, task_id, changes, cache), "Task updated")


@router.post("/{task_id}/complete")
def complete_task(
    task_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(goal_service.complete_task(engine, user.id, task_id, cache), "Task completed")


@router.delete("/{task_id}")
def delete_task(
    task_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    goal_service.delete_task(engine, user.id, task_id)
    return ok(None, "Task deleted")
