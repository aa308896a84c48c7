"""
huddle.api.routes.blog — Posts, likes and comments
===================================================
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
from huddle.services import blog_service

router = APIRouter(prefix="/blog", tags=["blog"])


class PostCreate(BaseModel):
    title: str
    content: str
    category: str | None = None
    image_url: str | None = None


class PostUpdate(BaseModel):
    title: str | None = None
    content: str | None = None
    category: str | None = None
    image_url: str | None = None


class CommentCreate(BaseModel):
    content: str


@router.post("/posts", status_code=201)
def create_post(
    body: PostCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    post = blog_service.create_post(
        engine, user.id, body.title, body.content,
        category=body.category, image_url=body.image_url, cache=cache,
    )
    return ok(post, "Post created")


@router.get("/posts")
def list_posts(
    category: str | None = Query(None),
    author_id: int | None = Query(None),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(blog_service.list_posts(engine, req, category=category, author_id=author_id))


@router.get("/posts/{post_id}")
def get_post(
    post_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(blog_service.get_post(engine, post_id, user.id))


@router.patch("/posts/{post_id}")
def update_post(
    post_id: int,
    body: PostUpdate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    changes = body.model_dump(exclude_unset=True)
    return ok(blog_service.update_post(engine, user.id, post_id, changes), "Post updated")


@router.delete("/posts/{post_id}")
def delete_post(
    post_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    blog_service.delete_post(engine, user.id, post_id, user.roles)
    return ok(None, "Post deleted")


@router.post("/posts/{post_id}/like")
def toggle_like(
    post_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(blog_service.toggle_like(engine, user.id, post_id))


@router.post("/posts/{post_id}/comments", status_code=201)
def add_comment(
    post_id: int,
    body: CommentCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    return ok(blog_service.add_comment(engine, user.id, post_id, body.content, cache), "Comment added")


@router.delete("/comments/{comment_id}")
def delete_comment(
    comment_id: int,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    blog_service.delete_comment(engine, user.id, comment_id, user.roles)
    return ok(None, "Comment deleted")
