"""
huddle.services.blog_service — Posts, likes and comments
=========================================================
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import Engine, func, select

from huddle.constants import ROLE_ADMIN, ROLE_MODERATOR, clean_text, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import BlogLike, BlogPost, Comment, NotificationType, User
from huddle.engine.events import Action, GamificationEvent
from huddle.engine.pagination import PageRequest
from huddle.errors import forbidden, not_found
from huddle.services.gamification_service import apply_event
from huddle.services.notification_service import notify
from huddle.services.user_service import get_active_user, user_summary

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_CONTENT_LENGTH = 20000
MAX_CATEGORY_LENGTH = 100
MAX_COMMENT_LENGTH = 1000


def _is_moderator(roles) -> bool:
    return bool({ROLE_ADMIN, ROLE_MODERATOR} & set(roles or ()))


def post_dict(post: BlogPost, author: User | None = None, *, like_count: int = 0,
              comment_count: int = 0) -> dict:
    return {
        "id": post.id,
        "author_id": post.author_id,
        "author": user_summary(author) if author is not None else None,
        "title": post.title,
        "content": post.content,
        "category": post.category,
        "image_url": post.image_url,
        "like_count": like_count,
        "comment_count": comment_count,
        "created_at": isoformat(post.created_at),
        "updated_at": isoformat(post.updated_at),
    }


def comment_dict(c: Comment, author: User | None = None) -> dict:
    return {
        "id": c.id,
        "post_id": c.post_id,
        "author_id": c.author_id,
        "author": user_summary(author) if author is not None else None,
        "content": c.content,
        "created_at": isoformat(c.created_at),
    }


def _live_post(session, post_id: int) -> BlogPost:
    post = session.get(BlogPost, post_id)
    if post is None or post.is_deleted:
        raise not_found("Post")
    return post


def _counts(session, post_id: int) -> tuple[int, int]:
    likes = session.scalar(
        select(func.count()).select_from(BlogLike).where(BlogLike.post_id == post_id)
    ) or 0
    comments = session.scalar(
        select(func.count()).select_from(Comment).where(Comment.post_id == post_id)
    ) or 0
    return likes, comments


def _full_dict(session, post: BlogPost) -> dict:
    likes, comments = _counts(session, post.id)
    return post_dict(post, session.get(User, post.author_id), like_count=likes,
                     comment_count=comments)


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
def create_post(
    engine: Engine,
    author_id: int,
    title: str,
    content: str,
    *,
    category: str | None = None,
    image_url: str | None = None,
    cache: ConfigCache | None = None,
) -> dict:
    title_ = clean_text(title, MAX_TITLE_LENGTH, field="title")
    content_ = clean_text(content, MAX_CONTENT_LENGTH, field="content")
    category_ = clean_text(category, MAX_CATEGORY_LENGTH, field="category", required=False)
    image_ = clean_text(image_url, 500, field="image_url", required=False)
    with get_session(engine) as session:
        get_active_user(session, author_id)
        now = utcnow()
        post = BlogPost(
            author_id=author_id,
            title=title_,
            content=content_,
            category=category_,
            image_url=image_,
            created_at=now,
            updated_at=now,
        )
        session.add(post)
        session.flush()
        apply_event(
            session,
            GamificationEvent(
                user_id=author_id, action=Action.BLOG_POST_CREATED, source_id=str(post.id),
            ),
            cache,
        )
        logger.info("Post %s created by %s", post.id, author_id)
        return _full_dict(session, post)


def list_posts(
    engine: Engine,
    req: PageRequest,
    *,
    category: str | None = None,
    author_id: int | None = None,
) -> dict:
    with get_session(engine) as session:
        conditions = [BlogPost.is_deleted.is_(False)]
        if category:
            conditions.append(BlogPost.category == category)
        if author_id is not None:
            conditions.append(BlogPost.author_id == author_id)
        total = session.scalar(select(func.count()).select_from(BlogPost).where(*conditions)) or 0
        posts = session.scalars(
            select(BlogPost)
            .where(*conditions)
            .order_by(BlogPost.created_at.desc(), BlogPost.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"posts": [_full_dict(session, p) for p in posts], "pagination": req.meta(total)}


def get_post(engine: Engine, post_id: int, viewer_id: int | None = None) -> dict:
    """Post with its comments (oldest first) and like count."""
    with get_session(engine) as session:
        post = _live_post(session, post_id)
        data = _full_dict(session, post)
        rows = session.execute(
            select(Comment, User)
            .join(User, User.id == Comment.author_id)
            .where(Comment.post_id == post_id)
            .order_by(Comment.created_at.asc(), Comment.id.asc())
        ).all()
        data["comments"] = [comment_dict(c, u) for c, u in rows]
        if viewer_id is not None:
            data["liked"] = session.get(BlogLike, (post_id, viewer_id)) is not None
        return data


def update_post(engine: Engine, user_id: int, post_id: int, changes: dict[str, Any]) -> dict:
    with get_session(engine) as session:
        post = _live_post(session, post_id)
        if post.author_id != user_id:
            raise forbidden("You can only edit your own posts")
        if changes.get("title") is not None:
            post.title = clean_text(changes["title"], MAX_TITLE_LENGTH, field="title")
        if changes.get("content") is not None:
            post.content = clean_text(changes["content"], MAX_CONTENT_LENGTH, field="content")
        if "category" in changes:
            post.category = clean_text(
                changes["category"], MAX_CATEGORY_LENGTH, field="category", required=False
            )
        if "image_url" in changes:
            post.image_url = clean_text(changes["image_url"], 500, field="image_url", required=False)
        post.updated_at = utcnow()
        session.flush()
        return _full_dict(session, post)


def delete_post(engine: Engine, user_id: int, post_id: int, roles=()) -> None:
    with get_session(engine) as session:
        post = _live_post(session, post_id)
        if post.author_id != user_id and not _is_moderator(roles):
            raise forbidden("You can only delete your own posts")
        post.is_deleted = True
        logger.info("Post %s deleted by %s", post_id, user_id)


# ---------------------------------------------------------------------------
# Likes & comments
# ---------------------------------------------------------------------------
def toggle_like(engine: Engine, user_id: int, post_id: int) -> dict:
    """Like or unlike; the author is notified on like unless liking their own post."""
    with get_session(engine) as session:
        post = _live_post(session, post_id)
        user = get_active_user(session, user_id)
        existing = session.get(BlogLike, (post_id, user_id))
        if existing is not None:
            session.delete(existing)
            liked = False
        else:
            session.add(BlogLike(post_id=post_id, user_id=user_id))
            liked = True
            if post.author_id != user_id:
                notify(
                    session, post.author_id, NotificationType.BLOG_ACTIVITY,
                    f"{user.username} liked your post \"{post.title}\"",
                    sender_id=user_id,
                    link=f"/blog/{post_id}",
                )
        session.flush()
        likes, _ = _counts(session, post_id)
        return {"post_id": post_id, "liked": liked, "like_count": likes}


def add_comment(
    engine: Engine,
    user_id: int,
    post_id: int,
    content: str,
    cache: ConfigCache | None = None,
) -> dict:
    text_ = clean_text(content, MAX_COMMENT_LENGTH, field="comment")
    with get_session(engine) as session:
        post = _live_post(session, post_id)
        user = get_active_user(session, user_id)
        comment = Comment(post_id=post_id, author_id=user_id, content=text_, created_at=utcnow())
        session.add(comment)
        session.flush()
        apply_event(
            session,
            GamificationEvent(
                user_id=user_id, action=Action.COMMENT_CREATED, source_id=str(comment.id),
            ),
            cache,
        )
        if post.author_id != user_id:
            notify(
                session, post.author_id, NotificationType.BLOG_ACTIVITY,
                f"{user.username} commented on your post \"{post.title}\"",
                sender_id=user_id,
                link=f"/blog/{post_id}",
            )
        return comment_dict(comment, user)


def delete_comment(engine: Engine, user_id: int, comment_id: int, roles=()) -> None:
    """Comment author, post author or a moderator may delete."""
    with get_session(engine) as session:
        comment = session.get(Comment, comment_id)
        if comment is None:
            raise not_found("Comment")
        post = session.get(BlogPost, comment.post_id)
        allowed = (
            comment.author_id == user_id
            or (post is not None and post.author_id == user_id)
            or _is_moderator(roles)
        )
        if not allowed:
            raise forbidden("You cannot delete this comment")
        session.delete(comment)
