"""
huddle.services.moderation_service — Content reports and product feedback
==========================================================================

Any user can report a blog post, a comment or another user.  Moderators
work the queue and close each report as ``resolved`` or ``dismissed``;
closing is written to the admin audit trail.  Feedback is a free-text
note with an optional 1-5 rating, read by admins.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select

from huddle.constants import clean_text, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    AdminActionType,
    BlogPost,
    Comment,
    Feedback,
    Report,
    ReportStatus,
    ReportTarget,
    User,
)
from huddle.engine.pagination import PageRequest
from huddle.errors import create_error, not_found
from huddle.services.admin_service import log_admin_action, row_snapshot

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 300
MAX_FEEDBACK_LENGTH = 1000


def report_dict(r: Report) -> dict:
    return {
        "id": r.id,
        "reporter_id": r.reporter_id,
        "target_type": r.target_type,
        "target_id": r.target_id,
        "reason": r.reason,
        "status": r.status,
        "resolved_by": r.resolved_by,
        "resolved_at": isoformat(r.resolved_at),
        "created_at": isoformat(r.created_at),
    }


def feedback_dict(f: Feedback) -> dict:
    return {
        "id": f.id,
        "user_id": f.user_id,
        "message": f.message,
        "rating": f.rating,
        "created_at": isoformat(f.created_at),
    }


def _target_exists(session, target: ReportTarget, target_id: int) -> bool:
    if target is ReportTarget.POST:
        post = session.get(BlogPost, target_id)
        return post is not None and not post.is_deleted
    if target is ReportTarget.COMMENT:
        return session.get(Comment, target_id) is not None
    user = session.get(User, target_id)
    return user is not None and user.is_active


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------
def create_report(
    engine: Engine,
    reporter_id: int,
    target_type: str,
    target_id: int,
    reason: str,
) -> dict:
    try:
        target = ReportTarget(target_type)
    except ValueError:
        raise create_error(f"Unknown report type: {target_type}", 400)
    reason_ = clean_text(reason, MAX_REASON_LENGTH, field="reason")
    if target is ReportTarget.USER and target_id == reporter_id:
        raise create_error("You cannot report yourself", 400)

    with get_session(engine) as session:
        if not _target_exists(session, target, target_id):
            raise not_found(target.value.capitalize())
        existing = session.scalar(
            select(Report.id).where(
                Report.reporter_id == reporter_id,
                Report.target_type == target.value,
                Report.target_id == target_id,
            )
        )
        if existing is not None:
            raise create_error("You have already reported this", 409)
        report = Report(
            reporter_id=reporter_id,
            target_type=target.value,
            target_id=target_id,
            reason=reason_,
            status=ReportStatus.OPEN.value,
        )
        session.add(report)
        session.flush()
        logger.info("User %s reported %s %s", reporter_id, target.value, target_id)
        return report_dict(report)


def list_reports(engine: Engine, req: PageRequest, *, status: str | None = ReportStatus.OPEN.value) -> dict:
    """Oldest first, so the queue is worked in arrival order."""
    with get_session(engine) as session:
        conditions = [Report.status == status] if status else []
        total = session.scalar(select(func.count()).select_from(Report).where(*conditions)) or 0
        rows = session.scalars(
            select(Report)
            .where(*conditions)
            .order_by(Report.created_at.asc(), Report.id.asc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {"reports": [report_dict(r) for r in rows], "pagination": req.meta(total)}


def close_report(
    engine: Engine,
    report_id: int,
    status: str,
    *,
    actor_id: int,
    note: str | None = None,
    ip_address: str | None = None,
) -> dict:
    if status not in (ReportStatus.RESOLVED.value, ReportStatus.DISMISSED.value):
        raise create_error("status must be 'resolved' or 'dismissed'", 400)
    with get_session(engine) as session:
        report = session.get(Report, report_id)
        if report is None:
            raise not_found("Report")
        if report.status != ReportStatus.OPEN.value:
            raise create_error("Report is already closed", 400)
        before = row_snapshot(report)
        report.status = status
        report.resolved_by = actor_id
        report.resolved_at = utcnow()
        session.flush()
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="reports",
            target_id=str(report_id),
            before=before,
            after=row_snapshot(report),
            ip_address=ip_address,
            reason=note,
        )
        logger.info("Report %s %s by %s", report_id, status, actor_id)
        return report_dict(report)


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------
def submit_feedback(engine: Engine, user_id: int, message: str, rating: int | None = None) -> dict:
    message_ = clean_text(message, MAX_FEEDBACK_LENGTH, field="message")
    if rating is not None and not 1 <= rating <= 5:
        raise create_error("rating must be between 1 and 5", 400)
    with get_session(engine) as session:
        feedback = Feedback(user_id=user_id, message=message_, rating=rating)
        session.add(feedback)
        session.flush()
        return feedback_dict(feedback)


def list_feedback(engine: Engine, req: PageRequest) -> dict:
    """Newest first, with the average rating over everything rated."""
    with get_session(engine) as session:
        total = session.scalar(select(func.count()).select_from(Feedback)) or 0
        average = session.scalar(select(func.avg(Feedback.rating)).where(Feedback.rating.is_not(None)))
        rows = session.scalars(
            select(Feedback)
            .order_by(Feedback.created_at.desc(), Feedback.id.desc())
            .offset(req.offset)
            .limit(req.page_size)
        ).all()
        return {
            "feedback": [feedback_dict(f) for f in rows],
            "average_rating": round(float(average), 2) if average is not None else None,
            "pagination": req.meta(total),
        }
