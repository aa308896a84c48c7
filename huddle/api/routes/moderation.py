"""
huddle.api.routes.moderation — Content reports and feedback
============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, client_ip, get_engine, pagination, require_roles
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.constants import ROLE_MODERATOR
from huddle.engine.pagination import PageRequest
from huddle.services import moderation_service

router = APIRouter(tags=["moderation"])

require_moderator = require_roles(ROLE_MODERATOR)


class ReportCreate(BaseModel):
    target_type: str
    target_id: int
    reason: str


class ReportClose(BaseModel):
    status: str
    note: str | None = None


class FeedbackCreate(BaseModel):
    message: str
    rating: int | None = None


@router.post("/reports", status_code=201)
def create_report(
    body: ReportCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    report = moderation_service.create_report(
        engine, user.id, body.target_type, body.target_id, body.reason,
    )
    return ok(report, "Report submitted")


@router.get("/reports")
def list_reports(
    status: str | None = Query("open"),
    req: PageRequest = Depends(pagination),
    user: AuthUser = Depends(rate_limited_user),
    moderator: AuthUser = Depends(require_moderator),
    engine: Engine = Depends(get_engine),
):
    return ok(moderation_service.list_reports(engine, req, status=status or None))


@router.patch("/reports/{report_id}")
def close_report(
    report_id: int,
    body: ReportClose,
    request: Request,
    user: AuthUser = Depends(rate_limited_user),
    moderator: AuthUser = Depends(require_moderator),
    engine: Engine = Depends(get_engine),
):
    report = moderation_service.close_report(
        engine, report_id, body.status,
        actor_id=moderator.id, note=body.note, ip_address=client_ip(request),
    )
    return ok(report, "Report closed")


@router.post("/feedback", status_code=201)
def submit_feedback(
    body: FeedbackCreate,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    feedback = moderation_service.submit_feedback(engine, user.id, body.message, body.rating)
    return ok(feedback, "Thanks for your feedback")
