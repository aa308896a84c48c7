"""
huddle.api.routes.subscriptions — Plans, checkout and cancellation
===================================================================
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import Engine

from huddle.api.deps import AuthUser, get_config, get_engine, get_stripe_client
from huddle.api.rate_limit import rate_limited_user
from huddle.api.responses import ok
from huddle.config import HuddleConfig
from huddle.services import billing_service
from huddle.services.billing_service import StripeClient

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class CheckoutBody(BaseModel):
    plan: str
    success_url: str | None = None
    cancel_url: str | None = None


class PlanBody(BaseModel):
    plan: str


class CancelBody(BaseModel):
    refund: bool = False


def _frontend_url(path: str) -> str:
    return f"{os.getenv('FRONTEND_URL', '').rstrip('/')}{path}"


@router.get("/plans")
def plans(
    user: AuthUser = Depends(rate_limited_user),
    cfg: HuddleConfig = Depends(get_config),
):
    return ok({
        "plans": sorted(set(cfg.plans.values())),
        "trial_days": cfg.trial_days,
    })


@router.get("/me")
def my_subscription(
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
):
    return ok(billing_service.current_subscription(engine, user.id))


@router.post("/checkout")
def checkout(
    body: CheckoutBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cfg: HuddleConfig = Depends(get_config),
    client: StripeClient = Depends(get_stripe_client),
):
    session = billing_service.create_checkout_session(
        engine, client, cfg, user.id, body.plan,
        body.success_url or _frontend_url("/billing/success"),
        body.cancel_url or _frontend_url("/billing/cancel"),
    )
    return ok(session, "Checkout session created")


@router.post("/change-plan")
def change_plan(
    body: PlanBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    cfg: HuddleConfig = Depends(get_config),
    client: StripeClient = Depends(get_stripe_client),
):
    return ok(billing_service.change_plan(engine, client, cfg, user.id, body.plan), "Plan changed")


@router.post("/cancel")
def cancel(
    body: CancelBody,
    user: AuthUser = Depends(rate_limited_user),
    engine: Engine = Depends(get_engine),
    client: StripeClient = Depends(get_stripe_client),
):
    return ok(
        billing_service.cancel_subscription(engine, client, user.id, refund=body.refund),
        "Subscription cancelled",
    )
