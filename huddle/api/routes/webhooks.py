"""
huddle.api.routes.webhooks — Payment provider webhook receiver
===============================================================

The raw body is read before any parsing so the signature is checked
against exactly the bytes Stripe signed.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy import Engine

from huddle.api.deps import get_config, get_engine
from huddle.api.responses import ok
from huddle.config import HuddleConfig
from huddle.database.engine import run_db
from huddle.errors import create_error
from huddle.services import billing_service

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    engine: Engine = Depends(get_engine),
    cfg: HuddleConfig = Depends(get_config),
):
    secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        raise create_error("Webhook secret is not configured", 500)
    payload = await request.body()
    result = await run_db(
        billing_service.handle_webhook, engine, cfg, payload, stripe_signature, secret,
    )
    return ok(result, "Webhook received")
