"""
huddle.services.billing_service — Stripe subscriptions and webhooks
====================================================================

Outbound calls go straight to Stripe's REST API over **httpx**
(form-encoded, bearer secret key, 10 s timeout); any transport or API
failure surfaces as a 502 ``ServiceError``.

Inbound webhooks are verified against ``STRIPE_WEBHOOK_SECRET`` using the
``Stripe-Signature`` scheme (``t=<unix>,v1=<hex hmac>``) and deduplicated
by event ID in ``webhook_events``, so a redelivered event is acknowledged
without touching any rows.

The owning user's ``subscription_status`` always follows the record:
``active`` while the provider subscription is live (paid or trialing),
``trial`` while only the signup trial applies, ``expired`` otherwise.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from huddle.config import DEFAULT_PLAN, HuddleConfig
from huddle.constants import ensure_utc, isoformat, utcnow
from huddle.database.engine import get_session
from huddle.database.models import (
    ProviderStatus,
    Subscription,
    SubscriptionStatus,
    User,
    WebhookEvent,
)
from huddle.errors import ServiceError, create_error, not_found

logger = logging.getLogger(__name__)

STRIPE_API = "https://api.stripe.com/v1"
PROVIDER_TIMEOUT = 10
SIGNATURE_TOLERANCE_SECONDS = 300

_PROVIDER_STATUS: dict[str, ProviderStatus] = {
    "trialing": ProviderStatus.TRIAL,
    "active": ProviderStatus.ACTIVE,
    "past_due": ProviderStatus.PAST_DUE,
    "canceled": ProviderStatus.CANCELED,
    "incomplete": ProviderStatus.INCOMPLETE,
    "incomplete_expired": ProviderStatus.INCOMPLETE_EXPIRED,
    "unpaid": ProviderStatus.UNPAID,
}


# ---------------------------------------------------------------------------
# Provider client
# ---------------------------------------------------------------------------
def _form_encode(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's ``a[b][0][c]=v`` form keys."""
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_form_encode(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    pairs.extend(_form_encode(item, item_name))
                else:
                    pairs.append((item_name, str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


class StripeClient:
    """Minimal synchronous Stripe REST client."""

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: str = STRIPE_API,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def request(self, method: str, path: str, params: dict[str, Any] | None = None) -> dict:
        if not self.configured:
            raise create_error("Payment provider is not configured", 502)
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        try:
            with httpx.Client(timeout=PROVIDER_TIMEOUT, transport=self._transport) as client:
                if method == "GET":
                    resp = client.get(url, headers=headers, params=_form_encode(params or {}))
                else:
                    resp = client.request(
                        method, url, headers=headers, data=dict(_form_encode(params or {})),
                    )
        except httpx.HTTPError as exc:
            logger.error("Stripe %s %s failed: %s", method, path, exc)
            raise create_error("Payment provider unavailable", 502)

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            message = (body.get("error") or {}).get("message") or resp.text[:200]
            logger.error("Stripe %s %s → %s: %s", method, path, resp.status_code, message)
            raise create_error(
                "Payment provider error", 502, {"provider_message": message},
            )
        return body

    # Convenience wrappers ---------------------------------------------------
    def create_customer(self, email: str, user_id: int) -> dict:
        return self.request("POST", "/customers", {
            "email": email, "metadata": {"user_id": user_id},
        })

    def create_checkout_session(
        self, customer_id: str, price_id: str, user_id: int, success_url: str, cancel_url: str,
    ) -> dict:
        return self.request("POST", "/checkout/sessions", {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
        })

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return self.request("GET", f"/subscriptions/{subscription_id}")

    def update_subscription_price(self, subscription_id: str, item_id: str, price_id: str) -> dict:
        return self.request("POST", f"/subscriptions/{subscription_id}", {
            "items": [{"id": item_id, "price": price_id}],
        })

    def cancel_subscription(self, subscription_id: str) -> dict:
        return self.request("DELETE", f"/subscriptions/{subscription_id}")

    def retrieve_invoice(self, invoice_id: str) -> dict:
        return self.request("GET", f"/invoices/{invoice_id}")

    def create_refund(self, payment_intent: str) -> dict:
        return self.request("POST", "/refunds", {"payment_intent": payment_intent})


def client_from_env() -> StripeClient:
    return StripeClient(os.getenv("STRIPE_SECRET_KEY", ""))


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------
def provider_status(raw: str | None) -> ProviderStatus:
    return _PROVIDER_STATUS.get(raw or "", ProviderStatus.INACTIVE)


def user_status_for(status: ProviderStatus | str, is_active: bool) -> SubscriptionStatus:
    """A live provider subscription (paid or trialing) grants full access.

    A placeholder record that never went live leaves the signup trial alone.
    """
    status = ProviderStatus(status)
    if is_active and status in (ProviderStatus.ACTIVE, ProviderStatus.TRIAL):
        return SubscriptionStatus.ACTIVE
    if status == ProviderStatus.TRIAL:
        return SubscriptionStatus.TRIAL
    return SubscriptionStatus.EXPIRED


def has_access(
    status: str,
    trial_started_at: datetime | None,
    trial_days: int,
    now: datetime | None = None,
) -> bool:
    """Active subscribers always; trial users only inside the trial window."""
    if status == SubscriptionStatus.ACTIVE.value:
        return True
    if status == SubscriptionStatus.TRIAL.value and trial_started_at is not None:
        now = now or utcnow()
        return now < ensure_utc(trial_started_at) + timedelta(days=trial_days)
    return False


def _from_unix(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def _first_item(sub_obj: dict) -> dict:
    items = ((sub_obj.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def subscription_dict(sub: Subscription | None, user: User | None = None) -> dict:
    data = {
        "plan": sub.plan if sub else DEFAULT_PLAN,
        "status": sub.status if sub else ProviderStatus.TRIAL.value,
        "is_active": sub.is_active if sub else False,
        "current_period_end": isoformat(sub.current_period_end) if sub else None,
        "cancel_at_period_end": sub.cancel_at_period_end if sub else False,
        "provider_subscription_id": sub.provider_subscription_id if sub else None,
    }
    if user is not None:
        data["subscription_status"] = user.subscription_status
        data["trial_started_at"] = isoformat(user.trial_started_at)
    return data


def _apply_to_user(user: User, sub: Subscription) -> None:
    user.subscription_status = user_status_for(sub.status, sub.is_active).value
    user.subscription_plan = sub.plan


# ---------------------------------------------------------------------------
# User-facing operations
# ---------------------------------------------------------------------------
def current_subscription(engine: Engine, user_id: int) -> dict:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise not_found("User")
        sub = session.scalar(select(Subscription).where(Subscription.user_id == user_id))
        return subscription_dict(sub, user)


def _resolve_price(cfg: HuddleConfig, plan: str) -> str:
    price_id = cfg.price_for_plan(plan)
    if price_id is None:
        raise create_error(f"Unknown plan: {plan}", 400)
    return price_id


def create_checkout_session(
    engine: Engine,
    client: StripeClient,
    cfg: HuddleConfig,
    user_id: int,
    plan: str,
    success_url: str,
    cancel_url: str,
) -> dict:
    """Start a hosted checkout; creates the Stripe customer on first use."""
    price_id = _resolve_price(cfg, plan)
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise not_found("User")
        customer_id, email = user.stripe_customer_id, user.email

    if not customer_id:
        customer_id = client.create_customer(email, user_id)["id"]
        with get_session(engine) as session:
            session.get(User, user_id).stripe_customer_id = customer_id
        logger.info("Stripe customer %s created for user %s", customer_id, user_id)

    checkout = client.create_checkout_session(customer_id, price_id, user_id, success_url, cancel_url)
    return {"id": checkout.get("id"), "url": checkout.get("url"), "plan": plan}


def _require_subscription(engine: Engine, user_id: int) -> str:
    with get_session(engine) as session:
        sub = session.scalar(select(Subscription).where(Subscription.user_id == user_id))
        if sub is None or not sub.provider_subscription_id or not sub.is_active:
            raise create_error("No active subscription", 404)
        return sub.provider_subscription_id


def change_plan(engine: Engine, client: StripeClient, cfg: HuddleConfig, user_id: int, plan: str) -> dict:
    price_id = _resolve_price(cfg, plan)
    sub_id = _require_subscription(engine, user_id)
    remote = client.retrieve_subscription(sub_id)
    item_id = _first_item(remote).get("id")
    if not item_id:
        raise create_error("Subscription has no items to change", 502)
    updated = client.update_subscription_price(sub_id, item_id, price_id)

    with get_session(engine) as session:
        sub = session.scalar(select(Subscription).where(Subscription.user_id == user_id))
        status = provider_status(updated.get("status"))
        sub.plan = cfg.plan_for_price(price_id)
        sub.status = status.value
        sub.is_active = status in (ProviderStatus.ACTIVE, ProviderStatus.TRIAL)
        sub.current_period_end = _from_unix(updated.get("current_period_end")) or sub.current_period_end
        sub.updated_by = "user"
        user = session.get(User, user_id)
        _apply_to_user(user, sub)
        logger.info("User %s changed plan to %s", user_id, sub.plan)
        return subscription_dict(sub, user)


def cancel_subscription(engine: Engine, client: StripeClient, user_id: int, *, refund: bool = False) -> dict:
    """Cancel now; with *refund* the latest invoice's payment is refunded."""
    sub_id = _require_subscription(engine, user_id)
    canceled = client.cancel_subscription(sub_id)

    refunded = False
    if refund and canceled.get("latest_invoice"):
        invoice = client.retrieve_invoice(canceled["latest_invoice"])
        if invoice.get("payment_intent"):
            client.create_refund(invoice["payment_intent"])
            refunded = True

    with get_session(engine) as session:
        sub = session.scalar(select(Subscription).where(Subscription.user_id == user_id))
        sub.status = ProviderStatus.CANCELED.value
        sub.is_active = False
        sub.cancel_at_period_end = False
        sub.current_period_end = _from_unix(canceled.get("canceled_at")) or utcnow()
        sub.updated_by = "user"
        user = session.get(User, user_id)
        _apply_to_user(user, sub)
        logger.info("User %s cancelled subscription %s (refund=%s)", user_id, sub_id, refunded)
        data = subscription_dict(sub, user)
        data["refunded"] = refunded
        return data


# ---------------------------------------------------------------------------
# Webhook verification
# ---------------------------------------------------------------------------
def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Raise a 400 ``ServiceError`` unless *header* signs *payload*."""
    if not secret:
        raise create_error("Webhook secret is not configured", 400)
    if not header:
        raise create_error("Missing Stripe-Signature header", 400)

    timestamp: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        raise create_error("Malformed Stripe-Signature header", 400)

    try:
        ts = int(timestamp)
    except ValueError:
        raise create_error("Malformed Stripe-Signature header", 400)
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        raise create_error("Webhook timestamp outside tolerance", 400)

    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise create_error("Invalid webhook signature", 400)


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header value (used by tests and tooling)."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


# ---------------------------------------------------------------------------
# Webhook event handlers
# ---------------------------------------------------------------------------
def _user_for_customer(session: Session, customer_id: str | None) -> User | None:
    if not customer_id:
        return None
    return session.scalar(select(User).where(User.stripe_customer_id == customer_id))


def _subscription_for(session: Session, user: User) -> Subscription:
    sub = session.scalar(select(Subscription).where(Subscription.user_id == user.id))
    if sub is None:
        sub = Subscription(user_id=user.id, provider="stripe", plan=DEFAULT_PLAN,
                           status=ProviderStatus.TRIAL.value, is_active=False)
        session.add(sub)
    return sub


def _on_checkout_completed(session: Session, obj: dict, cfg: HuddleConfig) -> None:
    ref = obj.get("client_reference_id")
    user = session.get(User, int(ref)) if ref and str(ref).isdigit() else None
    if user is None:
        logger.warning("Checkout %s has no matching user (ref=%s)", obj.get("id"), ref)
        return
    if obj.get("customer"):
        user.stripe_customer_id = obj["customer"]
    sub = _subscription_for(session, user)
    sub.provider_customer_id = obj.get("customer") or sub.provider_customer_id
    sub.provider_subscription_id = obj.get("subscription") or sub.provider_subscription_id
    sub.updated_by = "webhook"
    session.flush()
    logger.info("Checkout completed for user %s", user.id)


def _on_subscription_upsert(session: Session, obj: dict, cfg: HuddleConfig) -> None:
    sub = session.scalar(
        select(Subscription).where(Subscription.provider_subscription_id == obj.get("id"))
    )
    if sub is not None:
        user = session.get(User, sub.user_id)
    else:
        user = _user_for_customer(session, obj.get("customer"))
        if user is None:
            logger.warning("Subscription %s for unknown customer %s", obj.get("id"), obj.get("customer"))
            return
        sub = _subscription_for(session, user)

    price_id = (_first_item(obj).get("price") or {}).get("id")
    status = provider_status(obj.get("status"))
    sub.provider_subscription_id = obj.get("id")
    sub.provider_customer_id = obj.get("customer") or sub.provider_customer_id
    sub.plan = cfg.plan_for_price(price_id)
    sub.status = status.value
    sub.is_active = obj.get("status") in ("active", "trialing")
    sub.current_period_end = _from_unix(obj.get("current_period_end"))
    sub.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    sub.updated_by = "webhook"
    _apply_to_user(user, sub)
    logger.info("Subscription %s → %s (%s)", sub.provider_subscription_id, sub.status, sub.plan)


def _on_subscription_deleted(session: Session, obj: dict, cfg: HuddleConfig) -> None:
    sub = session.scalar(
        select(Subscription).where(Subscription.provider_subscription_id == obj.get("id"))
    )
    if sub is None:
        logger.warning("Deleted subscription %s not found", obj.get("id"))
        return
    sub.status = ProviderStatus.CANCELED.value
    sub.is_active = False
    sub.updated_by = "webhook"
    _apply_to_user(session.get(User, sub.user_id), sub)
    logger.info("Subscription %s cancelled", sub.provider_subscription_id)


def _on_invoice(session: Session, obj: dict, succeeded: bool) -> None:
    sub = None
    if obj.get("subscription"):
        sub = session.scalar(
            select(Subscription).where(Subscription.provider_subscription_id == obj["subscription"])
        )
    if sub is None:
        user = _user_for_customer(session, obj.get("customer"))
        if user is not None:
            sub = session.scalar(select(Subscription).where(Subscription.user_id == user.id))
    if sub is None:
        logger.warning("Invoice %s has no matching subscription", obj.get("id"))
        return
    sub.status = (ProviderStatus.ACTIVE if succeeded else ProviderStatus.PAST_DUE).value
    sub.is_active = succeeded
    sub.updated_by = "webhook"
    _apply_to_user(session.get(User, sub.user_id), sub)
    logger.info("Invoice %s %s", obj.get("id"), "paid" if succeeded else "failed")


def _dispatch(session: Session, event_type: str, obj: dict, cfg: HuddleConfig) -> bool:
    if event_type == "checkout.session.completed":
        _on_checkout_completed(session, obj, cfg)
    elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
        _on_subscription_upsert(session, obj, cfg)
    elif event_type == "customer.subscription.deleted":
        _on_subscription_deleted(session, obj, cfg)
    elif event_type == "invoice.payment_succeeded":
        _on_invoice(session, obj, succeeded=True)
    elif event_type == "invoice.payment_failed":
        _on_invoice(session, obj, succeeded=False)
    else:
        logger.info("Unhandled Stripe event: %s", event_type)
        return False
    return True


def handle_webhook(
    engine: Engine,
    cfg: HuddleConfig,
    payload: bytes,
    signature: str | None,
    secret: str,
    *,
    now: float | None = None,
) -> dict:
    """Verify, deduplicate and apply one webhook delivery."""
    try:
        verify_signature(payload, signature, secret, now=now)
    except ServiceError:
        logger.warning("Rejected Stripe webhook with bad signature")
        raise

    try:
        event = json.loads(payload)
    except ValueError:
        raise create_error("Invalid webhook payload", 400)
    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id:
        raise create_error("Webhook event has no id", 400)
    obj = (event.get("data") or {}).get("object") or {}

    with get_session(engine) as session:
        if session.get(WebhookEvent, event_id) is not None:
            logger.info("Duplicate Stripe event %s ignored", event_id)
            return {"received": True, "duplicate": True, "type": event_type}
        handled = _dispatch(session, event_type, obj, cfg)
        session.add(WebhookEvent(id=event_id, event_type=event_type, processed_at=utcnow()))
        return {"received": True, "duplicate": False, "type": event_type, "handled": handled}
