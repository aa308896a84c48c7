"""
tests/test_billing.py — Stripe Client, Webhooks & Subscription Access
======================================================================
Outbound calls go through ``httpx.MockTransport``; webhook deliveries
are signed with :func:`sign_payload` exactly as Stripe would sign them.
"""

from __future__ import annotations

import json
import os
from datetime import timedelta
from unittest.mock import patch
from urllib.parse import parse_qs

import httpx
import pytest

from huddle.constants import utcnow
from huddle.database.engine import get_session
from huddle.database.models import Subscription, User, WebhookEvent
from huddle.errors import ServiceError
from huddle.services import billing_service
from huddle.services.billing_service import StripeClient

SECRET = "whsec_test"
NOW = 1_800_000_000


def _stripe(routes: dict[tuple[str, str], dict], calls: list | None = None) -> StripeClient:
    """A StripeClient answering ``(method, path)`` from *routes*."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        if calls is not None:
            calls.append((request.method, request.url.path, parse_qs(request.content.decode())))
        if key not in routes:
            return httpx.Response(404, json={"error": {"message": f"No such route {key}"}})
        return httpx.Response(200, json=routes[key])

    return StripeClient("sk_test", transport=httpx.MockTransport(handler))


def _deliver(engine, cfg, event: dict, *, secret: str = SECRET, now: int = NOW) -> dict:
    payload = json.dumps(event).encode()
    header = billing_service.sign_payload(payload, secret, NOW)
    return billing_service.handle_webhook(engine, cfg, payload, header, secret, now=now)


def _subscription_event(event_id: str, event_type: str, *, status: str, price: str) -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": "sub_1",
            "customer": "cus_1",
            "status": status,
            "current_period_end": NOW + 30 * 86400,
            "cancel_at_period_end": False,
            "items": {"data": [{"id": "si_1", "price": {"id": price}}]},
        }},
    }


@pytest.fixture
def subscriber(db_engine, test_config, make_user):
    """alice with an active basic subscription (sub_1 / cus_1)."""
    alice = make_user("alice")
    _deliver(db_engine, test_config, {
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1", "client_reference_id": str(alice["id"]),
            "customer": "cus_1", "subscription": "sub_1",
        }},
    })
    _deliver(db_engine, test_config, _subscription_event(
        "evt_created", "customer.subscription.created", status="active", price="price_basic_monthly",
    ))
    return alice


class TestSignature:
    def test_valid_signature_passes(self):
        payload = b'{"id": "evt_1"}'
        header = billing_service.sign_payload(payload, SECRET, NOW)
        billing_service.verify_signature(payload, header, SECRET, now=NOW + 10)

    @pytest.mark.parametrize("header,message", [
        (None, "Missing Stripe-Signature"),
        ("garbage", "Malformed"),
        ("t=abc,v1=00", "Malformed"),
        (f"t={NOW},v1=deadbeef", "Invalid webhook signature"),
    ])
    def test_bad_headers(self, header, message):
        with pytest.raises(ServiceError, match=message) as exc_info:
            billing_service.verify_signature(b"{}", header, SECRET, now=NOW)
        assert exc_info.value.status_code == 400

    def test_outside_tolerance(self):
        header = billing_service.sign_payload(b"{}", SECRET, NOW)
        with pytest.raises(ServiceError, match="outside tolerance"):
            billing_service.verify_signature(b"{}", header, SECRET, now=NOW + 301)

    def test_tampered_payload(self):
        header = billing_service.sign_payload(b'{"amount": 1}', SECRET, NOW)
        with pytest.raises(ServiceError, match="Invalid webhook signature"):
            billing_service.verify_signature(b'{"amount": 1000}', header, SECRET, now=NOW)

    def test_missing_secret(self):
        with pytest.raises(ServiceError, match="not configured"):
            billing_service.verify_signature(b"{}", "t=1,v1=x", "", now=NOW)


class TestWebhooks:
    def test_checkout_then_subscription_activates_user(self, db_engine, subscriber):
        data = billing_service.current_subscription(db_engine, subscriber["id"])
        assert data["plan"] == "basic"
        assert data["status"] == "active"
        assert data["is_active"] is True
        assert data["subscription_status"] == "active"
        assert data["provider_subscription_id"] == "sub_1"

    def test_redelivery_is_deduplicated(self, db_engine, test_config, subscriber):
        event = _subscription_event(
            "evt_created", "customer.subscription.created", status="canceled", price="price_basic_monthly",
        )
        result = _deliver(db_engine, test_config, event)
        assert result == {"received": True, "duplicate": True, "type": "customer.subscription.created"}
        assert billing_service.current_subscription(db_engine, subscriber["id"])["status"] == "active"

    def test_plan_upgrade_via_update(self, db_engine, test_config, subscriber):
        _deliver(db_engine, test_config, _subscription_event(
            "evt_upd", "customer.subscription.updated", status="active", price="price_premium_monthly",
        ))
        assert billing_service.current_subscription(db_engine, subscriber["id"])["plan"] == "premium"

    def test_provider_trial_grants_access_after_signup_trial(self, client, db_engine, test_config, make_user):
        bob = make_user("bob")
        with get_session(db_engine) as session:
            session.get(User, bob["id"]).trial_started_at = utcnow() - timedelta(days=60)
        assert client.get("/api/goals/analytics", headers={"Authorization": f"Bearer {bob['token']}"}).status_code == 403

        _deliver(db_engine, test_config, {
            "id": "evt_checkout_bob", "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_2", "client_reference_id": str(bob["id"]),
                                "customer": "cus_1", "subscription": "sub_1"}},
        })
        _deliver(db_engine, test_config, _subscription_event(
            "evt_trialing", "customer.subscription.created", status="trialing", price="price_basic_monthly",
        ))
        data = billing_service.current_subscription(db_engine, bob["id"])
        assert data["status"] == "trial"
        assert data["is_active"] is True
        assert data["subscription_status"] == "active"

        resp = client.get("/api/goals/analytics", headers={"Authorization": f"Bearer {bob['token']}"})
        assert resp.status_code == 200

    def test_deleted_expires_user(self, db_engine, test_config, subscriber):
        _deliver(db_engine, test_config, {
            "id": "evt_del", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}},
        })
        data = billing_service.current_subscription(db_engine, subscriber["id"])
        assert data["status"] == "canceled"
        assert data["subscription_status"] == "expired"

    def test_failed_invoice_marks_past_due(self, db_engine, test_config, subscriber):
        _deliver(db_engine, test_config, {
            "id": "evt_inv", "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_1", "subscription": "sub_1", "customer": "cus_1"}},
        })
        data = billing_service.current_subscription(db_engine, subscriber["id"])
        assert data["status"] == "past_due"
        assert data["is_active"] is False
        assert data["subscription_status"] == "expired"

    def test_unhandled_event_is_recorded(self, db_engine, test_config):
        result = _deliver(db_engine, test_config, {"id": "evt_x", "type": "charge.refunded", "data": {}})
        assert result["handled"] is False
        with get_session(db_engine) as session:
            assert session.get(WebhookEvent, "evt_x") is not None

    def test_event_without_id_rejected(self, db_engine, test_config):
        with pytest.raises(ServiceError, match="no id"):
            _deliver(db_engine, test_config, {"type": "charge.refunded"})


class TestUserOperations:
    def test_checkout_creates_customer_once(self, db_engine, test_config, make_user):
        alice = make_user("alice")
        calls: list = []
        client = _stripe({
            ("POST", "/v1/customers"): {"id": "cus_9"},
            ("POST", "/v1/checkout/sessions"): {"id": "cs_9", "url": "https://checkout.test/cs_9"},
        }, calls)

        result = billing_service.create_checkout_session(
            db_engine, client, test_config, alice["id"], "premium", "https://app/ok", "https://app/no",
        )
        assert result == {"id": "cs_9", "url": "https://checkout.test/cs_9", "plan": "premium"}
        billing_service.create_checkout_session(
            db_engine, client, test_config, alice["id"], "premium", "https://app/ok", "https://app/no",
        )

        assert [c[1] for c in calls].count("/v1/customers") == 1
        session_form = calls[1][2]
        assert session_form["line_items[0][price]"] == ["price_premium_monthly"]
        assert session_form["client_reference_id"] == [str(alice["id"])]
        with get_session(db_engine) as session:
            assert session.get(User, alice["id"]).stripe_customer_id == "cus_9"

    def test_unknown_plan_rejected(self, db_engine, test_config, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError, match="Unknown plan") as exc_info:
            billing_service.create_checkout_session(
                db_engine, _stripe({}), test_config, alice["id"], "platinum", "a", "b",
            )
        assert exc_info.value.status_code == 400

    def test_change_plan(self, db_engine, test_config, subscriber):
        client = _stripe({
            ("GET", "/v1/subscriptions/sub_1"): {"id": "sub_1", "items": {"data": [{"id": "si_1"}]}},
            ("POST", "/v1/subscriptions/sub_1"): {"id": "sub_1", "status": "active"},
        })
        data = billing_service.change_plan(db_engine, client, test_config, subscriber["id"], "premium")
        assert data["plan"] == "premium"
        assert data["subscription_status"] == "active"

    def test_cancel_with_refund(self, db_engine, subscriber):
        calls: list = []
        client = _stripe({
            ("DELETE", "/v1/subscriptions/sub_1"): {"id": "sub_1", "latest_invoice": "in_1", "canceled_at": NOW},
            ("GET", "/v1/invoices/in_1"): {"id": "in_1", "payment_intent": "pi_1"},
            ("POST", "/v1/refunds"): {"id": "re_1"},
        }, calls)
        data = billing_service.cancel_subscription(db_engine, client, subscriber["id"], refund=True)
        assert data["refunded"] is True
        assert data["status"] == "canceled"
        assert data["subscription_status"] == "expired"
        assert calls[-1][2] == {"payment_intent": ["pi_1"]}

        with pytest.raises(ServiceError, match="No active subscription") as exc_info:
            billing_service.cancel_subscription(db_engine, client, subscriber["id"])
        assert exc_info.value.status_code == 404

    def test_provider_error_is_502(self, db_engine, test_config, subscriber):
        with pytest.raises(ServiceError) as exc_info:
            billing_service.change_plan(db_engine, _stripe({}), test_config, subscriber["id"], "premium")
        assert exc_info.value.status_code == 502
        assert "No such route" in exc_info.value.details["provider_message"]

    def test_unconfigured_client_is_502(self):
        with pytest.raises(ServiceError, match="not configured"):
            StripeClient("").retrieve_invoice("in_1")


class TestAccess:
    def test_active_always_has_access(self):
        assert billing_service.has_access("active", None, 14) is True

    def test_trial_window(self):
        started = utcnow() - timedelta(days=10)
        assert billing_service.has_access("trial", started, 14) is True
        assert billing_service.has_access("trial", started, 7) is False

    def test_expired_has_no_access(self):
        assert billing_service.has_access("expired", utcnow(), 14) is False

    def test_status_mapping(self):
        assert billing_service.provider_status("trialing").value == "trial"
        assert billing_service.provider_status("weird").value == "inactive"
        assert billing_service.user_status_for("active", False).value == "expired"
        assert billing_service.user_status_for("trial", True).value == "active"
        assert billing_service.user_status_for("trial", False).value == "trial"


class TestWebhookRoute:
    def test_signed_delivery_accepted(self, client):
        payload = json.dumps({"id": "evt_api", "type": "ping", "data": {}}).encode()
        with patch.dict(os.environ, {"STRIPE_WEBHOOK_SECRET": SECRET}):
            resp = client.post(
                "/api/webhooks/stripe",
                content=payload,
                headers={"Stripe-Signature": billing_service.sign_payload(payload, SECRET)},
            )
        assert resp.status_code == 200
        assert resp.json()["data"]["received"] is True

    def test_bad_signature_is_400(self, client):
        with patch.dict(os.environ, {"STRIPE_WEBHOOK_SECRET": SECRET}):
            resp = client.post("/api/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_subscription_rows_not_created_for_unknown_customer(self, db_engine, test_config):
        _deliver(db_engine, test_config, _subscription_event(
            "evt_orphan", "customer.subscription.created", status="active", price="price_basic_monthly",
        ))
        with get_session(db_engine) as session:
            assert session.query(Subscription).count() == 0
