"""
tests/test_notifications.py — Notification Inbox & Delivery Listeners
======================================================================
Deliveries reach listeners only after the creating transaction commits;
a rollback discards them.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from huddle.constants import utcnow
from huddle.database.engine import get_session
from huddle.database.models import Notification
from huddle.engine.pagination import page_request
from huddle.errors import ServiceError
from huddle.services import notification_service, user_service
from huddle.services.notification_service import Delivery


@pytest.fixture
def deliveries():
    received: list[Delivery] = []
    notification_service.register_listener(received.append)
    yield received
    notification_service.unregister_listener(received.append)


class TestDelivery:
    def test_listener_called_after_commit(self, db_engine, make_user, deliveries):
        alice = make_user("alice")
        with get_session(db_engine) as session:
            notification_service.notify(session, alice["id"], "system", "Welcome aboard")
            assert deliveries == []

        assert len(deliveries) == 1
        assert deliveries[0].user_id == alice["id"]
        assert deliveries[0].payload["message"] == "Welcome aboard"
        assert deliveries[0].payload["type"] == "system"
        assert deliveries[0].email is None

    def test_rollback_discards_delivery(self, db_engine, make_user, deliveries):
        alice = make_user("alice")
        with pytest.raises(RuntimeError):
            with get_session(db_engine) as session:
                notification_service.notify(session, alice["id"], "system", "Never sent")
                raise RuntimeError("boom")
        assert deliveries == []
        assert notification_service.unread_count(db_engine, alice["id"]) == 0

    def test_email_included_when_opted_in(self, db_engine, make_user, deliveries):
        alice = make_user("alice")
        user_service.update_profile(db_engine, alice["id"], {"settings": {"email_notifications": True}})
        notification_service.send_system_notification(db_engine, alice["id"], "Hello")
        assert deliveries[-1].email == "alice@example.com"

    def test_failing_listener_does_not_block_others(self, db_engine, make_user, deliveries):
        alice = make_user("alice")

        def broken(delivery):
            raise RuntimeError("listener down")

        notification_service.register_listener(broken)
        try:
            notification_service.send_system_notification(db_engine, alice["id"], "Still delivered")
        finally:
            notification_service.unregister_listener(broken)
        assert [d.payload["message"] for d in deliveries] == ["Still delivered"]

    def test_register_is_idempotent(self, deliveries):
        notification_service.register_listener(deliveries.append)
        assert notification_service._listeners.count(deliveries.append) == 1


class TestInbox:
    def test_list_newest_first_with_unread_filter(self, db_engine, make_user):
        alice = make_user("alice")
        first = notification_service.send_system_notification(db_engine, alice["id"], "one")
        notification_service.send_system_notification(db_engine, alice["id"], "two")
        notification_service.mark_read(db_engine, alice["id"], first["id"])

        inbox = notification_service.list_notifications(db_engine, alice["id"], page_request(1, 20))
        assert [n["message"] for n in inbox["notifications"]] == ["two", "one"]
        unread = notification_service.list_notifications(
            db_engine, alice["id"], page_request(1, 20), unread_only=True,
        )
        assert [n["message"] for n in unread["notifications"]] == ["two"]
        assert notification_service.unread_count(db_engine, alice["id"]) == 1

    def test_expired_notifications_hidden(self, db_engine, make_user):
        alice = make_user("alice")
        past = utcnow() - timedelta(days=40)
        with get_session(db_engine) as session:
            session.add(Notification(
                user_id=alice["id"], notification_type="system", message="old",
                is_read=False, created_at=past, expires_at=past + timedelta(days=30),
            ))
        assert notification_service.list_notifications(db_engine, alice["id"], page_request(1, 20))["notifications"] == []
        assert notification_service.unread_count(db_engine, alice["id"]) == 0

    def test_mark_all_read(self, db_engine, make_user):
        alice = make_user("alice")
        for text in ("a", "b", "c"):
            notification_service.send_system_notification(db_engine, alice["id"], text)
        assert notification_service.mark_all_read(db_engine, alice["id"]) == 3
        assert notification_service.unread_count(db_engine, alice["id"]) == 0

    def test_other_users_notification_is_404(self, db_engine, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        note = notification_service.send_system_notification(db_engine, alice["id"], "private")
        with pytest.raises(ServiceError) as exc_info:
            notification_service.mark_read(db_engine, bob["id"], note["id"])
        assert exc_info.value.status_code == 404
        with pytest.raises(ServiceError):
            notification_service.delete_notification(db_engine, bob["id"], note["id"])

        notification_service.delete_notification(db_engine, alice["id"], note["id"])
        assert notification_service.unread_count(db_engine, alice["id"]) == 0

    def test_system_notification_validation(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError, match="Unknown notification type"):
            notification_service.send_system_notification(db_engine, alice["id"], "x", notification_type="spam")
        with pytest.raises(ServiceError) as exc_info:
            notification_service.send_system_notification(db_engine, 999, "x")
        assert exc_info.value.status_code == 404

    def test_expiry_follows_retention(self, db_engine, make_user):
        alice = make_user("alice")
        notification_service.configure(7)
        try:
            note = notification_service.send_system_notification(db_engine, alice["id"], "short lived")
        finally:
            notification_service.configure(notification_service.DEFAULT_RETENTION_DAYS)
        with get_session(db_engine) as session:
            row = session.get(Notification, note["id"])
            assert (row.expires_at - row.created_at).days == 7
