"""
tests/test_reminders.py — Custom Reminders & Streak Nudges
===========================================================
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from huddle.constants import utcnow, utctoday
from huddle.database.engine import get_session
from huddle.database.models import Notification, Recurrence, Streak, User
from huddle.errors import ServiceError
from huddle.services import reminder_service


def _auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


def _reminder_notes(engine, user_id: int) -> list[Notification]:
    with get_session(engine) as session:
        return session.scalars(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.notification_type == "reminder")
            .order_by(Notification.id.asc())
        ).all()


class TestNextOccurrence:
    def test_one_off_has_none(self):
        now = utcnow()
        assert reminder_service.next_occurrence(now, Recurrence.NONE, now) is None

    def test_future_time_is_kept(self):
        now = utcnow()
        later = now + timedelta(hours=3)
        assert reminder_service.next_occurrence(later, Recurrence.DAILY, now) == later

    def test_missed_occurrences_are_skipped(self):
        start = utcnow()
        now = start + timedelta(days=2, hours=12)
        assert reminder_service.next_occurrence(start, Recurrence.DAILY, now) == start + timedelta(days=3)
        assert reminder_service.next_occurrence(start, Recurrence.WEEKLY, now) == start + timedelta(weeks=1)

    def test_exact_hit_moves_forward(self):
        start = utcnow()
        assert reminder_service.next_occurrence(start, Recurrence.DAILY, start) == start + timedelta(days=1)


class TestCrud:
    def test_create_and_list_soonest_first(self, db_engine, make_user):
        alice = make_user("alice")
        now = utcnow()
        reminder_service.create_reminder(db_engine, alice["id"], "Stretch", now + timedelta(hours=5))
        reminder_service.create_reminder(db_engine, alice["id"], "Drink water", now + timedelta(hours=1), "daily")
        listed = reminder_service.list_reminders(db_engine, alice["id"])
        assert [r["message"] for r in listed] == ["Drink water", "Stretch"]
        assert [r["recurrence"] for r in listed] == ["daily", "none"]

    def test_past_time_rejected(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError, match="remind_at must be in the future"):
            reminder_service.create_reminder(db_engine, alice["id"], "Too late", utcnow() - timedelta(minutes=1))

    def test_naive_time_is_utc(self, db_engine, make_user):
        alice = make_user("alice")
        naive = (utcnow() + timedelta(hours=2)).replace(tzinfo=None)
        created = reminder_service.create_reminder(db_engine, alice["id"], "Call mum", naive)
        assert created["remind_at"].endswith("+00:00")

    def test_unknown_recurrence(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError, match="Unknown recurrence: hourly"):
            reminder_service.create_reminder(
                db_engine, alice["id"], "Blink", utcnow() + timedelta(hours=1), "hourly",
            )

    def test_message_length(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError):
            reminder_service.create_reminder(db_engine, alice["id"], "x" * 201, utcnow() + timedelta(hours=1))

    def test_other_users_reminder_is_not_found(self, db_engine, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        created = reminder_service.create_reminder(db_engine, alice["id"], "Mine", utcnow() + timedelta(hours=1))
        for call in (
            lambda: reminder_service.update_reminder(db_engine, bob["id"], created["id"], {"message": "x"}),
            lambda: reminder_service.disable_reminder(db_engine, bob["id"], created["id"]),
            lambda: reminder_service.delete_reminder(db_engine, bob["id"], created["id"]),
        ):
            with pytest.raises(ServiceError) as exc_info:
                call()
            assert exc_info.value.status_code == 404

    def test_rescheduling_re_enables(self, db_engine, make_user):
        alice = make_user("alice")
        created = reminder_service.create_reminder(db_engine, alice["id"], "Read", utcnow() + timedelta(hours=1))
        assert reminder_service.disable_reminder(db_engine, alice["id"], created["id"])["is_disabled"] is True
        assert reminder_service.list_reminders(db_engine, alice["id"], include_disabled=False) == []

        updated = reminder_service.update_reminder(
            db_engine, alice["id"], created["id"], {"remind_at": utcnow() + timedelta(days=1)},
        )
        assert updated["is_disabled"] is False


class TestDispatch:
    def test_one_off_is_sent_once(self, db_engine, make_user):
        alice = make_user("alice")
        at = utcnow() + timedelta(hours=1)
        created = reminder_service.create_reminder(db_engine, alice["id"], "Dentist", at)

        assert reminder_service.send_due_reminders(db_engine, now=at - timedelta(minutes=1)) == 0
        assert reminder_service.send_due_reminders(db_engine, now=at + timedelta(minutes=1)) == 1
        assert reminder_service.send_due_reminders(db_engine, now=at + timedelta(minutes=2)) == 0

        notes = _reminder_notes(db_engine, alice["id"])
        assert [(n.message, n.link) for n in notes] == [("Dentist", "/reminders")]
        reminder = reminder_service.list_reminders(db_engine, alice["id"])[0]
        assert reminder["id"] == created["id"]
        assert reminder["is_disabled"] is True
        assert reminder["last_sent_at"] is not None

    def test_daily_moves_to_next_future_time(self, db_engine, make_user):
        alice = make_user("alice")
        at = utcnow() + timedelta(hours=1)
        reminder_service.create_reminder(db_engine, alice["id"], "Meditate", at, "daily")

        assert reminder_service.send_due_reminders(db_engine, now=at + timedelta(days=2, hours=12)) == 1
        reminder = reminder_service.list_reminders(db_engine, alice["id"])[0]
        assert reminder["is_disabled"] is False
        assert datetime.fromisoformat(reminder["remind_at"]) == at + timedelta(days=3)
        assert len(_reminder_notes(db_engine, alice["id"])) == 1

    def test_disabled_and_inactive_are_skipped(self, db_engine, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        at = utcnow() + timedelta(hours=1)
        paused = reminder_service.create_reminder(db_engine, alice["id"], "Paused", at)
        reminder_service.disable_reminder(db_engine, alice["id"], paused["id"])
        reminder_service.create_reminder(db_engine, bob["id"], "Gone", at)
        with get_session(db_engine) as session:
            session.execute(update(User).where(User.id == bob["id"]).values(is_active=False))

        assert reminder_service.send_due_reminders(db_engine, now=at + timedelta(hours=1)) == 0


class TestStreakReminders:
    @pytest.fixture
    def streaks(self, db_engine, make_user):
        today = utctoday()
        users = {name: make_user(name) for name in ("alice", "bob", "carol")}
        rows = {
            "alice": (4, today - timedelta(days=1)),
            "bob": (5, today),
            "carol": (2, today - timedelta(days=3)),
        }
        with get_session(db_engine) as session:
            for name, (count, last) in rows.items():
                session.execute(
                    update(Streak)
                    .where(Streak.user_id == users[name]["id"])
                    .values(streak_count=count, longest_streak=count, last_check_in=last)
                )
        return users

    def test_only_streaks_at_risk(self, db_engine, streaks):
        assert reminder_service.send_streak_reminders(db_engine, utctoday()) == 1
        notes = _reminder_notes(db_engine, streaks["alice"]["id"])
        assert [n.message for n in notes] == ["Check in today to keep your 4-day streak going!"]
        assert _reminder_notes(db_engine, streaks["bob"]["id"]) == []
        assert _reminder_notes(db_engine, streaks["carol"]["id"]) == []

    def test_repeat_run_same_day_sends_nothing(self, db_engine, streaks):
        reminder_service.send_streak_reminders(db_engine, utctoday())
        assert reminder_service.send_streak_reminders(db_engine, utctoday()) == 0
        assert len(_reminder_notes(db_engine, streaks["alice"]["id"])) == 1


class TestReminderEndpoints:
    def test_crud_over_http(self, client, make_user):
        alice = make_user("alice")
        at = (utcnow() + timedelta(hours=2)).isoformat()
        resp = client.post("/api/reminders", json={"message": "Walk", "remind_at": at}, headers=_auth(alice))
        assert resp.status_code == 201
        reminder_id = resp.json()["data"]["id"]

        resp = client.post(f"/api/reminders/{reminder_id}/disable", headers=_auth(alice))
        assert resp.json()["data"]["is_disabled"] is True
        assert client.get("/api/reminders?include_disabled=false", headers=_auth(alice)).json()["data"] == []

        assert client.delete(f"/api/reminders/{reminder_id}", headers=_auth(alice)).status_code == 200
        assert client.get("/api/reminders", headers=_auth(alice)).json()["data"] == []

    def test_expired_subscription_is_refused(self, client, db_engine, make_user):
        alice = make_user("alice")
        with get_session(db_engine) as session:
            session.execute(update(User).where(User.id == alice["id"]).values(subscription_status="expired"))
        resp = client.get("/api/reminders", headers=_auth(alice))
        assert resp.status_code == 403
        assert resp.json() == {"success": False, "message": "Subscription required"}
