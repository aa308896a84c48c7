"""
tests/test_gamification_service.py — Reward Pipeline Integration Tests
=======================================================================
Runs the points/badge/streak pipeline against SQLite: idempotent
rewards, badge level-ups with their bonus points, daily check-ins,
manual adjustments and both leaderboards.
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from huddle.database.engine import get_session
from huddle.database.models import Badge, Notification, PointTransaction, Streak, User
from huddle.engine.events import Action, GamificationEvent
from huddle.engine.pagination import page_request
from huddle.errors import ServiceError
from huddle.services import gamification_service

DAY_ONE = date(2026, 5, 1)


def _points(engine, user_id: int) -> tuple[int, int]:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        return user.points, user.level


class TestApplyEvent:
    def test_awards_configured_points(self, db_engine, cache, make_user):
        alice = make_user("alice")
        result = gamification_service.process_event(
            db_engine,
            GamificationEvent(user_id=alice["id"], action=Action.BLOG_POST_CREATED, source_id="1"),
            cache,
        )
        assert result["points_awarded"] == 10
        assert result["total_points"] == 10
        assert result["duplicate"] is False
        assert _points(db_engine, alice["id"]) == (10, 1)

    def test_same_source_rewarded_once(self, db_engine, cache, make_user):
        alice = make_user("alice")
        event = GamificationEvent(user_id=alice["id"], action=Action.GOAL_COMPLETED, source_id="42")
        gamification_service.process_event(db_engine, event, cache)
        again = gamification_service.process_event(db_engine, event, cache)

        assert again["duplicate"] is True
        assert again["points_awarded"] == 0
        assert _points(db_engine, alice["id"])[0] == 50
        with get_session(db_engine) as session:
            count = session.scalar(
                select(func.count()).select_from(PointTransaction)
                .where(PointTransaction.action == "goal_completed")
            )
        assert count == 1

    def test_explicit_points_override(self, db_engine, cache, make_user):
        alice = make_user("alice")
        result = gamification_service.process_event(
            db_engine,
            GamificationEvent(user_id=alice["id"], action=Action.TASK_COMPLETED, source_id="t1", points=120),
            cache,
        )
        assert result["points_awarded"] == 120
        assert result["leveled_up"] is True
        assert result["level"] == 2

    def test_settings_change_points(self, db_engine, cache, make_user):
        from huddle.database.models import Setting

        with get_session(db_engine) as session:
            session.get(Setting, "points.comment_created").value_json = "7"
        cache.handle_notify("settings")
        alice = make_user("alice")
        result = gamification_service.process_event(
            db_engine,
            GamificationEvent(user_id=alice["id"], action=Action.COMMENT_CREATED, source_id="c1"),
            cache,
        )
        assert result["points_awarded"] == 7

    def test_fifth_action_earns_bronze_badge(self, db_engine, cache, make_user):
        alice = make_user("alice")
        for i in range(4):
            r = gamification_service.process_event(
                db_engine,
                GamificationEvent(user_id=alice["id"], action=Action.TASK_COMPLETED, source_id=str(i)),
                cache,
            )
            assert r["badges_earned"] == []

        r = gamification_service.process_event(
            db_engine,
            GamificationEvent(user_id=alice["id"], action=Action.TASK_COMPLETED, source_id="4"),
            cache,
        )
        assert r["badges_earned"] == [{"badge_type": "time_based", "level": "Bronze", "points": 40}]
        # five tasks (5 each) plus the badge bonus
        assert r["total_points"] == 25 + 40

        data = gamification_service.list_badges(db_engine, alice["id"])
        assert [(b["badge_type"], b["level"]) for b in data["badges"]] == [("time_based", "Bronze")]
        progress = {p["badge_type"]: p for p in data["progress"]}
        assert progress["time_based"]["level"] == "Silver"
        assert progress["time_based"]["goal"] == 10
        assert progress["time_based"]["progress"] == 0

        with get_session(db_engine) as session:
            notes = session.scalars(
                select(Notification).where(Notification.notification_type == "badge")
            ).all()
        assert len(notes) == 1
        assert "Bronze time based badge" in notes[0].message

    def test_unknown_user_404(self, db_engine, cache):
        with pytest.raises(ServiceError) as exc_info:
            gamification_service.process_event(
                db_engine, GamificationEvent(user_id=999, action=Action.TASK_COMPLETED), cache,
            )
        assert exc_info.value.status_code == 404


class TestCheckIn:
    def test_first_check_in(self, db_engine, cache, make_user):
        alice = make_user("alice")
        result = gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE)
        assert result["streak"]["streak_count"] == 1
        assert result["streak"]["checked_in_today"] is True
        assert result["reward"]["points_awarded"] == 10
        assert result["bonus"] is None

    def test_twice_same_day_rejected(self, db_engine, cache, make_user):
        alice = make_user("alice")
        gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE)
        with pytest.raises(ServiceError) as exc_info:
            gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE)
        assert exc_info.value.status_code == 400
        assert _points(db_engine, alice["id"])[0] == 10

    def test_bonus_on_seventh_day(self, db_engine, cache, make_user):
        alice = make_user("alice")
        for offset in range(6):
            gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE + timedelta(days=offset))
        result = gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE + timedelta(days=6))

        assert result["streak"]["streak_count"] == 7
        assert result["bonus"]["points_awarded"] == 25

    def test_gap_resets_streak(self, db_engine, cache, make_user):
        alice = make_user("alice")
        gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE)
        gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE + timedelta(days=1))
        result = gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE + timedelta(days=5))
        assert result["streak"]["streak_count"] == 1
        assert result["streak"]["longest_streak"] == 2

    def test_get_streak_reads_broken_as_zero(self, db_engine, cache, make_user):
        alice = make_user("alice")
        gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE)
        streak = gamification_service.get_streak(db_engine, alice["id"], today=DAY_ONE + timedelta(days=3))
        assert streak["streak_count"] == 0
        assert streak["checked_in_today"] is False

    def test_reset_all_streaks(self, db_engine, cache, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        for uid in (alice["id"], bob["id"]):
            gamification_service.check_in(db_engine, uid, cache, today=DAY_ONE)
        with get_session(db_engine) as session:
            assert gamification_service.reset_all_streaks(session) == 2
        with get_session(db_engine) as session:
            assert session.get(Streak, alice["id"]).streak_count == 0
            assert session.get(Streak, alice["id"]).longest_streak == 1


class TestPointsAndBadges:
    def test_adjust_points_floors_at_zero(self, db_engine, cache, make_user):
        alice = make_user("alice")
        with get_session(db_engine) as session:
            gamification_service.adjust_points(session, alice["id"], 30, "welcome", cache)
        with get_session(db_engine) as session:
            gamification_service.adjust_points(session, alice["id"], -100, "penalty", cache)
        assert _points(db_engine, alice["id"]) == (0, 1)

        history = gamification_service.points_history(db_engine, alice["id"], page_request(1, 20))
        assert [t["points"] for t in history["transactions"]] == [-30, 30]
        assert history["pagination"]["total"] == 2

    def test_zero_adjustment_rejected(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError):
            with get_session(db_engine) as session:
                gamification_service.adjust_points(session, alice["id"], 0, "nothing")

    def test_showcase_only_own_badge(self, db_engine, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        with get_session(db_engine) as session:
            badge = Badge(user_id=alice["id"], badge_type="helper", level="Bronze")
            session.add(badge)
            session.flush()
            badge_id = badge.id

        result = gamification_service.set_showcase(db_engine, alice["id"], badge_id, True)
        assert result["is_showcased"] is True
        with pytest.raises(ServiceError) as exc_info:
            gamification_service.set_showcase(db_engine, bob["id"], badge_id, True)
        assert exc_info.value.status_code == 404


class TestLeaderboards:
    def test_points_leaderboard_order_and_rank(self, db_engine, cache, make_user):
        users = [make_user(name) for name in ("alice", "bob", "carol")]
        for user, pts in zip(users, (30, 90, 60)):
            with get_session(db_engine) as session:
                gamification_service.adjust_points(session, user["id"], pts, "seed", cache)

        board = gamification_service.points_leaderboard(db_engine, page_request(1, 2))
        assert [(r["rank"], r["username"]) for r in board["leaderboard"]] == [(1, "bob"), (2, "carol")]
        assert board["pagination"]["total"] == 3

        page_two = gamification_service.points_leaderboard(db_engine, page_request(2, 2))
        assert [(r["rank"], r["username"]) for r in page_two["leaderboard"]] == [(3, "alice")]

    def test_streak_leaderboard_skips_broken(self, db_engine, cache, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        carol = make_user("carol")
        for offset in range(3):
            gamification_service.check_in(db_engine, alice["id"], cache, today=DAY_ONE + timedelta(days=offset))
        gamification_service.check_in(db_engine, bob["id"], cache, today=DAY_ONE + timedelta(days=2))
        gamification_service.check_in(db_engine, carol["id"], cache, today=DAY_ONE)

        board = gamification_service.streak_leaderboard(
            db_engine, page_request(1, 10), today=DAY_ONE + timedelta(days=3),
        )
        assert [(r["username"], r["streak_count"]) for r in board["leaderboard"]] == [("alice", 3), ("bob", 1)]
