"""
tests/test_admin.py — Admin Service & Endpoints
=================================================
Every admin mutation must leave exactly one audit row with before/after
snapshots, and every admin endpoint must refuse non-admins.
"""

from __future__ import annotations

import logging

import pytest

from huddle.engine.pagination import page_request
from huddle.errors import ServiceError
from huddle.services import admin_service, auth_service, gamification_service
from huddle.services.log_buffer import BufferHandler


def _auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


@pytest.fixture
def admin(make_user):
    return make_user("root", roles=["admin"])


class TestUserManagement:
    def test_set_roles_always_keeps_user(self, db_engine, admin, make_user):
        bob = make_user("bob")
        result = admin_service.set_roles(
            db_engine, actor_id=admin["id"], user_id=bob["id"], roles=["moderator"], ip_address="10.0.0.1",
        )
        assert result["roles"] == ["moderator", "user"]

        audit = admin_service.audit_log(db_engine, page_request(1, 10), action_type="ROLE_CHANGE")
        entry = audit["entries"][0]
        assert entry["target_id"] == str(bob["id"])
        assert entry["before_snapshot"]["roles"] == ["user"]
        assert entry["after_snapshot"]["roles"] == ["moderator", "user"]
        assert entry["ip_address"] == "10.0.0.1"
        assert "password_hash" not in entry["after_snapshot"]

    def test_unknown_role_rejected(self, db_engine, admin, make_user):
        bob = make_user("bob")
        with pytest.raises(ServiceError, match="Unknown roles: wizard"):
            admin_service.set_roles(db_engine, actor_id=admin["id"], user_id=bob["id"], roles=["wizard"])

    def test_deactivate_revokes_tokens(self, db_engine, admin, make_user):
        bob = make_user("bob")
        refresh = auth_service.issue_refresh_token(db_engine, bob["id"], 30)
        result = admin_service.set_active(
            db_engine, actor_id=admin["id"], user_id=bob["id"], active=False, reason="spam",
        )
        assert result["is_active"] is False
        with pytest.raises(ServiceError) as exc_info:
            auth_service.rotate_refresh_token(db_engine, refresh, 30)
        assert exc_info.value.status_code == 401

        with pytest.raises(ServiceError, match="already deactivated"):
            admin_service.set_active(db_engine, actor_id=admin["id"], user_id=bob["id"], active=False)
        assert admin_service.set_active(
            db_engine, actor_id=admin["id"], user_id=bob["id"], active=True,
        )["is_active"] is True

    def test_cannot_deactivate_self(self, db_engine, admin):
        with pytest.raises(ServiceError, match="your own account"):
            admin_service.set_active(db_engine, actor_id=admin["id"], user_id=admin["id"], active=False)

    def test_list_users_search_and_inactive_filter(self, db_engine, admin, make_user):
        bob = make_user("bob")
        make_user("bobby")
        admin_service.set_active(db_engine, actor_id=admin["id"], user_id=bob["id"], active=False)

        found = admin_service.list_users(db_engine, page_request(1, 20), q="BOB")
        assert [u["username"] for u in found["users"]] == ["bob", "bobby"]
        active = admin_service.list_users(db_engine, page_request(1, 20), q="bob", include_inactive=False)
        assert [u["username"] for u in active["users"]] == ["bobby"]


class TestGamificationAdmin:
    def test_award_points_requires_reason(self, db_engine, cache, admin, make_user):
        bob = make_user("bob")
        with pytest.raises(ServiceError, match="reason is required"):
            admin_service.award_points(
                db_engine, actor_id=admin["id"], user_id=bob["id"], delta=10, reason="  ", cache=cache,
            )

        result = admin_service.award_points(
            db_engine, actor_id=admin["id"], user_id=bob["id"], delta=120, reason="Contest winner", cache=cache,
        )
        assert result == {"user_id": bob["id"], "points": 120, "level": 2}
        entry = admin_service.audit_log(db_engine, page_request(1, 10), action_type="POINTS_ADJUST")["entries"][0]
        assert entry["before_snapshot"] == {"points": 0, "level": 1}
        assert entry["reason"] == "Contest winner"

    def test_streak_resets(self, db_engine, cache, admin, make_user):
        from datetime import date

        bob = make_user("bob")
        gamification_service.check_in(db_engine, bob["id"], cache, today=date.today())
        assert admin_service.reset_user_streak(db_engine, actor_id=admin["id"], user_id=bob["id"]) == {
            "user_id": bob["id"], "streak_count": 0,
        }
        assert admin_service.reset_all_streaks(db_engine, actor_id=admin["id"]) == {"streaks_reset": 2}


class TestSettingsAdmin:
    def test_update_audits_only_real_changes(self, db_engine, cache, admin):
        count = admin_service.update_settings(db_engine, [
            {"key": "points.task_completed", "value": 8},
            {"key": "points.goal_completed", "value": 50},
            {"key": "feature.beta", "value": True, "category": "features"},
        ], actor_id=admin["id"], cache=cache)
        assert count == 3
        assert cache.get_int("points.task_completed") == 8
        assert cache.get_bool("feature.beta") is True

        entries = admin_service.audit_log(db_engine, page_request(1, 10), target_table="settings")["entries"]
        assert sorted((e["action_type"], e["target_id"]) for e in entries) == [
            ("CREATE", "feature.beta"),
            ("UPDATE", "points.task_completed"),
        ]

    def test_list_settings_decodes_values(self, db_engine):
        settings = {s["key"]: s for s in admin_service.list_settings(db_engine)}
        assert settings["level.factor"]["value"] == 1.5
        assert settings["level.factor"]["category"] == "level"


class TestAdminEndpoints:
    @pytest.mark.parametrize("method,path", [
        ("get", "/api/admin/users"),
        ("get", "/api/admin/settings"),
        ("get", "/api/admin/audit"),
        ("get", "/api/admin/metrics"),
        ("get", "/api/admin/logs"),
        ("get", "/api/admin/retention"),
    ])
    def test_non_admin_forbidden(self, client, make_user, method, path):
        bob = make_user("bob")
        resp = getattr(client, method)(path, headers=_auth(bob))
        assert resp.status_code == 403
        assert resp.json() == {"success": False, "message": "Insufficient permissions"}

    def test_anonymous_unauthorized(self, client):
        assert client.get("/api/admin/users").status_code == 401

    def test_role_change_via_api(self, client, admin, make_user):
        bob = make_user("bob")
        resp = client.put(
            f"/api/admin/users/{bob['id']}/roles",
            json={"roles": ["military"]},
            headers={**_auth(admin), "X-Forwarded-For": "198.51.100.7"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["roles"] == ["military", "user"]

        audit = client.get("/api/admin/audit", headers=_auth(admin)).json()["data"]
        assert audit["entries"][0]["ip_address"] == "testclient"

    def test_metrics(self, client, admin, make_user):
        make_user("bob")
        data = client.get("/api/admin/metrics", headers=_auth(admin)).json()["data"]
        assert data["users_total"] == 2
        assert data["users_active"] == 2
        assert data["posts_total"] == 0

    def test_settings_round_trip(self, client, admin, cache):
        resp = client.put(
            "/api/admin/settings",
            json=[{"key": "streak.bonus_interval", "value": 5}],
            headers=_auth(admin),
        )
        assert resp.json()["data"] == {"updated": 1}
        assert cache.get_int("streak.bonus_interval") == 5

    def test_log_level_endpoint(self, client, admin):
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            resp = client.put("/api/admin/logs/level", json={"level": "warning"}, headers=_auth(admin))
            assert resp.json()["data"] == {"level": "WARNING"}
            logs = client.get("/api/admin/logs?tail=5", headers=_auth(admin)).json()["data"]
            assert logs["capture_level"] == "WARNING"
            assert "DEBUG" in logs["valid_levels"]

            bad = client.put("/api/admin/logs/level", json={"level": "LOUD"}, headers=_auth(admin))
            assert bad.status_code == 400
            assert bad.json()["message"].startswith("Invalid level")
        finally:
            for handler in list(root.handlers):
                if handler not in before and isinstance(handler, BufferHandler):
                    root.removeHandler(handler)

    def test_system_notification_broadcast(self, client, admin, make_user):
        bob = make_user("bob")
        carol = make_user("carol")
        resp = client.post(
            "/api/admin/notifications",
            json={"user_ids": [bob["id"], carol["id"]], "message": "Maintenance tonight"},
            headers=_auth(admin),
        )
        assert resp.status_code == 201
        assert resp.json()["data"] == {"sent": 2}

    def test_retention_run(self, client, admin):
        resp = client.post("/api/admin/retention/run", headers=_auth(admin))
        assert resp.status_code == 200
        assert set(resp.json()["data"]) == {
            "notifications_deleted", "badges_deleted", "refresh_tokens_deleted", "rate_limit_events_deleted",
        }
