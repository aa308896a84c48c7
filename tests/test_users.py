"""
tests/test_users.py — Profiles, Search & Account Lifecycle
===========================================================
"""

from __future__ import annotations

import pytest

from huddle.engine.pagination import page_request
from huddle.errors import ServiceError
from huddle.services import auth_service, goal_service, user_service


def _auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {user['token']}"}


class TestProfile:
    def test_private_fields_only_for_self(self, db_engine, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        own = user_service.get_profile(db_engine, alice["id"], alice["id"])
        other = user_service.get_profile(db_engine, bob["id"], alice["id"])
        assert own["email"] == "alice@example.com"
        assert own["subscription_status"] == "trial"
        assert "email" not in other
        assert "settings" not in other
        assert other["username"] == "alice"

    def test_update_profile_merges_settings(self, db_engine, make_user):
        alice = make_user("alice")
        user_service.update_profile(db_engine, alice["id"], {"settings": {"theme": "dark"}})
        result = user_service.update_profile(db_engine, alice["id"], {
            "display_name": "  Alice A.  ",
            "settings": {"email_notifications": True},
        })
        assert result["display_name"] == "Alice A."
        assert result["settings"] == {"theme": "dark", "email_notifications": True}

    def test_unknown_settings_rejected(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError, match="Unknown settings: colour"):
            user_service.update_profile(db_engine, alice["id"], {"settings": {"colour": "red"}})

    def test_missing_user(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError) as exc_info:
            user_service.get_profile(db_engine, alice["id"], 999)
        assert exc_info.value.status_code == 404


class TestSearch:
    def test_prefix_search_is_case_insensitive(self, db_engine, make_user):
        make_user("alice")
        make_user("alfred")
        make_user("bob")
        result = user_service.search_users(db_engine, "AL", page_request(1, 10))
        assert [u["username"] for u in result["users"]] == ["alfred", "alice"]
        assert result["pagination"]["total"] == 2

    def test_wildcards_are_literal(self, db_engine, make_user):
        make_user("alice")
        assert user_service.search_users(db_engine, "%", page_request(1, 10))["users"] == []

    def test_blank_query_rejected(self, db_engine):
        with pytest.raises(ServiceError, match="Search query is required"):
            user_service.search_users(db_engine, "   ", page_request(1, 10))


class TestAccountLifecycle:
    def test_change_password(self, db_engine, make_user):
        alice = make_user("alice")
        refresh = auth_service.issue_refresh_token(db_engine, alice["id"], 30)
        user_service.change_password(db_engine, alice["id"], "password123", "new-password-1")

        assert auth_service.authenticate(db_engine, "alice", "new-password-1")["id"] == alice["id"]
        with pytest.raises(ServiceError):
            auth_service.authenticate(db_engine, "alice", "password123")
        with pytest.raises(ServiceError):
            auth_service.rotate_refresh_token(db_engine, refresh, 30)

    def test_wrong_current_password(self, db_engine, make_user):
        alice = make_user("alice")
        with pytest.raises(ServiceError, match="Current password is incorrect"):
            user_service.change_password(db_engine, alice["id"], "guess", "new-password-1")

    def test_deactivated_account_cannot_log_in(self, db_engine, make_user):
        alice = make_user("alice")
        user_service.deactivate_account(db_engine, alice["id"])
        with pytest.raises(ServiceError) as exc_info:
            auth_service.authenticate(db_engine, "alice", "password123")
        assert exc_info.value.status_code == 401
        with pytest.raises(ServiceError):
            user_service.get_profile(db_engine, alice["id"], alice["id"])

    def test_activity_feed_newest_first(self, db_engine, make_user):
        alice = make_user("alice")
        goal_service.create_goal(db_engine, alice["id"], "Read 12 books")
        feed = user_service.activity_feed(db_engine, alice["id"], page_request(1, 10))
        assert [a["action"] for a in feed["activity"]] == ["goal_created", "registered"]


class TestUserEndpoints:
    def test_patch_me(self, client, make_user):
        alice = make_user("alice")
        resp = client.patch("/api/users/me", json={"bio": "Runner"}, headers=_auth(alice))
        assert resp.status_code == 200
        assert resp.json()["data"]["bio"] == "Runner"

    def test_search_requires_query(self, client, make_user):
        alice = make_user("alice")
        assert client.get("/api/users/search", headers=_auth(alice)).status_code == 422

    def test_view_other_profile(self, client, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        resp = client.get(f"/api/users/{bob['id']}", headers=_auth(alice))
        assert resp.json()["data"]["username"] == "bob"

    def test_delete_me_invalidates_token(self, client, make_user):
        alice = make_user("alice")
        assert client.delete("/api/users/me", headers=_auth(alice)).status_code == 200
        assert client.get("/api/auth/me", headers=_auth(alice)).status_code == 401
