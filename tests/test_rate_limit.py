"""
tests/test_rate_limit.py — Mutation Rate Limiting Tests
========================================================
Mutations are limited per user (authenticated routes) or per client IP
(register/login), returning 429 with a Retry-After header and the
standard error envelope.
"""

from __future__ import annotations

import dataclasses

import pytest
from sqlalchemy.orm import Session

from huddle.api.rate_limit import RateLimiter
from huddle.database.models import RateLimitEvent


# ---------------------------------------------------------------------------
# Unit tests for the RateLimiter core (DB-backed)
# ---------------------------------------------------------------------------
class TestRateLimiter:
    """Test the sliding-window rate limiter in isolation (DB-backed)."""

    @pytest.fixture(autouse=True)
    def _limiter(self, db_engine):
        """Create a fresh DB-backed limiter for each test."""
        self.limiter = RateLimiter(max_requests=5, window_seconds=60, engine=db_engine)
        self.engine = db_engine

    def _count(self, subject: str) -> int:
        with Session(self.engine) as s:
            return s.query(RateLimitEvent).filter(RateLimitEvent.subject == subject).count()

    def test_allows_requests_within_limit(self):
        for _ in range(5):
            allowed, _ = self.limiter.check("user:1")
            assert allowed
            self.limiter.record("user:1")
        assert self._count("user:1") == 5

    def test_blocks_after_limit_exceeded(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60, engine=self.engine)
        for _ in range(3):
            limiter.record("user:1")

        allowed, info = limiter.check("user:1")
        assert not allowed
        assert info["remaining"] == 0
        assert info["reset"] > 0
        assert info["limit"] == 3

    def test_separate_subjects_have_separate_limits(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user:1")
        limiter.record("user:1")

        allowed1, _ = limiter.check("user:1")
        assert not allowed1

        allowed2, _ = limiter.check("ip:10.0.0.1")
        assert allowed2

    def test_remaining_count_decreases(self):
        _, info = self.limiter.check("user:1")
        assert info["remaining"] == 5

        info = self.limiter.record("user:1")
        assert info["remaining"] == 4

        _, info = self.limiter.check("user:1")
        assert info["remaining"] == 4

    def test_reset_clears_specific_subject(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user:1")
        limiter.record("user:1")
        limiter.record("user:2")

        limiter.reset("user:1")

        allowed1, _ = limiter.check("user:1")
        assert allowed1

        _, info2 = limiter.check("user:2")
        assert info2["remaining"] == 1

    def test_reset_all(self):
        limiter = RateLimiter(max_requests=2, window_seconds=60, engine=self.engine)
        limiter.record("user:1")
        limiter.record("user:2")

        limiter.reset()

        assert self._count("user:1") == 0
        assert self._count("user:2") == 0


# ---------------------------------------------------------------------------
# Integration tests with FastAPI TestClient
# ---------------------------------------------------------------------------
class TestRateLimitDependency:
    """Test the rate limiter dependencies end-to-end via TestClient."""

    @pytest.fixture
    def limited_client(self, client, test_config):
        from huddle.api.deps import get_config
        from huddle.api.main import app

        strict = dataclasses.replace(test_config, rate_limit_max_requests=3)
        app.dependency_overrides[get_config] = lambda: strict
        return client

    def _headers(self, user: dict) -> dict:
        return {"Authorization": f"Bearer {user['token']}"}

    def test_get_requests_not_rate_limited(self, limited_client, make_user):
        alice = make_user("alice")
        for _ in range(6):
            resp = limited_client.get("/api/goals", headers=self._headers(alice))
            assert resp.status_code == 200

    def test_returns_429_after_limit(self, limited_client, make_user):
        alice = make_user("alice")
        for i in range(3):
            resp = limited_client.post(
                "/api/goals", headers=self._headers(alice), json={"title": f"Goal {i}"},
            )
            assert resp.status_code == 201

        resp = limited_client.post("/api/goals", headers=self._headers(alice), json={"title": "One too many"})
        assert resp.status_code == 429
        assert "Retry-After" in resp.headers

        body = resp.json()
        assert body["success"] is False
        assert body["message"].startswith("Rate limit exceeded")
        assert body["details"]["error"] == "rate_limit_exceeded"
        assert body["details"]["retry_after"] >= 1

    def test_different_users_have_separate_limits(self, limited_client, make_user, db_engine):
        alice = make_user("alice")
        bob = make_user("bob")
        limiter = RateLimiter(3, 60, engine=db_engine)
        for _ in range(3):
            limiter.record(f"user:{alice['id']}")

        resp1 = limited_client.post("/api/goals", headers=self._headers(alice), json={"title": "Blocked"})
        assert resp1.status_code == 429

        resp2 = limited_client.post("/api/goals", headers=self._headers(bob), json={"title": "Allowed"})
        assert resp2.status_code == 201

    def test_login_limited_per_ip(self, limited_client, make_user):
        make_user("alice")
        for _ in range(3):
            resp = limited_client.post(
                "/api/auth/login", json={"identifier": "alice", "password": "wrong-password"},
            )
            assert resp.status_code == 401

        resp = limited_client.post(
            "/api/auth/login", json={"identifier": "alice", "password": "password123"},
        )
        assert resp.status_code == 429

    def test_forwarded_header_does_not_reset_ip_limit(self, limited_client, make_user):
        make_user("alice")
        statuses = [
            limited_client.post(
                "/api/auth/login",
                json={"identifier": "alice", "password": "wrong-password"},
                headers={"X-Forwarded-For": f"203.0.113.{i}"},
            ).status_code
            for i in range(5)
        ]
        assert statuses == [401, 401, 401, 429, 429]

    def test_unauthenticated_mutation_rejected_before_counting(self, limited_client, db_engine):
        resp = limited_client.post("/api/goals", json={"title": "Anonymous"})
        assert resp.status_code == 401
        with Session(db_engine) as s:
            assert s.query(RateLimitEvent).count() == 0
