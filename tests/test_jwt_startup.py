"""
tests/test_jwt_startup — JWT Secret Validation at Startup
===========================================================
The API must refuse to start when JWT_SECRET is missing, blank, too
short, or a known weak default; access tokens must round-trip and
refresh tokens never validate as access tokens.
"""

from __future__ import annotations

import os
from datetime import timedelta
from unittest.mock import patch

import jwt
import pytest

from huddle.api import deps
from huddle.constants import utcnow


class TestJWTSecretValidation:
    """Prove that _load_jwt_secret() rejects bad secrets and accepts good ones."""

    def test_rejects_missing_secret(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JWT_SECRET", None)
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                deps._load_jwt_secret()

    def test_rejects_empty_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": ""}):
            with pytest.raises(RuntimeError, match="JWT_SECRET environment variable is not set"):
                deps._load_jwt_secret()

    @pytest.mark.parametrize("weak", ["huddle-dev-secret-change-me", "change-me", "secret"])
    def test_rejects_known_weak_default(self, weak):
        with patch.dict(os.environ, {"JWT_SECRET": weak}):
            with pytest.raises(RuntimeError, match="known weak default"):
                deps._load_jwt_secret()

    def test_rejects_short_secret(self):
        with patch.dict(os.environ, {"JWT_SECRET": "tooshort"}):
            with pytest.raises(RuntimeError, match="too short"):
                deps._load_jwt_secret()

    def test_accepts_strong_secret(self):
        good_secret = "a" * 64
        with patch.dict(os.environ, {"JWT_SECRET": good_secret}):
            assert deps._load_jwt_secret() == good_secret


class TestAccessTokens:
    def test_round_trip(self):
        token = deps.create_access_token({"id": 7, "username": "alice", "roles": ["user"]}, 5)
        claims = deps.decode_access_token(token)
        assert claims["sub"] == "7"
        assert claims["username"] == "alice"
        assert claims["roles"] == ["user"]

    def test_expired_token_rejected(self):
        token = deps.create_access_token({"id": 7, "username": "alice", "roles": []}, -1)
        assert deps.decode_access_token(token) is None

    def test_wrong_type_rejected(self):
        token = jwt.encode(
            {"sub": "7", "type": "refresh", "exp": utcnow() + timedelta(minutes=5)},
            deps.JWT_SECRET,
            algorithm=deps.JWT_ALGORITHM,
        )
        assert deps.decode_access_token(token) is None

    def test_wrong_secret_rejected(self):
        token = jwt.encode(
            {"sub": "7", "type": "access", "exp": utcnow() + timedelta(minutes=5)},
            "another-secret-that-is-long-enough-" + "y" * 20,
            algorithm=deps.JWT_ALGORITHM,
        )
        assert deps.decode_access_token(token) is None

    def test_non_numeric_subject_rejected(self):
        token = jwt.encode(
            {"sub": "alice", "type": "access", "exp": utcnow() + timedelta(minutes=5)},
            deps.JWT_SECRET,
            algorithm=deps.JWT_ALGORITHM,
        )
        assert deps.decode_access_token(token) is None

    def test_resolve_token_reads_live_roles(self, db_engine, make_user):
        from sqlalchemy import update

        from huddle.database.engine import get_session
        from huddle.database.models import User

        alice = make_user("alice")
        with get_session(db_engine) as session:
            session.execute(update(User).where(User.id == alice["id"]).values(roles=["user", "moderator"]))

        user = deps.resolve_token(db_engine, alice["token"])
        assert user.roles == ("user", "moderator")
        assert user.has_role("moderator")

    def test_resolve_token_inactive_user(self, db_engine, make_user):
        from huddle.services import user_service

        alice = make_user("alice")
        user_service.deactivate_account(db_engine, alice["id"])
        assert deps.resolve_token(db_engine, alice["token"]) is None
