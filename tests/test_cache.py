"""
tests/test_cache.py — ConfigCache Unit Tests
==============================================

Tests settings loading and typed accessors against SQLite, NOTIFY payload
routing (without a real PG connection), notify_before_commit allowlist
validation, and listener health.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from huddle.database.engine import get_session
from huddle.database.models import Setting
from huddle.database.seed import DEFAULT_SETTINGS, seed_default_settings
from huddle.engine.cache import ALLOWED_NOTIFY_TABLES, ConfigCache, notify_before_commit


class TestSettingsLoading:
    def test_seeded_defaults_loaded(self, cache):
        assert cache.get_int("points.goal_completed") == 50
        assert cache.get_float("level.factor") == 1.5
        assert set(cache.all_settings()) == set(DEFAULT_SETTINGS)

    def test_missing_key_returns_default(self, cache):
        assert cache.get_setting("nope", "fallback") == "fallback"
        assert cache.get_int("nope", 7) == 7
        assert cache.get_bool("nope", True) is True

    def test_non_numeric_falls_back(self, db_engine):
        with get_session(db_engine) as session:
            session.add(Setting(key="weird", value_json=json.dumps("abc"), category="misc"))
        c = ConfigCache(db_engine)
        c.load_all()
        assert c.get_int("weird", 3) == 3
        assert c.get_float("weird", 0.5) == 0.5

    def test_seed_is_idempotent_and_keeps_edits(self, db_engine):
        with get_session(db_engine) as session:
            session.get(Setting, "points.task_completed").value_json = "9"
        seed_default_settings(db_engine)
        c = ConfigCache(db_engine)
        c.load_all()
        assert c.get_int("points.task_completed") == 9
        assert len(c.all_settings()) == len(DEFAULT_SETTINGS)

    def test_handle_notify_reloads(self, db_engine, cache):
        with get_session(db_engine) as session:
            session.get(Setting, "streak.bonus_interval").value_json = "3"
        assert cache.get_int("streak.bonus_interval") == 7
        cache.handle_notify("settings")
        assert cache.get_int("streak.bonus_interval") == 3


class TestNotifyRouting:
    """Test that NOTIFY payloads route to the correct reload method."""

    @pytest.fixture
    def cache(self):
        engine = MagicMock()
        return ConfigCache(engine)

    def test_settings_payload_reloads(self, cache):
        with patch.object(cache, "_load_settings") as mock_method:
            cache.handle_notify(" Settings ")
            mock_method.assert_called_once()

    def test_unknown_notify_ignored(self, cache):
        with patch.object(cache, "_load_settings") as mock_method:
            cache.handle_notify("unknown_table")
            mock_method.assert_not_called()


# ---------------------------------------------------------------------------
# NOTIFY SQL injection safety — allowlist validation
# ---------------------------------------------------------------------------
class TestNotifyAllowlist:
    def _pg_session(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        return session

    def test_allowed_table_executes_notify(self):
        session = self._pg_session()
        notify_before_commit(session, "settings")
        session.execute.assert_called_once()

    def test_rejects_unknown_table(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(self._pg_session(), "users")

    def test_rejects_sql_injection_attempt(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(self._pg_session(), "settings'; DROP TABLE users; --")

    def test_noop_on_sqlite(self, db_session):
        notify_before_commit(db_session, "settings")

    def test_allowlist_is_frozen(self):
        assert isinstance(ALLOWED_NOTIFY_TABLES, frozenset)


class TestListenerHealth:
    def test_initially_unhealthy(self):
        cache = ConfigCache(MagicMock())
        assert cache.listener_healthy is False
        assert cache.listener_failed is False

    def test_listener_not_started_on_sqlite(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.start_listener()
        assert cache._listener_thread is None
        cache.stop_listener()
