"""
huddle.engine.cache — In-Memory Settings Cache with PG LISTEN/NOTIFY
====================================================================

Gamification settings (points per action, badge goals, level curve) are
read on nearly every write path, so they are cached in memory.  Admin
edits invalidate the cache through PostgreSQL LISTEN/NOTIFY; the editing
process also reloads locally so the change is visible immediately.
"""

from __future__ import annotations

import contextlib
import json
import logging
import random
import select as _select
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from huddle.database.models import Setting

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel name used for config invalidation
NOTIFY_CHANNEL = "config_changed"

# Allowlist of table names accepted by notify_before_commit()
ALLOWED_NOTIFY_TABLES: frozenset[str] = frozenset({"settings"})

# Listener reconnect policy
LISTEN_POLL_SECONDS = 5.0
LISTEN_MAX_BACKOFF = 60.0
LISTEN_MAX_FAILURES = 10


class ConfigCache:
    """Thread-safe snapshot of the ``settings`` table.

    Services take the cache as an optional argument and fall back to the
    seeded defaults when it is missing::

        cache = ConfigCache(engine)
        cache.load_all()
        reward = cache.get_int("points.goal_completed", 50)
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        self._settings: dict[str, Any] = {}

        self._listener_healthy = False
        self._listener_failed = False
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    def load_all(self) -> None:
        """Read every setting from the database. Call once on startup."""
        self._load_settings()
        logger.info("Loaded %d settings into the cache", len(self._settings))

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            rows = session.execute(select(Setting.key, Setting.value_json)).all()
        snapshot = {key: _decode(raw) for key, raw in rows}
        with self._lock:
            self._settings = snapshot

    # -------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._settings.get(key, default)

    def _typed(self, key: str, cast, default):
        value = self.get_setting(key)
        if value is None:
            return default
        try:
            return cast(value)
        except (TypeError, ValueError):
            return default

    def get_int(self, key: str, default: int = 0) -> int:
        return self._typed(key, int, default)

    def get_float(self, key: str, default: float = 0.0) -> float:
        return self._typed(key, float, default)

    def get_bool(self, key: str, default: bool = False) -> bool:
        return self._typed(key, bool, default)

    def all_settings(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._settings)

    # -------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------
    def handle_notify(self, table_name: str) -> None:
        """Reload whatever *table_name* (a NOTIFY payload) refers to."""
        table = table_name.strip().lower()
        if table not in ALLOWED_NOTIFY_TABLES:
            logger.warning("Ignoring NOTIFY for unexpected table %r", table)
            return
        logger.info("Reloading cached %s after NOTIFY", table)
        self._load_settings()

    @property
    def listener_healthy(self) -> bool:
        """True while the LISTEN connection is up."""
        return self._listener_healthy and not self._listener_failed

    @property
    def listener_failed(self) -> bool:
        """True once the listener has given up reconnecting."""
        return self._listener_failed

    def start_listener(self) -> None:
        """LISTEN on :data:`NOTIFY_CHANNEL` from a daemon thread.

        Only PostgreSQL supports this; other dialects keep the cache as
        loaded and rely on local reloads after admin edits.
        """
        if self._engine.dialect.name != "postgresql":
            logger.info("No LISTEN/NOTIFY on %s; settings reload locally only",
                        self._engine.dialect.name)
            return
        self._shutdown_event.clear()
        self._listener_thread = threading.Thread(
            target=self._listen_forever, daemon=True, name="settings-listener",
        )
        self._listener_thread.start()

    def stop_listener(self) -> None:
        self._shutdown_event.set()
        thread = self._listener_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=5)
            logger.info("Settings listener stopped")

    def _dsn(self) -> str:
        # psycopg2 wants a plain libpq URL with the real password
        url = self._engine.url.set(drivername="postgresql")
        return url.render_as_string(hide_password=False)

    def _listen_forever(self) -> None:
        import psycopg2

        failures = 0
        while not self._shutdown_event.is_set():
            try:
                with contextlib.closing(psycopg2.connect(self._dsn())) as conn:
                    conn.set_isolation_level(0)
                    conn.cursor().execute(f"LISTEN {NOTIFY_CHANNEL};")
                    self._listener_healthy = True
                    failures = 0
                    logger.info("Listening for settings changes on '%s'", NOTIFY_CHANNEL)
                    self._drain(conn)
            except Exception:
                self._listener_healthy = False
                failures += 1
                if failures >= LISTEN_MAX_FAILURES:
                    self._listener_failed = True
                    logger.critical(
                        "Settings listener failed %d times in a row; cross-process "
                        "invalidation is off until restart", failures,
                    )
                    return
                delay = _reconnect_delay(failures)
                logger.exception("Settings listener dropped (%d/%d); retrying in %.1fs",
                                 failures, LISTEN_MAX_FAILURES, delay)
                if self._shutdown_event.wait(timeout=delay):
                    return

    def _drain(self, conn) -> None:
        """Dispatch notifications until shutdown; raises when the link drops."""
        while not self._shutdown_event.is_set():
            if _select.select([conn], [], [], LISTEN_POLL_SECONDS) == ([], [], []):
                continue
            conn.poll()
            while conn.notifies:
                payload = conn.notifies.pop(0).payload or ""
                try:
                    self.handle_notify(payload)
                except Exception:
                    logger.exception("Failed to apply NOTIFY payload %r", payload)


def _decode(raw: str | None) -> Any:
    """Settings are stored as JSON text; anything unparsable is kept verbatim."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


def _reconnect_delay(failures: int) -> float:
    """Exponential backoff capped at :data:`LISTEN_MAX_BACKOFF`, plus up to 50% jitter."""
    base = min(2.0 ** (failures - 1), LISTEN_MAX_BACKOFF)
    return base + random.uniform(0, base / 2)


def notify_before_commit(session: Session, table_name: str) -> None:
    """Queue a NOTIFY inside the current transaction (fires on commit).

    No-op on databases without LISTEN/NOTIFY (SQLite in tests).

    Raises
    ------
    ValueError
        If *table_name* is not in :data:`ALLOWED_NOTIFY_TABLES`.
    """
    if table_name not in ALLOWED_NOTIFY_TABLES:
        raise ValueError(
            f"Invalid table name for NOTIFY: '{table_name}'. "
            f"Allowed: {sorted(ALLOWED_NOTIFY_TABLES)}"
        )
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text(f"NOTIFY {NOTIFY_CHANNEL}, '{table_name}'"))
