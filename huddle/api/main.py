"""
huddle.api.main — FastAPI application entry point
==================================================

Run with::

    uvicorn huddle.api.main:app --reload --port 8000

or ``python -m huddle`` to use the port from ``config.yaml``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import Engine

load_dotenv()

from huddle.api.auth import router as auth_router  # noqa: E402
from huddle.api.deps import (  # noqa: E402
    get_cache,
    get_config,
    get_email_queue,
    get_engine,
    get_hub,
)
from huddle.api.responses import install_exception_handlers  # noqa: E402
from huddle.api.routes.admin import router as admin_router  # noqa: E402
from huddle.api.routes.blog import router as blog_router  # noqa: E402
from huddle.api.routes.challenges import router as challenges_router  # noqa: E402
from huddle.api.routes.chats import router as chats_router  # noqa: E402
from huddle.api.routes.friends import router as friends_router  # noqa: E402
from huddle.api.routes.gamification import router as gamification_router  # noqa: E402
from huddle.api.routes.goals import router as goals_router  # noqa: E402
from huddle.api.routes.groups import router as groups_router  # noqa: E402
from huddle.api.routes.moderation import router as moderation_router  # noqa: E402
from huddle.api.routes.notifications import router as notifications_router  # noqa: E402
from huddle.api.routes.polls import router as polls_router  # noqa: E402
from huddle.api.routes.reminders import router as reminders_router  # noqa: E402
from huddle.api.routes.rewards import router as rewards_router  # noqa: E402
from huddle.api.routes.subscriptions import router as subscriptions_router  # noqa: E402
from huddle.api.routes.tasks import router as tasks_router  # noqa: E402
from huddle.api.routes.users import router as users_router  # noqa: E402
from huddle.api.routes.webhooks import router as webhooks_router  # noqa: E402
from huddle.api.socket import router as socket_router  # noqa: E402
from huddle.constants import utcnow  # noqa: E402
from huddle.database.engine import run_db  # noqa: E402
from huddle.database.seed import seed_default_settings  # noqa: E402
from huddle.services import (  # noqa: E402
    notification_service,
    reminder_service,
    retention_service,
)
from huddle.services.log_buffer import install_handler  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


async def _retention_loop(engine: Engine, interval_seconds: float) -> None:
    """Run the retention cleanup forever, once per interval."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_db(retention_service.run_retention_cleanup, engine)
        except Exception:
            logger.exception("Retention cleanup failed")


async def _reminder_loop(engine: Engine, interval_seconds: float, streak_hour: int) -> None:
    """Send due reminders every interval; streak nudges once a day from *streak_hour* UTC."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_db(reminder_service.send_due_reminders, engine)
            now = utcnow()
            if now.hour >= streak_hour:
                await run_db(reminder_service.send_streak_reminders, engine, now.date())
        except Exception:
            logger.exception("Reminder dispatch failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: settings, cache, hub, email and the periodic tasks."""
    # Uvicorn reconfigures logging on start; attach the buffer afterwards.
    install_handler()

    cfg = get_config()
    engine = get_engine()
    await run_db(seed_default_settings, engine)
    cache = await run_db(get_cache)
    cache.start_listener()

    notification_service.configure(cfg.notification_retention_days)

    hub = get_hub()
    hub.bind_loop()
    notification_service.register_listener(hub.on_delivery)

    email_queue = get_email_queue()
    await email_queue.start()
    notification_service.register_listener(email_queue.on_delivery)

    retention_task = asyncio.create_task(
        _retention_loop(engine, cfg.retention_interval_minutes * 60),
        name="retention-cleanup",
    )
    reminder_task = asyncio.create_task(
        _reminder_loop(engine, cfg.reminder_interval_seconds, cfg.streak_reminder_hour),
        name="reminders",
    )
    logger.info("%s API started — engine ready (%s)", cfg.app_name, engine.url.database)
    yield

    logger.info("%s API shutting down", cfg.app_name)
    for task in (retention_task, reminder_task):
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    notification_service.unregister_listener(email_queue.on_delivery)
    notification_service.unregister_listener(hub.on_delivery)
    await email_queue.stop()
    cache.stop_listener()


app = FastAPI(
    title="Huddle API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_exception_handlers(app)

# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(friends_router, prefix="/api")
app.include_router(groups_router, prefix="/api")
app.include_router(polls_router, prefix="/api")
app.include_router(chats_router, prefix="/api")
app.include_router(blog_router, prefix="/api")
app.include_router(goals_router, prefix="/api")
app.include_router(tasks_router, prefix="/api")
app.include_router(challenges_router, prefix="/api")
app.include_router(gamification_router, prefix="/api")
app.include_router(rewards_router, prefix="/api")
app.include_router(reminders_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")
app.include_router(moderation_router, prefix="/api")
app.include_router(subscriptions_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(socket_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/health/realtime")
def realtime_health():
    """Number of open sockets and distinct connected users."""
    hub = get_hub()
    return {"connections": hub.connection_count, "users": hub.online_users}
