"""
huddle.database.engine — Engine, sessions and the thread bridge
================================================================

Services are synchronous SQLAlchemy code.  Route handlers declared with
``def`` already run in FastAPI's thread pool; coroutines (socket handlers,
lifespan tasks) call services through :func:`run_db`.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from huddle.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Pool sizing for one API process
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT_SECONDS = 10
POOL_RECYCLE_SECONDS = 3600


def create_db_engine(url: str | None = None) -> Engine:
    """Engine for *url*, defaulting to ``DATABASE_URL``.

    Raises :class:`RuntimeError` when neither is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set; see .env.example")

    engine = create_engine(
        url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT_SECONDS,
        pool_recycle=POOL_RECYCLE_SECONDS,
        pool_pre_ping=True,
    )
    logger.info("Database engine ready (%s)", engine.url.render_as_string(hide_password=True))
    return engine


def init_db(engine: Engine) -> None:
    """``create_all`` plus default settings; idempotent.

    Production schemas are owned by Alembic; this keeps dev and test
    databases usable without a migration run.
    """
    from huddle.database.seed import seed_default_settings

    Base.metadata.create_all(engine)
    seed_default_settings(engine)


@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Unit of work: commit on clean exit, roll back on any exception.

    Objects stay readable after commit so services can serialise them.
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    return await asyncio.to_thread(func, *args, **kwargs)
