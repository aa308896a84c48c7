"""
huddle.__main__ — Entry point for ``python -m huddle``
=======================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (infrastructure settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Serve the FastAPI app with uvicorn on ``api_port``.

The lifespan hook in :mod:`huddle.api.main` seeds settings, warms the
cache, starts the email queue and schedules retention cleanup.

Run with::

    python -m huddle
"""

from __future__ import annotations

import logging
import os

import uvicorn
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("huddle")


def main() -> None:
    """Bootstrap and serve the Huddle API."""

    # 1. Environment variables (secrets).  Must precede the app import,
    #    which validates JWT_SECRET.
    load_dotenv()

    from huddle.api.deps import get_config, get_engine
    from huddle.api.main import app
    from huddle.database.engine import init_db

    # 2. Infrastructure configuration.
    cfg = get_config()
    logger.info("Config loaded — %s on port %d", cfg.app_name, cfg.api_port)

    # 3. Database.
    init_db(get_engine())

    # 4. Serve (blocks until Ctrl+C or SIGTERM).
    uvicorn.run(
        app,
        host=os.getenv("HUDDLE_HOST", "0.0.0.0"),
        port=cfg.api_port,
        log_config=None,
        proxy_headers=True,
        forwarded_allow_ips=os.getenv("HUDDLE_TRUSTED_PROXIES", "127.0.0.1"),
    )


if __name__ == "__main__":
    main()
