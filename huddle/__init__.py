"""
Huddle — Social & Productivity Backend
=======================================
Accounts, friendships, groups, chat, blog posts, goals and challenges,
wrapped in a gamification layer (points, badges, streaks, leaderboards)
with notifications and subscription billing.  One FastAPI process serves
the REST API and the real-time socket channel.

Package layout::

    huddle/
    ├── __main__.py        # python -m huddle → uvicorn
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Roles, level curve, text cleaning, UTC helpers
    ├── errors.py          # ServiceError + create_error()
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default gamification settings
    ├── engine/
    │   ├── events.py      # GamificationEvent dataclass + action catalogue
    │   ├── badges.py      # Badge level progression (pure)
    │   ├── streaks.py     # Daily check-in arithmetic (pure)
    │   ├── pagination.py  # Page maths + ranking helpers (pure)
    │   └── cache.py       # In-memory settings cache + PG LISTEN/NOTIFY
    ├── realtime/
    │   ├── hub.py         # Room registry + broadcast
    │   └── handlers.py    # Socket event handlers
    ├── services/          # One module per resource (users, chat, billing, …)
    └── api/
        ├── main.py        # FastAPI app
        ├── auth.py        # Register / login / refresh / logout
        ├── deps.py        # JWT + request-scoped dependencies
        ├── rate_limit.py  # DB-backed sliding-window throttle
        ├── socket.py      # /api/ws endpoint
        ├── responses.py   # {success, message, data} envelope + handlers
        └── routes/        # One router per resource
"""

__version__ = "0.1.0"
