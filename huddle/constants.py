"""
huddle.constants — Shared Constants & Helpers
==============================================

Single source of truth for role names, the leveling formula, input
cleaning and UTC helpers.  Import from here instead of duplicating in
services and routes.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING

from huddle.errors import create_error

if TYPE_CHECKING:
    from huddle.engine.cache import ConfigCache

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------
ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_MODERATOR = "moderator"
ROLE_MILITARY = "military"

VALID_ROLES: frozenset[str] = frozenset({ROLE_USER, ROLE_ADMIN, ROLE_MODERATOR, ROLE_MILITARY})

# Default pagination bounds shared by every list endpoint
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Leveling formula — THE single canonical implementation
# ---------------------------------------------------------------------------
def _level_params(cache: ConfigCache | None) -> tuple[int, float]:
    if cache is not None:
        return cache.get_int("level.base", 100), cache.get_float("level.factor", 1.5)
    return 100, 1.5


def points_for_level(level: int, cache: ConfigCache | None = None) -> int:
    """Points needed to advance *from* ``level`` to ``level + 1``.

    Uses the exponential formula::

        required = level_base * (level_factor ** (level - 1))

    Parameters are read from the ``settings`` table via *cache*.
    Falls back to defaults (100, 1.5) if cache is unavailable.
    """
    base, factor = _level_params(cache)
    return int(base * (factor ** (max(level, 1) - 1)))


def level_for_points(points: int, cache: ConfigCache | None = None) -> int:
    """Return the level reached with *points* total (level 1 at zero)."""
    level = 1
    remaining = max(points, 0)
    while True:
        needed = points_for_level(level, cache)
        if needed <= 0 or remaining < needed:
            return level
        remaining -= needed
        level += 1


# ---------------------------------------------------------------------------
# Text cleaning
# ---------------------------------------------------------------------------
_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def clean_text(
    value: str | None,
    max_length: int,
    *,
    field: str = "text",
    required: bool = True,
) -> str | None:
    """Strip markup and control characters, then enforce length.

    Returns ``None`` for an empty optional value.  Raises a 400
    :class:`~huddle.errors.ServiceError` when a required value is empty
    after cleaning or when the cleaned value exceeds *max_length*.
    """
    if value is None:
        if required:
            raise create_error(f"{field} is required", 400)
        return None
    cleaned = _CONTROL_RE.sub("", _TAG_RE.sub("", value)).strip()
    if not cleaned:
        if required:
            raise create_error(f"{field} is required", 400)
        return None
    if len(cleaned) > max_length:
        raise create_error(f"{field} must be at most {max_length} characters", 400)
    return cleaned


# ---------------------------------------------------------------------------
# UTC helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(UTC)


def utctoday() -> date:
    return utcnow().date()


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def isoformat(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value.isoformat()
