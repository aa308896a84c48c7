"""
huddle.config — YAML Configuration Loader
==========================================

Reads ``config.yaml`` for **infrastructure-only** settings (rate limits,
token lifetimes, trial length, email transport, billing plan map,
retention windows, reminder schedule).  Secrets stay in the environment
(``.env``) and all gamification tuning (points per action, badge goals,
level curve) lives in the ``settings`` database table, editable from the
admin API.

Usage::

    from huddle.config import load_config

    cfg = load_config()          # reads $HUDDLE_CONFIG or ./config.yaml
    print(cfg.app_name)          # "Huddle"
    print(cfg.plan_for_price("price_premium_monthly"))   # "premium"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

# Plan assigned when a provider price ID is not in ``billing.plans``
DEFAULT_PLAN = "free-trial"


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure only.
# Gamification tuning lives in the DB ``settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class HuddleConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str

    # API
    api_port: int

    # Auth
    access_token_minutes: int = 60
    refresh_token_days: int = 30

    # Throttling: mutations per sliding window, per user (or per IP for auth)
    rate_limit_max_requests: int = 30
    rate_limit_window_seconds: int = 60

    # Billing
    trial_days: int = 14
    plans: dict[str, str] = field(default_factory=dict)  # price_id → plan

    # Email
    email_enabled: bool = False
    email_from: str = "no-reply@localhost"
    smtp_host: str | None = None
    smtp_port: int = 587

    # Retention
    notification_retention_days: int = 30
    retention_interval_minutes: int = 60

    # Reminders
    reminder_interval_seconds: int = 60
    streak_reminder_hour: int = 9  # UTC

    def plan_for_price(self, price_id: str | None) -> str:
        """Resolve a provider price ID to a plan name."""
        if not price_id:
            return DEFAULT_PLAN
        return self.plans.get(price_id, DEFAULT_PLAN)

    def price_for_plan(self, plan: str) -> str | None:
        """Reverse lookup: the first price ID mapped to *plan*."""
        for price_id, name in self.plans.items():
            if name == plan:
                return price_id
        return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> HuddleConfig:
    """Read *path* and return a :class:`HuddleConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to
        ``$HUDDLE_CONFIG`` and then ``config.yaml`` in the working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    if path is None:
        path = os.getenv("HUDDLE_CONFIG", "config.yaml")
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    rate_limit = raw.get("rate_limit") or {}
    auth = raw.get("auth") or {}
    billing = raw.get("billing") or {}
    email = raw.get("email") or {}
    retention = raw.get("retention") or {}
    reminders = raw.get("reminders") or {}

    return HuddleConfig(
        app_name=raw["app_name"],
        api_port=int(raw["api_port"]),
        access_token_minutes=int(auth.get("access_token_minutes", 60)),
        refresh_token_days=int(auth.get("refresh_token_days", 30)),
        rate_limit_max_requests=int(rate_limit.get("max_requests", 30)),
        rate_limit_window_seconds=int(rate_limit.get("window_seconds", 60)),
        trial_days=int(billing.get("trial_days", 14)),
        plans={str(k): str(v) for k, v in (billing.get("plans") or {}).items()},
        email_enabled=bool(email.get("enabled", False)),
        email_from=email.get("from", "no-reply@localhost"),
        smtp_host=email.get("smtp_host") or None,
        smtp_port=int(email.get("smtp_port", 587)),
        notification_retention_days=int(retention.get("notification_days", 30)),
        retention_interval_minutes=int(retention.get("interval_minutes", 60)),
        reminder_interval_seconds=int(reminders.get("interval_seconds", 60)),
        streak_reminder_hour=int(reminders.get("streak_hour_utc", 9)),
    )
