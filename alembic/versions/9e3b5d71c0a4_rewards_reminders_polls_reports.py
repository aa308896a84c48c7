"""Rewards, reminders, group polls and moderation reports

Revision ID: 9e3b5d71c0a4
Revises: 4c1e7a0b9d22
Create Date: 2026-10-19 15:40:27.503119

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '9e3b5d71c0a4'
down_revision: str | Sequence[str] | None = '4c1e7a0b9d22'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def _user_fk(name: str = "user_id", *, primary_key: bool = False) -> sa.Column:
    return sa.Column(
        name, sa.Integer,
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=primary_key,
        nullable=False,
    )


def upgrade() -> None:
    # --- rewards ---
    op.create_table(
        "rewards",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("points_required", sa.Integer, nullable=False),
        sa.Column("reward_type", sa.String(20), nullable=False, server_default="recognition"),
        sa.Column("image_url", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        _created(),
    )
    op.create_index("ix_rewards_active_points", "rewards", ["is_active", "points_required"])

    op.create_table(
        "redemptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column(
            "reward_id", sa.Integer,
            sa.ForeignKey("rewards.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("item", sa.String(100), nullable=False),
        sa.Column("points_used", sa.Integer, nullable=False),
        _created("redeemed_at"),
    )
    op.create_index("ix_redemptions_user_time", "redemptions", ["user_id", "redeemed_at"])
    op.create_index("ix_redemptions_time", "redemptions", ["redeemed_at"])

    # --- reminders ---
    op.create_table(
        "reminders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column("message", sa.String(200), nullable=False),
        sa.Column("remind_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recurrence", sa.String(10), nullable=False, server_default="none"),
        sa.Column("is_disabled", sa.Boolean, server_default=sa.false()),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
    )
    op.create_index("ix_reminders_due", "reminders", ["is_disabled", "remind_at"])
    op.create_index("ix_reminders_user", "reminders", ["user_id"])

    # --- polls ---
    op.create_table(
        "polls",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "group_id", sa.Integer,
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
        ),
        _user_fk("creator_id"),
        sa.Column("question", sa.String(500), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _created(),
    )
    op.create_index("ix_polls_group_created", "polls", ["group_id", "created_at"])

    op.create_table(
        "poll_options",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "poll_id", sa.Integer,
            sa.ForeignKey("polls.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("text", sa.String(200), nullable=False),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
    )

    op.create_table(
        "poll_votes",
        sa.Column(
            "poll_id", sa.Integer,
            sa.ForeignKey("polls.id", ondelete="CASCADE"), primary_key=True,
        ),
        _user_fk(primary_key=True),
        sa.Column(
            "option_id", sa.Integer,
            sa.ForeignKey("poll_options.id", ondelete="CASCADE"), nullable=False,
        ),
        _created(),
    )
    op.create_index("ix_poll_votes_option", "poll_votes", ["option_id"])

    # --- moderation ---
    op.create_table(
        "reports",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("reporter_id"),
        sa.Column("target_type", sa.String(20), nullable=False),
        sa.Column("target_id", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(300), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("resolved_by", sa.Integer, nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
        sa.UniqueConstraint(
            "reporter_id", "target_type", "target_id", name="uq_reports_reporter_target",
        ),
    )
    op.create_index("ix_reports_status_created", "reports", ["status", "created_at"])

    op.create_table(
        "feedback",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column("message", sa.String(1000), nullable=False),
        sa.Column("rating", sa.Integer, nullable=True),
        _created(),
    )
    op.create_index("ix_feedback_created", "feedback", ["created_at"])


def downgrade() -> None:
    for table in (
        "feedback",
        "reports",
        "poll_votes",
        "poll_options",
        "polls",
        "reminders",
        "redemptions",
        "rewards",
    ):
        op.drop_table(table)
