"""Initial Huddle schema

Revision ID: 4c1e7a0b9d22
Revises:
Create Date: 2026-10-19 09:12:04.118302

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4c1e7a0b9d22'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def _user_fk(name: str = "user_id", *, primary_key: bool = False, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name, sa.Integer,
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=primary_key,
        nullable=nullable,
    )


def upgrade() -> None:
    """Create every table of the initial release."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(30), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(60), nullable=True),
        sa.Column("bio", sa.String(500), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("roles", postgresql.JSONB, nullable=True, server_default='["user"]'),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("is_verified", sa.Boolean, server_default=sa.false()),
        sa.Column("points", sa.Integer, server_default="0"),
        sa.Column("level", sa.Integer, server_default="1"),
        sa.Column("stripe_customer_id", sa.String(100), nullable=True),
        sa.Column("subscription_status", sa.String(20), nullable=False, server_default="trial"),
        sa.Column("subscription_plan", sa.String(20), nullable=False, server_default="free-trial"),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settings", postgresql.JSONB, nullable=True, server_default="{}"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
        _created("updated_at"),
    )
    op.create_index("ix_users_points_desc", "users", ["points"])
    op.create_index("ix_users_stripe_customer", "users", ["stripe_customer_id"])

    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
    )
    op.create_index("ix_refresh_tokens_user", "refresh_tokens", ["user_id"])

    # --- social graph ---
    op.create_table(
        "friend_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("sender_id"),
        _user_fk("receiver_id"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _created(),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("sender_id", "receiver_id", name="uq_friend_requests_pair"),
    )
    op.create_index(
        "ix_friend_requests_receiver_status", "friend_requests", ["receiver_id", "status"],
    )

    op.create_table(
        "friendships",
        _user_fk(primary_key=True),
        _user_fk("friend_id", primary_key=True),
        _created(),
    )

    op.create_table(
        "follows",
        _user_fk("follower_id", primary_key=True),
        _user_fk("following_id", primary_key=True),
        _created(),
    )
    op.create_index("ix_follows_following", "follows", ["following_id"])

    # --- groups ---
    op.create_table(
        "groups",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        _user_fk("creator_id"),
        sa.Column("is_private", sa.Boolean, server_default=sa.false()),
        sa.Column("restricted_role", sa.String(30), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        _created(),
        _created("updated_at"),
    )
    op.create_index("ix_groups_active_created", "groups", ["is_active", "created_at"])

    op.create_table(
        "group_members",
        sa.Column(
            "group_id", sa.Integer,
            sa.ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True,
        ),
        _user_fk(primary_key=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        _created("joined_at"),
    )

    op.create_table(
        "group_invites",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "group_id", sa.Integer,
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
        ),
        _user_fk("inviter_id"),
        _user_fk("invitee_id"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _created(),
        sa.UniqueConstraint("group_id", "invitee_id", name="uq_group_invites_invitee"),
    )

    # --- chat ---
    op.create_table(
        "chats",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("chat_type", sa.String(20), nullable=False),
        sa.Column(
            "group_id", sa.Integer,
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("pair_key", sa.String(50), nullable=True, unique=True),
        sa.Column("last_message_id", sa.Integer, nullable=True),
        _created(),
        _created("updated_at"),
    )
    op.create_index("ix_chats_group", "chats", ["group_id"])

    op.create_table(
        "chat_participants",
        sa.Column(
            "chat_id", sa.Integer,
            sa.ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True,
        ),
        _user_fk(primary_key=True),
        sa.Column("unread_count", sa.Integer, server_default="0"),
        sa.Column("is_admin", sa.Boolean, server_default=sa.false()),
        _created("joined_at"),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_chat_participants_user", "chat_participants", ["user_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "chat_id", sa.Integer,
            sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False,
        ),
        _user_fk("sender_id"),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="sent"),
        sa.Column("is_deleted", sa.Boolean, server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
    )
    op.create_index("ix_messages_chat_created", "messages", ["chat_id", "created_at"])

    op.create_table(
        "message_reactions",
        sa.Column(
            "message_id", sa.Integer,
            sa.ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True,
        ),
        _user_fk(primary_key=True),
        sa.Column("reaction", sa.String(32), nullable=False),
        _created(),
    )

    # --- blog ---
    op.create_table(
        "blog_posts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("author_id"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("image_url", sa.String(500), nullable=True),
        sa.Column("is_deleted", sa.Boolean, server_default=sa.false()),
        _created(),
        _created("updated_at"),
    )
    op.create_index("ix_blog_posts_created", "blog_posts", ["created_at"])
    op.create_index("ix_blog_posts_category", "blog_posts", ["category"])

    op.create_table(
        "blog_likes",
        sa.Column(
            "post_id", sa.Integer,
            sa.ForeignKey("blog_posts.id", ondelete="CASCADE"), primary_key=True,
        ),
        _user_fk(primary_key=True),
        _created(),
    )

    op.create_table(
        "comments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "post_id", sa.Integer,
            sa.ForeignKey("blog_posts.id", ondelete="CASCADE"), nullable=False,
        ),
        _user_fk("author_id"),
        sa.Column("content", sa.String(1000), nullable=False),
        _created(),
    )
    op.create_index("ix_comments_post_created", "comments", ["post_id", "created_at"])

    # --- goals, milestones, tasks ---
    op.create_table(
        "goals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("category", sa.String(30), nullable=False, server_default="personal"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(20), nullable=False, server_default="not-started"),
        sa.Column("progress", sa.Integer, server_default="0"),
        sa.Column("is_public", sa.Boolean, server_default=sa.false()),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
        _created("updated_at"),
    )
    op.create_index("ix_goals_user_status", "goals", ["user_id", "status"])

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "goal_id", sa.Integer,
            sa.ForeignKey("goals.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("is_completed", sa.Boolean, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column(
            "goal_id", sa.Integer,
            sa.ForeignKey("goals.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="not-started"),
        sa.Column("due_date", sa.Date, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
        _created("updated_at"),
    )
    op.create_index("ix_tasks_user_status", "tasks", ["user_id", "status"])
    op.create_index("ix_tasks_due", "tasks", ["due_date"])

    # --- challenges ---
    op.create_table(
        "challenges",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk("creator_id"),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("goal", sa.String(200), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="ongoing"),
        sa.Column("visibility", sa.String(10), nullable=False, server_default="public"),
        sa.Column("rewards", postgresql.JSONB, nullable=True, server_default="[]"),
        _created(),
    )
    op.create_index("ix_challenges_status_end", "challenges", ["status", "end_date"])

    op.create_table(
        "challenge_participants",
        sa.Column(
            "challenge_id", sa.Integer,
            sa.ForeignKey("challenges.id", ondelete="CASCADE"), primary_key=True,
        ),
        _user_fk(primary_key=True),
        sa.Column("progress", sa.Integer, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created("joined_at"),
    )

    # --- gamification ---
    op.create_table(
        "badges",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column("badge_type", sa.String(40), nullable=False),
        sa.Column("level", sa.String(10), nullable=False, server_default="Bronze"),
        sa.Column("is_showcased", sa.Boolean, server_default=sa.false()),
        _created("awarded_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "badge_type", name="uq_badges_user_type"),
    )
    op.create_index("ix_badges_expires", "badges", ["expires_at"])

    op.create_table(
        "badge_progress",
        _user_fk(primary_key=True),
        sa.Column("badge_type", sa.String(40), primary_key=True),
        sa.Column("level", sa.String(10), nullable=False, server_default="Bronze"),
        sa.Column("progress", sa.Integer, server_default="0"),
        sa.Column("goal", sa.Integer, server_default="5"),
        sa.Column("milestone_achieved", sa.Boolean, server_default=sa.false()),
        _created("updated_at"),
    )

    op.create_table(
        "streaks",
        _user_fk(primary_key=True),
        sa.Column("streak_count", sa.Integer, server_default="0"),
        sa.Column("longest_streak", sa.Integer, server_default="0"),
        sa.Column("last_check_in", sa.Date, nullable=True),
        _created("updated_at"),
    )
    op.create_index("ix_streaks_count", "streaks", ["streak_count"])

    op.create_table(
        "point_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("points", sa.Integer, nullable=False),
        sa.Column("source_id", sa.String(100), nullable=True),
        sa.Column("reason", sa.String(200), nullable=True),
        _created(),
        sa.UniqueConstraint("user_id", "action", "source_id", name="uq_point_tx_source"),
    )
    op.create_index("ix_point_tx_user_time", "point_transactions", ["user_id", "created_at"])

    # --- billing ---
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column("provider", sa.String(20), nullable=False, server_default="stripe"),
        sa.Column("provider_customer_id", sa.String(100), nullable=True),
        sa.Column("provider_subscription_id", sa.String(100), nullable=True, unique=True),
        sa.Column("plan", sa.String(20), nullable=False, server_default="free-trial"),
        sa.Column("status", sa.String(30), nullable=False, server_default="trial"),
        sa.Column("is_active", sa.Boolean, server_default=sa.false()),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean, server_default=sa.false()),
        sa.Column("updated_by", sa.String(20), nullable=False, server_default="user"),
        _created(),
        _created("updated_at"),
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        _created("processed_at"),
    )

    # --- notifications & journals ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column(
            "sender_id", sa.Integer,
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("notification_type", sa.String(30), nullable=False),
        sa.Column("message", sa.String(500), nullable=False),
        sa.Column("link", sa.String(500), nullable=True),
        sa.Column("is_read", sa.Boolean, server_default=sa.false()),
        _created(),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_notifications_user_read_time", "notifications", ["user_id", "is_read", "created_at"],
    )
    op.create_index("ix_notifications_expires", "notifications", ["expires_at"])

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _user_fk(),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("points_delta", sa.Integer, server_default="0"),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _created("timestamp"),
    )
    op.create_index("ix_activity_log_user_time", "activity_log", ["user_id", "timestamp"])
    op.create_index("ix_activity_log_action_time", "activity_log", ["action", "timestamp"])

    op.create_table(
        "admin_action_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.Integer, nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        _created("timestamp"),
    )
    op.create_index(
        "ix_admin_action_log_actor_time", "admin_action_log", ["actor_id", "timestamp"],
    )
    op.create_index(
        "ix_admin_action_log_target", "admin_action_log",
        ["target_table", "target_id", "timestamp"],
    )

    # --- settings & throttling ---
    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text, nullable=True),
        _created("updated_at"),
    )
    op.create_index("ix_settings_category", "settings", ["category"])

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("subject", sa.String(80), nullable=False),
        _created("timestamp"),
    )
    op.create_index(
        "ix_rate_limit_subject_ts", "rate_limit_events",
        ["subject", sa.text("timestamp DESC")],
    )
    op.create_index("ix_rate_limit_ts", "rate_limit_events", ["timestamp"])


def downgrade() -> None:
    """Drop every table, children first."""
    for table in (
        "rate_limit_events",
        "settings",
        "admin_action_log",
        "activity_log",
        "notifications",
        "webhook_events",
        "subscriptions",
        "point_transactions",
        "streaks",
        "badge_progress",
        "badges",
        "challenge_participants",
        "challenges",
        "tasks",
        "milestones",
        "goals",
        "comments",
        "blog_likes",
        "blog_posts",
        "message_reactions",
        "messages",
        "chat_participants",
        "chats",
        "group_invites",
        "group_members",
        "groups",
        "follows",
        "friendships",
        "friend_requests",
        "refresh_tokens",
        "users",
    ):
        op.drop_table(table)
