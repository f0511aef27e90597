"""Guild state baseline: guilds, settings, members, moderation, playlist, referrals

Revision ID: 5e2c8a17b4d0
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5e2c8a17b4d0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _guild_fk() -> sa.Column:
    return sa.Column(
        "guild_id", sa.String(32),
        sa.ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False,
    )


def _moderation_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("issuer_id", sa.String(32), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["guild_id", "user_id"], ["guild_users.guild_id", "guild_users.id"],
            ondelete="CASCADE", name=f"fk_{name}_user",
        ),
        sa.ForeignKeyConstraint(
            ["guild_id", "issuer_id"], ["guild_users.guild_id", "guild_users.id"],
            ondelete="CASCADE", name=f"fk_{name}_issuer",
        ),
        sa.UniqueConstraint("guild_id", "user_id", "issuer_id", name=f"uq_{name}_pair"),
    )


def _submitted_item_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _guild_fk(),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("author", sa.String(32), nullable=True),
        sa.Column(
            "date_created", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
    )
    op.create_index(f"ix_{name}_guild", name, ["guild_id"])


def upgrade() -> None:
    """Create every guild-scoped table."""
    op.create_table(
        "guilds",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(100), nullable=True),
        sa.Column(
            "date_created", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "guild_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "guild_id", sa.String(32),
            sa.ForeignKey("guilds.id", ondelete="CASCADE"),
            nullable=False, unique=True,
        ),
        sa.Column("prefix", sa.String(10), nullable=True),
        sa.Column("welcome_channel_id", sa.String(32), nullable=True),
        sa.Column("welcome_message", sa.Text(), nullable=True),
        sa.Column("log_channel_id", sa.String(32), nullable=True),
        sa.Column("suggestions_channel_id", sa.String(32), nullable=True),
        sa.Column("support_channel_id", sa.String(32), nullable=True),
        sa.Column(
            "referral_role_rewards_enabled", sa.Boolean(), nullable=True,
            server_default=sa.false(),
        ),
    )

    op.create_table(
        "guild_users",
        sa.Column(
            "guild_id", sa.String(32),
            sa.ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("level", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("experience", sa.Integer(), nullable=True, server_default="0"),
        sa.Column(
            "date_joined", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
    )

    _moderation_table("guild_user_warnings")
    _moderation_table("guild_user_kicks")

    _submitted_item_table("guild_suggestions")
    _submitted_item_table("guild_support_tickets")

    op.create_table(
        "guild_self_assignable_roles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _guild_fk(),
        sa.Column("role_id", sa.String(32), nullable=False),
        sa.UniqueConstraint(
            "guild_id", "role_id", name="uq_self_assignable_roles_guild_role",
        ),
    )

    op.create_table(
        "songs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _guild_fk(),
        sa.Column("requested_by", sa.String(32), nullable=False),
        sa.Column("title", sa.String(200), nullable=True),
        sa.Column("url", sa.String(500), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "date_requested", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_songs_guild_position", "songs", ["guild_id", "position"])
    op.create_index("ix_songs_guild_requester", "songs", ["guild_id", "requested_by"])

    op.create_table(
        "referrals",
        sa.Column(
            "guild_id", sa.String(32),
            sa.ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("user_id", sa.String(32), nullable=False),
        sa.Column("invite_url", sa.String(500), nullable=False),
        sa.Column("join_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("date_created", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "referral_roles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("referral_id", sa.Integer(), nullable=False),
        sa.Column("role_id", sa.String(32), nullable=False),
        sa.ForeignKeyConstraint(
            ["guild_id", "referral_id"], ["referrals.guild_id", "referrals.id"],
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("guild_id", "referral_id", name="uq_referral_roles_referral"),
    )

    op.create_table(
        "referral_unlocked_rewards",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("referral_id", sa.Integer(), nullable=False),
        sa.Column("reward_id", sa.String(64), nullable=False),
        sa.Column(
            "date_unlocked", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["guild_id", "referral_id"], ["referrals.guild_id", "referrals.id"],
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_referral_rewards_referral",
        "referral_unlocked_rewards",
        ["guild_id", "referral_id"],
    )


def downgrade() -> None:
    """Drop every guild-scoped table, children first."""
    op.drop_index("ix_referral_rewards_referral", table_name="referral_unlocked_rewards")
    op.drop_table("referral_unlocked_rewards")
    op.drop_table("referral_roles")
    op.drop_table("referrals")

    op.drop_index("ix_songs_guild_requester", table_name="songs")
    op.drop_index("ix_songs_guild_position", table_name="songs")
    op.drop_table("songs")

    op.drop_table("guild_self_assignable_roles")

    for name in ("guild_support_tickets", "guild_suggestions"):
        op.drop_index(f"ix_{name}_guild", table_name=name)
        op.drop_table(name)

    op.drop_table("guild_user_kicks")
    op.drop_table("guild_user_warnings")
    op.drop_table("guild_users")
    op.drop_table("guild_settings")
    op.drop_table("guilds")
