"""
nightwatch.database.models — SQLAlchemy 2.0 Data Models
========================================================

Every table is scoped by a guild.  The guild owns its children; deleting a
guild removes them through ORM cascades backed by ``ON DELETE CASCADE``.

Tables:
- guilds                       — Aggregate root (platform snowflake as string PK)
- guild_settings               — Exactly one settings row per guild
- guild_users                  — Per-guild member rows, PK (guild_id, id)
- guild_user_warnings          — Moderation warnings (issuer → user)
- guild_user_kicks             — Moderation kicks (issuer → user)
- guild_suggestions            — User-submitted suggestions
- guild_support_tickets        — User-submitted support tickets
- guild_self_assignable_roles  — Opt-in roles, unique per (guild, role)
- songs                        — Per-guild playlist queue
- referrals                    — Caller-numbered invite referrals, PK (guild_id, id)
- referral_roles               — Role granted through a referral (1:1)
- referral_unlocked_rewards    — Rewards unlocked by a referral

Constructors accept an optional snapshot mapping and copy every field it
names, so ``Guild(snapshot)`` twice yields field-equal instances::

    Guild({"id": "1234", "name": "Nightwatch HQ"})
    GuildSuggestion({"content": "add bot"}, guild_id="1234")
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    inspect,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from nightwatch.errors import ValidationError

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)

# Referral ids are short, human-typeable codes.
REFERRAL_ID_MIN = 1000
REFERRAL_ID_MAX = 999_999


# ---------------------------------------------------------------------------
# Field validation helpers
# ---------------------------------------------------------------------------
def _require_str(key: str, value: Any, *, max_length: int | None = None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} must be a non-empty string")
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f"{key} must be at most {max_length} characters")
    return value


def _optional_str(key: str, value: Any, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    return _require_str(key, value, max_length=max_length)


def _require_int(key: str, value: Any, *, minimum: int = 0, maximum: int | None = None) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"between {minimum} and {maximum}" if maximum is not None else f">= {minimum}"
        raise ValidationError(f"{key} must be {bound}")
    return value


def _require_datetime(key: str, value: Any) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{key} must be a datetime")
    return value


def _require_url(key: str, value: Any) -> str:
    _require_str(key, value, max_length=500)
    try:
        _URL_ADAPTER.validate_python(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"{key} must be a well-formed http(s) URL") from exc
    return value


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Nightwatch ORM models."""

    def __init__(self, snapshot: Mapping[str, Any] | None = None, **fields: Any) -> None:
        values = dict(snapshot or {})
        values.update(fields)
        known = inspect(type(self)).attrs
        for key, value in values.items():
            if key not in known:
                raise ValidationError(
                    f"{type(self).__name__} has no field named {key!r}"
                )
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ItemStatus(enum.StrEnum):
    """Lifecycle shared by suggestions and support tickets."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"


def _require_status(value: Any) -> str:
    try:
        return ItemStatus(value).value
    except ValueError as exc:
        allowed = ", ".join(s.value for s in ItemStatus)
        raise ValidationError(f"status must be one of: {allowed}") from exc


# ---------------------------------------------------------------------------
# Guild — aggregate root
# ---------------------------------------------------------------------------
class Guild(Base):
    __tablename__ = "guilds"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)  # platform snowflake
    name: Mapped[str | None] = mapped_column(String(100), default=None)
    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    settings: Mapped[GuildSettings | None] = relationship(
        back_populates="guild", uselist=False, cascade="all, delete-orphan"
    )
    users: Mapped[list[GuildUser]] = relationship(
        back_populates="guild", cascade="all, delete-orphan"
    )
    suggestions: Mapped[list[GuildSuggestion]] = relationship(
        back_populates="guild", cascade="all, delete-orphan",
        order_by="GuildSuggestion.id",
    )
    support_tickets: Mapped[list[GuildSupportTicket]] = relationship(
        back_populates="guild", cascade="all, delete-orphan",
        order_by="GuildSupportTicket.id",
    )
    self_assignable_roles: Mapped[list[GuildSelfAssignableRole]] = relationship(
        back_populates="guild", cascade="all, delete-orphan"
    )
    playlist: Mapped[list[Song]] = relationship(
        back_populates="guild", cascade="all, delete-orphan",
        order_by="Song.position",
    )
    referrals: Mapped[list[Referral]] = relationship(
        back_populates="guild", cascade="all, delete-orphan"
    )

    @validates("id")
    def _validate_id(self, key, value):
        return _require_str(key, value, max_length=32)

    @validates("name")
    def _validate_name(self, key, value):
        return _optional_str(key, value, max_length=100)

    def __repr__(self) -> str:
        return f"<Guild id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# GuildSettings — 1:1 with Guild
# ---------------------------------------------------------------------------
class GuildSettings(Base):
    __tablename__ = "guild_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    prefix: Mapped[str | None] = mapped_column(String(10), default=None)
    welcome_channel_id: Mapped[str | None] = mapped_column(String(32), default=None)
    welcome_message: Mapped[str | None] = mapped_column(Text, default=None)
    log_channel_id: Mapped[str | None] = mapped_column(String(32), default=None)
    suggestions_channel_id: Mapped[str | None] = mapped_column(String(32), default=None)
    support_channel_id: Mapped[str | None] = mapped_column(String(32), default=None)
    referral_role_rewards_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    guild: Mapped[Guild] = relationship(back_populates="settings")

    @validates("prefix")
    def _validate_prefix(self, key, value):
        return _optional_str(key, value, max_length=10)

    @validates(
        "welcome_channel_id",
        "log_channel_id",
        "suggestions_channel_id",
        "support_channel_id",
    )
    def _validate_channel(self, key, value):
        return _optional_str(key, value, max_length=32)

    @validates("welcome_message")
    def _validate_message(self, key, value):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
        return value

    @validates("referral_role_rewards_enabled")
    def _validate_flag(self, key, value):
        if not isinstance(value, bool):
            raise ValidationError(f"{key} must be a boolean")
        return value

    def __repr__(self) -> str:
        return f"<GuildSettings guild={self.guild_id}>"


# ---------------------------------------------------------------------------
# GuildUser — per-guild member row
# ---------------------------------------------------------------------------
class GuildUser(Base):
    """A platform user as seen inside one guild.

    The same platform id may appear under several guilds; each row is
    independent and scoped by ``guild_id``.
    """
    __tablename__ = "guild_users"

    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(32), primary_key=True)  # platform user id
    level: Mapped[int] = mapped_column(Integer, default=0)
    experience: Mapped[int] = mapped_column(Integer, default=0)
    date_joined: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    guild: Mapped[Guild] = relationship(back_populates="users")
    warnings: Mapped[list[GuildUserWarning]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        primaryjoin=(
            "and_(GuildUser.guild_id == foreign(GuildUserWarning.guild_id), "
            "GuildUser.id == foreign(GuildUserWarning.user_id))"
        ),
        order_by="GuildUserWarning.id",
    )
    kicks: Mapped[list[GuildUserKick]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        primaryjoin=(
            "and_(GuildUser.guild_id == foreign(GuildUserKick.guild_id), "
            "GuildUser.id == foreign(GuildUserKick.user_id))"
        ),
        order_by="GuildUserKick.id",
    )

    @validates("id")
    def _validate_id(self, key, value):
        return _require_str(key, value, max_length=32)

    @validates("level", "experience")
    def _validate_counter(self, key, value):
        return _require_int(key, value)

    def __repr__(self) -> str:
        return f"<GuildUser guild={self.guild_id} id={self.id}>"


# ---------------------------------------------------------------------------
# Moderation records — warnings and kicks share one shape
# ---------------------------------------------------------------------------
class _ModerationRecord:
    """Column/validator mixin for issuer → user moderation rows."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    issuer_id: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @validates("user_id", "issuer_id")
    def _validate_party(self, key, value):
        return _require_str(key, value, max_length=32)

    @validates("reason")
    def _validate_reason(self, key, value):
        return _require_str(key, value)

    @validates("timestamp")
    def _validate_timestamp(self, key, value):
        return _require_datetime(key, value)


def _moderation_table_args(table: str) -> tuple:
    return (
        ForeignKeyConstraint(
            ["guild_id", "user_id"],
            ["guild_users.guild_id", "guild_users.id"],
            ondelete="CASCADE",
            name=f"fk_{table}_user",
        ),
        ForeignKeyConstraint(
            ["guild_id", "issuer_id"],
            ["guild_users.guild_id", "guild_users.id"],
            ondelete="CASCADE",
            name=f"fk_{table}_issuer",
        ),
        # One outstanding record per (issuer, target) pairing
        UniqueConstraint("guild_id", "user_id", "issuer_id", name=f"uq_{table}_pair"),
    )


class GuildUserWarning(_ModerationRecord, Base):
    __tablename__ = "guild_user_warnings"
    __table_args__ = _moderation_table_args("guild_user_warnings")

    user: Mapped[GuildUser] = relationship(
        back_populates="warnings",
        primaryjoin=(
            "and_(GuildUser.guild_id == foreign(GuildUserWarning.guild_id), "
            "GuildUser.id == foreign(GuildUserWarning.user_id))"
        ),
    )

    def __repr__(self) -> str:
        return f"<GuildUserWarning id={self.id} user={self.user_id} issuer={self.issuer_id}>"


class GuildUserKick(_ModerationRecord, Base):
    __tablename__ = "guild_user_kicks"
    __table_args__ = _moderation_table_args("guild_user_kicks")

    user: Mapped[GuildUser] = relationship(
        back_populates="kicks",
        primaryjoin=(
            "and_(GuildUser.guild_id == foreign(GuildUserKick.guild_id), "
            "GuildUser.id == foreign(GuildUserKick.user_id))"
        ),
    )

    def __repr__(self) -> str:
        return f"<GuildUserKick id={self.id} user={self.user_id} issuer={self.issuer_id}>"


# ---------------------------------------------------------------------------
# Suggestions & support tickets — same shape, same lifecycle
# ---------------------------------------------------------------------------
class _SubmittedItem:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ItemStatus.OPEN.value
    )
    author: Mapped[str | None] = mapped_column(String(32), default=None)
    date_created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    @validates("content")
    def _validate_content(self, key, value):
        return _require_str(key, value)

    @validates("status")
    def _validate_status(self, key, value):
        return _require_status(value)

    @validates("author")
    def _validate_author(self, key, value):
        return _optional_str(key, value, max_length=32)


class GuildSuggestion(_SubmittedItem, Base):
    __tablename__ = "guild_suggestions"

    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    guild: Mapped[Guild] = relationship(back_populates="suggestions")

    __table_args__ = (
        Index("ix_guild_suggestions_guild", "guild_id"),
    )

    def __repr__(self) -> str:
        return f"<GuildSuggestion id={self.id} guild={self.guild_id} status={self.status}>"


class GuildSupportTicket(_SubmittedItem, Base):
    __tablename__ = "guild_support_tickets"

    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    guild: Mapped[Guild] = relationship(back_populates="support_tickets")

    __table_args__ = (
        Index("ix_guild_support_tickets_guild", "guild_id"),
    )

    def __repr__(self) -> str:
        return f"<GuildSupportTicket id={self.id} guild={self.guild_id} status={self.status}>"


# ---------------------------------------------------------------------------
# GuildSelfAssignableRole
# ---------------------------------------------------------------------------
class GuildSelfAssignableRole(Base):
    __tablename__ = "guild_self_assignable_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)

    guild: Mapped[Guild] = relationship(back_populates="self_assignable_roles")

    __table_args__ = (
        UniqueConstraint("guild_id", "role_id", name="uq_self_assignable_roles_guild_role"),
    )

    @validates("role_id")
    def _validate_role(self, key, value):
        return _require_str(key, value, max_length=32)

    def __repr__(self) -> str:
        return f"<GuildSelfAssignableRole guild={self.guild_id} role={self.role_id}>"


# ---------------------------------------------------------------------------
# Song — playlist entry, FIFO by position
# ---------------------------------------------------------------------------
class Song(Base):
    __tablename__ = "songs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    requested_by: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str | None] = mapped_column(String(200), default=None)
    url: Mapped[str | None] = mapped_column(String(500), default=None)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    date_requested: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    guild: Mapped[Guild] = relationship(back_populates="playlist")

    __table_args__ = (
        Index("ix_songs_guild_position", "guild_id", "position"),
        Index("ix_songs_guild_requester", "guild_id", "requested_by"),
    )

    @validates("requested_by")
    def _validate_requester(self, key, value):
        return _require_str(key, value, max_length=32)

    @validates("title")
    def _validate_title(self, key, value):
        return _optional_str(key, value, max_length=200)

    @validates("url")
    def _validate_url(self, key, value):
        return None if value is None else _require_url(key, value)

    @validates("position")
    def _validate_position(self, key, value):
        return _require_int(key, value)

    def __repr__(self) -> str:
        return f"<Song id={self.id} guild={self.guild_id} pos={self.position}>"


# ---------------------------------------------------------------------------
# Referral — caller-numbered invite tracking
# ---------------------------------------------------------------------------
class Referral(Base):
    """Invite-driven referral.  The id is chosen by the caller (4-6 digits)
    and is unique per guild.
    """
    __tablename__ = "referrals"

    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    invite_url: Mapped[str] = mapped_column(String(500), nullable=False)
    join_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    date_created: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    guild: Mapped[Guild] = relationship(back_populates="referrals")
    role: Mapped[ReferralRole | None] = relationship(
        back_populates="referral", uselist=False, cascade="all, delete-orphan"
    )
    unlocked_rewards: Mapped[list[ReferralUnlockedReward]] = relationship(
        back_populates="referral", cascade="all, delete-orphan",
        order_by="ReferralUnlockedReward.id",
    )

    def __init__(self, snapshot: Mapping[str, Any] | None = None, **fields: Any) -> None:
        super().__init__(snapshot, **fields)
        if self.date_created is None:
            self.date_created = utcnow()

    @validates("id")
    def _validate_id(self, key, value):
        return _require_int(key, value, minimum=REFERRAL_ID_MIN, maximum=REFERRAL_ID_MAX)

    @validates("user_id")
    def _validate_user(self, key, value):
        return _require_str(key, value, max_length=32)

    @validates("invite_url")
    def _validate_invite(self, key, value):
        return _require_url(key, value)

    @validates("join_count")
    def _validate_join_count(self, key, value):
        return _require_int(key, value)

    @validates("date_created")
    def _validate_date(self, key, value):
        return _require_datetime(key, value)

    def __repr__(self) -> str:
        return f"<Referral guild={self.guild_id} id={self.id} joins={self.join_count}>"


class ReferralRole(Base):
    __tablename__ = "referral_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    referral_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)

    referral: Mapped[Referral] = relationship(back_populates="role")

    __table_args__ = (
        ForeignKeyConstraint(
            ["guild_id", "referral_id"],
            ["referrals.guild_id", "referrals.id"],
            ondelete="CASCADE",
        ),
        UniqueConstraint("guild_id", "referral_id", name="uq_referral_roles_referral"),
    )

    @validates("role_id")
    def _validate_role(self, key, value):
        return _require_str(key, value, max_length=32)

    def __repr__(self) -> str:
        return f"<ReferralRole referral={self.referral_id} role={self.role_id}>"


class ReferralUnlockedReward(Base):
    __tablename__ = "referral_unlocked_rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    referral_id: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date_unlocked: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    referral: Mapped[Referral] = relationship(back_populates="unlocked_rewards")

    __table_args__ = (
        ForeignKeyConstraint(
            ["guild_id", "referral_id"],
            ["referrals.guild_id", "referrals.id"],
            ondelete="CASCADE",
        ),
        Index("ix_referral_rewards_referral", "guild_id", "referral_id"),
    )

    @validates("reward_id")
    def _validate_reward(self, key, value):
        return _require_str(key, value, max_length=64)

    def __repr__(self) -> str:
        return f"<ReferralUnlockedReward referral={self.referral_id} reward={self.reward_id}>"
