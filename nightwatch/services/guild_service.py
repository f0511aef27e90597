"""
nightwatch.services.guild_service — Guild Aggregate Service Layer
==================================================================

The single mutation authority for every guild-scoped aggregate.  Routes
call these functions through :func:`~nightwatch.database.engine.run_db`;
nothing else writes to the guild tables.

Every function runs in exactly one transaction:
  1. Begin transaction
  2. Resolve the owning guild (and any referenced rows)
  3. Apply the change (entity constructors validate fields)
  4. Flush / refresh so the returned object is fully loaded
  5. Commit — or roll back and raise a typed error

Reads return detached ORM objects whose relationships are eager-loaded,
so callers may serialize them after the session has closed.  Lookups by
id return ``None`` on absence; mutations raise
:class:`~nightwatch.errors.NotFoundError`.

Storage failures are translated here: ``IntegrityError`` becomes
:class:`~nightwatch.errors.ConflictError` and any other SQLAlchemy error
becomes :class:`~nightwatch.errors.StorageError`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from nightwatch.database.engine import get_session
from nightwatch.database.models import (
    Guild,
    GuildSelfAssignableRole,
    GuildSettings,
    GuildSuggestion,
    GuildSupportTicket,
    GuildUser,
    GuildUserKick,
    GuildUserWarning,
    ItemStatus,
    Referral,
    Song,
    utcnow,
)
from nightwatch.errors import ConflictError, NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

# Mutable fields and the value a full replace falls back to when omitted.
SETTINGS_DEFAULTS: dict[str, Any] = {
    "prefix": None,
    "welcome_channel_id": None,
    "welcome_message": None,
    "log_channel_id": None,
    "suggestions_channel_id": None,
    "support_channel_id": None,
    "referral_role_rewards_enabled": False,
}
_ITEM_DEFAULTS: dict[str, Any] = {
    "content": None,
    "status": ItemStatus.OPEN.value,
    "author": None,
}
_USER_DEFAULTS: dict[str, Any] = {
    "level": 0,
    "experience": 0,
}

_GRAPH_OPTIONS = (
    selectinload(Guild.settings),
    selectinload(Guild.users).selectinload(GuildUser.warnings),
    selectinload(Guild.users).selectinload(GuildUser.kicks),
    selectinload(Guild.suggestions),
    selectinload(Guild.support_tickets),
    selectinload(Guild.self_assignable_roles),
    selectinload(Guild.playlist),
    selectinload(Guild.referrals).selectinload(Referral.role),
    selectinload(Guild.referrals).selectinload(Referral.unlocked_rewards),
)

_USER_OPTIONS = (
    selectinload(GuildUser.warnings),
    selectinload(GuildUser.kicks),
)


# ---------------------------------------------------------------------------
# Transaction & lookup helpers (shared with referral_service)
# ---------------------------------------------------------------------------
@contextmanager
def service_transaction(engine: Engine) -> Iterator[Session]:
    """Open a committing session and translate storage errors."""
    try:
        with get_session(engine) as session:
            yield session
    except IntegrityError as exc:
        logger.info("Integrity violation rejected: %s", exc.orig)
        raise ConflictError("The change conflicts with an existing record") from exc
    except SQLAlchemyError as exc:
        logger.exception("Storage failure")
        raise StorageError("The storage engine failed to complete the request") from exc


def require_guild(session: Session, guild_id: str) -> Guild:
    guild = session.get(Guild, guild_id)
    if guild is None:
        raise NotFoundError(f"Guild {guild_id} not found")
    return guild


def replace_fields(obj: Any, data: Mapping[str, Any], defaults: Mapping[str, Any]) -> None:
    """Full-replace *obj*'s mutable fields; omitted keys reset to defaults."""
    for key, default in defaults.items():
        setattr(obj, key, data.get(key, default))


def _load_graph(session: Session, guild_id: str) -> Guild | None:
    return session.scalar(
        select(Guild)
        .where(Guild.id == guild_id)
        .options(*_GRAPH_OPTIONS)
        .execution_options(populate_existing=True)
    )


def _load_user(session: Session, guild_id: str, user_id: str) -> GuildUser | None:
    return session.scalar(
        select(GuildUser)
        .where(GuildUser.guild_id == guild_id, GuildUser.id == user_id)
        .options(*_USER_OPTIONS)
        .execution_options(populate_existing=True)
    )


def _require_user(session: Session, guild_id: str, user_id: str, role: str = "User") -> GuildUser:
    user = session.get(GuildUser, (guild_id, user_id))
    if user is None:
        raise NotFoundError(f"{role} {user_id} not found in guild {guild_id}")
    return user


# ---------------------------------------------------------------------------
# Guilds
# ---------------------------------------------------------------------------
def find(engine: Engine) -> list[Guild]:
    """All guilds, listing projection (child collections are not loaded)."""
    with service_transaction(engine) as session:
        return list(session.scalars(select(Guild).order_by(Guild.id)).all())


def find_by_id(engine: Engine, guild_id: str) -> Guild | None:
    """Full guild graph, or ``None`` when the guild does not exist."""
    with service_transaction(engine) as session:
        return _load_graph(session, guild_id)


def find_graphs(engine: Engine) -> list[Guild]:
    """Every guild with its full graph (cache resync path)."""
    with service_transaction(engine) as session:
        return list(session.scalars(
            select(Guild).options(*_GRAPH_OPTIONS).order_by(Guild.id)
        ).all())


def create(engine: Engine, data: Mapping[str, Any]) -> Guild:
    """Create a guild together with its settings row.

    ``data`` may carry a ``settings`` mapping; omitted settings take their
    defaults.  Raises :class:`ConflictError` if the id is already taken.
    """
    fields = dict(data)
    settings_data = fields.pop("settings", None) or {}
    guild_id = fields.get("id")
    if guild_id is None:
        raise ValidationError("Guild id is required")

    with service_transaction(engine) as session:
        if session.get(Guild, guild_id) is not None:
            raise ConflictError(f"Guild {guild_id} already exists")

        guild = Guild(fields)
        settings = GuildSettings()
        replace_fields(settings, settings_data, SETTINGS_DEFAULTS)
        guild.settings = settings
        session.add(guild)
        session.flush()
        logger.info("Guild %s created", guild.id)
        return _load_graph(session, guild.id)


def update(engine: Engine, guild_id: str, data: Mapping[str, Any]) -> Guild:
    """Replace the guild's mutable fields.  The id is immutable."""
    if data.get("id") not in (None, guild_id):
        raise ValidationError("Guild id is immutable")

    with service_transaction(engine) as session:
        guild = require_guild(session, guild_id)
        guild.name = data.get("name")
        session.flush()
        return _load_graph(session, guild_id)


def delete(engine: Engine, guild_id: str) -> None:
    """Delete a guild and, by cascade, everything it owns."""
    with service_transaction(engine) as session:
        guild = require_guild(session, guild_id)
        session.delete(guild)
    logger.info("Guild %s deleted", guild_id)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
def find_settings(engine: Engine, guild_id: str) -> GuildSettings | None:
    with service_transaction(engine) as session:
        return session.scalar(
            select(GuildSettings).where(GuildSettings.guild_id == guild_id)
        )


def update_settings(engine: Engine, guild_id: str, data: Mapping[str, Any]) -> GuildSettings:
    """Full replace of the guild's settings row (created if missing)."""
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        settings = session.scalar(
            select(GuildSettings).where(GuildSettings.guild_id == guild_id)
        )
        if settings is None:
            settings = GuildSettings(guild_id=guild_id)
            session.add(settings)
        replace_fields(settings, data, SETTINGS_DEFAULTS)
        session.flush()
        session.refresh(settings)
        return settings


# ---------------------------------------------------------------------------
# Suggestions & support tickets (shared implementation)
# ---------------------------------------------------------------------------
_ItemModel = type[GuildSuggestion] | type[GuildSupportTicket]


def _find_items(engine: Engine, model: _ItemModel, guild_id: str) -> list:
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        return list(session.scalars(
            select(model).where(model.guild_id == guild_id).order_by(model.id)
        ).all())


def _find_item(engine: Engine, model: _ItemModel, guild_id: str, item_id: int):
    with service_transaction(engine) as session:
        return session.scalar(
            select(model).where(model.guild_id == guild_id, model.id == item_id)
        )


def _require_item(session: Session, model: _ItemModel, guild_id: str, item_id: int):
    item = session.scalar(
        select(model).where(model.guild_id == guild_id, model.id == item_id)
    )
    if item is None:
        raise NotFoundError(f"{model.__name__} {item_id} not found in guild {guild_id}")
    return item


def _create_item(engine: Engine, model: _ItemModel, guild_id: str, data: Mapping[str, Any]):
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        item = model(guild_id=guild_id)
        replace_fields(item, data, _ITEM_DEFAULTS)
        session.add(item)
        session.flush()
        session.refresh(item)
        logger.info("%s %s created in guild %s", model.__name__, item.id, guild_id)
        return item


def _update_item(
    engine: Engine, model: _ItemModel, guild_id: str, item_id: int, data: Mapping[str, Any],
):
    with service_transaction(engine) as session:
        item = _require_item(session, model, guild_id, item_id)
        replace_fields(item, data, _ITEM_DEFAULTS)
        session.flush()
        return item


def _delete_item(engine: Engine, model: _ItemModel, guild_id: str, item_id: int) -> None:
    with service_transaction(engine) as session:
        session.delete(_require_item(session, model, guild_id, item_id))


def find_suggestions(engine: Engine, guild_id: str) -> list[GuildSuggestion]:
    return _find_items(engine, GuildSuggestion, guild_id)


def find_suggestion_by_id(engine: Engine, guild_id: str, suggestion_id: int) -> GuildSuggestion | None:
    return _find_item(engine, GuildSuggestion, guild_id, suggestion_id)


def create_suggestion(engine: Engine, guild_id: str, data: Mapping[str, Any]) -> GuildSuggestion:
    return _create_item(engine, GuildSuggestion, guild_id, data)


def update_suggestion(
    engine: Engine, guild_id: str, suggestion_id: int, data: Mapping[str, Any],
) -> GuildSuggestion:
    return _update_item(engine, GuildSuggestion, guild_id, suggestion_id, data)


def delete_suggestion(engine: Engine, guild_id: str, suggestion_id: int) -> None:
    _delete_item(engine, GuildSuggestion, guild_id, suggestion_id)


def find_support_tickets(engine: Engine, guild_id: str) -> list[GuildSupportTicket]:
    return _find_items(engine, GuildSupportTicket, guild_id)


def find_support_ticket_by_id(engine: Engine, guild_id: str, ticket_id: int) -> GuildSupportTicket | None:
    return _find_item(engine, GuildSupportTicket, guild_id, ticket_id)


def create_support_ticket(engine: Engine, guild_id: str, data: Mapping[str, Any]) -> GuildSupportTicket:
    return _create_item(engine, GuildSupportTicket, guild_id, data)


def update_support_ticket(
    engine: Engine, guild_id: str, ticket_id: int, data: Mapping[str, Any],
) -> GuildSupportTicket:
    return _update_item(engine, GuildSupportTicket, guild_id, ticket_id, data)


def delete_support_ticket(engine: Engine, guild_id: str, ticket_id: int) -> None:
    _delete_item(engine, GuildSupportTicket, guild_id, ticket_id)


# ---------------------------------------------------------------------------
# Guild users
# ---------------------------------------------------------------------------
def find_users(engine: Engine, guild_id: str) -> list[GuildUser]:
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        return list(session.scalars(
            select(GuildUser)
            .where(GuildUser.guild_id == guild_id)
            .options(*_USER_OPTIONS)
            .order_by(GuildUser.id)
        ).all())


def find_user_by_id(engine: Engine, guild_id: str, user_id: str) -> GuildUser | None:
    with service_transaction(engine) as session:
        return _load_user(session, guild_id, user_id)


def create_user(engine: Engine, guild_id: str, data: Mapping[str, Any]) -> GuildUser:
    """Create a guild member row; the (guild, id) pair must be new."""
    user_id = data.get("id")
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        if user_id is not None and session.get(GuildUser, (guild_id, user_id)) is not None:
            raise ConflictError(f"User {user_id} already exists in guild {guild_id}")

        user = GuildUser(id=user_id, guild_id=guild_id)
        replace_fields(user, data, _USER_DEFAULTS)
        session.add(user)
        session.flush()
        return _load_user(session, guild_id, user.id)


def update_user(engine: Engine, guild_id: str, user_id: str, data: Mapping[str, Any]) -> GuildUser:
    if data.get("id") not in (None, user_id):
        raise ValidationError("User id is immutable")

    with service_transaction(engine) as session:
        user = _require_user(session, guild_id, user_id)
        replace_fields(user, data, _USER_DEFAULTS)
        session.flush()
        return _load_user(session, guild_id, user_id)


def delete_user(engine: Engine, guild_id: str, user_id: str) -> None:
    """Delete a member row with its warnings and kicks."""
    with service_transaction(engine) as session:
        user = _require_user(session, guild_id, user_id)
        session.delete(user)
    logger.info("User %s deleted from guild %s", user_id, guild_id)


# ---------------------------------------------------------------------------
# Moderation records (warnings & kicks)
# ---------------------------------------------------------------------------
_ModerationModel = type[GuildUserWarning] | type[GuildUserKick]


def _find_moderation(engine: Engine, model: _ModerationModel, guild_id: str, user_id: str) -> list:
    with service_transaction(engine) as session:
        _require_user(session, guild_id, user_id)
        return list(session.scalars(
            select(model)
            .where(model.guild_id == guild_id, model.user_id == user_id)
            .order_by(model.id)
        ).all())


def _create_moderation(
    engine: Engine, model: _ModerationModel, guild_id: str, user_id: str, data: Mapping[str, Any],
):
    """Both parties must resolve to members of *guild_id* before insert."""
    issuer_id = data.get("issuer_id")
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        _require_user(session, guild_id, user_id)
        if issuer_id is None:
            raise ValidationError("issuer_id is required")
        _require_user(session, guild_id, issuer_id, role="Issuer")

        record = model(
            guild_id=guild_id,
            user_id=user_id,
            issuer_id=issuer_id,
            reason=data.get("reason"),
            timestamp=data.get("timestamp") or utcnow(),
        )
        session.add(record)
        session.flush()
        session.refresh(record)
        logger.info(
            "%s %s issued by %s to %s in guild %s",
            model.__name__, record.id, issuer_id, user_id, guild_id,
        )
        return record


def _delete_moderation(
    engine: Engine, model: _ModerationModel, guild_id: str, user_id: str, record_id: int,
) -> None:
    with service_transaction(engine) as session:
        record = session.scalar(
            select(model).where(
                model.guild_id == guild_id,
                model.user_id == user_id,
                model.id == record_id,
            )
        )
        if record is None:
            raise NotFoundError(f"{model.__name__} {record_id} not found for user {user_id}")
        session.delete(record)


def find_warnings(engine: Engine, guild_id: str, user_id: str) -> list[GuildUserWarning]:
    return _find_moderation(engine, GuildUserWarning, guild_id, user_id)


def create_warning(engine: Engine, guild_id: str, user_id: str, data: Mapping[str, Any]) -> GuildUserWarning:
    return _create_moderation(engine, GuildUserWarning, guild_id, user_id, data)


def delete_warning(engine: Engine, guild_id: str, user_id: str, warning_id: int) -> None:
    _delete_moderation(engine, GuildUserWarning, guild_id, user_id, warning_id)


def find_kicks(engine: Engine, guild_id: str, user_id: str) -> list[GuildUserKick]:
    return _find_moderation(engine, GuildUserKick, guild_id, user_id)


def create_kick(engine: Engine, guild_id: str, user_id: str, data: Mapping[str, Any]) -> GuildUserKick:
    return _create_moderation(engine, GuildUserKick, guild_id, user_id, data)


def delete_kick(engine: Engine, guild_id: str, user_id: str, kick_id: int) -> None:
    _delete_moderation(engine, GuildUserKick, guild_id, user_id, kick_id)


# ---------------------------------------------------------------------------
# Self-assignable roles
# ---------------------------------------------------------------------------
def find_self_assignable_roles(engine: Engine, guild_id: str) -> list[GuildSelfAssignableRole]:
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        return list(session.scalars(
            select(GuildSelfAssignableRole)
            .where(GuildSelfAssignableRole.guild_id == guild_id)
            .order_by(GuildSelfAssignableRole.id)
        ).all())


def _select_role(guild_id: str, role_id: str):
    return select(GuildSelfAssignableRole).where(
        GuildSelfAssignableRole.guild_id == guild_id,
        GuildSelfAssignableRole.role_id == role_id,
    )


def find_self_assignable_role(engine: Engine, guild_id: str, role_id: str) -> GuildSelfAssignableRole | None:
    with service_transaction(engine) as session:
        return session.scalar(_select_role(guild_id, role_id))


def create_self_assignable_role(
    engine: Engine, guild_id: str, data: Mapping[str, Any],
) -> GuildSelfAssignableRole:
    """Register an opt-in role; a (guild, role_id) pair may exist once.

    The lookup rejects the common duplicate without writing.  It is not
    atomic against a concurrent creator: the unique constraint is the final
    arbiter, and its ``IntegrityError`` surfaces as the same
    :class:`ConflictError` through :func:`service_transaction`.
    """
    role_id = data.get("role_id")
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        if role_id is not None and session.scalar(_select_role(guild_id, role_id)) is not None:
            raise ConflictError(f"Role {role_id} is already self-assignable in guild {guild_id}")

        role = GuildSelfAssignableRole(guild_id=guild_id, role_id=role_id)
        session.add(role)
        session.flush()
        return role


def delete_self_assignable_role(engine: Engine, guild_id: str, role_id: str) -> None:
    with service_transaction(engine) as session:
        role = session.scalar(_select_role(guild_id, role_id))
        if role is None:
            raise NotFoundError(f"Role {role_id} is not self-assignable in guild {guild_id}")
        session.delete(role)


# ---------------------------------------------------------------------------
# Playlist
# ---------------------------------------------------------------------------
def _playlist_query(guild_id: str):
    return (
        select(Song)
        .where(Song.guild_id == guild_id)
        .order_by(Song.position, Song.id)
    )


def find_playlist(engine: Engine, guild_id: str) -> list[Song]:
    """The guild's queue in playback order."""
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        return list(session.scalars(_playlist_query(guild_id)).all())


def find_playlist_songs_by_user_id(engine: Engine, guild_id: str, user_id: str) -> list[Song]:
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        return list(session.scalars(
            _playlist_query(guild_id).where(Song.requested_by == user_id)
        ).all())


def create_song(engine: Engine, guild_id: str, data: Mapping[str, Any]) -> Song:
    """Append a song to the end of the queue."""
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        last = session.scalar(
            select(func.max(Song.position)).where(Song.guild_id == guild_id)
        )
        song = Song(
            guild_id=guild_id,
            requested_by=data.get("requested_by"),
            title=data.get("title"),
            url=data.get("url"),
            position=0 if last is None else last + 1,
        )
        session.add(song)
        session.flush()
        session.refresh(song)
        return song


def delete_song(engine: Engine, guild_id: str, song_id: int) -> None:
    with service_transaction(engine) as session:
        song = session.scalar(
            select(Song).where(Song.guild_id == guild_id, Song.id == song_id)
        )
        if song is None:
            raise NotFoundError(f"Song {song_id} not found in guild {guild_id}")
        session.delete(song)


def delete_playlist_songs_by_user_id(engine: Engine, guild_id: str, user_id: str) -> int:
    """Remove every song *user_id* requested in *guild_id*.

    One DELETE statement inside one transaction: either every qualifying
    row goes or none does.  Returns the number of songs removed.
    """
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        result = session.execute(
            sa_delete(Song).where(Song.guild_id == guild_id, Song.requested_by == user_id)
        )
        removed = result.rowcount or 0
    logger.info("Removed %d song(s) requested by %s in guild %s", removed, user_id, guild_id)
    return removed


def clear_playlist(engine: Engine, guild_id: str) -> int:
    """Empty the guild's queue.  Returns the number of songs removed."""
    with service_transaction(engine) as session:
        require_guild(session, guild_id)
        result = session.execute(sa_delete(Song).where(Song.guild_id == guild_id))
        removed = result.rowcount or 0
    logger.info("Cleared %d song(s) from guild %s", removed, guild_id)
    return removed
