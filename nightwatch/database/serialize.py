"""
nightwatch.database.serialize — Entity → JSON-ready dict
=========================================================

One dict shape per entity, shared by three consumers so they never drift:

* the REST layer (response bodies),
* the change notifier (event payloads),
* the bot's :class:`~nightwatch.engine.cache.GuildCache` (in-memory view).

All functions expect the relationships they touch to be loaded already;
the service layer eager-loads the guild graph before detaching it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from nightwatch.database.models import Guild, GuildUser, Referral


def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def guild_summary(guild: Guild) -> dict:
    """Listing projection: no child collections."""
    return {
        "id": guild.id,
        "name": guild.name,
        "date_created": guild.date_created.isoformat() if guild.date_created else None,
    }


def user_dict(user: GuildUser) -> dict:
    data = row_to_dict(user)
    data["warnings"] = [row_to_dict(w) for w in user.warnings]
    data["kicks"] = [row_to_dict(k) for k in user.kicks]
    return data


def referral_dict(referral: Referral) -> dict:
    data = row_to_dict(referral)
    data["role"] = row_to_dict(referral.role)
    data["unlocked_rewards"] = [row_to_dict(r) for r in referral.unlocked_rewards]
    return data


def guild_graph(guild: Guild) -> dict:
    """Full guild aggregate, as returned by ``GET /guilds/{id}``."""
    data = guild_summary(guild)
    data.update({
        "settings": row_to_dict(guild.settings),
        "users": [user_dict(u) for u in guild.users],
        "suggestions": [row_to_dict(s) for s in guild.suggestions],
        "support_tickets": [row_to_dict(t) for t in guild.support_tickets],
        "self_assignable_roles": [row_to_dict(r) for r in guild.self_assignable_roles],
        "playlist": [row_to_dict(s) for s in guild.playlist],
        "referrals": [referral_dict(r) for r in guild.referrals],
    })
    return data
