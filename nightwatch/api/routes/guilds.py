"""
nightwatch.api.routes.guilds — Guild aggregate & settings
==========================================================

Every mutating endpoint follows the same sequence:

    validate body → ``await run_db(service…)`` (commits) → publish → respond

A Service error short-circuits the sequence before the publish step, so a
rejected request never produces a change event.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from nightwatch.api.deps import get_engine, get_notifier
from nightwatch.database.engine import run_db
from nightwatch.database.serialize import guild_graph, guild_summary, row_to_dict
from nightwatch.engine.events import EventType
from nightwatch.engine.notifier import ChangeNotifier
from nightwatch.services import guild_service

router = APIRouter(tags=["guilds"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SettingsBody(BaseModel):
    prefix: str | None = None
    welcome_channel_id: str | None = None
    welcome_message: str | None = None
    log_channel_id: str | None = None
    suggestions_channel_id: str | None = None
    support_channel_id: str | None = None
    referral_role_rewards_enabled: bool = False


class GuildCreate(BaseModel):
    id: str
    name: str | None = None
    settings: SettingsBody | None = None


class GuildUpdate(BaseModel):
    id: str | None = None
    name: str | None = None


# ---------------------------------------------------------------------------
# Guilds
# ---------------------------------------------------------------------------
@router.get("/guilds")
async def list_guilds(engine=Depends(get_engine)):
    guilds = await run_db(guild_service.find, engine)
    return [guild_summary(g) for g in guilds]


@router.get("/guilds/{guild_id}")
async def get_guild(guild_id: str, engine=Depends(get_engine)):
    guild = await run_db(guild_service.find_by_id, engine, guild_id)
    if guild is None:
        raise HTTPException(404, "Guild not found")
    return guild_graph(guild)


@router.post("/guilds", status_code=201)
async def create_guild(
    body: GuildCreate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    guild = await run_db(guild_service.create, engine, body.model_dump())
    data = guild_graph(guild)
    notifier.publish(EventType.GUILD_CREATE, guild.id, data)
    return data


@router.put("/guilds/{guild_id}")
async def update_guild(
    guild_id: str,
    body: GuildUpdate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    guild = await run_db(guild_service.update, engine, guild_id, body.model_dump())
    # Only the guild's own fields changed; children are not re-broadcast.
    notifier.publish(EventType.GUILD_UPDATE, guild_id, guild_summary(guild))
    return guild_graph(guild)


@router.delete("/guilds/{guild_id}")
async def delete_guild(
    guild_id: str,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete, engine, guild_id)
    key = {"guild_id": guild_id}
    notifier.publish(EventType.GUILD_DELETE, guild_id, key)
    return key


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@router.get("/guilds/{guild_id}/settings")
async def get_settings(guild_id: str, engine=Depends(get_engine)):
    settings = await run_db(guild_service.find_settings, engine, guild_id)
    if settings is None:
        raise HTTPException(404, "Settings not found")
    return row_to_dict(settings)


@router.put("/guilds/{guild_id}/settings")
async def update_settings(
    guild_id: str,
    body: SettingsBody,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    settings = await run_db(guild_service.update_settings, engine, guild_id, body.model_dump())
    data = row_to_dict(settings)
    notifier.publish(EventType.SETTINGS_UPDATE, guild_id, data)
    return data
