"""
nightwatch.api.routes.members — Guild users, warnings & kicks
==============================================================
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from nightwatch.api.deps import get_engine, get_notifier
from nightwatch.database.engine import run_db
from nightwatch.database.serialize import row_to_dict, user_dict
from nightwatch.engine.events import EventType
from nightwatch.engine.notifier import ChangeNotifier
from nightwatch.services import guild_service

router = APIRouter(tags=["members"])


class UserCreate(BaseModel):
    id: str
    level: int = 0
    experience: int = 0


class UserUpdate(BaseModel):
    id: str | None = None
    level: int = 0
    experience: int = 0


class ModerationCreate(BaseModel):
    issuer_id: str
    reason: str
    timestamp: datetime | None = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/guilds/{guild_id}/users")
async def list_users(guild_id: str, engine=Depends(get_engine)):
    users = await run_db(guild_service.find_users, engine, guild_id)
    return [user_dict(u) for u in users]


@router.get("/guilds/{guild_id}/users/{user_id}")
async def get_user(guild_id: str, user_id: str, engine=Depends(get_engine)):
    user = await run_db(guild_service.find_user_by_id, engine, guild_id, user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    return user_dict(user)


@router.post("/guilds/{guild_id}/users", status_code=201)
async def create_user(
    guild_id: str,
    body: UserCreate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    user = await run_db(guild_service.create_user, engine, guild_id, body.model_dump())
    data = user_dict(user)
    notifier.publish(EventType.USER_CREATE, guild_id, data)
    return data


@router.put("/guilds/{guild_id}/users/{user_id}")
async def update_user(
    guild_id: str,
    user_id: str,
    body: UserUpdate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    user = await run_db(guild_service.update_user, engine, guild_id, user_id, body.model_dump())
    notifier.publish(EventType.USER_UPDATE, guild_id, row_to_dict(user))
    return user_dict(user)


@router.delete("/guilds/{guild_id}/users/{user_id}")
async def delete_user(
    guild_id: str,
    user_id: str,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete_user, engine, guild_id, user_id)
    key = {"guild_id": guild_id, "user_id": user_id}
    notifier.publish(EventType.USER_DELETE, guild_id, key)
    return key


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------
@router.get("/guilds/{guild_id}/users/{user_id}/warnings")
async def list_warnings(guild_id: str, user_id: str, engine=Depends(get_engine)):
    records = await run_db(guild_service.find_warnings, engine, guild_id, user_id)
    return [row_to_dict(r) for r in records]


@router.post("/guilds/{guild_id}/users/{user_id}/warnings", status_code=201)
async def create_warning(
    guild_id: str,
    user_id: str,
    body: ModerationCreate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    record = await run_db(
        guild_service.create_warning, engine, guild_id, user_id, body.model_dump(),
    )
    data = row_to_dict(record)
    notifier.publish(EventType.WARNING_CREATE, guild_id, data)
    return data


@router.delete("/guilds/{guild_id}/users/{user_id}/warnings/{warning_id}")
async def delete_warning(
    guild_id: str,
    user_id: str,
    warning_id: int,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete_warning, engine, guild_id, user_id, warning_id)
    key = {"guild_id": guild_id, "user_id": user_id, "warning_id": warning_id}
    notifier.publish(EventType.WARNING_DELETE, guild_id, key)
    return key


# ---------------------------------------------------------------------------
# Kicks
# ---------------------------------------------------------------------------
@router.get("/guilds/{guild_id}/users/{user_id}/kicks")
async def list_kicks(guild_id: str, user_id: str, engine=Depends(get_engine)):
    records = await run_db(guild_service.find_kicks, engine, guild_id, user_id)
    return [row_to_dict(r) for r in records]


@router.post("/guilds/{guild_id}/users/{user_id}/kicks", status_code=201)
async def create_kick(
    guild_id: str,
    user_id: str,
    body: ModerationCreate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    record = await run_db(
        guild_service.create_kick, engine, guild_id, user_id, body.model_dump(),
    )
    data = row_to_dict(record)
    notifier.publish(EventType.KICK_CREATE, guild_id, data)
    return data


@router.delete("/guilds/{guild_id}/users/{user_id}/kicks/{kick_id}")
async def delete_kick(
    guild_id: str,
    user_id: str,
    kick_id: int,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete_kick, engine, guild_id, user_id, kick_id)
    key = {"guild_id": guild_id, "user_id": user_id, "kick_id": kick_id}
    notifier.publish(EventType.KICK_DELETE, guild_id, key)
    return key
