"""
nightwatch.api.routes.roles — Self-assignable roles
====================================================

A (guild, role) pair may be registered once; a repeat POST answers 409 and
leaves the stored row untouched.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from nightwatch.api.deps import get_engine, get_notifier
from nightwatch.database.engine import run_db
from nightwatch.database.serialize import row_to_dict
from nightwatch.engine.events import EventType
from nightwatch.engine.notifier import ChangeNotifier
from nightwatch.services import guild_service

router = APIRouter(tags=["roles"])


class RoleCreate(BaseModel):
    role_id: str


@router.get("/guilds/{guild_id}/self-assignable-roles")
async def list_roles(guild_id: str, engine=Depends(get_engine)):
    roles = await run_db(guild_service.find_self_assignable_roles, engine, guild_id)
    return [row_to_dict(r) for r in roles]


@router.get("/guilds/{guild_id}/self-assignable-roles/{role_id}")
async def get_role(guild_id: str, role_id: str, engine=Depends(get_engine)):
    role = await run_db(guild_service.find_self_assignable_role, engine, guild_id, role_id)
    if role is None:
        raise HTTPException(404, "Self-assignable role not found")
    return row_to_dict(role)


@router.post("/guilds/{guild_id}/self-assignable-roles", status_code=201)
async def create_role(
    guild_id: str,
    body: RoleCreate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    role = await run_db(
        guild_service.create_self_assignable_role, engine, guild_id, body.model_dump(),
    )
    data = row_to_dict(role)
    notifier.publish(EventType.SELF_ASSIGNABLE_ROLE_CREATE, guild_id, data)
    return data


@router.delete("/guilds/{guild_id}/self-assignable-roles/{role_id}")
async def delete_role(
    guild_id: str,
    role_id: str,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete_self_assignable_role, engine, guild_id, role_id)
    key = {"guild_id": guild_id, "role_id": role_id}
    notifier.publish(EventType.SELF_ASSIGNABLE_ROLE_DELETE, guild_id, key)
    return key
