"""
nightwatch.api.routes.referrals — Invite referrals
===================================================

Referral ids are chosen by the caller; posting an id the guild already uses
answers 409.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from nightwatch.api.deps import get_engine, get_notifier
from nightwatch.database.engine import run_db
from nightwatch.database.serialize import referral_dict
from nightwatch.engine.events import EventType
from nightwatch.engine.notifier import ChangeNotifier
from nightwatch.services import referral_service

router = APIRouter(tags=["referrals"])


class ReferralCreate(BaseModel):
    id: int
    user_id: str
    invite_url: str
    join_count: int = 0
    date_created: datetime | None = None
    role_id: str | None = None


class ReferralUpdate(BaseModel):
    id: int | None = None
    invite_url: str
    join_count: int = 0
    role_id: str | None = None


class RewardUnlock(BaseModel):
    reward_id: str


@router.get("/guilds/{guild_id}/referrals")
async def list_referrals(guild_id: str, engine=Depends(get_engine)):
    referrals = await run_db(referral_service.find_referrals, engine, guild_id)
    return [referral_dict(r) for r in referrals]


@router.get("/guilds/{guild_id}/referrals/{referral_id}")
async def get_referral(guild_id: str, referral_id: int, engine=Depends(get_engine)):
    referral = await run_db(referral_service.find_referral_by_id, engine, guild_id, referral_id)
    if referral is None:
        raise HTTPException(404, "Referral not found")
    return referral_dict(referral)


@router.post("/guilds/{guild_id}/referrals", status_code=201)
async def create_referral(
    guild_id: str,
    body: ReferralCreate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    referral = await run_db(referral_service.create_referral, engine, guild_id, body.model_dump())
    data = referral_dict(referral)
    notifier.publish(EventType.REFERRAL_CREATE, guild_id, data)
    return data


@router.put("/guilds/{guild_id}/referrals/{referral_id}")
async def update_referral(
    guild_id: str,
    referral_id: int,
    body: ReferralUpdate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    referral = await run_db(
        referral_service.update_referral, engine, guild_id, referral_id, body.model_dump(),
    )
    data = referral_dict(referral)
    notifier.publish(EventType.REFERRAL_UPDATE, guild_id, data)
    return data


@router.delete("/guilds/{guild_id}/referrals/{referral_id}")
async def delete_referral(
    guild_id: str,
    referral_id: int,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(referral_service.delete_referral, engine, guild_id, referral_id)
    key = {"guild_id": guild_id, "referral_id": referral_id}
    notifier.publish(EventType.REFERRAL_DELETE, guild_id, key)
    return key


@router.post("/guilds/{guild_id}/referrals/{referral_id}/joins")
async def record_join(
    guild_id: str,
    referral_id: int,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    referral = await run_db(referral_service.record_referral_join, engine, guild_id, referral_id)
    data = referral_dict(referral)
    notifier.publish(EventType.REFERRAL_UPDATE, guild_id, data)
    return data


@router.post("/guilds/{guild_id}/referrals/{referral_id}/rewards")
async def unlock_reward(
    guild_id: str,
    referral_id: int,
    body: RewardUnlock,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    referral = await run_db(
        referral_service.unlock_referral_reward, engine, guild_id, referral_id, body.reward_id,
    )
    data = referral_dict(referral)
    notifier.publish(EventType.REFERRAL_UPDATE, guild_id, data)
    return data
