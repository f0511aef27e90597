"""
nightwatch.api.routes.playlist — Per-guild song queue
======================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from nightwatch.api.deps import get_engine, get_notifier
from nightwatch.database.engine import run_db
from nightwatch.database.serialize import row_to_dict
from nightwatch.engine.events import EventType
from nightwatch.engine.notifier import ChangeNotifier
from nightwatch.services import guild_service

router = APIRouter(tags=["playlist"])


class SongCreate(BaseModel):
    requested_by: str
    title: str | None = None
    url: str | None = None


@router.get("/guilds/{guild_id}/playlist")
async def get_playlist(guild_id: str, engine=Depends(get_engine)):
    songs = await run_db(guild_service.find_playlist, engine, guild_id)
    return [row_to_dict(s) for s in songs]


@router.post("/guilds/{guild_id}/playlist", status_code=201)
async def add_song(
    guild_id: str,
    body: SongCreate,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    song = await run_db(guild_service.create_song, engine, guild_id, body.model_dump())
    data = row_to_dict(song)
    notifier.publish(EventType.SONG_CREATE, guild_id, data)
    return data


@router.delete("/guilds/{guild_id}/playlist")
async def clear_playlist(
    guild_id: str,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    removed = await run_db(guild_service.clear_playlist, engine, guild_id)
    notifier.publish(EventType.PLAYLIST_CLEAR, guild_id, {"guild_id": guild_id})
    return {"guild_id": guild_id, "removed": removed}


@router.get("/guilds/{guild_id}/playlist/user/{user_id}")
async def get_user_songs(guild_id: str, user_id: str, engine=Depends(get_engine)):
    songs = await run_db(guild_service.find_playlist_songs_by_user_id, engine, guild_id, user_id)
    return [row_to_dict(s) for s in songs]


@router.delete("/guilds/{guild_id}/playlist/user/{user_id}")
async def delete_user_songs(
    guild_id: str,
    user_id: str,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    removed = await run_db(
        guild_service.delete_playlist_songs_by_user_id, engine, guild_id, user_id,
    )
    key = {"guild_id": guild_id, "user_id": user_id}
    notifier.publish(EventType.PLAYLIST_USER_DELETE, guild_id, key)
    return {**key, "removed": removed}


@router.delete("/guilds/{guild_id}/playlist/{song_id}")
async def delete_song(
    guild_id: str,
    song_id: int,
    engine=Depends(get_engine),
    notifier: ChangeNotifier = Depends(get_notifier),
):
    await run_db(guild_service.delete_song, engine, guild_id, song_id)
    key = {"guild_id": guild_id, "song_id": song_id}
    notifier.publish(EventType.SONG_DELETE, guild_id, key)
    return key
